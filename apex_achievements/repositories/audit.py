"""Audit trail for durable engine writes."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.models import PersistenceAuditEventModel


class AuditRepository:
    def record(
        self,
        session: Session,
        user_id: Optional[str],
        event_type: str,
        payload: Dict[str, Any],
        *,
        actor: str = "system",
    ) -> None:
        session.add(
            PersistenceAuditEventModel(
                user_id=user_id,
                event_type=event_type,
                payload=payload,
                actor=actor,
            )
        )

    def recent(
        self,
        session: Session,
        *,
        user_id: Optional[str] = None,
        event_types: Optional[Iterable[str]] = None,
        limit: int = 50,
    ) -> List[PersistenceAuditEventModel]:
        stmt = select(PersistenceAuditEventModel)
        if user_id is not None:
            stmt = stmt.where(PersistenceAuditEventModel.user_id == user_id)
        if event_types is not None:
            stmt = stmt.where(PersistenceAuditEventModel.event_type.in_(list(event_types)))
        stmt = stmt.order_by(PersistenceAuditEventModel.created_at.desc()).limit(limit)
        return list(session.execute(stmt).scalars().all())


audit_events = AuditRepository()

__all__ = ["AuditRepository", "audit_events"]
