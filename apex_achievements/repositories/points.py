"""Database-backed points ledger repository."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..db.models import PointsTransactionModel
from ..errors import DuplicateAward
from ..records import PointsTransaction, as_utc
from .audit import audit_events


class PointsRepository:
    """Append-only access to ``points_transactions``. Rows are never updated."""

    def append(self, session: Session, transaction: PointsTransaction) -> PointsTransaction:
        if transaction.award_key is not None:
            existing = self.find_by_award_key(session, transaction.user_id, transaction.award_key)
            if existing is not None:
                raise DuplicateAward(transaction.user_id, transaction.award_key)

        model = PointsTransactionModel(
            id=transaction.transaction_id,
            user_id=transaction.user_id,
            amount=transaction.amount,
            source=transaction.source,
            description=transaction.description,
            course_slug=transaction.course_slug,
            award_key=transaction.award_key,
            created_at=as_utc(transaction.created_at),
        )
        session.add(model)
        session.flush()

        audit_events.record(
            session,
            transaction.user_id,
            "points_append",
            {
                "transaction_id": transaction.transaction_id,
                "amount": transaction.amount,
                "source": transaction.source,
            },
        )
        return self._to_domain(model)

    def find_by_award_key(self, session: Session, user_id: str, award_key: str) -> Optional[PointsTransaction]:
        stmt = select(PointsTransactionModel).where(
            PointsTransactionModel.user_id == user_id,
            PointsTransactionModel.award_key == award_key,
        )
        model = session.execute(stmt).scalar_one_or_none()
        return self._to_domain(model) if model else None

    def total_for(
        self,
        session: Session,
        user_id: str,
        *,
        course_slug: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        stmt = select(func.coalesce(func.sum(PointsTransactionModel.amount), 0)).where(
            PointsTransactionModel.user_id == user_id
        )
        stmt = self._apply_window(stmt, course_slug=course_slug, since=since, until=until)
        return int(session.execute(stmt).scalar_one())

    def last_activity(
        self,
        session: Session,
        user_id: str,
        *,
        course_slug: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Optional[datetime]:
        stmt = select(func.max(PointsTransactionModel.created_at)).where(
            PointsTransactionModel.user_id == user_id
        )
        stmt = self._apply_window(stmt, course_slug=course_slug, since=since, until=until)
        value = session.execute(stmt).scalar_one_or_none()
        return as_utc(value) if value is not None else None

    def list_for(self, session: Session, user_id: str, *, limit: Optional[int] = None) -> List[PointsTransaction]:
        stmt = (
            select(PointsTransactionModel)
            .where(PointsTransactionModel.user_id == user_id)
            .order_by(PointsTransactionModel.created_at.desc(), PointsTransactionModel.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return [self._to_domain(model) for model in session.execute(stmt).scalars().all()]

    def scores(
        self,
        session: Session,
        *,
        course_slug: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[Tuple[str, int, datetime]]:
        """Per-user (sum, latest transaction time) over the matching window."""
        stmt = select(
            PointsTransactionModel.user_id,
            func.sum(PointsTransactionModel.amount),
            func.max(PointsTransactionModel.created_at),
        )
        stmt = self._apply_window(stmt, course_slug=course_slug, since=since, until=until)
        stmt = stmt.group_by(PointsTransactionModel.user_id)
        return [
            (user_id, int(total), as_utc(latest))
            for user_id, total, latest in session.execute(stmt).all()
        ]

    def course_slugs(self, session: Session) -> List[str]:
        stmt = (
            select(PointsTransactionModel.course_slug)
            .where(PointsTransactionModel.course_slug.is_not(None))
            .distinct()
            .order_by(PointsTransactionModel.course_slug)
        )
        return [slug for slug in session.execute(stmt).scalars().all() if slug]

    @staticmethod
    def _apply_window(stmt, *, course_slug, since, until):  # type: ignore[no-untyped-def]
        if course_slug is not None:
            stmt = stmt.where(PointsTransactionModel.course_slug == course_slug)
        if since is not None:
            stmt = stmt.where(PointsTransactionModel.created_at >= as_utc(since))
        if until is not None:
            stmt = stmt.where(PointsTransactionModel.created_at < as_utc(until))
        return stmt

    @staticmethod
    def _to_domain(model: PointsTransactionModel) -> PointsTransaction:
        return PointsTransaction(
            transaction_id=model.id,
            user_id=model.user_id,
            amount=model.amount,
            source=model.source,
            description=model.description or "",
            course_slug=model.course_slug,
            award_key=model.award_key,
            created_at=model.created_at,
        )


points = PointsRepository()

__all__ = ["PointsRepository", "points"]
