"""Database-backed leaderboard entry cache."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from ..db.models import LeaderboardEntryModel
from ..records import LeaderboardEntry, as_utc


class LeaderboardRepository:
    def upsert(
        self,
        session: Session,
        scope: str,
        period_key: str,
        user_id: str,
        score: int,
        updated_at: datetime,
    ) -> LeaderboardEntry:
        model = self._get_model(session, scope, period_key, user_id)
        if model is None:
            model = LeaderboardEntryModel(
                scope=scope,
                period_key=period_key,
                user_id=user_id,
                score=score,
                rank=0,
                updated_at=as_utc(updated_at),
            )
            session.add(model)
        else:
            model.score = score
            model.updated_at = as_utc(updated_at)
        session.flush()
        return self._to_domain(model)

    def get(self, session: Session, scope: str, period_key: str, user_id: str) -> Optional[LeaderboardEntry]:
        model = self._get_model(session, scope, period_key, user_id)
        return self._to_domain(model) if model else None

    def list_partition(self, session: Session, scope: str, period_key: str) -> List[LeaderboardEntry]:
        stmt = select(LeaderboardEntryModel).where(
            LeaderboardEntryModel.scope == scope,
            LeaderboardEntryModel.period_key == period_key,
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars().all()]

    def assign_ranks(self, session: Session, scope: str, period_key: str, ranks: Dict[str, int]) -> None:
        for user_id, rank in ranks.items():
            session.execute(
                update(LeaderboardEntryModel)
                .where(
                    LeaderboardEntryModel.scope == scope,
                    LeaderboardEntryModel.period_key == period_key,
                    LeaderboardEntryModel.user_id == user_id,
                )
                .values(rank=rank)
            )
        session.flush()

    def top(self, session: Session, scope: str, period_key: str, limit: int) -> List[LeaderboardEntry]:
        stmt = (
            select(LeaderboardEntryModel)
            .where(
                LeaderboardEntryModel.scope == scope,
                LeaderboardEntryModel.period_key == period_key,
                LeaderboardEntryModel.rank > 0,
            )
            .order_by(LeaderboardEntryModel.rank.asc())
            .limit(limit)
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars().all()]

    def replace_partition(
        self,
        session: Session,
        scope: str,
        period_key: str,
        entries: Sequence[LeaderboardEntry],
    ) -> int:
        session.execute(
            delete(LeaderboardEntryModel).where(
                LeaderboardEntryModel.scope == scope,
                LeaderboardEntryModel.period_key == period_key,
            )
        )
        session.add_all(
            LeaderboardEntryModel(
                scope=scope,
                period_key=period_key,
                user_id=entry.user_id,
                score=entry.score,
                rank=entry.rank,
                updated_at=as_utc(entry.updated_at),
            )
            for entry in entries
        )
        session.flush()
        return len(entries)

    @staticmethod
    def _get_model(session: Session, scope: str, period_key: str, user_id: str) -> Optional[LeaderboardEntryModel]:
        stmt = select(LeaderboardEntryModel).where(
            LeaderboardEntryModel.scope == scope,
            LeaderboardEntryModel.period_key == period_key,
            LeaderboardEntryModel.user_id == user_id,
        )
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _to_domain(model: LeaderboardEntryModel) -> LeaderboardEntry:
        return LeaderboardEntry(
            scope=model.scope,
            period_key=model.period_key,
            user_id=model.user_id,
            score=model.score,
            rank=model.rank,
            updated_at=model.updated_at,
        )


leaderboards = LeaderboardRepository()

__all__ = ["LeaderboardRepository", "leaderboards"]
