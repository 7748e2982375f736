"""Database-backed earned badge repository."""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.models import AchievementModel
from ..errors import DuplicateAward
from ..records import Achievement, as_utc
from .audit import audit_events


class AchievementRepository:
    def get(self, session: Session, user_id: str, badge_id: str) -> Optional[Achievement]:
        stmt = select(AchievementModel).where(
            AchievementModel.user_id == user_id,
            AchievementModel.badge_id == badge_id,
        )
        model = session.execute(stmt).scalar_one_or_none()
        return self._to_domain(model) if model else None

    def insert(self, session: Session, achievement: Achievement) -> Achievement:
        """Insert-if-absent. Concurrent inserts that slip past the check fail on the unique constraint."""
        if self.get(session, achievement.user_id, achievement.badge_id) is not None:
            raise DuplicateAward(achievement.user_id, f"badge:{achievement.badge_id}")

        model = AchievementModel(
            user_id=achievement.user_id,
            badge_id=achievement.badge_id,
            name=achievement.name,
            category=achievement.category,
            rarity=achievement.rarity,
            icon=achievement.icon,
            points=achievement.points,
            earned_at=as_utc(achievement.earned_at),
        )
        session.add(model)
        session.flush()

        audit_events.record(
            session,
            achievement.user_id,
            "badge_award",
            {"badge_id": achievement.badge_id, "rarity": achievement.rarity},
        )
        return self._to_domain(model)

    def list_for(self, session: Session, user_id: str) -> List[Achievement]:
        stmt = (
            select(AchievementModel)
            .where(AchievementModel.user_id == user_id)
            .order_by(AchievementModel.earned_at.desc(), AchievementModel.badge_id.asc())
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars().all()]

    @staticmethod
    def _to_domain(model: AchievementModel) -> Achievement:
        return Achievement(
            user_id=model.user_id,
            badge_id=model.badge_id,
            name=model.name,
            category=model.category,  # type: ignore[arg-type]
            rarity=model.rarity,  # type: ignore[arg-type]
            icon=model.icon or "",
            points=model.points,
            earned_at=model.earned_at,
        )


achievements = AchievementRepository()

__all__ = ["AchievementRepository", "achievements"]
