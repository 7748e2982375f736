"""Read-only aggregation over the ledger, the achievements and the leaderboards."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .engine import AchievementEngine
from .leaderboard import PERIODS, LeaderboardManager
from .points_ledger import PointsLedger
from .records import GLOBAL_SCOPE, Achievement, LeaderboardEntry, PointsTransaction, course_scope, normalize_user_id


class RankSnapshot(BaseModel):
    scope: str
    period: str
    rank: int
    score: int


class UserSummary(BaseModel):
    user_id: str
    total_points: int
    achievements: List[Achievement] = Field(default_factory=list)
    ranks: Dict[str, RankSnapshot] = Field(default_factory=dict)


class ReportingFacade:
    """Composes a user's standing without writing anything."""

    def __init__(self, ledger: PointsLedger, engine: AchievementEngine, leaderboard: LeaderboardManager) -> None:
        self._ledger = ledger
        self._engine = engine
        self._leaderboard = leaderboard

    def summary(
        self,
        user_id: str,
        *,
        course_slugs: Iterable[str] = (),
        at: Optional[datetime] = None,
    ) -> UserSummary:
        """Achievements, total points and ranks keyed by ``<scope>:<period>``.

        A rank of 0 means the user has no entry in that partition yet.
        """
        user = normalize_user_id(user_id)
        scopes = [GLOBAL_SCOPE] + [course_scope(slug) for slug in course_slugs]

        ranks: Dict[str, RankSnapshot] = {}
        for scope in scopes:
            for period in PERIODS:
                standing = self._leaderboard.rank_of(user, scope, period, at=at)
                ranks[f"{scope}:{period}"] = RankSnapshot(
                    scope=scope,
                    period=period,
                    rank=standing.rank,
                    score=standing.score,
                )

        return UserSummary(
            user_id=user,
            total_points=self._ledger.total_for(user),
            achievements=self._engine.achievements_for(user),
            ranks=ranks,
        )

    def leaderboard(
        self,
        scope: str,
        period: str,
        limit: int = 100,
        *,
        at: Optional[datetime] = None,
    ) -> List[LeaderboardEntry]:
        return self._leaderboard.top(scope, period, limit, at=at)

    def points_history(self, user_id: str, limit: int = 50) -> List[PointsTransaction]:
        return self._ledger.history(user_id, limit=limit)


__all__ = ["RankSnapshot", "ReportingFacade", "UserSummary"]
