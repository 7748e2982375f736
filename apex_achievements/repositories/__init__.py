"""Session-scoped SQL repositories for the achievements tables."""

from .achievements import AchievementRepository, achievements
from .audit import AuditRepository, audit_events
from .leaderboards import LeaderboardRepository, leaderboards
from .points import PointsRepository, points

__all__ = [
    "AchievementRepository",
    "AuditRepository",
    "LeaderboardRepository",
    "PointsRepository",
    "achievements",
    "audit_events",
    "leaderboards",
    "points",
]
