"""Error taxonomy for the achievements engine."""

from __future__ import annotations

from typing import Optional


class GamificationError(Exception):
    """Base class for engine errors."""


class InvalidAmount(GamificationError, ValueError):
    """Raised before any write when a point amount is not a finite non-zero integer."""

    def __init__(self, amount: object) -> None:
        super().__init__(f"Point amount must be a finite non-zero integer, got {amount!r}.")
        self.amount = amount


class UnknownBadge(GamificationError, LookupError):
    def __init__(self, badge_id: str) -> None:
        super().__init__(f"Badge '{badge_id}' is not in the catalog.")
        self.badge_id = badge_id


class DuplicateAward(GamificationError):
    """A keyed write already exists. Callers treat this as a no-op."""

    def __init__(self, user_id: str, key: str) -> None:
        super().__init__(f"'{key}' was already recorded for user '{user_id}'.")
        self.user_id = user_id
        self.key = key


class ReservedAwardKey(GamificationError, ValueError):
    """Award keys under ``badge:`` are written only by the achievement engine."""

    def __init__(self, award_key: str) -> None:
        super().__init__(f"Award key '{award_key}' is reserved for badge payouts.")
        self.award_key = award_key


class AwardKeyConflict(GamificationError):
    """A keyed transaction exists but records a different source or amount."""

    def __init__(self, user_id: str, award_key: str) -> None:
        super().__init__(f"'{award_key}' for user '{user_id}' was credited with different terms.")
        self.user_id = user_id
        self.award_key = award_key


class PersistenceFailure(GamificationError):
    """The underlying store is unavailable or rejected a write."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None) -> None:
        message = f"Persistence failure during {operation}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.operation = operation


class RankRecomputationFailure(GamificationError):
    """A leaderboard recomputation pass failed; ranks keep their last consistent state."""

    def __init__(self, scope: str, period_key: str, cause: Optional[BaseException] = None) -> None:
        message = f"Rank recomputation failed for {scope}/{period_key}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.scope = scope
        self.period_key = period_key


__all__ = [
    "AwardKeyConflict",
    "DuplicateAward",
    "GamificationError",
    "InvalidAmount",
    "PersistenceFailure",
    "RankRecomputationFailure",
    "ReservedAwardKey",
    "UnknownBadge",
]
