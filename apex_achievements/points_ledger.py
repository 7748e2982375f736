"""Append-only points ledger; the single source of truth for user scores."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .cache import PointsTotalCache
from .errors import AwardKeyConflict, DuplicateAward, InvalidAmount, PersistenceFailure, ReservedAwardKey
from .records import PointsTransaction, as_utc, normalize_course_slug, normalize_user_id
from .store import GamificationStore
from .telemetry import emit_event

logger = logging.getLogger(__name__)

ScoreListener = Callable[[PointsTransaction], None]

BADGE_KEY_PREFIX = "badge:"

_DESCRIPTIONS: Dict[str, str] = {
    "lesson_complete": "Completed a lesson (+{amount} points)",
    "quiz_pass": "Passed a quiz (+{amount} points)",
    "quiz_perfect": "Perfect quiz score! (+{amount} points)",
    "code_submit": "Submitted code (+{amount} points)",
    "code_pass": "Code passed all tests (+{amount} points)",
    "streak_bonus": "Daily streak bonus (+{amount} points)",
    "badge_common": "Earned a badge (+{amount} points)",
    "badge_rare": "Earned a rare badge (+{amount} points)",
    "badge_epic": "Earned an epic badge (+{amount} points)",
    "badge_legendary": "Earned a legendary badge (+{amount} points)",
}

ACTIVITY_BASE_POINTS: Dict[str, int] = {
    "lesson_complete": 10,
    "quiz_pass": 20,
    "quiz_perfect": 50,
    "code_submit": 15,
    "code_pass": 30,
    "forum_post": 5,
    "forum_reply": 3,
}
DEFAULT_ACTIVITY_POINTS = 5
PERFORMANCE_BONUS_THRESHOLD = 90
PERFORMANCE_BONUS_MULTIPLIER = 1.5


def validate_amount(amount: object) -> int:
    """Return ``amount`` as an int or raise ``InvalidAmount``."""
    if isinstance(amount, bool):
        raise InvalidAmount(amount)
    if isinstance(amount, int):
        value = amount
    elif isinstance(amount, float):
        if not math.isfinite(amount) or not amount.is_integer():
            raise InvalidAmount(amount)
        value = int(amount)
    else:
        raise InvalidAmount(amount)
    if value == 0:
        raise InvalidAmount(amount)
    return value


def describe(source: str, amount: int) -> str:
    template = _DESCRIPTIONS.get(source)
    if template is None:
        return f"Earned {amount} points"
    return template.format(amount=amount)


def activity_points(activity_type: str, performance: Optional[float] = None) -> int:
    base = ACTIVITY_BASE_POINTS.get(activity_type, DEFAULT_ACTIVITY_POINTS)
    if performance is not None and performance >= PERFORMANCE_BONUS_THRESHOLD:
        # round half up
        return int(math.floor(base * PERFORMANCE_BONUS_MULTIPLIER + 0.5))
    return base


class PointsLedger:
    """Appends transactions and answers total-score questions.

    Totals are a reduction over the stored transactions. The unfiltered total
    is memoised in a ``PointsTotalCache`` that every append invalidates.
    """

    def __init__(self, store: GamificationStore, *, cache: Optional[PointsTotalCache] = None) -> None:
        self._store = store
        self._cache = cache or PointsTotalCache()
        self._listeners: List[ScoreListener] = []

    @property
    def store(self) -> GamificationStore:
        return self._store

    def add_listener(self, listener: ScoreListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def append(
        self,
        user_id: str,
        amount: object,
        source: str,
        description: Optional[str] = None,
        *,
        course_slug: Optional[str] = None,
        award_key: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> str:
        if award_key is not None and award_key.startswith(BADGE_KEY_PREFIX):
            raise ReservedAwardKey(award_key)
        transaction, created = self._append(
            user_id,
            amount,
            source,
            description,
            course_slug=course_slug,
            award_key=award_key,
            created_at=created_at,
        )
        if created:
            self.notify(transaction)
        return transaction.transaction_id

    def credit_badge(
        self,
        user_id: str,
        amount: int,
        source: str,
        description: str,
        *,
        award_key: str,
    ) -> Tuple[PointsTransaction, bool]:
        """Write a badge payout without notifying listeners.

        Returns the payout and whether this call created it. The caller passes
        newly created payouts to ``notify`` once its own locks are released.
        """
        if not award_key.startswith(BADGE_KEY_PREFIX):
            raise ValueError(f"Badge payouts use '{BADGE_KEY_PREFIX}' award keys, got {award_key!r}.")
        return self._append(
            user_id,
            amount,
            source,
            description,
            course_slug=None,
            award_key=award_key,
            created_at=None,
        )

    def _append(
        self,
        user_id: str,
        amount: object,
        source: str,
        description: Optional[str],
        *,
        course_slug: Optional[str],
        award_key: Optional[str],
        created_at: Optional[datetime],
    ) -> Tuple[PointsTransaction, bool]:
        value = validate_amount(amount)
        user = normalize_user_id(user_id)
        tag = (source or "").strip()
        if not tag:
            raise ValueError("Points source cannot be empty.")
        slug = normalize_course_slug(course_slug)

        fields: Dict[str, object] = {
            "user_id": user,
            "amount": value,
            "source": tag,
            "description": description or describe(tag, value),
            "course_slug": slug,
            "award_key": award_key,
        }
        if created_at is not None:
            fields["created_at"] = as_utc(created_at)
        transaction = PointsTransaction(**fields)  # type: ignore[arg-type]

        try:
            stored = self._store.append_transaction(transaction)
        except DuplicateAward as exc:
            existing = self._store.find_transaction_by_award_key(user, exc.key)
            if existing is None:
                raise PersistenceFailure("points_append") from None
            if existing.source != tag or existing.amount != value:
                raise AwardKeyConflict(user, exc.key) from None
            logger.debug("Points for %s/%s already credited as %s", user, exc.key, existing.transaction_id)
            return existing, False

        self._cache.invalidate(user)
        emit_event(
            "points_appended",
            user_id=user,
            amount=value,
            source=tag,
            course_slug=slug,
            transaction_id=stored.transaction_id,
        )
        return stored, True

    def grant(
        self,
        user_id: str,
        activity_type: str,
        *,
        performance: Optional[float] = None,
        course_slug: Optional[str] = None,
        description: Optional[str] = None,
    ) -> PointsTransaction:
        """Credit the standard reward for an activity and return the stored transaction."""
        amount = activity_points(activity_type, performance)
        transaction, _ = self._append(
            user_id,
            amount,
            activity_type,
            description,
            course_slug=course_slug,
            award_key=None,
            created_at=None,
        )
        self.notify(transaction)
        return transaction

    def is_credited(self, user_id: str, award_key: str) -> bool:
        return self._store.find_transaction_by_award_key(normalize_user_id(user_id), award_key) is not None

    def total_for(
        self,
        user_id: str,
        *,
        course_slug: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        user = normalize_user_id(user_id)
        if course_slug is not None or since is not None or until is not None:
            return self._store.sum_points(
                user, course_slug=normalize_course_slug(course_slug), since=since, until=until
            )

        cached = self._cache.get(user)
        if cached is not None:
            return cached
        generation = self._cache.generation(user)
        total = self._store.sum_points(user)
        self._cache.set(user, total, generation=generation)
        return total

    def last_activity(
        self,
        user_id: str,
        *,
        course_slug: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Optional[datetime]:
        return self._store.last_activity(
            normalize_user_id(user_id),
            course_slug=normalize_course_slug(course_slug),
            since=since,
            until=until,
        )

    def replay(self, user_id: str) -> int:
        """Drop any cached total and recompute it from the stored transactions."""
        user = normalize_user_id(user_id)
        self._cache.invalidate(user)
        return self.total_for(user)

    def history(self, user_id: str, limit: int = 50) -> List[PointsTransaction]:
        return self._store.list_transactions(normalize_user_id(user_id), limit=limit)

    def notify(self, transaction: PointsTransaction) -> None:
        for listener in list(self._listeners):
            try:
                listener(transaction)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Score listener failed after transaction %s for %s",
                    transaction.transaction_id,
                    transaction.user_id,
                )


__all__ = [
    "ACTIVITY_BASE_POINTS",
    "BADGE_KEY_PREFIX",
    "PointsLedger",
    "ScoreListener",
    "activity_points",
    "describe",
    "validate_amount",
]
