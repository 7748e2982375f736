"""Badge evaluation and exactly-once award handling."""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Tuple, Union

from .badges import ActivityStats, BadgeCatalog, BadgeDefinition, default_catalog
from .errors import DuplicateAward
from .locks import KeyedLocks
from .points_ledger import BADGE_KEY_PREFIX, PointsLedger
from .records import Achievement, PointsTransaction, normalize_user_id
from .store import GamificationStore
from .telemetry import emit_event

logger = logging.getLogger(__name__)

StatsInput = Union[ActivityStats, Mapping[str, Any], None]


def badge_award_key(badge_id: str) -> str:
    return f"{BADGE_KEY_PREFIX}{badge_id}"


def coerce_stats(stats: StatsInput) -> ActivityStats:
    if stats is None:
        return ActivityStats()
    if isinstance(stats, ActivityStats):
        return stats
    return ActivityStats.model_validate(dict(stats))


class AchievementEngine:
    """Turns activity events into badge awards and rarity point payouts.

    A badge is awarded at most once per user. The award itself and its payout
    are two writes; the payout carries the award key ``badge:<badge_id>`` so a
    retry after a failed payout credits the points exactly once.
    Score listeners run after the badge lock is released.
    """

    def __init__(
        self,
        store: GamificationStore,
        ledger: PointsLedger,
        catalog: Optional[BadgeCatalog] = None,
        *,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._catalog = catalog or default_catalog()
        self._locks = locks or KeyedLocks()

    @property
    def catalog(self) -> BadgeCatalog:
        return self._catalog

    def evaluate(
        self,
        user_id: str,
        event_type: str,
        payload: Optional[Mapping[str, Any]] = None,
        stats: StatsInput = None,
    ) -> List[Achievement]:
        """Award every badge whose predicate fires for this event.

        Returns only the achievements created by this call.
        """
        user = normalize_user_id(user_id)
        event_payload: Mapping[str, Any] = payload or {}
        activity = coerce_stats(stats)

        awarded: List[Achievement] = []
        for definition in self._catalog.candidates(event_type):
            if not definition.matches(user, event_type, event_payload, activity):
                continue
            achievement = self._award(user, definition)
            if achievement is not None:
                awarded.append(achievement)
        if awarded:
            logger.info(
                "Awarded %s to %s on %s",
                ", ".join(item.badge_id for item in awarded),
                user,
                event_type,
            )
        return awarded

    def award_badge(self, user_id: str, badge_id: str) -> Optional[Achievement]:
        """Grant a badge directly. Returns ``None`` when the user already holds it."""
        definition = self._catalog.get(badge_id)
        return self._award(normalize_user_id(user_id), definition)

    def achievements_for(self, user_id: str) -> List[Achievement]:
        return self._store.list_achievements(normalize_user_id(user_id))

    def _award(self, user_id: str, definition: BadgeDefinition) -> Optional[Achievement]:
        stored: Optional[Achievement] = None
        with self._locks.hold((user_id, definition.badge_id)):
            if self._store.get_achievement(user_id, definition.badge_id) is None:
                achievement = Achievement(
                    user_id=user_id,
                    badge_id=definition.badge_id,
                    name=definition.name,
                    category=definition.category,
                    rarity=definition.rarity,
                    icon=definition.icon,
                    points=definition.points,
                )
                try:
                    stored = self._store.insert_achievement(achievement)
                except DuplicateAward:
                    logger.debug("Badge %s already held by %s", definition.badge_id, user_id)
            # Also repairs a payout that failed after an earlier award was stored.
            payout, credited = self._pay_out(user_id, definition)

        if credited:
            self._ledger.notify(payout)
        if stored is None:
            return None

        emit_event(
            "badge_awarded",
            user_id=user_id,
            badge_id=definition.badge_id,
            rarity=definition.rarity,
            points=definition.points,
        )
        return stored

    def _pay_out(self, user_id: str, definition: BadgeDefinition) -> Tuple[PointsTransaction, bool]:
        return self._ledger.credit_badge(
            user_id,
            definition.points,
            f"badge_{definition.rarity}",
            f"Earned badge: {definition.name}",
            award_key=badge_award_key(definition.badge_id),
        )


__all__ = ["AchievementEngine", "badge_award_key", "coerce_stats"]
