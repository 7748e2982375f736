"""Ranked leaderboard partitions maintained from the points ledger."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import RankRecomputationFailure
from .locks import KeyedLocks
from .points_ledger import PointsLedger
from .records import (
    GLOBAL_SCOPE,
    LeaderboardEntry,
    Period,
    PointsTransaction,
    Standing,
    as_utc,
    course_scope,
    normalize_user_id,
    parse_scope,
)
from .store import GamificationStore
from .telemetry import emit_event

logger = logging.getLogger(__name__)

PERIODS: Tuple[Period, ...] = ("all_time", "weekly", "monthly")
ALL_TIME_KEY = "all_time"

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def period_key(period: str, at: datetime) -> str:
    """Return the partition key for ``period`` at wall-clock time ``at`` (UTC).

    Weekly keys use the ISO-8601 week (``2026-W42``), monthly keys the calendar
    month (``2026-10``).
    """
    moment = as_utc(at)
    if period == "all_time":
        return ALL_TIME_KEY
    if period == "weekly":
        year, week, _ = moment.isocalendar()
        return f"{year:04d}-W{week:02d}"
    if period == "monthly":
        return f"{moment.year:04d}-{moment.month:02d}"
    raise ValueError(f"Unsupported leaderboard period: {period!r}")


def period_bounds(period: str, at: datetime) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Half-open ``[start, end)`` window of the partition containing ``at``."""
    moment = as_utc(at)
    if period == "all_time":
        return None, None
    if period == "weekly":
        monday = moment.date() - timedelta(days=moment.weekday())
        start = datetime(monday.year, monday.month, monday.day, tzinfo=timezone.utc)
        return start, start + timedelta(days=7)
    if period == "monthly":
        start = datetime(moment.year, moment.month, 1, tzinfo=timezone.utc)
        if moment.month == 12:
            end = datetime(moment.year + 1, 1, 1, tzinfo=timezone.utc)
        else:
            end = datetime(moment.year, moment.month + 1, 1, tzinfo=timezone.utc)
        return start, end
    raise ValueError(f"Unsupported leaderboard period: {period!r}")


def canonical_scope(scope: str) -> str:
    """Validate ``scope`` and return it with the course slug normalised."""
    slug = parse_scope(scope)
    return GLOBAL_SCOPE if slug is None else course_scope(slug)


def rank_entries(entries: Iterable[LeaderboardEntry]) -> List[LeaderboardEntry]:
    """Order entries by descending score, earliest update, then user id."""
    return sorted(entries, key=lambda entry: (-entry.score, entry.updated_at, entry.user_id))


class LeaderboardManager:
    """Maintains ranked views per (scope, period key).

    Score changes upsert the user's entry and re-rank the whole partition while
    holding that partition's lock. Different partitions never block each other.
    """

    def __init__(
        self,
        store: GamificationStore,
        ledger: Optional[PointsLedger] = None,
        *,
        locks: Optional[KeyedLocks] = None,
        clock: Clock = _utc_now,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._locks = locks or KeyedLocks()
        self._clock = clock

    def attach(self, ledger: PointsLedger) -> None:
        """Follow ``ledger`` so every new transaction updates the affected partitions."""
        self._ledger = ledger
        ledger.add_listener(self.apply_transaction)

    def on_score_change(
        self,
        user_id: str,
        scope: str,
        period: str,
        new_score: int,
        *,
        at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ) -> None:
        user = normalize_user_id(user_id)
        scope = canonical_scope(scope)
        moment = as_utc(at) if at is not None else self._clock()
        key = period_key(period, moment)
        stamp = as_utc(updated_at) if updated_at is not None else moment

        with self._locks.hold((scope, key)):
            self._store.upsert_leaderboard_entry(scope, key, user, int(new_score), stamp)
            self._recompute_quietly(scope, key)

    def apply_transaction(self, transaction: PointsTransaction) -> None:
        """Push ledger-derived scores for every partition ``transaction`` touches."""
        if self._ledger is None:
            raise RuntimeError("LeaderboardManager has no ledger attached.")

        scopes: List[Tuple[str, Optional[str]]] = [(GLOBAL_SCOPE, None)]
        if transaction.course_slug:
            scopes.append((course_scope(transaction.course_slug), transaction.course_slug))

        for scope, slug in scopes:
            for period in PERIODS:
                key = period_key(period, transaction.created_at)
                since, until = period_bounds(period, transaction.created_at)
                # Scores are read under the partition lock; the last holder sees every committed append.
                with self._locks.hold((scope, key)):
                    score = self._ledger.total_for(
                        transaction.user_id, course_slug=slug, since=since, until=until
                    )
                    stamp = self._ledger.last_activity(
                        transaction.user_id, course_slug=slug, since=since, until=until
                    )
                    self._store.upsert_leaderboard_entry(
                        scope, key, transaction.user_id, score, stamp or transaction.created_at
                    )
                    self._recompute_quietly(scope, key)

    def recompute(self, scope: str, period: str, *, at: Optional[datetime] = None) -> int:
        """Re-rank one partition and return its size. Failures are raised."""
        scope = canonical_scope(scope)
        key = period_key(period, as_utc(at) if at is not None else self._clock())
        with self._locks.hold((scope, key)):
            return self._recompute_locked(scope, key)

    def rank_of(self, user_id: str, scope: str, period: str, *, at: Optional[datetime] = None) -> Standing:
        scope = canonical_scope(scope)
        key = period_key(period, as_utc(at) if at is not None else self._clock())
        entry = self._store.get_leaderboard_entry(scope, key, normalize_user_id(user_id))
        if entry is None:
            return Standing(rank=0, score=0)
        return Standing(rank=entry.rank, score=entry.score)

    def top(
        self,
        scope: str,
        period: str,
        limit: int = 100,
        *,
        at: Optional[datetime] = None,
    ) -> List[LeaderboardEntry]:
        if limit < 1:
            raise ValueError("Leaderboard limit must be positive.")
        scope = canonical_scope(scope)
        key = period_key(period, as_utc(at) if at is not None else self._clock())
        return self._store.top_entries(scope, key, limit)

    def rebuild(self, ledger: Optional[PointsLedger] = None, *, at: Optional[datetime] = None) -> Dict[str, int]:
        """Re-derive the current partitions from the ledger.

        Each partition is ranked in memory and swapped in with one store write,
        so a failure leaves it at its previous ranking. Returns the number of
        ranked users per ``scope/period_key``.
        """
        source = ledger or self._ledger
        if source is None:
            raise RuntimeError("LeaderboardManager has no ledger attached.")
        moment = as_utc(at) if at is not None else self._clock()

        scopes: List[Tuple[str, Optional[str]]] = [(GLOBAL_SCOPE, None)]
        scopes.extend((course_scope(slug), slug) for slug in source.store.course_slugs())

        summary: Dict[str, int] = {}
        for scope, slug in scopes:
            for period in PERIODS:
                key = period_key(period, moment)
                since, until = period_bounds(period, moment)
                with self._locks.hold((scope, key)):
                    rows = source.store.point_scores(course_slug=slug, since=since, until=until)
                    entries = [
                        LeaderboardEntry(scope=scope, period_key=key, user_id=user_id, score=score, updated_at=latest)
                        for user_id, score, latest in rows
                    ]
                    ranked = [
                        entry.model_copy(update={"rank": position})
                        for position, entry in enumerate(rank_entries(entries), start=1)
                    ]
                    summary[f"{scope}/{key}"] = self._store.replace_partition(scope, key, ranked)

        emit_event("leaderboard_rebuilt", partitions=len(summary), at=moment)
        logger.info("Rebuilt %d leaderboard partitions", len(summary))
        return summary

    def _recompute_quietly(self, scope: str, key: str) -> bool:
        try:
            self._recompute_locked(scope, key)
        except RankRecomputationFailure as exc:
            logger.warning("%s", exc)
            emit_event("rank_recomputation_failed", scope=scope, period_key=key, error=str(exc))
            return False
        return True

    def _recompute_locked(self, scope: str, key: str) -> int:
        try:
            entries = self._store.list_partition(scope, key)
            ordered = rank_entries(entries)
            ranks = {entry.user_id: position for position, entry in enumerate(ordered, start=1)}
            current = {entry.user_id: entry.rank for entry in entries}
            changed = {user_id: rank for user_id, rank in ranks.items() if current.get(user_id) != rank}
            if changed:
                self._store.assign_ranks(scope, key, changed)
        except Exception as exc:  # noqa: BLE001
            raise RankRecomputationFailure(scope, key, exc) from exc

        emit_event(
            "leaderboard_recomputed",
            scope=scope,
            period_key=key,
            entries=len(ordered),
            changed=len(changed),
        )
        return len(ordered)


__all__ = [
    "ALL_TIME_KEY",
    "LeaderboardManager",
    "PERIODS",
    "canonical_scope",
    "period_bounds",
    "period_key",
    "rank_entries",
]
