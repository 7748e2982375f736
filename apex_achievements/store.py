"""Persistence boundary consumed by the ledger, the engine and the leaderboards."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from datetime import datetime
from typing import Callable, Deque, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .db.monitoring import track_operation
from .db.session import session_scope
from .errors import DuplicateAward, PersistenceFailure
from .records import Achievement, AuditRecord, LeaderboardEntry, PointsTransaction, as_utc
from .repositories import achievements as achievement_repo
from .repositories import audit_events as audit_repo
from .repositories import leaderboards as leaderboard_repo
from .repositories import points as points_repo

logger = logging.getLogger(__name__)

T = TypeVar("T")
ScoreRow = Tuple[str, int, datetime]
DEFAULT_AUDIT_LIMIT = 10_000


class GamificationStore(Protocol):
    """Operations the engine needs from durable storage.

    Requirements on implementations: single-record reads are point-in-time
    consistent, ``insert_achievement`` is an atomic insert-if-absent and
    ``append_transaction`` is an atomic append (keyed when ``award_key`` is
    set). Both raise ``DuplicateAward`` when the key already exists.
    """

    def append_transaction(self, transaction: PointsTransaction) -> PointsTransaction: ...

    def find_transaction_by_award_key(self, user_id: str, award_key: str) -> Optional[PointsTransaction]: ...

    def sum_points(
        self,
        user_id: str,
        *,
        course_slug: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int: ...

    def last_activity(
        self,
        user_id: str,
        *,
        course_slug: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Optional[datetime]: ...

    def list_transactions(self, user_id: str, *, limit: Optional[int] = None) -> List[PointsTransaction]: ...

    def point_scores(
        self,
        *,
        course_slug: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[ScoreRow]: ...

    def course_slugs(self) -> List[str]: ...

    def get_achievement(self, user_id: str, badge_id: str) -> Optional[Achievement]: ...

    def insert_achievement(self, achievement: Achievement) -> Achievement: ...

    def list_achievements(self, user_id: str) -> List[Achievement]: ...

    def upsert_leaderboard_entry(
        self,
        scope: str,
        period_key: str,
        user_id: str,
        score: int,
        updated_at: datetime,
    ) -> LeaderboardEntry: ...

    def get_leaderboard_entry(self, scope: str, period_key: str, user_id: str) -> Optional[LeaderboardEntry]: ...

    def list_partition(self, scope: str, period_key: str) -> List[LeaderboardEntry]: ...

    def assign_ranks(self, scope: str, period_key: str, ranks: Dict[str, int]) -> None: ...

    def top_entries(self, scope: str, period_key: str, limit: int) -> List[LeaderboardEntry]: ...

    def replace_partition(self, scope: str, period_key: str, entries: Sequence[LeaderboardEntry]) -> int:
        """Swap the whole partition for ``entries`` in one atomic write."""
        ...

    def record_audit(self, user_id: Optional[str], event_type: str, payload: Dict[str, object]) -> None: ...

    def recent_audit_events(
        self,
        *,
        user_id: Optional[str] = None,
        event_types: Optional[Iterable[str]] = None,
        limit: int = 50,
    ) -> List[AuditRecord]: ...


class DatabaseGamificationStore:
    """SQLAlchemy-backed store. Each call runs in its own short transaction."""

    def _run(self, operation: str, work: Callable[[Session], T], *, commit: bool = True) -> T:
        try:
            with track_operation(operation), session_scope(commit=commit) as session:
                return work(session)
        except DuplicateAward:
            raise
        except SQLAlchemyError as exc:
            logger.warning("Database error during %s: %s", operation, exc)
            raise PersistenceFailure(operation, exc) from exc

    def append_transaction(self, transaction: PointsTransaction) -> PointsTransaction:
        try:
            return self._run("points_append", lambda session: points_repo.append(session, transaction))
        except PersistenceFailure as exc:
            if transaction.award_key is not None and isinstance(exc.__cause__, IntegrityError):
                raise DuplicateAward(transaction.user_id, transaction.award_key) from exc
            raise

    def find_transaction_by_award_key(self, user_id: str, award_key: str) -> Optional[PointsTransaction]:
        return self._run(
            "points_lookup",
            lambda session: points_repo.find_by_award_key(session, user_id, award_key),
            commit=False,
        )

    def sum_points(
        self,
        user_id: str,
        *,
        course_slug: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        return self._run(
            "points_total",
            lambda session: points_repo.total_for(
                session, user_id, course_slug=course_slug, since=since, until=until
            ),
            commit=False,
        )

    def last_activity(
        self,
        user_id: str,
        *,
        course_slug: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Optional[datetime]:
        return self._run(
            "points_last_activity",
            lambda session: points_repo.last_activity(
                session, user_id, course_slug=course_slug, since=since, until=until
            ),
            commit=False,
        )

    def list_transactions(self, user_id: str, *, limit: Optional[int] = None) -> List[PointsTransaction]:
        return self._run(
            "points_history",
            lambda session: points_repo.list_for(session, user_id, limit=limit),
            commit=False,
        )

    def point_scores(
        self,
        *,
        course_slug: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[ScoreRow]:
        return self._run(
            "points_scores",
            lambda session: points_repo.scores(session, course_slug=course_slug, since=since, until=until),
            commit=False,
        )

    def course_slugs(self) -> List[str]:
        return self._run("points_course_slugs", points_repo.course_slugs, commit=False)

    def get_achievement(self, user_id: str, badge_id: str) -> Optional[Achievement]:
        return self._run(
            "achievement_lookup",
            lambda session: achievement_repo.get(session, user_id, badge_id),
            commit=False,
        )

    def insert_achievement(self, achievement: Achievement) -> Achievement:
        try:
            return self._run("badge_award", lambda session: achievement_repo.insert(session, achievement))
        except PersistenceFailure as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise DuplicateAward(achievement.user_id, f"badge:{achievement.badge_id}") from exc
            raise

    def list_achievements(self, user_id: str) -> List[Achievement]:
        return self._run(
            "achievement_list",
            lambda session: achievement_repo.list_for(session, user_id),
            commit=False,
        )

    def upsert_leaderboard_entry(
        self,
        scope: str,
        period_key: str,
        user_id: str,
        score: int,
        updated_at: datetime,
    ) -> LeaderboardEntry:
        return self._run(
            "leaderboard_upsert",
            lambda session: leaderboard_repo.upsert(session, scope, period_key, user_id, score, updated_at),
        )

    def get_leaderboard_entry(self, scope: str, period_key: str, user_id: str) -> Optional[LeaderboardEntry]:
        return self._run(
            "leaderboard_lookup",
            lambda session: leaderboard_repo.get(session, scope, period_key, user_id),
            commit=False,
        )

    def list_partition(self, scope: str, period_key: str) -> List[LeaderboardEntry]:
        return self._run(
            "leaderboard_partition",
            lambda session: leaderboard_repo.list_partition(session, scope, period_key),
            commit=False,
        )

    def assign_ranks(self, scope: str, period_key: str, ranks: Dict[str, int]) -> None:
        self._run(
            "leaderboard_ranks",
            lambda session: leaderboard_repo.assign_ranks(session, scope, period_key, ranks),
        )

    def top_entries(self, scope: str, period_key: str, limit: int) -> List[LeaderboardEntry]:
        return self._run(
            "leaderboard_top",
            lambda session: leaderboard_repo.top(session, scope, period_key, limit),
            commit=False,
        )

    def replace_partition(self, scope: str, period_key: str, entries: Sequence[LeaderboardEntry]) -> int:
        return self._run(
            "leaderboard_replace",
            lambda session: leaderboard_repo.replace_partition(session, scope, period_key, entries),
        )

    def record_audit(self, user_id: Optional[str], event_type: str, payload: Dict[str, object]) -> None:
        self._run("audit_record", lambda session: audit_repo.record(session, user_id, event_type, dict(payload)))

    def recent_audit_events(
        self,
        *,
        user_id: Optional[str] = None,
        event_types: Optional[Iterable[str]] = None,
        limit: int = 50,
    ) -> List[AuditRecord]:
        def _load(session: Session) -> List[AuditRecord]:
            rows = audit_repo.recent(session, user_id=user_id, event_types=event_types, limit=limit)
            return [
                AuditRecord(
                    user_id=row.user_id,
                    event_type=row.event_type,
                    payload=dict(row.payload or {}),
                    actor=row.actor,
                    created_at=as_utc(row.created_at),
                )
                for row in rows
            ]

        return self._run("audit_recent", _load, commit=False)


class InMemoryGamificationStore:
    """Process-local store used for tests, previews and single-process deployments.

    The audit trail keeps only the newest ``audit_limit`` records.
    """

    def __init__(self, *, audit_limit: int = DEFAULT_AUDIT_LIMIT) -> None:
        self._lock = threading.RLock()
        self._transactions: List[PointsTransaction] = []
        self._award_keys: Dict[Tuple[str, str], PointsTransaction] = {}
        self._achievements: Dict[Tuple[str, str], Achievement] = {}
        self._entries: Dict[Tuple[str, str], Dict[str, LeaderboardEntry]] = defaultdict(dict)
        self._audit: Deque[AuditRecord] = deque(maxlen=audit_limit)

    # Ledger ------------------------------------------------------------

    def append_transaction(self, transaction: PointsTransaction) -> PointsTransaction:
        with self._lock:
            if transaction.award_key is not None:
                key = (transaction.user_id, transaction.award_key)
                if key in self._award_keys:
                    raise DuplicateAward(transaction.user_id, transaction.award_key)
                self._award_keys[key] = transaction
            self._transactions.append(transaction)
            self._audit.append(
                AuditRecord(
                    user_id=transaction.user_id,
                    event_type="points_append",
                    payload={
                        "transaction_id": transaction.transaction_id,
                        "amount": transaction.amount,
                        "source": transaction.source,
                    },
                    actor="system",
                )
            )
            return transaction

    def find_transaction_by_award_key(self, user_id: str, award_key: str) -> Optional[PointsTransaction]:
        with self._lock:
            return self._award_keys.get((user_id, award_key))

    def _window(
        self,
        *,
        user_id: Optional[str] = None,
        course_slug: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[PointsTransaction]:
        lower = as_utc(since) if since is not None else None
        upper = as_utc(until) if until is not None else None
        with self._lock:
            snapshot = list(self._transactions)
        return [
            tx
            for tx in snapshot
            if (user_id is None or tx.user_id == user_id)
            and (course_slug is None or tx.course_slug == course_slug)
            and (lower is None or tx.created_at >= lower)
            and (upper is None or tx.created_at < upper)
        ]

    def sum_points(
        self,
        user_id: str,
        *,
        course_slug: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        window = self._window(user_id=user_id, course_slug=course_slug, since=since, until=until)
        return sum(tx.amount for tx in window)

    def last_activity(
        self,
        user_id: str,
        *,
        course_slug: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Optional[datetime]:
        window = self._window(user_id=user_id, course_slug=course_slug, since=since, until=until)
        return max((tx.created_at for tx in window), default=None)

    def list_transactions(self, user_id: str, *, limit: Optional[int] = None) -> List[PointsTransaction]:
        rows = sorted(
            self._window(user_id=user_id),
            key=lambda tx: (tx.created_at, tx.transaction_id),
            reverse=True,
        )
        return rows[:limit] if limit is not None else rows

    def point_scores(
        self,
        *,
        course_slug: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[ScoreRow]:
        totals: Dict[str, int] = defaultdict(int)
        latest: Dict[str, datetime] = {}
        for tx in self._window(course_slug=course_slug, since=since, until=until):
            totals[tx.user_id] += tx.amount
            if tx.user_id not in latest or tx.created_at > latest[tx.user_id]:
                latest[tx.user_id] = tx.created_at
        return [(user_id, total, latest[user_id]) for user_id, total in totals.items()]

    def course_slugs(self) -> List[str]:
        return sorted({tx.course_slug for tx in self._window() if tx.course_slug})

    # Achievements --------------------------------------------------------

    def get_achievement(self, user_id: str, badge_id: str) -> Optional[Achievement]:
        with self._lock:
            return self._achievements.get((user_id, badge_id))

    def insert_achievement(self, achievement: Achievement) -> Achievement:
        key = (achievement.user_id, achievement.badge_id)
        with self._lock:
            if key in self._achievements:
                raise DuplicateAward(achievement.user_id, f"badge:{achievement.badge_id}")
            self._achievements[key] = achievement
            self._audit.append(
                AuditRecord(
                    user_id=achievement.user_id,
                    event_type="badge_award",
                    payload={"badge_id": achievement.badge_id, "rarity": achievement.rarity},
                    actor="system",
                )
            )
            return achievement

    def list_achievements(self, user_id: str) -> List[Achievement]:
        with self._lock:
            earned = [item for (owner, _), item in self._achievements.items() if owner == user_id]
        earned.sort(key=lambda item: item.badge_id)
        earned.sort(key=lambda item: item.earned_at, reverse=True)
        return earned

    # Leaderboards ----------------------------------------------------------

    def upsert_leaderboard_entry(
        self,
        scope: str,
        period_key: str,
        user_id: str,
        score: int,
        updated_at: datetime,
    ) -> LeaderboardEntry:
        with self._lock:
            partition = self._entries[(scope, period_key)]
            existing = partition.get(user_id)
            entry = LeaderboardEntry(
                scope=scope,
                period_key=period_key,
                user_id=user_id,
                score=score,
                rank=existing.rank if existing else 0,
                updated_at=updated_at,
            )
            partition[user_id] = entry
            return entry.model_copy()

    def get_leaderboard_entry(self, scope: str, period_key: str, user_id: str) -> Optional[LeaderboardEntry]:
        with self._lock:
            entry = self._entries.get((scope, period_key), {}).get(user_id)
            return entry.model_copy() if entry else None

    def list_partition(self, scope: str, period_key: str) -> List[LeaderboardEntry]:
        with self._lock:
            return [entry.model_copy() for entry in self._entries.get((scope, period_key), {}).values()]

    def assign_ranks(self, scope: str, period_key: str, ranks: Dict[str, int]) -> None:
        with self._lock:
            partition = self._entries[(scope, period_key)]
            for user_id, rank in ranks.items():
                entry = partition.get(user_id)
                if entry is not None:
                    partition[user_id] = entry.model_copy(update={"rank": rank})

    def top_entries(self, scope: str, period_key: str, limit: int) -> List[LeaderboardEntry]:
        with self._lock:
            ranked = [entry for entry in self._entries.get((scope, period_key), {}).values() if entry.rank > 0]
        ranked.sort(key=lambda entry: entry.rank)
        return [entry.model_copy() for entry in ranked[:limit]]

    def replace_partition(self, scope: str, period_key: str, entries: Sequence[LeaderboardEntry]) -> int:
        replacement = {entry.user_id: entry.model_copy() for entry in entries}
        with self._lock:
            self._entries[(scope, period_key)] = replacement
        return len(replacement)

    # Audit ------------------------------------------------------------------

    def record_audit(self, user_id: Optional[str], event_type: str, payload: Dict[str, object]) -> None:
        with self._lock:
            self._audit.append(
                AuditRecord(user_id=user_id, event_type=event_type, payload=dict(payload), actor="system")
            )

    def recent_audit_events(
        self,
        *,
        user_id: Optional[str] = None,
        event_types: Optional[Iterable[str]] = None,
        limit: int = 50,
    ) -> List[AuditRecord]:
        wanted = set(event_types) if event_types is not None else None
        with self._lock:
            rows = [
                record
                for record in reversed(self._audit)
                if (user_id is None or record.user_id == user_id)
                and (wanted is None or record.event_type in wanted)
            ]
        return rows[:limit]


def create_store(settings: Optional[Settings] = None) -> GamificationStore:
    settings = settings or get_settings()
    if settings.persistence_mode == "memory":
        logger.info("Using in-memory gamification store")
        return InMemoryGamificationStore()
    return DatabaseGamificationStore()


__all__ = [
    "DatabaseGamificationStore",
    "GamificationStore",
    "InMemoryGamificationStore",
    "create_store",
]
