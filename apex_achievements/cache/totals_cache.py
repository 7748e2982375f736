"""Process-local cache of per-user point totals.

The ledger is the source of truth; entries here are only shortcuts and are
dropped whenever the ledger changes or is replayed for a user.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

Generation = Tuple[int, int]


@dataclass
class _TotalEntry:
    total: int
    cached_at: datetime


class PointsTotalCache:
    """Totals keyed by user id, guarded by a per-user generation counter.

    A reader captures ``generation(user_id)`` before summing the ledger and
    passes it to ``set``; the value is discarded if an invalidation happened
    in between. ``clear`` starts a new epoch and forgets every counter.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, _TotalEntry] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[int]:
        with self._lock:
            entry = self._entries.get(user_id)
            return entry.total if entry else None

    def generation(self, user_id: str) -> Generation:
        with self._lock:
            return self._epoch, self._generations.get(user_id, 0)

    def set(self, user_id: str, total: int, *, generation: Generation) -> bool:
        with self._lock:
            if (self._epoch, self._generations.get(user_id, 0)) != generation:
                return False
            self._entries[user_id] = _TotalEntry(total=int(total), cached_at=datetime.now(timezone.utc))
            return True

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)
            self._generations[user_id] = self._generations.get(user_id, 0) + 1

    def clear(self) -> None:
        with self._lock:
            self._epoch += 1
            self._entries.clear()
            self._generations.clear()

    def __contains__(self, user_id: object) -> bool:
        with self._lock:
            return user_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._generations)


__all__ = ["PointsTotalCache"]
