"""Connection pool usage broken down by gamification store operation.

``DatabaseGamificationStore`` wraps every unit of work in ``track_operation``;
pool checkouts made inside it are attributed to that operation name
(``points_append``, ``leaderboard_ranks`` and so on).
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Dict, Generator, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine

from ..telemetry import emit_event

UNTRACKED = "untracked"

_current_operation: ContextVar[Optional[str]] = ContextVar("apex_store_operation", default=None)


@dataclass
class PoolUsage:
    connects: int = 0
    checkouts: int = 0
    checkins: int = 0
    by_operation: Counter = field(default_factory=Counter)
    last_emit: Optional[float] = None


class _Monitor:
    def __init__(self, engine: Engine, interval: float) -> None:
        self.engine = engine
        self.interval = interval
        self.usage = PoolUsage()
        self.lock = threading.Lock()

    def checkout(self) -> None:
        operation = _current_operation.get() or UNTRACKED
        with self.lock:
            self.usage.checkouts += 1
            self.usage.by_operation[operation] += 1
            now = time.monotonic()
            last = self.usage.last_emit
            if self.interval > 0 and last is not None and now - last < self.interval:
                return
            self.usage.last_emit = now
            counts = {"checkouts": self.usage.checkouts, "checkins": self.usage.checkins}
        emit_event("db_pool_status", operation=operation, status=pool_status(self.engine), **counts)


_monitors: Dict[int, _Monitor] = {}


@contextmanager
def track_operation(name: str) -> Generator[None, None, None]:
    token = _current_operation.set(name)
    try:
        yield
    finally:
        _current_operation.reset(token)


def instrument_engine(engine: Engine, *, interval: float = 30.0) -> None:
    """Count pool traffic on ``engine`` and emit ``db_pool_status`` at most every ``interval`` seconds."""
    if id(engine) in _monitors:
        return
    monitor = _Monitor(engine, interval)
    _monitors[id(engine)] = monitor

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        with monitor.lock:
            monitor.usage.connects += 1

    @event.listens_for(engine, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy) -> None:  # type: ignore[no-untyped-def]
        monitor.checkout()

    @event.listens_for(engine, "checkin")
    def _on_checkin(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        with monitor.lock:
            monitor.usage.checkins += 1


def forget_engine(engine: Engine) -> None:
    _monitors.pop(id(engine), None)


def get_pool_snapshot(engine: Engine) -> Dict[str, object]:
    monitor = _monitors.get(id(engine))
    if monitor is None:
        return {"status": pool_status(engine), "connects": 0, "checkouts": 0, "checkins": 0, "operations": {}}
    with monitor.lock:
        usage = monitor.usage
        return {
            "status": pool_status(engine),
            "connects": usage.connects,
            "checkouts": usage.checkouts,
            "checkins": usage.checkins,
            "operations": dict(usage.by_operation),
        }


def pool_status(engine: Engine) -> str:
    try:
        return engine.pool.status()  # type: ignore[no-untyped-call]
    except Exception as exc:  # noqa: BLE001
        return f"unavailable: {exc}"


__all__ = [
    "UNTRACKED",
    "forget_engine",
    "get_pool_snapshot",
    "instrument_engine",
    "pool_status",
    "track_operation",
]
