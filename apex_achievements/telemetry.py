"""In-process event bus for award, ledger and leaderboard activity.

Every event is logged on ``apex.telemetry`` as one JSON line and fanned out to
registered listeners. Failure events log at WARNING.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Dict, List, Mapping, Optional

logger = logging.getLogger("apex.telemetry")

FAILURE_EVENTS = frozenset({"rank_recomputation_failed"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EngineEvent:
    name: str
    payload: Dict[str, Any]
    emitted_at: datetime = field(default_factory=_now)

    @property
    def user_id(self) -> Optional[str]:
        value = self.payload.get("user_id")
        return value if isinstance(value, str) else None


EventListener = Callable[[EngineEvent], None]


class EventBus:
    """Thread-safe listener registry that also counts emissions per event name."""

    def __init__(self) -> None:
        self._listeners: List[EventListener] = []
        self._counts: Counter[str] = Counter()
        self._lock = RLock()

    def subscribe(self, listener: EventListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def reset(self) -> None:
        with self._lock:
            self._listeners.clear()
            self._counts.clear()

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def publish(self, name: str, fields: Mapping[str, Any]) -> EngineEvent:
        event = EngineEvent(name=name, payload={key: _plain(value) for key, value in fields.items()})
        with self._lock:
            self._counts[name] += 1
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event listener failed for %s", name)

        level = logging.WARNING if name in FAILURE_EVENTS else logging.INFO
        if logger.isEnabledFor(level):
            logger.log(level, "%s %s", name, json.dumps(event.payload, sort_keys=True, default=str))
        return event


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        moment = value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
        return moment.astimezone(timezone.utc).isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return [_plain(item) for item in value]
    return value


bus = EventBus()


def emit_event(name: str, **fields: Any) -> EngineEvent:
    return bus.publish(name, fields)


def register_listener(listener: EventListener) -> None:
    bus.subscribe(listener)


def unregister_listener(listener: EventListener) -> None:
    bus.unsubscribe(listener)


def event_counts() -> Dict[str, int]:
    """Emissions per event name since start-up or the last ``reset``."""
    return bus.counts()


__all__ = [
    "EngineEvent",
    "EventBus",
    "EventListener",
    "FAILURE_EVENTS",
    "bus",
    "emit_event",
    "event_counts",
    "register_listener",
    "unregister_listener",
]
