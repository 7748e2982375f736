"""Telemetry listener that persists operator-relevant events to the audit trail."""

from __future__ import annotations

import logging
from typing import Callable, Optional, Set

from .store import GamificationStore
from .telemetry import EngineEvent, register_listener, unregister_listener

logger = logging.getLogger(__name__)

_MONITORED_EVENTS: Set[str] = {
    "rank_recomputation_failed",
    "leaderboard_rebuilt",
}

_installed: Optional[Callable[[EngineEvent], None]] = None


def install_audit_pipeline(store: GamificationStore) -> Callable[[EngineEvent], None]:
    """Register the audit listener for ``store``, replacing any previous one."""
    global _installed

    def _persist_event(event: EngineEvent) -> None:
        if event.name not in _MONITORED_EVENTS:
            return
        try:
            store.record_audit(event.user_id, event.name, dict(event.payload))
        except Exception:  # noqa: BLE001
            logger.exception("Failed to persist telemetry event %s", event.name)

    if _installed is not None:
        unregister_listener(_installed)
    register_listener(_persist_event)
    _installed = _persist_event
    return _persist_event


def uninstall_audit_pipeline() -> None:
    global _installed
    if _installed is not None:
        unregister_listener(_installed)
        _installed = None


__all__ = ["_MONITORED_EVENTS", "install_audit_pipeline", "uninstall_audit_pipeline"]
