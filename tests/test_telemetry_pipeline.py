from __future__ import annotations

import logging
from datetime import datetime

from apex_achievements.config import Settings
from apex_achievements.services import build_services
from apex_achievements.store import InMemoryGamificationStore
from apex_achievements.telemetry import EngineEvent, emit_event, event_counts, register_listener, unregister_listener
from apex_achievements.telemetry_pipeline import _MONITORED_EVENTS, install_audit_pipeline, uninstall_audit_pipeline


def test_monitored_events_persist() -> None:
    store = InMemoryGamificationStore()
    install_audit_pipeline(store)
    try:
        emit_event("rank_recomputation_failed", scope="global", period_key="2026-W42", error="boom")
        emit_event("points_appended", user_id="u1", amount=10)
    finally:
        uninstall_audit_pipeline()

    records = store.recent_audit_events(event_types=_MONITORED_EVENTS | {"points_appended"})
    assert [record.event_type for record in records] == ["rank_recomputation_failed"]
    assert records[0].payload["period_key"] == "2026-W42"


def test_rebuild_is_audited() -> None:
    store = InMemoryGamificationStore()
    services = build_services(Settings(APEX_PERSISTENCE_MODE="memory"), store=store)
    try:
        services.ledger.append("u1", 10, "lesson_complete")
        services.leaderboard.rebuild()
    finally:
        uninstall_audit_pipeline()

    (record,) = store.recent_audit_events(event_types={"leaderboard_rebuilt"})
    assert record.payload["partitions"] == 3


def test_reinstall_replaces_previous_listener() -> None:
    first = InMemoryGamificationStore()
    second = InMemoryGamificationStore()
    install_audit_pipeline(first)
    install_audit_pipeline(second)
    try:
        emit_event("leaderboard_rebuilt", partitions=0)
    finally:
        uninstall_audit_pipeline()

    assert first.recent_audit_events(event_types=_MONITORED_EVENTS) == []
    assert len(second.recent_audit_events(event_types=_MONITORED_EVENTS)) == 1


def test_listener_failures_are_isolated() -> None:
    seen: list[EngineEvent] = []

    def broken(event: EngineEvent) -> None:
        raise RuntimeError("listener down")

    register_listener(broken)
    register_listener(seen.append)
    try:
        emit_event("badge_awarded", user_id="u1", badge_id="mentor")
    finally:
        unregister_listener(broken)
        unregister_listener(seen.append)

    assert [event.name for event in seen] == ["badge_awarded"]


def test_events_are_counted_and_failures_log_warnings(caplog, monkeypatch) -> None:
    monkeypatch.setattr(logging.getLogger("apex.telemetry"), "propagate", True)
    before = event_counts().get("rank_recomputation_failed", 0)
    with caplog.at_level(logging.INFO, logger="apex.telemetry"):
        event = emit_event(
            "rank_recomputation_failed",
            scope="global",
            period_key="2026-W42",
            at=datetime(2026, 10, 17, 8, 0),
        )

    assert event.payload["at"] == "2026-10-17T08:00:00+00:00"
    assert event.user_id is None
    assert event_counts()["rank_recomputation_failed"] == before + 1
    (record,) = [r for r in caplog.records if r.name == "apex.telemetry"]
    assert record.levelno == logging.WARNING
    assert '"period_key": "2026-W42"' in record.getMessage()


def test_in_memory_audit_trail_is_bounded() -> None:
    store = InMemoryGamificationStore(audit_limit=3)
    for index in range(5):
        store.record_audit("u1", "leaderboard_rebuilt", {"partitions": index})

    records = store.recent_audit_events(limit=10)
    assert [record.payload["partitions"] for record in records] == [4, 3, 2]
