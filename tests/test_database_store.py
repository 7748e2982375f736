"""Database-mode behaviour against a SQLite file under tmp_path."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator

import pytest

from apex_achievements.badges import ActivityStats
from apex_achievements.config import get_settings
from apex_achievements.db.base import Base
from apex_achievements.db.session import dispose_engine, get_engine
from apex_achievements.errors import DuplicateAward, PersistenceFailure
from apex_achievements.records import Achievement, LeaderboardEntry, PointsTransaction, Standing
from apex_achievements.services import build_services
from apex_achievements.store import DatabaseGamificationStore, create_store

MOMENT = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def database(tmp_path: Path, monkeypatch) -> Iterator[None]:
    db_path = tmp_path / "apex.db"
    monkeypatch.setenv("APEX_DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("APEX_PERSISTENCE_MODE", "database")
    get_settings.cache_clear()
    dispose_engine()
    engine = get_engine()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield
    dispose_engine()
    get_settings.cache_clear()


def test_create_store_uses_database_mode(database) -> None:
    assert isinstance(create_store(), DatabaseGamificationStore)


def test_transactions_round_trip_as_utc(database) -> None:
    store = DatabaseGamificationStore()
    store.append_transaction(
        PointsTransaction(user_id="u1", amount=20, source="quiz_pass", course_slug="algebra", created_at=MOMENT)
    )
    store.append_transaction(PointsTransaction(user_id="u1", amount=-5, source="adjustment", created_at=MOMENT))

    assert store.sum_points("u1") == 15
    assert store.sum_points("u1", course_slug="algebra") == 20
    assert store.sum_points("u1", since=MOMENT + timedelta(seconds=1)) == 0
    assert store.last_activity("u1") == MOMENT
    history = store.list_transactions("u1")
    assert len(history) == 2
    assert all(tx.created_at.tzinfo is not None for tx in history)
    assert store.course_slugs() == ["algebra"]
    assert store.point_scores() == [("u1", 15, MOMENT)]


def test_keyed_append_rejects_duplicates(database) -> None:
    store = DatabaseGamificationStore()
    store.append_transaction(PointsTransaction(user_id="u1", amount=10, source="badge_common", award_key="badge:x"))
    with pytest.raises(DuplicateAward):
        store.append_transaction(
            PointsTransaction(user_id="u1", amount=10, source="badge_common", award_key="badge:x")
        )
    assert store.sum_points("u1") == 10


def test_achievement_insert_is_insert_if_absent(database) -> None:
    store = DatabaseGamificationStore()
    achievement = Achievement(
        user_id="u1",
        badge_id="first_lesson",
        name="First Steps",
        category="completion",
        rarity="common",
        points=10,
    )
    store.insert_achievement(achievement)
    with pytest.raises(DuplicateAward):
        store.insert_achievement(achievement)
    assert [item.badge_id for item in store.list_achievements("u1")] == ["first_lesson"]


def test_writes_are_audited(database) -> None:
    services = build_services(get_settings(), audit=False)
    services.engine.evaluate("u1", "lesson_complete", {}, ActivityStats(lessons_completed=1))

    events = {record.event_type for record in services.store.recent_audit_events(user_id="u1")}
    assert events == {"badge_award", "points_append"}


def test_engine_awards_once_under_concurrency(database) -> None:
    services = build_services(get_settings(), audit=False)
    barrier = threading.Barrier(8)

    def attempt(_: int) -> int:
        barrier.wait()
        return len(services.engine.evaluate("u1", "quiz_attempt", {"score": 100}, {"quizzes_attempted": 1}))

    with ThreadPoolExecutor(max_workers=8) as pool:
        awarded = sum(pool.map(attempt, range(8)))

    assert awarded == 2
    assert services.ledger.total_for("u1") == 10 + 50
    assert services.leaderboard.rank_of("u1", "global", "all_time") == Standing(1, 60)


def test_leaderboard_rebuild_in_database_mode(database) -> None:
    services = build_services(get_settings(), audit=False)
    for index, (user, amount) in enumerate((("a", 10), ("b", 30), ("a", 25), ("c", 30))):
        services.ledger.append(user, amount, "quiz_pass", course_slug="algebra", created_at=MOMENT + timedelta(minutes=index))

    before = [(e.user_id, e.score, e.rank) for e in services.leaderboard.top("global", "weekly", at=MOMENT)]
    assert before == [("a", 35, 1), ("b", 30, 2), ("c", 30, 3)]

    services.store.replace_partition("global", "2026-W42", [])
    services.leaderboard.rebuild(at=MOMENT)
    after = [(e.user_id, e.score, e.rank) for e in services.leaderboard.top("global", "weekly", at=MOMENT)]
    assert after == before


def test_unreachable_database_raises_persistence_failure(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("APEX_DATABASE_URL", f"sqlite:///{tmp_path / 'missing' / 'nested' / 'apex.db'}")
    get_settings.cache_clear()
    dispose_engine()
    try:
        with pytest.raises(PersistenceFailure):
            DatabaseGamificationStore().sum_points("u1")
    finally:
        dispose_engine()
        get_settings.cache_clear()


def test_partition_replacement_is_all_or_nothing(database) -> None:
    store = DatabaseGamificationStore()
    original = [
        LeaderboardEntry(scope="global", period_key="all_time", user_id="a", score=20, rank=1, updated_at=MOMENT),
        LeaderboardEntry(scope="global", period_key="all_time", user_id="b", score=10, rank=2, updated_at=MOMENT),
    ]
    assert store.replace_partition("global", "all_time", original) == 2

    clashing = [
        LeaderboardEntry(scope="global", period_key="all_time", user_id="c", score=50, rank=1, updated_at=MOMENT),
        LeaderboardEntry(scope="global", period_key="all_time", user_id="c", score=40, rank=2, updated_at=MOMENT),
    ]
    with pytest.raises(PersistenceFailure):
        store.replace_partition("global", "all_time", clashing)

    kept = [(e.user_id, e.score, e.rank) for e in store.top_entries("global", "all_time", 10)]
    assert kept == [("a", 20, 1), ("b", 10, 2)]
