from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from apex_achievements.config import Settings
from apex_achievements.errors import PersistenceFailure
from apex_achievements.main import app
from apex_achievements.services import GamificationServices, build_services, get_services
from apex_achievements.store import InMemoryGamificationStore
from apex_achievements.telemetry import emit_event


def _services(*, admin: bool = True, store: InMemoryGamificationStore | None = None) -> GamificationServices:
    settings = Settings(
        APEX_PERSISTENCE_MODE="memory",
        APEX_ADMIN_ENDPOINTS=admin,
        APEX_LEADERBOARD_DEFAULT_LIMIT=2,
        APEX_LEADERBOARD_MAX_LIMIT=3,
    )
    return build_services(settings, store=store or InMemoryGamificationStore(), audit=False)


@pytest.fixture()
def services() -> Iterator[GamificationServices]:
    instance = _services()
    app.dependency_overrides[get_services] = lambda: instance
    yield instance
    app.dependency_overrides.clear()


def test_event_awards_badges(services: GamificationServices) -> None:
    client = TestClient(app)
    body = {"user_id": "u1", "event_type": "lesson_complete", "stats": {"lessons_completed": 1}}

    response = client.post("/api/gamification/events", json=body)
    assert response.status_code == 200
    assert [item["badge_id"] for item in response.json()["awarded"]] == ["first_lesson"]

    repeat = client.post("/api/gamification/events", json=body)
    assert repeat.json()["awarded"] == []
    assert services.ledger.total_for("u1") == 10


def test_points_endpoint_validates_amount(services: GamificationServices) -> None:
    client = TestClient(app)
    ok = client.post("/api/gamification/points", json={"user_id": "u1", "amount": 15, "source": "code_submit"})
    assert ok.status_code == 201
    assert ok.json()["total_points"] == 15

    bad = client.post("/api/gamification/points", json={"user_id": "u1", "amount": 2.5, "source": "code_submit"})
    assert bad.status_code == 422
    zero = client.post("/api/gamification/points", json={"user_id": "u1", "amount": 0, "source": "code_submit"})
    assert zero.status_code == 422
    assert services.ledger.total_for("u1") == 15


def test_manual_award_and_unknown_badge(services: GamificationServices) -> None:
    client = TestClient(app)
    first = client.post("/api/gamification/badges/helper/award", json={"user_id": "u1"})
    assert first.status_code == 201
    assert first.json()["achievement"]["points"] == 50

    second = client.post("/api/gamification/badges/helper/award", json={"user_id": "u1"})
    assert second.status_code == 200
    assert second.json() == {"awarded": False, "achievement": None}

    missing = client.post("/api/gamification/badges/unicorn/award", json={"user_id": "u1"})
    assert missing.status_code == 404


def test_admin_endpoints_can_be_disabled() -> None:
    app.dependency_overrides[get_services] = lambda: _services(admin=False)
    try:
        client = TestClient(app)
        assert client.post("/api/gamification/badges/helper/award", json={"user_id": "u1"}).status_code == 403
        assert client.post("/api/gamification/leaderboards/rebuild").status_code == 403
    finally:
        app.dependency_overrides.clear()


def test_rank_summary_and_leaderboard(services: GamificationServices) -> None:
    client = TestClient(app)
    for user, amount in (("a", 10), ("b", 40), ("c", 20), ("d", 30)):
        services.ledger.append(user, amount, "quiz_pass", course_slug="algebra")

    rank = client.get("/api/gamification/users/c/rank", params={"scope": "course:algebra", "period": "all_time"})
    assert rank.status_code == 200
    assert rank.json()["rank"] == 3
    assert rank.json()["score"] == 20

    board = client.get("/api/gamification/leaderboards/all_time")
    assert [entry["user_id"] for entry in board.json()["entries"]] == ["b", "d"]
    capped = client.get("/api/gamification/leaderboards/all_time", params={"limit": 50})
    assert len(capped.json()["entries"]) == 3

    summary = client.get("/api/gamification/users/b/summary", params={"course": "algebra"})
    assert summary.status_code == 200
    payload = summary.json()
    assert payload["total_points"] == 40
    assert payload["ranks"]["course:algebra:all_time"]["rank"] == 1

    history = client.get("/api/gamification/users/b/history")
    assert [item["amount"] for item in history.json()] == [40]

    rebuilt = client.post("/api/gamification/leaderboards/rebuild")
    assert rebuilt.status_code == 200
    assert rebuilt.json()["partitions"]["global/all_time"] == 4


def test_bad_scope_and_period(services: GamificationServices) -> None:
    client = TestClient(app)
    assert client.get("/api/gamification/leaderboards/daily").status_code == 422
    assert client.get("/api/gamification/leaderboards/weekly", params={"scope": "team:red"}).status_code == 422


def test_store_outage_maps_to_503() -> None:
    class DownStore(InMemoryGamificationStore):
        def list_achievements(self, user_id: str):  # type: ignore[no-untyped-def]
            raise PersistenceFailure("achievement_list")

    app.dependency_overrides[get_services] = lambda: _services(store=DownStore())
    try:
        response = TestClient(app).get("/api/gamification/users/u1/summary")
        assert response.status_code == 503
    finally:
        app.dependency_overrides.clear()


def test_health_endpoints(monkeypatch) -> None:
    client = TestClient(app)
    emit_event("leaderboard_rebuilt", partitions=0)
    health = client.get("/healthz").json()
    assert health["status"] == "ok"
    assert health["events"]["leaderboard_rebuilt"] >= 1

    def raise_runtime_error():
        raise RuntimeError("missing database url")

    monkeypatch.setattr("apex_achievements.main.get_engine", raise_runtime_error)
    response = client.get("/healthz/database")
    assert response.status_code == 503
    assert response.json()["detail"] == "missing database url"


def test_points_endpoint_refuses_badge_award_keys(services: GamificationServices) -> None:
    client = TestClient(app)
    body = {"user_id": "u1", "amount": 1, "source": "quiz_pass", "award_key": "badge:streak_30"}
    assert client.post("/api/gamification/points", json=body).status_code == 422
    assert services.ledger.history("u1") == []

    keyed = dict(body, award_key="quiz:q-17")
    assert client.post("/api/gamification/points", json=keyed).status_code == 201
    conflicting = dict(keyed, amount=5)
    assert client.post("/api/gamification/points", json=conflicting).status_code == 409


def test_large_integer_amounts_are_kept_exact(services: GamificationServices) -> None:
    client = TestClient(app)
    amount = 2**53 + 1
    response = client.post("/api/gamification/points", json={"user_id": "u1", "amount": amount, "source": "adjustment"})
    assert response.status_code == 201
    assert response.json()["total_points"] == amount
