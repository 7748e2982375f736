from __future__ import annotations

import types

import pytest
from sqlalchemy import create_engine, inspect

from scripts import run_migrations as runner


def test_resolve_database_url_prefers_env(monkeypatch) -> None:
    config = runner.get_alembic_config(str(runner.PROJECT_ROOT / "alembic.ini"))
    monkeypatch.setenv("APEX_DATABASE_URL", "sqlite://")
    assert runner.resolve_database_url(config) == "sqlite://"
    assert config.get_main_option("sqlalchemy.url") == "sqlite://"


def test_resolve_database_url_requires_configuration(monkeypatch) -> None:
    config = runner.get_alembic_config(str(runner.PROJECT_ROOT / "alembic.ini"))
    monkeypatch.delenv("APEX_DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError):
        runner.resolve_database_url(config)


def test_wait_for_database_succeeds_with_sqlite(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'ready.sqlite'}"
    runner.wait_for_database(url, timeout=2, poll_interval=0.1)


def test_wait_for_database_times_out(monkeypatch) -> None:
    class DummyEngine:
        def connect(self) -> types.SimpleNamespace:
            raise runner.OperationalError("SELECT 1", {}, Exception("boom"))

        def dispose(self) -> None:
            pass

    monkeypatch.setattr(runner, "create_engine", lambda *_, **__: DummyEngine())
    with pytest.raises(RuntimeError):
        runner.wait_for_database("postgresql://example", timeout=0, poll_interval=0)


def test_run_migrations_creates_schema(tmp_path, monkeypatch) -> None:
    url = f"sqlite:///{tmp_path / 'migrated.sqlite'}"
    monkeypatch.setenv("APEX_DATABASE_URL", url)

    assert runner.run_migrations("head", timeout=5, poll_interval=0.1) == "20261017_01_gamification_tables"

    engine = create_engine(url, future=True)
    try:
        tables = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    assert {
        "points_transactions",
        "achievements",
        "leaderboard_entries",
        "persistence_audit_events",
    } <= tables


def test_main_reports_failure(monkeypatch) -> None:
    monkeypatch.delenv("APEX_DATABASE_URL", raising=False)
    assert runner.main(["--timeout", "0"]) == 1


def test_check_reports_pending_upgrade(tmp_path, monkeypatch) -> None:
    url = f"sqlite:///{tmp_path / 'check.sqlite'}"
    monkeypatch.setenv("APEX_DATABASE_URL", url)

    assert runner.main(["--check", "--timeout", "1"]) == runner.EXIT_PENDING
    assert runner.missing_tables(url) == runner.GAMIFICATION_TABLES

    assert runner.main(["--timeout", "1"]) == runner.EXIT_OK
    assert runner.main(["--check", "--timeout", "1"]) == runner.EXIT_OK
    assert runner.missing_tables(url) == set()
