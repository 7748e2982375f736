"""Bring the gamification schema up to date before the API starts.

``python -m scripts.run_migrations`` waits for the database, upgrades to the
requested revision and then verifies that the ledger, achievement, leaderboard
and audit tables exist. ``--check`` only reports whether an upgrade is pending.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Iterable, Optional, Set

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from apex_achievements.config import Settings
from apex_achievements.db import models  # noqa: F401
from apex_achievements.db.base import Base

LOGGER = logging.getLogger("apex.migrations")
PROJECT_ROOT = Path(__file__).resolve().parent.parent
GAMIFICATION_TABLES: Set[str] = set(Base.metadata.tables)
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PENDING = 2


class SchemaMismatch(RuntimeError):
    """The database is at the target revision but gamification tables are missing."""


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Upgrade the gamification schema.")
    parser.add_argument("--revision", default="head", help="Target revision (default: head).")
    parser.add_argument("--timeout", type=float, default=60.0, help="Seconds to wait for the database.")
    parser.add_argument("--poll-interval", type=float, default=3.0, help="Seconds between readiness checks.")
    parser.add_argument("--config", default=str(PROJECT_ROOT / "alembic.ini"), help="Path to alembic.ini.")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Report whether the database is behind head and exit without upgrading.",
    )
    return parser.parse_args(argv)


def get_alembic_config(config_path: str) -> Config:
    config = Config(config_path)
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    return config


def resolve_database_url(config: Config) -> str:
    """Use ``sqlalchemy.url`` from alembic.ini, else ``APEX_DATABASE_URL`` from settings."""
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url
    url = Settings().database_url  # type: ignore[call-arg]
    if not url:
        raise RuntimeError("APEX_DATABASE_URL must be set before running migrations.")
    config.set_main_option("sqlalchemy.url", url)
    return url


def wait_for_database(database_url: str, *, timeout: float, poll_interval: float) -> None:
    """Retry ``SELECT 1`` until it succeeds; non-connectivity errors stop at once."""
    engine: Engine = create_engine(database_url, future=True, pool_pre_ping=True)
    deadline = time.monotonic() + timeout
    attempts = 0
    try:
        while True:
            attempts += 1
            try:
                with engine.connect() as connection:
                    connection.execute(text("SELECT 1"))
            except OperationalError as exc:
                if time.monotonic() >= deadline:
                    raise RuntimeError(f"Database unreachable after {attempts} attempt(s).") from exc
                LOGGER.warning("Database not ready (attempt %d): %s", attempts, exc)
                time.sleep(poll_interval)
                continue
            except SQLAlchemyError as exc:
                raise RuntimeError("Database rejected the readiness check.") from exc
            LOGGER.info("Database reachable after %d attempt(s)", attempts)
            return
    finally:
        engine.dispose()


def head_revision(config: Config) -> Optional[str]:
    return ScriptDirectory.from_config(config).get_current_head()


def current_revision(database_url: str) -> Optional[str]:
    engine = create_engine(database_url, future=True)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def missing_tables(database_url: str, expected: Iterable[str] = GAMIFICATION_TABLES) -> Set[str]:
    engine = create_engine(database_url, future=True)
    try:
        present = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    return set(expected) - present


def run_migrations(
    revision: str,
    *,
    timeout: float,
    poll_interval: float,
    config: Optional[Config] = None,
) -> Optional[str]:
    """Upgrade to ``revision`` and return the revision the database ends up at."""
    config = config or get_alembic_config(str(PROJECT_ROOT / "alembic.ini"))
    database_url = resolve_database_url(config)
    wait_for_database(database_url, timeout=timeout, poll_interval=poll_interval)

    before = current_revision(database_url)
    LOGGER.info("Gamification schema at %s; upgrading to %s", before or "<empty>", revision)
    command.upgrade(config, revision)
    after = current_revision(database_url)

    absent = missing_tables(database_url)
    if absent:
        raise SchemaMismatch(f"Revision {after} is missing tables: {', '.join(sorted(absent))}")
    if before == after:
        LOGGER.info("Gamification schema already at %s", after)
    else:
        LOGGER.info("Gamification schema upgraded %s -> %s", before or "<empty>", after)
    return after


def check_pending(config: Config, *, timeout: float, poll_interval: float) -> bool:
    database_url = resolve_database_url(config)
    wait_for_database(database_url, timeout=timeout, poll_interval=poll_interval)
    current, head = current_revision(database_url), head_revision(config)
    LOGGER.info("Gamification schema at %s, head is %s", current or "<empty>", head)
    return current != head


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    args = parse_args(argv)
    try:
        config = get_alembic_config(args.config)
        if args.check:
            pending = check_pending(config, timeout=args.timeout, poll_interval=args.poll_interval)
            return EXIT_PENDING if pending else EXIT_OK
        run_migrations(args.revision, timeout=args.timeout, poll_interval=args.poll_interval, config=config)
    except Exception:  # noqa: BLE001
        LOGGER.exception("Gamification migration failed")
        return EXIT_FAILED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
