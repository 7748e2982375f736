"""Re-derive the current leaderboard partitions from the points ledger.

Operators run this after restoring a backup or when ranks look stale.
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from apex_achievements.config import get_settings
from apex_achievements.logging_config import configure_logging
from apex_achievements.services import build_services

LOGGER = logging.getLogger("apex.rebuild")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rebuild leaderboards from the points ledger.")
    parser.add_argument(
        "--at",
        default=None,
        help="ISO-8601 timestamp selecting the weekly/monthly partitions (default: now, UTC).",
    )
    return parser.parse_args(argv)


def parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def main(argv: Optional[list[str]] = None) -> int:
    configure_logging()
    args = parse_args(argv)
    try:
        moment = parse_timestamp(args.at)
        services = build_services(get_settings())
        summary = services.leaderboard.rebuild(services.ledger, at=moment)
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Leaderboard rebuild failed: %s", exc)
        return 1
    for partition, size in sorted(summary.items()):
        LOGGER.info("%s: %d ranked users", partition, size)
    return 0


if __name__ == "__main__":
    sys.exit(main())
