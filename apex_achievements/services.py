"""Construction of the engine graph.

Every component takes its collaborators explicitly; ``build_services`` is the
single place that decides which store backs them and wires the ledger to the
leaderboards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from .badges import BadgeCatalog, default_catalog
from .config import Settings, get_settings
from .engine import AchievementEngine
from .leaderboard import LeaderboardManager
from .points_ledger import PointsLedger
from .reporting import ReportingFacade
from .store import GamificationStore, create_store
from .telemetry_pipeline import install_audit_pipeline

logger = logging.getLogger(__name__)


@dataclass
class GamificationServices:
    settings: Settings
    store: GamificationStore
    catalog: BadgeCatalog
    ledger: PointsLedger
    engine: AchievementEngine
    leaderboard: LeaderboardManager
    reporting: ReportingFacade


def build_services(
    settings: Optional[Settings] = None,
    *,
    store: Optional[GamificationStore] = None,
    catalog: Optional[BadgeCatalog] = None,
    audit: bool = True,
) -> GamificationServices:
    settings = settings or get_settings()
    store = store if store is not None else create_store(settings)
    catalog = catalog or default_catalog()

    ledger = PointsLedger(store)
    leaderboard = LeaderboardManager(store)
    leaderboard.attach(ledger)
    engine = AchievementEngine(store, ledger, catalog)
    reporting = ReportingFacade(ledger, engine, leaderboard)
    if audit:
        install_audit_pipeline(store)

    logger.info(
        "Gamification services ready (mode=%s, catalog=%s)",
        settings.persistence_mode,
        catalog.version,
    )
    return GamificationServices(
        settings=settings,
        store=store,
        catalog=catalog,
        ledger=ledger,
        engine=engine,
        leaderboard=leaderboard,
        reporting=reporting,
    )


@lru_cache
def get_services() -> GamificationServices:
    return build_services()


__all__ = ["GamificationServices", "build_services", "get_services"]
