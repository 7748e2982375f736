import logging
import os
from typing import Dict

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from . import __version__
from .config import Settings, get_settings
from .db.monitoring import get_pool_snapshot
from .db.session import get_engine
from .logging_config import configure_logging
from .routes import router as gamification_router
from .telemetry import event_counts


configure_logging()
logger = logging.getLogger(__name__)
app = FastAPI(title="Apex Achievements", version=__version__)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(gamification_router)


@app.get("/healthz")
def health(settings: Settings = Depends(get_settings)) -> Dict[str, object]:
    return {"status": "ok", "persistence_mode": settings.persistence_mode, "events": event_counts()}


@app.get("/healthz/database")
def database_health(settings: Settings = Depends(get_settings)) -> Dict[str, object]:
    try:
        engine = get_engine()
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001
        logger.warning("Database health check failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {
        "status": "ok",
        "persistence_mode": settings.persistence_mode,
        "pool": get_pool_snapshot(engine),
    }


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=os.getenv("APEX_HOST", "0.0.0.0"),
        port=int(os.getenv("APEX_PORT", "8000")),
        log_level=get_settings().log_level.lower(),
    )


if __name__ == "__main__":
    run()
