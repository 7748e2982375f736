import os
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: Optional[str] = Field(None, alias="APEX_DATABASE_URL")
    database_pool_size: int = Field(10, alias="APEX_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(10, alias="APEX_DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, alias="APEX_DATABASE_ECHO")
    persistence_mode: Literal["database", "memory"] = Field(
        "database",
        alias="APEX_PERSISTENCE_MODE",
    )
    leaderboard_default_limit: int = Field(100, ge=1, alias="APEX_LEADERBOARD_DEFAULT_LIMIT")
    leaderboard_max_limit: int = Field(1000, ge=1, alias="APEX_LEADERBOARD_MAX_LIMIT")
    admin_endpoints: bool = Field(False, alias="APEX_ADMIN_ENDPOINTS")
    log_level: str = Field("INFO", alias="APEX_LOG_LEVEL")
    telemetry_log_level: str = Field("INFO", alias="APEX_TELEMETRY_LOG_LEVEL")
    debug_sql: bool = Field(False, alias="APEX_DEBUG_SQL")
    db_telemetry_interval: float = Field(30.0, alias="APEX_DB_TELEMETRY_INTERVAL")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[arg-type]
    except ValidationError as exc:
        raise RuntimeError(f"Invalid achievements configuration: {exc}") from exc
