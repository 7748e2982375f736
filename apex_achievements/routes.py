"""REST endpoints that platform request handlers call into."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field, model_validator

from .badges import ActivityStats
from .errors import AwardKeyConflict, GamificationError, InvalidAmount, PersistenceFailure, UnknownBadge
from .points_ledger import BADGE_KEY_PREFIX
from .records import GLOBAL_SCOPE, Achievement, LeaderboardEntry, Period, PointsTransaction
from .reporting import UserSummary
from .services import GamificationServices, get_services

router = APIRouter(prefix="/api/gamification", tags=["gamification"])
logger = logging.getLogger(__name__)


class ActivityEventRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    stats: ActivityStats = Field(default_factory=ActivityStats)


class ActivityEventResponse(BaseModel):
    awarded: List[Achievement] = Field(default_factory=list)


class BadgeAwardRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class BadgeAwardResponse(BaseModel):
    awarded: bool
    achievement: Optional[Achievement] = None


class PointsRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount: Union[int, float]
    source: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=255)
    course_slug: Optional[str] = Field(default=None, max_length=128)
    award_key: Optional[str] = Field(default=None, max_length=128)

    @model_validator(mode="after")
    def _reject_badge_keys(self) -> "PointsRequest":
        if self.award_key is not None and self.award_key.startswith(BADGE_KEY_PREFIX):
            raise ValueError(f"award_key may not start with '{BADGE_KEY_PREFIX}'.")
        return self


class PointsResponse(BaseModel):
    transaction_id: str
    total_points: int


class RankResponse(BaseModel):
    user_id: str
    scope: str
    period: Period
    rank: int
    score: int


class LeaderboardResponse(BaseModel):
    scope: str
    period: Period
    entries: List[LeaderboardEntry] = Field(default_factory=list)


class RebuildResponse(BaseModel):
    partitions: Dict[str, int] = Field(default_factory=dict)


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, InvalidAmount):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, UnknownBadge):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, AwardKeyConflict):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, PersistenceFailure):
        logger.warning("Gamification store unavailable: %s", exc)
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    logger.exception("Unhandled gamification error", exc_info=exc)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _require_admin(services: GamificationServices) -> None:
    if not services.settings.admin_endpoints:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin endpoints are disabled.",
        )


def _clamp_limit(services: GamificationServices, limit: Optional[int]) -> int:
    if limit is None:
        return services.settings.leaderboard_default_limit
    return min(limit, services.settings.leaderboard_max_limit)


@router.post("/events", response_model=ActivityEventResponse)
def record_event(
    payload: ActivityEventRequest,
    services: GamificationServices = Depends(get_services),
) -> ActivityEventResponse:
    try:
        awarded = services.engine.evaluate(payload.user_id, payload.event_type, payload.payload, payload.stats)
    except (GamificationError, ValueError) as exc:
        raise _http_error(exc) from exc
    return ActivityEventResponse(awarded=awarded)


@router.post("/badges/{badge_id}/award", response_model=BadgeAwardResponse)
def award_badge(
    badge_id: str,
    payload: BadgeAwardRequest,
    response: Response,
    services: GamificationServices = Depends(get_services),
) -> BadgeAwardResponse:
    _require_admin(services)
    try:
        achievement = services.engine.award_badge(payload.user_id, badge_id)
    except (GamificationError, ValueError) as exc:
        raise _http_error(exc) from exc
    if achievement is None:
        return BadgeAwardResponse(awarded=False)
    response.status_code = status.HTTP_201_CREATED
    return BadgeAwardResponse(awarded=True, achievement=achievement)


@router.post("/points", response_model=PointsResponse, status_code=status.HTTP_201_CREATED)
def append_points(
    payload: PointsRequest,
    services: GamificationServices = Depends(get_services),
) -> PointsResponse:
    try:
        transaction_id = services.ledger.append(
            payload.user_id,
            payload.amount,
            payload.source,
            payload.description,
            course_slug=payload.course_slug,
            award_key=payload.award_key,
        )
        total = services.ledger.total_for(payload.user_id)
    except (GamificationError, ValueError) as exc:
        raise _http_error(exc) from exc
    return PointsResponse(transaction_id=transaction_id, total_points=total)


@router.get("/users/{user_id}/summary", response_model=UserSummary)
def user_summary(
    user_id: str,
    course: Optional[List[str]] = Query(default=None),
    services: GamificationServices = Depends(get_services),
) -> UserSummary:
    try:
        return services.reporting.summary(user_id, course_slugs=course or ())
    except (GamificationError, ValueError) as exc:
        raise _http_error(exc) from exc


@router.get("/users/{user_id}/history", response_model=List[PointsTransaction])
def user_history(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    services: GamificationServices = Depends(get_services),
) -> List[PointsTransaction]:
    try:
        return services.reporting.points_history(user_id, limit)
    except (GamificationError, ValueError) as exc:
        raise _http_error(exc) from exc


@router.get("/users/{user_id}/rank", response_model=RankResponse)
def user_rank(
    user_id: str,
    scope: str = Query(default=GLOBAL_SCOPE),
    period: Period = Query(default="all_time"),
    services: GamificationServices = Depends(get_services),
) -> RankResponse:
    try:
        standing = services.leaderboard.rank_of(user_id, scope, period)
    except (GamificationError, ValueError) as exc:
        raise _http_error(exc) from exc
    return RankResponse(
        user_id=user_id.strip(),
        scope=scope,
        period=period,
        rank=standing.rank,
        score=standing.score,
    )


@router.get("/leaderboards/{period}", response_model=LeaderboardResponse)
def leaderboard(
    period: Period,
    scope: str = Query(default=GLOBAL_SCOPE),
    limit: Optional[int] = Query(default=None, ge=1),
    services: GamificationServices = Depends(get_services),
) -> LeaderboardResponse:
    try:
        entries = services.reporting.leaderboard(scope, period, _clamp_limit(services, limit))
    except (GamificationError, ValueError) as exc:
        raise _http_error(exc) from exc
    return LeaderboardResponse(scope=scope, period=period, entries=entries)


@router.post("/leaderboards/rebuild", response_model=RebuildResponse)
def rebuild_leaderboards(services: GamificationServices = Depends(get_services)) -> RebuildResponse:
    _require_admin(services)
    try:
        partitions = services.leaderboard.rebuild(services.ledger)
    except (GamificationError, ValueError) as exc:
        raise _http_error(exc) from exc
    return RebuildResponse(partitions=partitions)


__all__ = ["router"]
