"""Match route handlers: pairing, match lifecycle and score confirmation."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from league_night.api.auth_dependencies import get_current_user_id
from league_night.api.routes import limiter, WRITE_RATE_LIMIT
from league_night.api.routes.league_nights import NIGHT_PATH, resolve_night
from league_night.database.db import get_db_session
from league_night.database.models import LeagueNightInstance, Match
from league_night.models.schemas import (
    ok,
    DisputeScoreRequest,
    MatchScoreResponse,
    SubmitScoreRequest,
)
from league_night.services import match_service
from league_night.services.exceptions import NotFoundError

logger = logging.getLogger(__name__)
router = APIRouter()


async def _match_on_night(
    session: AsyncSession, instance: LeagueNightInstance, match_id: int
) -> Match:
    match = await match_service.get_match(session, match_id)
    if match.instance_id != instance.id:
        raise NotFoundError("Match not found")
    return match


@router.get(NIGHT_PATH + "/matches")
async def get_matches(
    status: Optional[str] = Query(None, pattern="^(queued|in_progress|completed)$"),
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """List the night's matches with player names and pending scores."""
    return ok(await match_service.list_matches(session, instance.id, status))


@router.get(NIGHT_PATH + "/queue")
async def get_queue(
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Get the pairing queue: waiting partnerships and free courts."""
    return ok(await match_service.get_queue_info(session, instance))


@router.post(NIGHT_PATH + "/create-matches")
async def create_matches(
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Pair waiting partnerships onto free courts."""
    result = await match_service.create_matches(session, instance.id)
    return ok(
        {
            "matches": [match_service.format_match(instance, match) for match in result["matches"]],
            "queue_info": result["queue_info"],
        }
    )


@router.post(NIGHT_PATH + "/matches/{match_id}/start")
async def start_match(
    match_id: int,
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Move a queued match onto its court."""
    await _match_on_night(session, instance, match_id)
    match = await match_service.start_match(session, match_id)
    return ok(match_service.format_match(instance, match))


@router.post(NIGHT_PATH + "/submit-score")
@limiter.limit(WRITE_RATE_LIMIT)
async def submit_score(
    request: Request,
    payload: SubmitScoreRequest,
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Submit a game score for the other team to confirm."""
    await _match_on_night(session, instance, payload.match_id)
    score = await match_service.submit_score(
        session, payload.match_id, user_id, payload.team1_score, payload.team2_score
    )
    return ok(MatchScoreResponse.model_validate(score).model_dump(mode="json"))


@router.post(NIGHT_PATH + "/matches/{match_id}/confirm-score")
@limiter.limit(WRITE_RATE_LIMIT)
async def confirm_score(
    request: Request,
    match_id: int,
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Confirm the opposing team's pending score and complete the match."""
    await _match_on_night(session, instance, match_id)
    match = await match_service.confirm_score(session, match_id, user_id)
    return ok(match_service.format_match(instance, match))


@router.post(NIGHT_PATH + "/matches/{match_id}/dispute-score")
@limiter.limit(WRITE_RATE_LIMIT)
async def dispute_score(
    request: Request,
    match_id: int,
    payload: Optional[DisputeScoreRequest] = None,
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Dispute the opposing team's pending score."""
    await _match_on_night(session, instance, match_id)
    reason = payload.reason if payload else None
    score = await match_service.dispute_score(session, match_id, user_id, reason)
    return ok(MatchScoreResponse.model_validate(score).model_dump(mode="json"))
