"""League night route handlers: instance, check-ins, partnerships and admin controls."""

import logging
import os

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from league_night.api.auth_dependencies import get_current_user_id
from league_night.api.routes import limiter, WRITE_RATE_LIMIT
from league_night.database.db import get_db_session
from league_night.database.models import ConfirmedPartnership, LeagueNightInstance, PartnershipRequest
from league_night.models.schemas import (
    ok,
    CheckinResponse,
    PartnershipRequestCreate,
    PartnershipRequestAction,
    PartnershipRequestResponse,
    PartnershipResponse,
    RemovePartnershipRequest,
    ToggleAutoAssignmentRequest,
    UpdateCourtsRequest,
)
from league_night.services import (
    checkin_service,
    lifecycle_service,
    partnership_service,
)
from league_night.services.exceptions import NotFoundError

logger = logging.getLogger(__name__)
router = APIRouter()

NIGHT_PATH = "/api/leagues/{league_id}/nights/{night_ref}"


def force_today_allowed() -> bool:
    """The force_today testing override is only honoured when ALLOW_FORCE_TODAY=true."""
    return os.getenv("ALLOW_FORCE_TODAY", "false").lower() == "true"


async def resolve_night(
    league_id: int,
    night_ref: str,
    force_today: bool = Query(False, description="Testing override: resolve the slot to today"),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> LeagueNightInstance:
    """Dependency resolving the path's night reference to an instance (authenticated)."""
    if force_today and not force_today_allowed():
        logger.warning(f"Ignoring force_today for league {league_id}: ALLOW_FORCE_TODAY is off")
        force_today = False
    return await lifecycle_service.resolve_or_create_instance(
        session, league_id, night_ref, force_today=force_today
    )


async def _request_on_night(
    session: AsyncSession, instance: LeagueNightInstance, request_id: int
) -> PartnershipRequest:
    partnership_request = await session.get(PartnershipRequest, request_id)
    if partnership_request is None or partnership_request.instance_id != instance.id:
        raise NotFoundError("Partnership request not found")
    return partnership_request


async def _partnership_on_night(
    session: AsyncSession, instance: LeagueNightInstance, partnership_id: int
) -> ConfirmedPartnership:
    partnership = await session.get(ConfirmedPartnership, partnership_id)
    if partnership is None or partnership.instance_id != instance.id:
        raise NotFoundError("Partnership not found")
    return partnership


@router.get(NIGHT_PATH)
async def get_league_night(
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Get a league night summary (creating the instance on first access)."""
    return ok(await lifecycle_service.get_instance_summary(session, instance))


# ============================================================================
# Check-ins
# ============================================================================


@router.get(NIGHT_PATH + "/checkins")
async def get_checkins(
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """List checked-in players in arrival order."""
    return ok(await checkin_service.list_active(session, instance.id))


@router.post(NIGHT_PATH + "/checkin")
@limiter.limit(WRITE_RATE_LIMIT)
async def check_in(
    request: Request,
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Check the current user in."""
    checkin = await checkin_service.check_in(session, instance.id, user_id)
    return ok(CheckinResponse.model_validate(checkin).model_dump(mode="json"))


@router.delete(NIGHT_PATH + "/checkin")
@limiter.limit(WRITE_RATE_LIMIT)
async def uncheck_in(
    request: Request,
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Check the current user out (dissolving their partnership)."""
    result = await checkin_service.uncheck_in(session, instance.id, user_id)
    return ok(
        {
            "checkin": CheckinResponse.model_validate(result["checkin"]).model_dump(mode="json"),
            "dissolved_partnership_id": result["dissolved_partnership_id"],
            "rejected_requests": result["rejected_requests"],
        }
    )


# ============================================================================
# Partnerships
# ============================================================================


@router.get(NIGHT_PATH + "/partnership-requests")
async def get_partnership_requests(
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Get the current user's pending partnership requests and active partnerships."""
    requests = await partnership_service.list_requests_for_user(session, instance.id, user_id)
    partnerships = await partnership_service.list_active_partnerships(session, instance.id)
    mine = await partnership_service.get_active_partnership_for_user(session, instance.id, user_id)
    return ok(
        {
            "incoming": requests["incoming"],
            "outgoing": requests["outgoing"],
            "my_partnership": partnership_service.format_partnership(mine) if mine else None,
            "partnerships": [partnership_service.format_partnership(p) for p in partnerships],
        }
    )


@router.post(NIGHT_PATH + "/partnership-request")
@limiter.limit(WRITE_RATE_LIMIT)
async def create_partnership_request(
    request: Request,
    payload: PartnershipRequestCreate,
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Ask another checked-in player to partner up."""
    partnership_request = await partnership_service.create_request(
        session, instance.id, user_id, payload.requested_id
    )
    return ok(PartnershipRequestResponse.model_validate(partnership_request).model_dump(mode="json"))


@router.post(NIGHT_PATH + "/partnership-accept")
@limiter.limit(WRITE_RATE_LIMIT)
async def accept_partnership_request(
    request: Request,
    payload: PartnershipRequestAction,
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Accept a partnership request addressed to the current user."""
    await _request_on_night(session, instance, payload.request_id)
    partnership = await partnership_service.accept_request(session, payload.request_id, user_id)
    return ok(PartnershipResponse.model_validate(partnership).model_dump(mode="json"))


@router.post(NIGHT_PATH + "/partnership-reject")
@limiter.limit(WRITE_RATE_LIMIT)
async def reject_partnership_request(
    request: Request,
    payload: PartnershipRequestAction,
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Decline a partnership request addressed to the current user."""
    await _request_on_night(session, instance, payload.request_id)
    partnership_request = await partnership_service.reject_request(session, payload.request_id, user_id)
    return ok(PartnershipRequestResponse.model_validate(partnership_request).model_dump(mode="json"))


@router.post(NIGHT_PATH + "/partnership-cancel")
@limiter.limit(WRITE_RATE_LIMIT)
async def cancel_partnership_request(
    request: Request,
    payload: PartnershipRequestAction,
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Withdraw a partnership request the current user sent."""
    await _request_on_night(session, instance, payload.request_id)
    partnership_request = await partnership_service.cancel_request(session, payload.request_id, user_id)
    return ok(PartnershipRequestResponse.model_validate(partnership_request).model_dump(mode="json"))


@router.delete(NIGHT_PATH + "/partnership")
@limiter.limit(WRITE_RATE_LIMIT)
async def remove_partnership(
    request: Request,
    payload: RemovePartnershipRequest,
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Dissolve the current user's partnership (only before it plays a match)."""
    await _partnership_on_night(session, instance, payload.partnership_id)
    partnership = await partnership_service.remove_partnership(session, payload.partnership_id, user_id)
    return ok(PartnershipResponse.model_validate(partnership).model_dump(mode="json"))


# ============================================================================
# Admin controls
# ============================================================================


@router.post(NIGHT_PATH + "/start-league")
async def start_league(
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Start the league night now (admin only)."""
    result = await lifecycle_service.start_league_night(session, instance, user_id)
    return ok(
        {
            "instance": await lifecycle_service.get_instance_summary(session, result["instance"]),
            "matches_created": result["matches_created"],
        }
    )


@router.post(NIGHT_PATH + "/end-league")
async def end_league(
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """End the league night (admin only). Live matches may still finish."""
    result = await lifecycle_service.end_league_night(session, instance, user_id)
    return ok(
        {
            "instance": await lifecycle_service.get_instance_summary(session, result["instance"]),
            "active_matches_remaining": result["active_matches_remaining"],
        }
    )


@router.post(NIGHT_PATH + "/update-courts")
async def update_courts(
    payload: UpdateCourtsRequest,
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Replace the night's court labels (admin only)."""
    result = await lifecycle_service.update_courts(session, instance, user_id, payload.court_labels)
    return ok(
        {
            "instance": await lifecycle_service.get_instance_summary(session, result["instance"]),
            "matches_created": result["matches_created"],
        }
    )


@router.post(NIGHT_PATH + "/toggle-auto-assignment")
async def toggle_auto_assignment(
    payload: ToggleAutoAssignmentRequest,
    instance: LeagueNightInstance = Depends(resolve_night),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Turn automatic match assignment on or off (admin or organizer)."""
    instance = await lifecycle_service.set_auto_assignment(session, instance, user_id, payload.enabled)
    return ok(await lifecycle_service.get_instance_summary(session, instance))
