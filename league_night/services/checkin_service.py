"""
Check-in service: which players are present at a league night.

Check-ins are never deleted. Unchecking sets is_active=False, and checking in
again creates a fresh row so the night's history is preserved.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import select, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from league_night.database.models import (
    Checkin,
    ConfirmedPartnership,
    InstanceStatus,
    PartnershipRequest,
    PartnershipRequestStatus,
)
from league_night.services import realtime_manager
from league_night.services.realtime_manager import EventKind
from league_night.services.exceptions import (
    ConflictError,
    NotFoundError,
    PreconditionFailedError,
)
from league_night.services.lifecycle_service import get_instance
from league_night.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


async def get_active_checkin(
    session: AsyncSession, instance_id: int, user_id: int
) -> Optional[Checkin]:
    """Get a player's active check-in for an instance, if any."""
    result = await session.execute(
        select(Checkin).where(
            and_(
                Checkin.instance_id == instance_id,
                Checkin.user_id == user_id,
                Checkin.is_active == True,  # noqa: E712
            )
        )
    )
    return result.scalars().first()


async def is_checked_in(session: AsyncSession, instance_id: int, user_id: int) -> bool:
    return await get_active_checkin(session, instance_id, user_id) is not None


async def check_in(session: AsyncSession, instance_id: int, user_id: int) -> Checkin:
    """
    Check a player in to a league night.

    Args:
        session: Database session
        instance_id: League night instance ID
        user_id: Player's user ID

    Returns:
        The new Checkin

    Raises:
        NotFoundError: If the instance does not exist
        PreconditionFailedError: If the night is already completed
        ConflictError: If the player is already checked in
    """
    instance = await get_instance(session, instance_id)
    if instance.status == InstanceStatus.COMPLETED.value:
        raise PreconditionFailedError("League night has already ended")

    if await is_checked_in(session, instance_id, user_id):
        raise ConflictError("Already checked in to this league night")

    checkin = Checkin(
        instance_id=instance_id,
        user_id=user_id,
        is_active=True,
        checked_in_at=utcnow(),
    )
    session.add(checkin)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.warning(f"Concurrent check-in for user {user_id} on league night {instance_id}")
        raise ConflictError("Already checked in to this league night")

    logger.info(f"User {user_id} checked in to league night {instance_id}")
    realtime_manager.emit(instance_id, EventKind.CHECKINS_CHANGED)
    return checkin


async def uncheck_in(session: AsyncSession, instance_id: int, user_id: int) -> Dict:
    """
    Check a player out of a league night.

    The player's pending partnership requests are rejected and their active
    partnership is dissolved, since they are leaving the night.

    Args:
        session: Database session
        instance_id: League night instance ID
        user_id: Player's user ID

    Returns:
        Dict with the deactivated check-in, dissolved partnership id (or None)
        and number of rejected requests

    Raises:
        NotFoundError: If the player has no active check-in
        ConflictError: If the player's partnership is in a queued or in-progress match
    """
    checkin = await get_active_checkin(session, instance_id, user_id)
    if checkin is None:
        raise NotFoundError("Not checked in to this league night")

    from league_night.services import partnership_service, match_service

    partnership = await partnership_service.get_active_partnership_for_user(
        session, instance_id, user_id
    )
    if partnership is not None and await match_service.partnership_has_live_match(
        session, partnership.id
    ):
        raise ConflictError("Cannot check out while your team has a queued or in-progress match")

    now = utcnow()
    checkin.is_active = False
    checkin.checked_out_at = now

    result = await session.execute(
        select(PartnershipRequest).where(
            and_(
                PartnershipRequest.instance_id == instance_id,
                PartnershipRequest.status == PartnershipRequestStatus.PENDING.value,
                or_(
                    PartnershipRequest.requester_id == user_id,
                    PartnershipRequest.requested_id == user_id,
                ),
            )
        )
    )
    pending_requests = result.scalars().all()
    for request in pending_requests:
        request.status = PartnershipRequestStatus.REJECTED.value
        request.responded_at = now

    dissolved_id = None
    if partnership is not None:
        await partnership_service.deactivate_partnership(session, partnership, now)
        dissolved_id = partnership.id

    await session.commit()

    logger.info(
        f"User {user_id} checked out of league night {instance_id} "
        f"(rejected {len(pending_requests)} request(s), dissolved partnership {dissolved_id})"
    )
    events = [EventKind.CHECKINS_CHANGED]
    if pending_requests:
        events.append(EventKind.PARTNERSHIP_REQUESTS_CHANGED)
    if dissolved_id is not None:
        events.append(EventKind.CONFIRMED_PARTNERSHIPS_CHANGED)
    realtime_manager.emit(instance_id, *events)

    return {
        "checkin": checkin,
        "dissolved_partnership_id": dissolved_id,
        "rejected_requests": len(pending_requests),
    }


async def list_active(session: AsyncSession, instance_id: int) -> List[Dict]:
    """
    List active check-ins in first-come-first-served order.

    Each entry carries the player's profile and current partner (if any).

    Args:
        session: Database session
        instance_id: League night instance ID

    Returns:
        List of check-in dicts ordered by checked_in_at, then id
    """
    result = await session.execute(
        select(Checkin)
        .where(and_(Checkin.instance_id == instance_id, Checkin.is_active == True))  # noqa: E712
        .order_by(Checkin.checked_in_at, Checkin.id)
    )
    checkins = result.scalars().all()

    partnership_result = await session.execute(
        select(ConfirmedPartnership).where(
            and_(
                ConfirmedPartnership.instance_id == instance_id,
                ConfirmedPartnership.is_active == True,  # noqa: E712
            )
        )
    )
    partner_of = {}
    partnership_of = {}
    for partnership in partnership_result.scalars().all():
        partner_of[partnership.player1_id] = partnership.player2_id
        partner_of[partnership.player2_id] = partnership.player1_id
        partnership_of[partnership.player1_id] = partnership.id
        partnership_of[partnership.player2_id] = partnership.id

    return [
        {
            "id": checkin.id,
            "user_id": checkin.user_id,
            "checked_in_at": checkin.checked_in_at.isoformat(),
            "first_name": checkin.profile.first_name if checkin.profile else None,
            "last_name": checkin.profile.last_name if checkin.profile else None,
            "full_name": checkin.profile.full_name if checkin.profile else None,
            "skill_level": checkin.profile.skill_level if checkin.profile else None,
            "partner_id": partner_of.get(checkin.user_id),
            "partnership_id": partnership_of.get(checkin.user_id),
        }
        for checkin in checkins
    ]
