"""
Partnership service: request -> accept/reject -> confirmed partnership.

A player holds at most one active confirmed partnership per night. Accept
re-checks both players inside the accepting transaction, and the
partnership_members partial unique index settles concurrent accepts: exactly
one wins, the loser's request is rejected and it gets a ConflictError.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, update, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from league_night.database.models import (
    ConfirmedPartnership,
    PartnershipMember,
    PartnershipRequest,
    PartnershipRequestStatus,
    Profile,
    LeagueNightInstance,
)
from league_night.services import push_service, realtime_manager
from league_night.services.realtime_manager import EventKind
from league_night.services.checkin_service import is_checked_in
from league_night.services.exceptions import (
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    PreconditionFailedError,
)
from league_night.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


async def get_active_partnership_for_user(
    session: AsyncSession, instance_id: int, user_id: int
) -> Optional[ConfirmedPartnership]:
    """Get the player's active confirmed partnership on a night, if any."""
    result = await session.execute(
        select(ConfirmedPartnership).where(
            and_(
                ConfirmedPartnership.instance_id == instance_id,
                ConfirmedPartnership.is_active == True,  # noqa: E712
                or_(
                    ConfirmedPartnership.player1_id == user_id,
                    ConfirmedPartnership.player2_id == user_id,
                ),
            )
        )
    )
    return result.scalars().first()


async def list_active_partnerships(
    session: AsyncSession, instance_id: int
) -> List[ConfirmedPartnership]:
    """Active partnerships on a night in confirmation order."""
    result = await session.execute(
        select(ConfirmedPartnership)
        .where(
            and_(
                ConfirmedPartnership.instance_id == instance_id,
                ConfirmedPartnership.is_active == True,  # noqa: E712
            )
        )
        .order_by(ConfirmedPartnership.confirmed_at, ConfirmedPartnership.id)
    )
    return list(result.scalars().all())


async def get_pending_request_between(
    session: AsyncSession, instance_id: int, player_a: int, player_b: int
) -> Optional[PartnershipRequest]:
    """Get a pending request between two players (in either direction)."""
    result = await session.execute(
        select(PartnershipRequest).where(
            and_(
                PartnershipRequest.instance_id == instance_id,
                PartnershipRequest.status == PartnershipRequestStatus.PENDING.value,
                or_(
                    and_(
                        PartnershipRequest.requester_id == player_a,
                        PartnershipRequest.requested_id == player_b,
                    ),
                    and_(
                        PartnershipRequest.requester_id == player_b,
                        PartnershipRequest.requested_id == player_a,
                    ),
                ),
            )
        )
    )
    return result.scalars().first()


async def _get_request(session: AsyncSession, request_id: int) -> PartnershipRequest:
    result = await session.execute(
        select(PartnershipRequest).where(PartnershipRequest.id == request_id)
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFoundError("Partnership request not found")
    return request


async def create_request(
    session: AsyncSession, instance_id: int, requester_id: int, requested_id: int
) -> PartnershipRequest:
    """
    Ask another checked-in player to partner up for the night.

    Pushes a "partnership requested" notification to the requested player.

    Args:
        session: Database session
        instance_id: League night instance ID
        requester_id: Requesting player's user ID
        requested_id: Requested player's user ID

    Returns:
        The pending PartnershipRequest

    Raises:
        InvalidArgumentError: If a player requests themselves
        PreconditionFailedError: If either player is not checked in
        ConflictError: If either player is already partnered, or a pending
            request already exists between them
    """
    if requester_id == requested_id:
        raise InvalidArgumentError("Cannot send a partnership request to yourself")

    if not await is_checked_in(session, instance_id, requester_id):
        raise PreconditionFailedError("You must be checked in to request a partner")
    if not await is_checked_in(session, instance_id, requested_id):
        raise PreconditionFailedError("That player is not checked in")

    if await get_active_partnership_for_user(session, instance_id, requester_id):
        raise ConflictError("You already have a partner for this league night")
    if await get_active_partnership_for_user(session, instance_id, requested_id):
        raise ConflictError("That player already has a partner for this league night")

    existing = await get_pending_request_between(session, instance_id, requester_id, requested_id)
    if existing:
        if existing.requester_id == requester_id:
            raise ConflictError("Partnership request already sent")
        raise ConflictError("This player already sent you a partnership request. Accept it instead.")

    request = PartnershipRequest(
        instance_id=instance_id,
        requester_id=requester_id,
        requested_id=requested_id,
        status=PartnershipRequestStatus.PENDING.value,
        created_at=utcnow(),
    )
    session.add(request)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.warning(f"Concurrent partnership request {requester_id} -> {requested_id} on night {instance_id}")
        raise ConflictError("Partnership request already sent")
    await session.refresh(request)

    logger.info(f"Partnership request {request.id}: {requester_id} -> {requested_id} on night {instance_id}")
    realtime_manager.emit(instance_id, EventKind.PARTNERSHIP_REQUESTS_CHANGED)

    league_id = await session.scalar(
        select(LeagueNightInstance.league_id).where(LeagueNightInstance.id == instance_id)
    )
    requester = await session.get(Profile, requester_id)
    requester_name = requester.full_name if requester else "Someone"
    push_service.notify_users_nowait(
        [requested_id],
        push_service.build_partnership_requested(request.id, league_id, instance_id, requester_name),
    )
    return request


async def _reject_request_after_lost_race(request_id: int, session: AsyncSession) -> None:
    request = await _get_request(session, request_id)
    if request.status == PartnershipRequestStatus.PENDING.value:
        request.status = PartnershipRequestStatus.REJECTED.value
        request.responded_at = utcnow()
        await session.commit()
        realtime_manager.emit(request.instance_id, EventKind.PARTNERSHIP_REQUESTS_CHANGED)


async def accept_request(
    session: AsyncSession, request_id: int, user_id: int
) -> ConfirmedPartnership:
    """
    Accept a pending partnership request (requested player only).

    In one transaction: marks the request accepted, creates the confirmed
    partnership and its member rows, and rejects every other pending request
    involving either player. Runs match auto-assignment afterwards.

    Args:
        session: Database session
        request_id: Partnership request ID
        user_id: Accepting user (must be the requested player)

    Returns:
        The new ConfirmedPartnership

    Raises:
        NotFoundError: If the request does not exist or is not addressed to the user
        ConflictError: If the request is not pending, or either player was
            partnered elsewhere first (the request is then rejected)
    """
    request = await _get_request(session, request_id)
    if request.requested_id != user_id:
        raise NotFoundError("Partnership request not found")
    if request.status != PartnershipRequestStatus.PENDING.value:
        raise ConflictError(f"Partnership request is already {request.status}")

    instance_id = request.instance_id
    player1_id, player2_id = request.requester_id, request.requested_id

    for player_id in (player1_id, player2_id):
        if await get_active_partnership_for_user(session, instance_id, player_id):
            await _reject_request_after_lost_race(request_id, session)
            logger.info(f"Partnership request {request_id} rejected: player {player_id} already partnered")
            raise ConflictError("One of the players has already partnered with someone else")

    now = utcnow()
    request.status = PartnershipRequestStatus.ACCEPTED.value
    request.responded_at = now

    partnership = ConfirmedPartnership(
        instance_id=instance_id,
        player1_id=player1_id,
        player2_id=player2_id,
        request_id=request.id,
        is_active=True,
        confirmed_at=now,
    )
    session.add(partnership)
    await session.flush()
    session.add_all(
        [
            PartnershipMember(
                partnership_id=partnership.id,
                instance_id=instance_id,
                player_id=player_id,
                is_active=True,
            )
            for player_id in (player1_id, player2_id)
        ]
    )

    result = await session.execute(
        select(PartnershipRequest).where(
            and_(
                PartnershipRequest.instance_id == instance_id,
                PartnershipRequest.status == PartnershipRequestStatus.PENDING.value,
                PartnershipRequest.id != request.id,
                or_(
                    PartnershipRequest.requester_id.in_([player1_id, player2_id]),
                    PartnershipRequest.requested_id.in_([player1_id, player2_id]),
                ),
            )
        )
    )
    for other in result.scalars().all():
        other.status = PartnershipRequestStatus.REJECTED.value
        other.responded_at = now

    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.warning(f"Partnership request {request_id} lost an accept race on night {instance_id}")
        await _reject_request_after_lost_race(request_id, session)
        raise ConflictError("One of the players has already partnered with someone else")

    logger.info(f"Partnership {partnership.id} confirmed: {player1_id} + {player2_id} on night {instance_id}")
    realtime_manager.emit(
        instance_id,
        EventKind.PARTNERSHIP_REQUESTS_CHANGED,
        EventKind.CONFIRMED_PARTNERSHIPS_CHANGED,
    )

    from league_night.services.match_service import try_auto_assign

    await try_auto_assign(session, instance_id)
    return partnership


async def reject_request(
    session: AsyncSession, request_id: int, user_id: int
) -> PartnershipRequest:
    """
    Decline a pending partnership request (requested player only). Terminal.

    Raises:
        NotFoundError: If the request does not exist or is not addressed to the user
        ConflictError: If the request is not pending
    """
    request = await _get_request(session, request_id)
    if request.requested_id != user_id:
        raise NotFoundError("Partnership request not found")
    if request.status != PartnershipRequestStatus.PENDING.value:
        raise ConflictError(f"Partnership request is already {request.status}")

    request.status = PartnershipRequestStatus.REJECTED.value
    request.responded_at = utcnow()
    await session.commit()

    logger.info(f"Partnership request {request_id} rejected by {user_id}")
    realtime_manager.emit(request.instance_id, EventKind.PARTNERSHIP_REQUESTS_CHANGED)
    return request


async def cancel_request(
    session: AsyncSession, request_id: int, user_id: int
) -> PartnershipRequest:
    """
    Withdraw a pending request (requester only). Recorded as rejected.

    Raises:
        NotFoundError: If the request does not exist or was not sent by the user
        ConflictError: If the request is not pending
    """
    request = await _get_request(session, request_id)
    if request.requester_id != user_id:
        raise NotFoundError("Partnership request not found")
    if request.status != PartnershipRequestStatus.PENDING.value:
        raise ConflictError(f"Partnership request is already {request.status}")

    request.status = PartnershipRequestStatus.REJECTED.value
    request.responded_at = utcnow()
    await session.commit()

    logger.info(f"Partnership request {request_id} cancelled by requester {user_id}")
    realtime_manager.emit(request.instance_id, EventKind.PARTNERSHIP_REQUESTS_CHANGED)
    return request


async def deactivate_partnership(
    session: AsyncSession, partnership: ConfirmedPartnership, now: datetime
) -> None:
    """Soft-deactivate a partnership and its member rows. Caller commits."""
    partnership.is_active = False
    partnership.dissolved_at = now
    await session.execute(
        update(PartnershipMember)
        .where(PartnershipMember.partnership_id == partnership.id)
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )


async def remove_partnership(
    session: AsyncSession, partnership_id: int, user_id: Optional[int] = None
) -> ConfirmedPartnership:
    """
    Dissolve a confirmed partnership.

    Refused once the partnership is linked to any match, queued included: a
    queued match already holds a court and names both teams, and dropping one
    side would leave it unplayable with no way back to the queue.

    Args:
        session: Database session
        partnership_id: Partnership ID
        user_id: Acting user; when given, must be one of the partners

    Returns:
        The deactivated partnership

    Raises:
        NotFoundError: If the partnership does not exist or is already inactive
        PreconditionFailedError: If user_id is not one of the partners
        ConflictError: If the partnership has played or is scheduled in a match
    """
    result = await session.execute(
        select(ConfirmedPartnership).where(ConfirmedPartnership.id == partnership_id)
    )
    partnership = result.scalar_one_or_none()
    if partnership is None or not partnership.is_active:
        raise NotFoundError("Partnership not found")
    if user_id is not None and user_id not in partnership.player_ids:
        raise PreconditionFailedError("Only a member of this partnership can remove it")

    from league_night.services.match_service import partnership_has_any_match

    if await partnership_has_any_match(session, partnership_id):
        raise ConflictError("Cannot remove a partnership that is already linked to a match")

    await deactivate_partnership(session, partnership, utcnow())
    await session.commit()

    logger.info(f"Partnership {partnership_id} removed on night {partnership.instance_id}")
    realtime_manager.emit(partnership.instance_id, EventKind.CONFIRMED_PARTNERSHIPS_CHANGED)
    return partnership


async def list_requests_for_user(
    session: AsyncSession, instance_id: int, user_id: int
) -> Dict[str, List[Dict]]:
    """
    Pending requests sent and received by a player on a night.

    Returns:
        Dict with "incoming" and "outgoing" lists of request dicts
    """
    result = await session.execute(
        select(PartnershipRequest)
        .where(
            and_(
                PartnershipRequest.instance_id == instance_id,
                PartnershipRequest.status == PartnershipRequestStatus.PENDING.value,
                or_(
                    PartnershipRequest.requester_id == user_id,
                    PartnershipRequest.requested_id == user_id,
                ),
            )
        )
        .order_by(PartnershipRequest.created_at, PartnershipRequest.id)
    )
    incoming, outgoing = [], []
    for request in result.scalars().all():
        if request.requested_id == user_id:
            incoming.append(format_request(request))
        else:
            outgoing.append(format_request(request))
    return {"incoming": incoming, "outgoing": outgoing}


def _profile_name(profile: Optional[Profile]) -> Optional[str]:
    return profile.full_name if profile else None


def format_request(request: PartnershipRequest) -> Dict:
    """Serialize a partnership request with player names."""
    return {
        "id": request.id,
        "instance_id": request.instance_id,
        "requester_id": request.requester_id,
        "requester_name": _profile_name(request.requester),
        "requested_id": request.requested_id,
        "requested_name": _profile_name(request.requested),
        "status": request.status,
        "created_at": request.created_at.isoformat() if request.created_at else None,
    }


def format_partnership(partnership: ConfirmedPartnership) -> Dict:
    """Serialize a confirmed partnership with player names."""
    return {
        "id": partnership.id,
        "instance_id": partnership.instance_id,
        "player1_id": partnership.player1_id,
        "player1_name": _profile_name(partnership.player1),
        "player2_id": partnership.player2_id,
        "player2_name": _profile_name(partnership.player2),
        "is_active": partnership.is_active,
        "confirmed_at": partnership.confirmed_at.isoformat() if partnership.confirmed_at else None,
    }
