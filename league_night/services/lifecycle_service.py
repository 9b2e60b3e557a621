"""
League night lifecycle service.

Resolves a (league, slot) pair to a concrete instance, creating it on first
access, and drives the instance status forward:
scheduled -> in_progress -> completed. Status never regresses.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Union

from sqlalchemy import select, update, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from league_night.database.models import (
    LeagueNightInstance,
    LeagueDay,
    LeagueMember,
    LeagueRole,
    InstanceStatus,
    Checkin,
    ConfirmedPartnership,
)
from league_night.services import realtime_manager
from league_night.services.realtime_manager import EventKind
from league_night.services.exceptions import (
    ConfigurationError,
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from league_night.utils.constants import SLOT_REFERENCE_PREFIX
from league_night.utils.datetime_utils import (
    utcnow,
    league_today,
    next_occurrence,
    local_start_datetime,
)

logger = logging.getLogger(__name__)

ADMIN_ROLES = (LeagueRole.ADMIN.value,)
ORGANIZER_ROLES = (LeagueRole.ADMIN.value, LeagueRole.ORGANIZER.value)


def parse_slot_reference(slot_reference: Union[int, str]):
    """
    Split a slot reference into ("instance", id) or ("slot", index).

    Raises:
        ConfigurationError: If the reference is neither form
    """
    if isinstance(slot_reference, int):
        return "instance", slot_reference
    value = str(slot_reference).strip()
    if value.isdigit():
        return "instance", int(value)
    if value.startswith(SLOT_REFERENCE_PREFIX):
        index = value[len(SLOT_REFERENCE_PREFIX):]
        if index.isdigit():
            return "slot", int(index)
    raise ConfigurationError(f"Invalid league night reference: {slot_reference!r}")


async def get_instance(session: AsyncSession, instance_id: int) -> LeagueNightInstance:
    """
    Fetch an instance by id.

    Raises:
        NotFoundError: If no such instance exists
    """
    result = await session.execute(
        select(LeagueNightInstance).where(LeagueNightInstance.id == instance_id)
    )
    instance = result.scalar_one_or_none()
    if instance is None:
        raise NotFoundError("League night not found")
    return instance


async def get_league_days(session: AsyncSession, league_id: int) -> List[LeagueDay]:
    """Get a league's recurring day templates in canonical slot order."""
    result = await session.execute(
        select(LeagueDay)
        .where(LeagueDay.league_id == league_id)
        .order_by(LeagueDay.day_of_week, LeagueDay.start_time, LeagueDay.id)
    )
    return list(result.scalars().all())


async def _get_instance_for_date(
    session: AsyncSession, league_id: int, night_date
) -> Optional[LeagueNightInstance]:
    result = await session.execute(
        select(LeagueNightInstance).where(
            and_(
                LeagueNightInstance.league_id == league_id,
                LeagueNightInstance.date == night_date,
            )
        )
    )
    return result.scalar_one_or_none()


async def resolve_or_create_instance(
    session: AsyncSession,
    league_id: int,
    slot_reference: Union[int, str],
    force_today: bool = False,
    now: Optional[datetime] = None,
) -> LeagueNightInstance:
    """
    Resolve a league night reference to an instance, creating it if needed.

    A concrete id is fetched directly. A symbolic slot ("night-N") indexes the
    league's day templates; its date is the next occurrence of the template's
    weekday, counting today. force_today is a testing override that pins the
    date to today regardless of weekday.

    Concurrent callers for the same (league, date) all receive the same row:
    the (league_id, date) unique constraint decides, and the loser re-fetches.

    Args:
        session: Database session
        league_id: League ID
        slot_reference: Instance id or "night-N"
        force_today: Use today's date instead of the weekday computation
        now: Optional current time (defaults to utcnow())

    Returns:
        The LeagueNightInstance

    Raises:
        NotFoundError: Unknown instance id, or an instance of another league
        ConfigurationError: Malformed reference or slot index out of range
    """
    now = now or utcnow()
    kind, value = parse_slot_reference(slot_reference)

    if kind == "instance":
        instance = await get_instance(session, value)
        if instance.league_id != league_id:
            raise NotFoundError("League night not found")
        return await maybe_auto_start(session, instance, now=now)

    days = await get_league_days(session, league_id)
    if value >= len(days):
        raise ConfigurationError(
            f"League {league_id} has no night slot {value} ({len(days)} configured)"
        )
    template = days[value]

    today = league_today(now)
    if force_today:
        logger.info(f"force_today override: resolving league {league_id} slot {value} to {today}")
        night_date = today
    else:
        try:
            night_date = next_occurrence(template.day_of_week, today)
        except ValueError as e:
            raise ConfigurationError(f"League day {template.id} is malformed: {e}")

    instance = await _get_instance_for_date(session, league_id, night_date)
    if instance is None:
        instance = LeagueNightInstance(
            league_id=league_id,
            league_day_id=template.id,
            date=night_date,
            day_of_week=template.day_of_week,
            start_time=template.start_time,
            courts_available=template.total_courts,
            court_labels=template.court_labels,
            status=InstanceStatus.SCHEDULED.value,
            auto_assignment_enabled=True,
        )
        session.add(instance)
        try:
            await session.commit()
            logger.info(f"Created league night {instance.id} for league {league_id} on {night_date}")
        except IntegrityError:
            await session.rollback()
            logger.info(
                f"League night for league {league_id} on {night_date} created concurrently, re-fetching"
            )
            instance = await _get_instance_for_date(session, league_id, night_date)
            if instance is None:
                raise ConflictError("League night could not be created")

    return await maybe_auto_start(session, instance, now=now)


async def _transition(
    session: AsyncSession,
    instance: LeagueNightInstance,
    from_status: str,
    to_status: str,
    **values,
) -> bool:
    """
    Conditionally move an instance from one status to the next.

    Returns:
        True if this caller performed the transition
    """
    result = await session.execute(
        update(LeagueNightInstance)
        .where(
            and_(
                LeagueNightInstance.id == instance.id,
                LeagueNightInstance.status == from_status,
            )
        )
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    await session.refresh(instance)
    return result.rowcount == 1


async def maybe_auto_start(
    session: AsyncSession, instance: LeagueNightInstance, now: Optional[datetime] = None
) -> LeagueNightInstance:
    """
    Start a scheduled night once its date is today and its start time has passed.

    Args:
        session: Database session
        instance: Instance to check
        now: Optional current time

    Returns:
        The (possibly updated) instance
    """
    if instance.status != InstanceStatus.SCHEDULED.value:
        return instance

    now = now or utcnow()
    try:
        starts_at = local_start_datetime(instance.date, instance.start_time)
    except ValueError as e:
        logger.warning(f"League night {instance.id} has an invalid start time: {e}")
        return instance

    if league_today(now) != instance.date or now < starts_at:
        return instance

    started = await _transition(
        session,
        instance,
        InstanceStatus.SCHEDULED.value,
        InstanceStatus.IN_PROGRESS.value,
        started_at=now,
    )
    if started:
        logger.info(f"Auto-started league night {instance.id} (start time {instance.start_time})")
        realtime_manager.emit(instance.id, EventKind.INSTANCE_STATUS_CHANGED)
        from league_night.services.match_service import try_auto_assign

        await try_auto_assign(session, instance.id)
    return instance


async def require_league_role(
    session: AsyncSession, league_id: int, user_id: int, roles=ADMIN_ROLES
) -> str:
    """
    Check the user holds one of the given roles in the league.

    Returns:
        The user's role

    Raises:
        PermissionDeniedError: If the user is not an active member with the role
    """
    result = await session.execute(
        select(LeagueMember.role).where(
            and_(
                LeagueMember.league_id == league_id,
                LeagueMember.user_id == user_id,
                LeagueMember.is_active == True,  # noqa: E712
            )
        )
    )
    role = result.scalar_one_or_none()
    if role not in roles:
        allowed = "/".join(roles)
        raise PermissionDeniedError(f"Only league {allowed} users can do this")
    return role


async def start_league_night(
    session: AsyncSession, instance: LeagueNightInstance, user_id: int
) -> Dict:
    """
    Manually start a league night (admin only) and assign initial matches.

    Raises:
        PermissionDeniedError: If the user is not a league admin
        ConflictError: If the night is already in progress or completed
    """
    await require_league_role(session, instance.league_id, user_id, ADMIN_ROLES)

    if instance.status != InstanceStatus.SCHEDULED.value:
        raise ConflictError(f"League night is already {instance.status}")

    started = await _transition(
        session,
        instance,
        InstanceStatus.SCHEDULED.value,
        InstanceStatus.IN_PROGRESS.value,
        started_at=utcnow(),
    )
    if not started:
        raise ConflictError(f"League night is already {instance.status}")

    logger.info(f"League night {instance.id} started by admin {user_id}")
    realtime_manager.emit(instance.id, EventKind.INSTANCE_STATUS_CHANGED)

    from league_night.services.match_service import try_auto_assign

    created = await try_auto_assign(session, instance.id)
    return {"instance": instance, "matches_created": len(created)}


async def end_league_night(
    session: AsyncSession, instance: LeagueNightInstance, user_id: int
) -> Dict:
    """
    End a league night (admin only). Live matches may still finish.

    Raises:
        PermissionDeniedError: If the user is not a league admin
        ConflictError: If the night is already completed
    """
    await require_league_role(session, instance.league_id, user_id, ADMIN_ROLES)

    if instance.status == InstanceStatus.COMPLETED.value:
        raise ConflictError("League night is already completed")

    from_status = instance.status
    ended = await _transition(
        session,
        instance,
        from_status,
        InstanceStatus.COMPLETED.value,
        ended_at=utcnow(),
    )
    if not ended:
        raise ConflictError(f"League night status changed concurrently (now {instance.status})")

    from league_night.services.match_service import count_live_matches

    remaining = await count_live_matches(session, instance.id)
    logger.info(f"League night {instance.id} ended by admin {user_id} ({remaining} live match(es) remaining)")
    realtime_manager.emit(instance.id, EventKind.INSTANCE_STATUS_CHANGED)
    return {"instance": instance, "active_matches_remaining": remaining}


async def update_courts(
    session: AsyncSession, instance: LeagueNightInstance, user_id: int, court_labels: List[str]
) -> Dict:
    """
    Replace the court labels (and so the court count) of a night (admin only).

    When courts are added to a live night, auto-assignment runs for them.

    Raises:
        InvalidArgumentError: If no courts are given
        PermissionDeniedError: If the user is not a league admin
    """
    if not court_labels:
        raise InvalidArgumentError("At least one court is required")
    await require_league_role(session, instance.league_id, user_id, ADMIN_ROLES)

    previous_count = instance.courts_available
    instance.court_labels = list(court_labels)
    instance.courts_available = len(court_labels)
    await session.commit()
    logger.info(f"Courts for league night {instance.id} updated by {user_id}: {previous_count} -> {len(court_labels)}")
    realtime_manager.emit(instance.id, EventKind.INSTANCE_STATUS_CHANGED)

    created = []
    if len(court_labels) > previous_count and instance.status == InstanceStatus.IN_PROGRESS.value:
        from league_night.services.match_service import try_auto_assign

        created = await try_auto_assign(session, instance.id)
    return {"instance": instance, "matches_created": len(created)}


async def set_auto_assignment(
    session: AsyncSession, instance: LeagueNightInstance, user_id: int, enabled: bool
) -> LeagueNightInstance:
    """
    Turn automatic match assignment on or off (admin or organizer).

    Turning it on for a live night assigns matches immediately.
    """
    await require_league_role(session, instance.league_id, user_id, ORGANIZER_ROLES)

    instance.auto_assignment_enabled = enabled
    await session.commit()
    logger.info(f"Auto-assignment {'enabled' if enabled else 'disabled'} for league night {instance.id}")
    realtime_manager.emit(instance.id, EventKind.INSTANCE_STATUS_CHANGED)

    if enabled and instance.status == InstanceStatus.IN_PROGRESS.value:
        from league_night.services.match_service import try_auto_assign

        await try_auto_assign(session, instance.id)
    return instance


async def get_instance_summary(session: AsyncSession, instance: LeagueNightInstance) -> Dict:
    """Instance fields plus live check-in, partnership and pairing counts."""
    checkin_count = await session.scalar(
        select(func.count())
        .select_from(Checkin)
        .where(and_(Checkin.instance_id == instance.id, Checkin.is_active == True))  # noqa: E712
    )
    partnership_count = await session.scalar(
        select(func.count())
        .select_from(ConfirmedPartnership)
        .where(
            and_(
                ConfirmedPartnership.instance_id == instance.id,
                ConfirmedPartnership.is_active == True,  # noqa: E712
            )
        )
    )

    from league_night.services.match_service import get_queue_info

    queue_info = await get_queue_info(session, instance)
    return {
        "id": instance.id,
        "league_id": instance.league_id,
        "date": instance.date.isoformat(),
        "day_of_week": instance.day_of_week,
        "start_time": instance.start_time,
        "status": instance.status,
        "courts_available": instance.courts_available,
        "court_labels": instance.court_labels or [],
        "auto_assignment_enabled": instance.auto_assignment_enabled,
        "started_at": instance.started_at.isoformat() if instance.started_at else None,
        "ended_at": instance.ended_at.isoformat() if instance.ended_at else None,
        "checked_in_count": checkin_count or 0,
        "partnerships_count": partnership_count or 0,
        "possible_matches": queue_info["possible_matches"],
        "queue": queue_info,
    }
