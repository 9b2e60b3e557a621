"""
Match service: pairing partnerships onto courts and the score workflow.

Pairing takes active partnerships that are not in a queued or in-progress
match, fewest games tonight first (partnerships that have not played yet
count as the current minimum so late arrivals do not jump the queue), then
whoever has waited longest since their last game. Courts are filled in
ascending order, skipping courts held by a live match.

Scores go pending -> confirmed | disputed. Only a player on the other team
may confirm or dispute a pending score.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Iterable

import pytz
from sqlalchemy import select, update, func, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from league_night.database.models import (
    ConfirmedPartnership,
    InstanceStatus,
    LeagueNightInstance,
    LIVE_MATCH_STATUSES,
    Match,
    MatchScore,
    MatchStatus,
    PlayerLeagueStats,
    Profile,
    ScoreStatus,
)
from league_night.services import push_service, realtime_manager
from league_night.services.realtime_manager import EventKind
from league_night.services.exceptions import (
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    PreconditionFailedError,
)
from league_night.services.lifecycle_service import get_instance
from league_night.services.partnership_service import list_active_partnerships
from league_night.utils.constants import GAME_TO_POINTS, WIN_BY
from league_night.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


# ============================================================================
# Score rules
# ============================================================================


def validate_score(team1_score, team2_score) -> None:
    """
    Validate a finished game score.

    The winner must reach GAME_TO_POINTS and win by WIN_BY. Once the loser
    reaches GAME_TO_POINTS - 1 the game is extended and must end exactly
    WIN_BY apart (11-9, 12-10, 15-13 are valid; 11-10, 13-10 are not).

    Raises:
        InvalidArgumentError: If the score cannot be a finished game
    """
    for score in (team1_score, team2_score):
        if isinstance(score, bool) or not isinstance(score, int):
            raise InvalidArgumentError("Scores must be whole numbers")
        if score < 0:
            raise InvalidArgumentError("Scores cannot be negative")
    if team1_score == team2_score:
        raise InvalidArgumentError("A game cannot end in a tie")

    winner, loser = max(team1_score, team2_score), min(team1_score, team2_score)
    if winner < GAME_TO_POINTS:
        raise InvalidArgumentError(f"The winning team must reach at least {GAME_TO_POINTS} points")
    if winner - loser < WIN_BY:
        raise InvalidArgumentError(f"The winning team must win by at least {WIN_BY} points")
    if winner > GAME_TO_POINTS and winner - loser != WIN_BY:
        raise InvalidArgumentError(
            f"Games past {GAME_TO_POINTS} points must be won by exactly {WIN_BY}"
        )


# ============================================================================
# Queries
# ============================================================================


async def get_match(session: AsyncSession, match_id: int) -> Match:
    """
    Fetch a match by id.

    Raises:
        NotFoundError: If no such match exists
    """
    result = await session.execute(select(Match).where(Match.id == match_id))
    match = result.scalar_one_or_none()
    if match is None:
        raise NotFoundError("Match not found")
    return match


async def get_pending_score(session: AsyncSession, match_id: int) -> Optional[MatchScore]:
    """Get the score awaiting confirmation for a match, if any."""
    result = await session.execute(
        select(MatchScore).where(
            and_(
                MatchScore.match_id == match_id,
                MatchScore.status == ScoreStatus.PENDING.value,
            )
        )
    )
    return result.scalars().first()


def _involves_partnership(partnership_id: int):
    return or_(Match.partnership1_id == partnership_id, Match.partnership2_id == partnership_id)


async def partnership_has_live_match(session: AsyncSession, partnership_id: int) -> bool:
    """True if the partnership is in a queued or in-progress match."""
    match_id = await session.scalar(
        select(Match.id)
        .where(and_(_involves_partnership(partnership_id), Match.status.in_(LIVE_MATCH_STATUSES)))
        .limit(1)
    )
    return match_id is not None


async def partnership_has_any_match(session: AsyncSession, partnership_id: int) -> bool:
    """True if the partnership has been placed in any match at all."""
    match_id = await session.scalar(
        select(Match.id).where(_involves_partnership(partnership_id)).limit(1)
    )
    return match_id is not None


async def count_live_matches(session: AsyncSession, instance_id: int) -> int:
    """Number of queued or in-progress matches on a night."""
    count = await session.scalar(
        select(func.count())
        .select_from(Match)
        .where(and_(Match.instance_id == instance_id, Match.status.in_(LIVE_MATCH_STATUSES)))
    )
    return count or 0


async def _get_matches(
    session: AsyncSession, instance_id: int, statuses: Optional[Iterable[str]] = None
) -> List[Match]:
    query = select(Match).where(Match.instance_id == instance_id)
    if statuses is not None:
        query = query.where(Match.status.in_(list(statuses)))
    result = await session.execute(query.order_by(Match.created_at, Match.id))
    return list(result.scalars().all())


def _as_utc(value: Optional[datetime]) -> datetime:
    # SQLite hands back naive timestamps
    if value is None:
        return datetime.min.replace(tzinfo=pytz.UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=pytz.UTC)
    return value


async def get_games_played_tonight(session: AsyncSession, instance_id: int) -> Dict[int, int]:
    """Map of partnership id -> completed matches tonight."""
    games: Dict[int, int] = {}
    for match in await _get_matches(session, instance_id, [MatchStatus.COMPLETED.value]):
        for partnership_id in (match.partnership1_id, match.partnership2_id):
            games[partnership_id] = games.get(partnership_id, 0) + 1
    return games


async def _last_finished_at(session: AsyncSession, instance_id: int) -> Dict[int, datetime]:
    finished: Dict[int, datetime] = {}
    for match in await _get_matches(session, instance_id, [MatchStatus.COMPLETED.value]):
        completed_at = _as_utc(match.completed_at)
        for partnership_id in (match.partnership1_id, match.partnership2_id):
            if partnership_id not in finished or finished[partnership_id] < completed_at:
                finished[partnership_id] = completed_at
    return finished


async def get_unmatched_partnerships(
    session: AsyncSession, instance_id: int
) -> List[ConfirmedPartnership]:
    """
    Active partnerships not in a live match, in fair queue order.

    Ordered by effective games played tonight, then by how long the
    partnership has been waiting (since its last completed match, or since
    confirmation if it has not played), then confirmation order.

    Returns:
        Partnerships in the order they should be paired
    """
    partnerships = await list_active_partnerships(session, instance_id)
    live_matches = await _get_matches(session, instance_id, LIVE_MATCH_STATUSES)
    busy = set()
    for match in live_matches:
        busy.update((match.partnership1_id, match.partnership2_id))
    waiting = [p for p in partnerships if p.id not in busy]

    games = await get_games_played_tonight(session, instance_id)
    finished = await _last_finished_at(session, instance_id)
    played = [games[p.id] for p in waiting if games.get(p.id)]
    floor = min(played) if played else 0

    def queue_key(partnership: ConfirmedPartnership):
        waiting_since = finished.get(partnership.id) or _as_utc(partnership.confirmed_at)
        return (games.get(partnership.id) or floor, waiting_since)

    # Stable sort keeps confirmation order for identical keys
    return sorted(waiting, key=queue_key)


async def get_occupied_courts(session: AsyncSession, instance_id: int) -> List[int]:
    """Court numbers held by queued or in-progress matches."""
    result = await session.execute(
        select(Match.court_number).where(
            and_(Match.instance_id == instance_id, Match.status.in_(LIVE_MATCH_STATUSES))
        )
    )
    return sorted(set(result.scalars().all()))


def _free_courts(instance: LeagueNightInstance, occupied: Iterable[int]) -> List[int]:
    occupied = set(occupied)
    return [court for court in range(1, (instance.courts_available or 0) + 1) if court not in occupied]


def court_label(instance: LeagueNightInstance, court_number: int) -> str:
    """Human label for a court, falling back to "Court N"."""
    labels = instance.court_labels or []
    if 0 < court_number <= len(labels) and labels[court_number - 1]:
        return labels[court_number - 1]
    return f"Court {court_number}"


async def get_queue_info(session: AsyncSession, instance: LeagueNightInstance) -> Dict:
    """
    Snapshot of the pairing queue for a night.

    Returns:
        Dict with waiting partnerships, possible matches and court usage
    """
    waiting = await get_unmatched_partnerships(session, instance.id)
    occupied = await get_occupied_courts(session, instance.id)
    free = _free_courts(instance, occupied)
    possible = len(waiting) // 2
    return {
        "unmatched_partnerships": len(waiting),
        "possible_matches": possible,
        "courts_available": instance.courts_available,
        "occupied_courts": occupied,
        "free_courts": free,
        "next_match_count": min(possible, len(free)),
        "waiting_partnership_ids": [p.id for p in waiting],
    }


# ============================================================================
# Pairing
# ============================================================================


async def _profile_names(session: AsyncSession, user_ids: Iterable[int]) -> Dict[int, str]:
    user_ids = list(set(user_ids))
    if not user_ids:
        return {}
    result = await session.execute(select(Profile).where(Profile.id.in_(user_ids)))
    return {profile.id: profile.full_name for profile in result.scalars().all()}


def _team_names(names: Dict[int, str], player_ids: List[int]) -> str:
    return " & ".join(names.get(player_id, "Unknown") for player_id in player_ids)


async def _assign_matches(session: AsyncSession, instance: LeagueNightInstance) -> List[Match]:
    """
    Pair waiting partnerships onto free courts and commit the new matches.

    Raises:
        ConflictError: If a concurrent assignment took a court or partnership first
    """
    waiting = await get_unmatched_partnerships(session, instance.id)
    occupied = await get_occupied_courts(session, instance.id)
    free = _free_courts(instance, occupied)
    count = min(len(waiting) // 2, len(free))
    if count == 0:
        return []

    now = utcnow()
    created = []
    for index in range(count):
        first, second = waiting[index * 2], waiting[index * 2 + 1]
        match = Match(
            instance_id=instance.id,
            partnership1_id=first.id,
            partnership2_id=second.id,
            court_number=free[index],
            status=MatchStatus.QUEUED.value,
            team1_player1_id=first.player1_id,
            team1_player2_id=first.player2_id,
            team2_player1_id=second.player1_id,
            team2_player2_id=second.player2_id,
            created_at=now,
        )
        session.add(match)
        created.append(match)

    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.warning(f"Concurrent match assignment on league night {instance.id}")
        raise ConflictError("Courts changed while assigning matches, please retry")

    logger.info(
        f"Created {len(created)} match(es) on league night {instance.id}: "
        + ", ".join(f"court {m.court_number} ({m.partnership1_id} vs {m.partnership2_id})" for m in created)
    )
    realtime_manager.emit(instance.id, EventKind.MATCHES_CHANGED)

    names = await _profile_names(session, [pid for m in created for pid in m.player_ids])
    for match in created:
        for team_ids, opponent_ids in (
            (match.team1_player_ids, match.team2_player_ids),
            (match.team2_player_ids, match.team1_player_ids),
        ):
            push_service.notify_users_nowait(
                team_ids,
                push_service.build_match_assigned(
                    match.id,
                    instance.league_id,
                    instance.id,
                    match.court_number,
                    _team_names(names, opponent_ids),
                ),
            )
    return created


async def create_matches(session: AsyncSession, instance_id: int) -> Dict:
    """
    Explicitly pair waiting partnerships into queued matches.

    Args:
        session: Database session
        instance_id: League night instance ID

    Returns:
        Dict with the created matches and the queue info after pairing

    Raises:
        PreconditionFailedError: If the night is over or fewer than two
            partnerships are waiting
        ConflictError: If a concurrent assignment won the courts
    """
    instance = await get_instance(session, instance_id)
    if instance.status == InstanceStatus.COMPLETED.value:
        raise PreconditionFailedError("League night has already ended")

    waiting = await get_unmatched_partnerships(session, instance_id)
    if len(waiting) < 2:
        raise PreconditionFailedError("Need at least 2 waiting partnerships to create matches")

    created = await _assign_matches(session, instance)
    queue_info = await get_queue_info(session, instance)
    return {"matches": created, "queue_info": queue_info}


async def try_auto_assign(session: AsyncSession, instance_id: int) -> List[Match]:
    """
    Assign matches if the night is live and auto-assignment is on.

    Never raises for "nothing to do" or a lost assignment race.

    Returns:
        Matches created (possibly empty)
    """
    instance = await get_instance(session, instance_id)
    if instance.status != InstanceStatus.IN_PROGRESS.value:
        return []
    if not instance.auto_assignment_enabled:
        logger.debug(f"Auto-assignment disabled for league night {instance_id}")
        return []
    try:
        return await _assign_matches(session, instance)
    except ConflictError as e:
        logger.warning(f"Auto-assignment skipped for league night {instance_id}: {e}")
        return []


# ============================================================================
# Match lifecycle and scoring
# ============================================================================


async def start_match(session: AsyncSession, match_id: int) -> Match:
    """
    Move a queued match to in_progress.

    Raises:
        NotFoundError: If the match does not exist
        ConflictError: If the match is not queued
    """
    match = await get_match(session, match_id)
    result = await session.execute(
        update(Match)
        .where(and_(Match.id == match_id, Match.status == MatchStatus.QUEUED.value))
        .values(status=MatchStatus.IN_PROGRESS.value, started_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    await session.refresh(match)
    if result.rowcount != 1:
        raise ConflictError(f"Match is {match.status}, not queued")

    logger.info(f"Match {match_id} started on court {match.court_number}")
    realtime_manager.emit(match.instance_id, EventKind.MATCHES_CHANGED)
    return match


async def submit_score(
    session: AsyncSession, match_id: int, user_id: int, team1_score: int, team2_score: int
) -> MatchScore:
    """
    Submit a game score for confirmation by the other team.

    Args:
        session: Database session
        match_id: Match ID
        user_id: Submitting player (their team is the submitting team)
        team1_score: Team 1 points
        team2_score: Team 2 points

    Returns:
        The pending MatchScore

    Raises:
        PreconditionFailedError: If the user is not playing in the match
        ConflictError: If the match is not in progress or a score is already pending
        InvalidArgumentError: If the score is not a valid finished game
    """
    match = await get_match(session, match_id)
    team = match.team_of(user_id)
    if team is None:
        raise PreconditionFailedError("Only players in this match can submit a score")
    if match.status != MatchStatus.IN_PROGRESS.value:
        raise ConflictError(f"Match is {match.status}, scores can only be submitted while in progress")
    if await get_pending_score(session, match_id):
        raise ConflictError("A score is already awaiting confirmation for this match")
    validate_score(team1_score, team2_score)

    score = MatchScore(
        match_id=match_id,
        team1_score=team1_score,
        team2_score=team2_score,
        submitted_by_team=team,
        submitted_by_user_id=user_id,
        status=ScoreStatus.PENDING.value,
        submitted_at=utcnow(),
    )
    session.add(score)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.warning(f"Concurrent score submission on match {match_id}")
        raise ConflictError("A score is already awaiting confirmation for this match")

    logger.info(f"Score {team1_score}-{team2_score} submitted on match {match_id} by team {team} (user {user_id})")
    realtime_manager.emit(match.instance_id, EventKind.MATCHES_CHANGED)

    instance = await get_instance(session, match.instance_id)
    submitting_ids = match.team1_player_ids if team == 1 else match.team2_player_ids
    opposing_ids = match.team2_player_ids if team == 1 else match.team1_player_ids
    names = await _profile_names(session, submitting_ids)
    push_service.notify_users_nowait(
        opposing_ids,
        push_service.build_score_pending(
            match.id,
            instance.league_id,
            instance.id,
            _team_names(names, submitting_ids),
            team1_score,
            team2_score,
        ),
    )
    return score


async def _pending_score_for_responder(
    session: AsyncSession, match: Match, user_id: int
) -> MatchScore:
    team = match.team_of(user_id)
    if team is None:
        raise PreconditionFailedError("Only players in this match can respond to a score")
    pending = await get_pending_score(session, match.id)
    if pending is None:
        raise ConflictError("No score is awaiting confirmation for this match")
    if pending.submitted_by_team == team:
        raise PreconditionFailedError("The other team must confirm or dispute this score")
    return pending


async def _respond_to_score(
    session: AsyncSession, score: MatchScore, user_id: int, status: str, **values
) -> None:
    result = await session.execute(
        update(MatchScore)
        .where(and_(MatchScore.id == score.id, MatchScore.status == ScoreStatus.PENDING.value))
        .values(status=status, responded_by_user_id=user_id, responded_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ConflictError("No score is awaiting confirmation for this match")


async def _update_player_stats(session: AsyncSession, league_id: int, match: Match) -> None:
    """Add a completed match to each player's league totals. Caller commits."""
    for player_ids, points, won in (
        (match.team1_player_ids, match.team1_score, match.winner == 1),
        (match.team2_player_ids, match.team2_score, match.winner == 2),
    ):
        for player_id in player_ids:
            result = await session.execute(
                select(PlayerLeagueStats).where(
                    and_(
                        PlayerLeagueStats.user_id == player_id,
                        PlayerLeagueStats.league_id == league_id,
                    )
                )
            )
            stats = result.scalar_one_or_none()
            if stats is None:
                stats = PlayerLeagueStats(
                    user_id=player_id,
                    league_id=league_id,
                    games_played=0,
                    games_won=0,
                    games_lost=0,
                    total_points=0,
                    average_points=0.0,
                )
                session.add(stats)
            stats.games_played += 1
            if won:
                stats.games_won += 1
            else:
                stats.games_lost += 1
            stats.total_points += points
            stats.average_points = round(stats.total_points / stats.games_played, 2)


async def confirm_score(session: AsyncSession, match_id: int, user_id: int) -> Match:
    """
    Confirm the pending score (other team only) and complete the match.

    Updates player league stats, tells the submitting team, and runs
    auto-assignment for the freed court.

    Args:
        session: Database session
        match_id: Match ID
        user_id: Confirming player

    Returns:
        The completed match

    Raises:
        PreconditionFailedError: If the user is not in the match or is on the submitting team
        ConflictError: If no score is pending
    """
    match = await get_match(session, match_id)
    pending = await _pending_score_for_responder(session, match, user_id)

    await _respond_to_score(session, pending, user_id, ScoreStatus.CONFIRMED.value)

    now = utcnow()
    match.team1_score = pending.team1_score
    match.team2_score = pending.team2_score
    match.winner = 1 if pending.team1_score > pending.team2_score else 2
    match.status = MatchStatus.COMPLETED.value
    match.completed_at = now

    instance = await get_instance(session, match.instance_id)
    await _update_player_stats(session, instance.league_id, match)

    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.warning(f"Concurrent stats update while confirming match {match_id}")
        raise ConflictError("Score confirmation conflicted with another update, please retry")

    logger.info(
        f"Match {match_id} completed {match.team1_score}-{match.team2_score} "
        f"(winner team {match.winner}), confirmed by {user_id}"
    )
    realtime_manager.emit(match.instance_id, EventKind.MATCHES_CHANGED)

    submitting_ids = match.team1_player_ids if pending.submitted_by_team == 1 else match.team2_player_ids
    push_service.notify_users_nowait(
        submitting_ids,
        push_service.build_score_confirmed(
            match.id, instance.league_id, instance.id, match.team1_score, match.team2_score
        ),
    )

    await try_auto_assign(session, match.instance_id)
    return match


async def dispute_score(
    session: AsyncSession, match_id: int, user_id: int, reason: Optional[str] = None
) -> MatchScore:
    """
    Dispute the pending score (other team only).

    The score is marked disputed and the match stays in progress so a new
    score can be submitted.

    Raises:
        PreconditionFailedError: If the user is not in the match or is on the submitting team
        ConflictError: If no score is pending
    """
    match = await get_match(session, match_id)
    pending = await _pending_score_for_responder(session, match, user_id)

    await _respond_to_score(
        session, pending, user_id, ScoreStatus.DISPUTED.value, dispute_reason=reason
    )
    await session.commit()
    await session.refresh(pending)

    logger.info(f"Score {pending.id} on match {match_id} disputed by {user_id}")
    realtime_manager.emit(match.instance_id, EventKind.MATCHES_CHANGED)

    instance = await get_instance(session, match.instance_id)
    submitting_ids = match.team1_player_ids if pending.submitted_by_team == 1 else match.team2_player_ids
    push_service.notify_users_nowait(
        submitting_ids,
        push_service.build_score_disputed(match.id, instance.league_id, instance.id, reason),
    )
    return pending


# ============================================================================
# Listing
# ============================================================================


async def list_matches(
    session: AsyncSession, instance_id: int, status: Optional[str] = None
) -> List[Dict]:
    """
    List a night's matches with player names and any pending score.

    Args:
        session: Database session
        instance_id: League night instance ID
        status: Optional status filter

    Returns:
        List of match dicts in creation order
    """
    instance = await get_instance(session, instance_id)
    matches = await _get_matches(session, instance_id, [status] if status else None)
    if not matches:
        return []

    match_ids = [match.id for match in matches]
    pending_result = await session.execute(
        select(MatchScore).where(
            and_(
                MatchScore.match_id.in_(match_ids),
                MatchScore.status == ScoreStatus.PENDING.value,
            )
        )
    )
    pending_by_match = {score.match_id: score for score in pending_result.scalars().all()}
    names = await _profile_names(session, [pid for match in matches for pid in match.player_ids])
    return [format_match(instance, match, names, pending_by_match.get(match.id)) for match in matches]


def _player(names: Dict[int, str], player_id: int) -> Dict:
    return {"id": player_id, "name": names.get(player_id)}


def format_match(
    instance: LeagueNightInstance,
    match: Match,
    names: Optional[Dict[int, str]] = None,
    pending: Optional[MatchScore] = None,
) -> Dict:
    """Serialize a match for API responses."""
    names = names or {}
    return {
        "id": match.id,
        "instance_id": match.instance_id,
        "court_number": match.court_number,
        "court_label": court_label(instance, match.court_number),
        "status": match.status,
        "partnership1_id": match.partnership1_id,
        "partnership2_id": match.partnership2_id,
        "team1": [_player(names, pid) for pid in match.team1_player_ids],
        "team2": [_player(names, pid) for pid in match.team2_player_ids],
        "team1_score": match.team1_score,
        "team2_score": match.team2_score,
        "winner": match.winner,
        "pending_score": (
            {
                "id": pending.id,
                "team1_score": pending.team1_score,
                "team2_score": pending.team2_score,
                "submitted_by_team": pending.submitted_by_team,
                "submitted_by_user_id": pending.submitted_by_user_id,
            }
            if pending
            else None
        ),
        "created_at": match.created_at.isoformat() if match.created_at else None,
        "started_at": match.started_at.isoformat() if match.started_at else None,
        "completed_at": match.completed_at.isoformat() if match.completed_at else None,
    }
