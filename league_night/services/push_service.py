"""
Push notification service for league night events.

Delivers fixed notification templates to every active device of a user.
Deliveries run concurrently with a per-device timeout; an endpoint the push
service reports as gone (404/410) is deactivated, anything else is counted
as a failure and the subscription stays active for the next event.
"""

import asyncio
import json
import logging
import os
from typing import Dict, List, Optional, Iterable

from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from league_night.database import db
from league_night.database.models import PushSubscription
from league_night.services.exceptions import (
    InvalidArgumentError,
    PushEndpointGoneError,
    TransportFailure,
)
from league_night.utils.background_tasks import spawn
from league_night.utils.constants import PUSH_DELIVERY_TIMEOUT_SECONDS, PUSH_TTL_SECONDS
from league_night.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

NOTIFICATION_ICON = "/icon-192.png"


class DeliveryResult:
    """Delivered/failed counts for one dispatch."""

    def __init__(self, delivered: int = 0, failed: int = 0):
        self.delivered = delivered
        self.failed = failed

    def __add__(self, other: "DeliveryResult") -> "DeliveryResult":
        return DeliveryResult(self.delivered + other.delivered, self.failed + other.failed)

    def __eq__(self, other):
        if not isinstance(other, DeliveryResult):
            return NotImplemented
        return (self.delivered, self.failed) == (other.delivered, other.failed)

    def __repr__(self):
        return f"DeliveryResult(delivered={self.delivered}, failed={self.failed})"

    def to_dict(self) -> Dict:
        return {"delivered": self.delivered, "failed": self.failed}


class PushTransport:
    """
    Delivery backend interface.

    send() must raise PushEndpointGoneError when the endpoint is permanently
    gone and any other exception for transient failures.
    """

    async def send(self, subscription_info: Dict, payload: str, ttl: int) -> None:
        raise NotImplementedError


class WebPushTransport(PushTransport):
    """Web Push (RFC 8030) delivery through pywebpush with VAPID credentials."""

    def __init__(
        self,
        vapid_private_key: Optional[str] = None,
        vapid_subject: Optional[str] = None,
    ):
        self.vapid_private_key = vapid_private_key or os.getenv("VAPID_PRIVATE_KEY")
        self.vapid_subject = vapid_subject or os.getenv("VAPID_SUBJECT", "mailto:admin@example.com")

    async def send(self, subscription_info: Dict, payload: str, ttl: int) -> None:
        if not self.vapid_private_key:
            raise TransportFailure("VAPID_PRIVATE_KEY is not configured")
        await asyncio.to_thread(self._send_sync, subscription_info, payload, ttl)

    def _send_sync(self, subscription_info: Dict, payload: str, ttl: int) -> None:
        from pywebpush import webpush, WebPushException

        try:
            webpush(
                subscription_info=subscription_info,
                data=payload,
                vapid_private_key=self.vapid_private_key,
                vapid_claims={"sub": self.vapid_subject},
                ttl=ttl,
                timeout=PUSH_DELIVERY_TIMEOUT_SECONDS,
            )
        except WebPushException as e:
            status_code = getattr(e.response, "status_code", None)
            if status_code in (404, 410):
                raise PushEndpointGoneError(subscription_info["endpoint"], status_code) from e
            raise TransportFailure(f"Web push failed ({status_code}): {e}") from e


class PushDispatcher:
    """Sends notifications to all active push subscriptions of users."""

    def __init__(self, transport: Optional[PushTransport] = None, session_factory=None):
        self.transport = transport or WebPushTransport()
        self._session_factory = session_factory

    def _new_session(self) -> AsyncSession:
        factory = self._session_factory or db.AsyncSessionLocal
        return factory()

    async def _deliver(self, subscription_info: Dict, payload: str) -> None:
        await asyncio.wait_for(
            self.transport.send(subscription_info, payload, PUSH_TTL_SECONDS),
            timeout=PUSH_DELIVERY_TIMEOUT_SECONDS,
        )

    async def send_to_user(self, user_id: int, notification: Dict) -> DeliveryResult:
        """
        Send a notification to every active device of a user.

        Args:
            user_id: Recipient user ID
            notification: Notification payload (serialized to JSON)

        Returns:
            DeliveryResult with delivered/failed counts
        """
        async with self._new_session() as session:
            result = await session.execute(
                select(PushSubscription).where(
                    and_(
                        PushSubscription.user_id == user_id,
                        PushSubscription.is_active == True,  # noqa: E712
                    )
                )
            )
            subscriptions = [
                (
                    sub.id,
                    {
                        "endpoint": sub.endpoint,
                        "keys": {"p256dh": sub.p256dh_key, "auth": sub.auth_key},
                    },
                )
                for sub in result.scalars().all()
            ]

        if not subscriptions:
            logger.debug(f"No active push subscriptions for user {user_id}")
            return DeliveryResult()

        payload = json.dumps(notification)
        outcomes = await asyncio.gather(
            *(self._deliver(info, payload) for _, info in subscriptions),
            return_exceptions=True,
        )

        delivered_ids: List[int] = []
        gone_ids: List[int] = []
        failed = 0
        for (subscription_id, _), outcome in zip(subscriptions, outcomes):
            if outcome is None:
                delivered_ids.append(subscription_id)
            elif isinstance(outcome, PushEndpointGoneError):
                failed += 1
                gone_ids.append(subscription_id)
                logger.info(f"Deactivating push subscription {subscription_id} ({outcome.status_code})")
            elif isinstance(outcome, asyncio.TimeoutError):
                failed += 1
                logger.warning(f"Push delivery to subscription {subscription_id} timed out")
            else:
                failed += 1
                logger.warning(f"Push delivery to subscription {subscription_id} failed: {outcome}")

        if delivered_ids or gone_ids:
            now = utcnow()
            async with self._new_session() as session:
                if delivered_ids:
                    await session.execute(
                        update(PushSubscription)
                        .where(PushSubscription.id.in_(delivered_ids))
                        .values(last_used_at=now)
                    )
                if gone_ids:
                    await session.execute(
                        update(PushSubscription)
                        .where(PushSubscription.id.in_(gone_ids))
                        .values(is_active=False, deactivated_at=now)
                    )
                await session.commit()

        logger.info(f"Sent notification to user {user_id}: {len(delivered_ids)} delivered, {failed} failed")
        return DeliveryResult(len(delivered_ids), failed)

    async def send_to_users(self, user_ids: Iterable[int], notification: Dict) -> DeliveryResult:
        """Send a notification to several users and sum the per-user results."""
        unique_ids = list(dict.fromkeys(user_ids))
        results = await asyncio.gather(
            *(self.send_to_user(user_id, notification) for user_id in unique_ids),
            return_exceptions=True,
        )
        total = DeliveryResult()
        for user_id, result in zip(unique_ids, results):
            if isinstance(result, BaseException):
                failure = TransportFailure(f"Push dispatch to user {user_id} failed: {result}")
                logger.warning(str(failure), exc_info=result)
                continue
            total = total + result
        return total


# Global dispatcher instance
_push_dispatcher: Optional[PushDispatcher] = None


def get_push_dispatcher() -> PushDispatcher:
    """
    Get the global push dispatcher instance.

    Returns:
        PushDispatcher instance
    """
    global _push_dispatcher
    if _push_dispatcher is None:
        _push_dispatcher = PushDispatcher()
    return _push_dispatcher


# ============================================================================
# Notification templates
# ============================================================================


def night_url(league_id: int, instance_id: int, tab: str) -> str:
    """Deep link into a league night page."""
    return f"/league/{league_id}/night/{instance_id}?tab={tab}"


def _notification(
    title: str, body: str, tag: str, data: Dict, actions: List[Dict]
) -> Dict:
    return {
        "title": title,
        "body": body,
        "icon": NOTIFICATION_ICON,
        "badge": NOTIFICATION_ICON,
        "tag": tag,
        "requireInteraction": True,
        "data": data,
        "actions": actions,
    }


def build_match_assigned(
    match_id: int, league_id: int, instance_id: int, court_number: int, opponent_names: str
) -> Dict:
    """Notification for the four players of a newly created match."""
    return _notification(
        title="Match Ready!",
        body=f"Court {court_number} vs {opponent_names}",
        tag=f"match-{match_id}",
        data={
            "type": "match-assigned",
            "match_id": match_id,
            "league_id": league_id,
            "instance_id": instance_id,
            "url": night_url(league_id, instance_id, "matches"),
        },
        actions=[
            {"action": "view", "title": "View Match"},
            {"action": "acknowledge", "title": "Got it!"},
        ],
    )


def build_score_pending(
    match_id: int,
    league_id: int,
    instance_id: int,
    submitter_names: str,
    team1_score: int,
    team2_score: int,
) -> Dict:
    """Notification asking the opposing team to confirm or dispute a submitted score."""
    return _notification(
        title="Score Submitted",
        body=f"{submitter_names} submitted {team1_score}-{team2_score}. Confirm?",
        tag=f"score-{match_id}",
        data={
            "type": "score-pending",
            "match_id": match_id,
            "league_id": league_id,
            "instance_id": instance_id,
            "url": night_url(league_id, instance_id, "matches"),
        },
        actions=[
            {"action": "confirm-score", "title": "Confirm"},
            {"action": "dispute-score", "title": "Dispute"},
        ],
    )


def build_partnership_requested(
    request_id: int, league_id: int, instance_id: int, requester_name: str
) -> Dict:
    """Notification for the player who received a partnership request."""
    return _notification(
        title="Partnership Request",
        body=f"{requester_name} wants to partner with you",
        tag=f"partner-{request_id}",
        data={
            "type": "partnership-request",
            "request_id": request_id,
            "league_id": league_id,
            "instance_id": instance_id,
            "url": night_url(league_id, instance_id, "my-night"),
        },
        actions=[
            {"action": "accept-partner", "title": "Accept"},
            {"action": "reject-partner", "title": "Decline"},
        ],
    )


def build_score_confirmed(
    match_id: int, league_id: int, instance_id: int, team1_score: int, team2_score: int
) -> Dict:
    """Notification telling the submitting team their score was confirmed."""
    return _notification(
        title="Score Confirmed",
        body=f"Final score {team1_score}-{team2_score} is now official",
        tag=f"score-{match_id}",
        data={
            "type": "score-confirmed",
            "match_id": match_id,
            "league_id": league_id,
            "instance_id": instance_id,
            "url": night_url(league_id, instance_id, "matches"),
        },
        actions=[{"action": "view", "title": "View Match"}],
    )


def build_score_disputed(
    match_id: int, league_id: int, instance_id: int, reason: Optional[str] = None
) -> Dict:
    """Notification telling the submitting team their score was disputed."""
    body = "Your opponents disputed the submitted score. Please resubmit."
    if reason:
        body = f"Your opponents disputed the submitted score: {reason}"
    return _notification(
        title="Score Disputed",
        body=body,
        tag=f"score-{match_id}",
        data={
            "type": "score-disputed",
            "match_id": match_id,
            "league_id": league_id,
            "instance_id": instance_id,
            "url": night_url(league_id, instance_id, "matches"),
        },
        actions=[{"action": "view", "title": "Resubmit Score"}],
    )


def build_test_notification() -> Dict:
    """Notification used to verify a device is reachable."""
    return _notification(
        title="Test Notification",
        body="Push notifications are working!",
        tag="test",
        data={"type": "test", "url": "/"},
        actions=[],
    )


def notify_users_nowait(user_ids: Iterable[int], notification: Dict) -> None:
    """
    Dispatch a notification in the background.

    The triggering request never waits on the push provider and a failed
    delivery never affects committed state.
    """
    user_ids = [user_id for user_id in user_ids if user_id is not None]
    if not user_ids:
        return
    dispatcher = get_push_dispatcher()
    spawn(
        dispatcher.send_to_users(user_ids, notification),
        name=f"push-{notification.get('data', {}).get('type', 'notification')}",
    )


# ============================================================================
# Subscription management
# ============================================================================


async def subscribe(
    session: AsyncSession,
    user_id: int,
    endpoint: str,
    p256dh_key: str,
    auth_key: str,
    device_info: Optional[Dict] = None,
    user_agent: Optional[str] = None,
) -> PushSubscription:
    """
    Register a device endpoint for a user.

    An existing row for the same (user, endpoint) is reused and reactivated
    with the latest key material.

    Args:
        session: Database session
        user_id: Owner user ID
        endpoint: Push service endpoint URL
        p256dh_key: Client public key
        auth_key: Client auth secret
        device_info: Optional device description
        user_agent: Optional User-Agent header

    Returns:
        The active PushSubscription

    Raises:
        InvalidArgumentError: If endpoint or keys are missing
    """
    if not endpoint or not p256dh_key or not auth_key:
        raise InvalidArgumentError("Invalid subscription object")

    subscription = await _get_subscription(session, user_id, endpoint)
    if subscription:
        _refresh_subscription(subscription, p256dh_key, auth_key, device_info, user_agent)
        await session.commit()
    else:
        subscription = PushSubscription(
            user_id=user_id,
            endpoint=endpoint,
            p256dh_key=p256dh_key,
            auth_key=auth_key,
            device_info=device_info or {},
            user_agent=user_agent or "",
            is_active=True,
        )
        session.add(subscription)
        try:
            await session.commit()
            logger.info(f"Created push subscription for user {user_id}")
        except IntegrityError:
            # Same device registered concurrently; reuse the row that won
            await session.rollback()
            subscription = await _get_subscription(session, user_id, endpoint)
            if subscription is None:
                raise
            _refresh_subscription(subscription, p256dh_key, auth_key, device_info, user_agent)
            await session.commit()

    await session.refresh(subscription)
    return subscription


async def _get_subscription(
    session: AsyncSession, user_id: int, endpoint: str
) -> Optional[PushSubscription]:
    result = await session.execute(
        select(PushSubscription).where(
            and_(PushSubscription.user_id == user_id, PushSubscription.endpoint == endpoint)
        )
    )
    return result.scalar_one_or_none()


def _refresh_subscription(
    subscription: PushSubscription,
    p256dh_key: str,
    auth_key: str,
    device_info: Optional[Dict],
    user_agent: Optional[str],
) -> None:
    """Apply the latest key material to an existing row and reactivate it."""
    subscription.p256dh_key = p256dh_key
    subscription.auth_key = auth_key
    if device_info is not None:
        subscription.device_info = device_info
    if user_agent:
        subscription.user_agent = user_agent
    if not subscription.is_active:
        subscription.is_active = True
        subscription.deactivated_at = None
        subscription.last_used_at = utcnow()
        logger.info(f"Reactivated push subscription {subscription.id} for user {subscription.user_id}")


async def unsubscribe(session: AsyncSession, user_id: int, endpoint: str) -> int:
    """
    Deactivate a user's subscription for an endpoint.

    Returns:
        Number of subscriptions deactivated
    """
    if not endpoint:
        raise InvalidArgumentError("Endpoint required")

    result = await session.execute(
        update(PushSubscription)
        .where(
            and_(
                PushSubscription.user_id == user_id,
                PushSubscription.endpoint == endpoint,
                PushSubscription.is_active == True,  # noqa: E712
            )
        )
        .values(is_active=False, deactivated_at=utcnow())
    )
    await session.commit()
    return result.rowcount or 0


async def list_active_subscriptions(session: AsyncSession, user_id: int) -> List[PushSubscription]:
    """Get a user's active push subscriptions, newest first."""
    result = await session.execute(
        select(PushSubscription)
        .where(
            and_(
                PushSubscription.user_id == user_id,
                PushSubscription.is_active == True,  # noqa: E712
            )
        )
        .order_by(PushSubscription.id.desc())
    )
    return list(result.scalars().all())


async def send_test(user_id: int) -> DeliveryResult:
    """Send a test notification to all of a user's devices and wait for the result."""
    return await get_push_dispatcher().send_to_user(user_id, build_test_notification())
