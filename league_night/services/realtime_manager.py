"""
Realtime channel registry for league night change events.

Each league night instance has one broadcast channel ("league-night-{id}").
Clients subscribe over a WebSocket and receive small "something of this kind
changed" signals; they re-fetch authoritative state on every signal.
"""

import asyncio
import enum
import json
import logging
from datetime import datetime, timedelta
from typing import Dict, Set, Optional, List
from fastapi import WebSocket

from league_night.utils.background_tasks import spawn
from league_night.utils.constants import REALTIME_CHANNEL_PREFIX, REALTIME_TIMEOUT_SECONDS
from league_night.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    """Closed set of change events published on an instance channel."""

    CHECKINS_CHANGED = "checkins_changed"
    PARTNERSHIP_REQUESTS_CHANGED = "partnership_requests_changed"
    CONFIRMED_PARTNERSHIPS_CHANGED = "confirmed_partnerships_changed"
    MATCHES_CHANGED = "matches_changed"
    INSTANCE_STATUS_CHANGED = "instance_status_changed"


class ConnectionStatus(str, enum.Enum):
    """Subscriber connection state: connecting -> connected -> error | disconnected."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    DISCONNECTED = "disconnected"


def channel_name(instance_id: int) -> str:
    """Deterministic channel name for an instance."""
    return f"{REALTIME_CHANNEL_PREFIX}-{instance_id}"


def build_event(instance_id: int, kind: EventKind) -> dict:
    """Build the wire payload for a change event."""
    return {
        "type": "league_night_event",
        "event": EventKind(kind).value,
        "instance_id": instance_id,
        "sent_at": utcnow().isoformat(),
    }


class Subscriber:
    """One live connection listening on an instance channel."""

    def __init__(self, instance_id: int, websocket: WebSocket, user_id: Optional[int] = None):
        self.instance_id = instance_id
        self.websocket = websocket
        self.user_id = user_id
        self.status = ConnectionStatus.CONNECTING
        self.last_activity: datetime = utcnow()

    @property
    def channel(self) -> str:
        return channel_name(self.instance_id)

    def __repr__(self):
        return f"<Subscriber channel={self.channel} user={self.user_id} status={self.status.value}>"


class ChannelRegistry:
    """Maps channel names to their active subscribers."""

    def __init__(self):
        """Initialize an empty registry."""
        # Dictionary mapping channel name to set of active subscribers
        self.channels: Dict[str, Set[Subscriber]] = {}
        # Lock for safe access to the channels dict
        self._lock = asyncio.Lock()

    async def subscribe(
        self, instance_id: int, websocket: WebSocket, user_id: Optional[int] = None
    ) -> Subscriber:
        """
        Register a connection on an instance channel.

        The channel entry is created on its first subscriber.

        Args:
            instance_id: League night instance ID
            websocket: Accepted WebSocket connection
            user_id: Authenticated user, if known

        Returns:
            The registered subscriber, in CONNECTED state
        """
        subscriber = Subscriber(instance_id, websocket, user_id)
        async with self._lock:
            self.channels.setdefault(subscriber.channel, set()).add(subscriber)
            subscriber.status = ConnectionStatus.CONNECTED
            count = len(self.channels[subscriber.channel])
        logger.info(f"Subscribed user {user_id} to {subscriber.channel} (total subscribers: {count})")
        return subscriber

    async def unsubscribe(
        self, subscriber: Subscriber, status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    ) -> None:
        """
        Remove a subscriber; drops the channel entry when it was the last one.

        Args:
            subscriber: Subscriber to remove
            status: Terminal status to record (DISCONNECTED or ERROR)
        """
        async with self._lock:
            self._discard(subscriber)
        subscriber.status = status
        logger.info(f"Unsubscribed user {subscriber.user_id} from {subscriber.channel} ({status.value})")

    def _discard(self, subscriber: Subscriber) -> None:
        """Remove a subscriber from its channel. Caller holds the lock."""
        subscribers = self.channels.get(subscriber.channel)
        if subscribers is None:
            return
        subscribers.discard(subscriber)
        if not subscribers:
            del self.channels[subscriber.channel]

    async def publish(self, instance_id: int, kind: EventKind) -> int:
        """
        Send a change event to every subscriber of an instance channel.

        A failed send marks only that subscriber as errored and removes it.

        Args:
            instance_id: League night instance ID
            kind: Event kind

        Returns:
            Number of subscribers the event was delivered to
        """
        name = channel_name(instance_id)
        async with self._lock:
            subscribers = list(self.channels.get(name, ()))
        if not subscribers:
            return 0

        message_json = json.dumps(build_event(instance_id, kind))
        results = await asyncio.gather(
            *(subscriber.websocket.send_text(message_json) for subscriber in subscribers),
            return_exceptions=True,
        )

        delivered = 0
        failed: List[Subscriber] = []
        for subscriber, result in zip(subscribers, results):
            if isinstance(result, BaseException):
                logger.warning(f"Error sending {kind} to user {subscriber.user_id} on {name}: {result}")
                failed.append(subscriber)
            else:
                delivered += 1

        if failed:
            async with self._lock:
                for subscriber in failed:
                    self._discard(subscriber)
                    subscriber.status = ConnectionStatus.ERROR

        logger.debug(f"Published {EventKind(kind).value} on {name} to {delivered} subscriber(s)")
        return delivered

    def publish_nowait(self, instance_id: int, *kinds: EventKind) -> None:
        """Schedule events for delivery without waiting on subscribers."""
        for kind in kinds:
            spawn(self.publish(instance_id, kind), name=f"publish-{channel_name(instance_id)}-{kind}")

    async def touch(self, subscriber: Subscriber) -> None:
        """
        Update the last activity timestamp for a subscriber.
        Called when receiving a ping or other message from the client.
        """
        async with self._lock:
            subscriber.last_activity = utcnow()

    async def get_subscriber_count(self, instance_id: int) -> int:
        """Number of live subscribers on an instance channel."""
        async with self._lock:
            return len(self.channels.get(channel_name(instance_id), ()))

    async def cleanup_stale_subscribers(self) -> int:
        """
        Drop subscribers with no activity within REALTIME_TIMEOUT_SECONDS.

        This is called periodically by the instance monitor.

        Returns:
            Number of subscribers removed
        """
        timeout_threshold = utcnow() - timedelta(seconds=REALTIME_TIMEOUT_SECONDS)
        async with self._lock:
            stale = [
                subscriber
                for subscribers in self.channels.values()
                for subscriber in subscribers
                if subscriber.last_activity < timeout_threshold
            ]
            for subscriber in stale:
                self._discard(subscriber)
                subscriber.status = ConnectionStatus.DISCONNECTED

        for subscriber in stale:
            try:
                await subscriber.websocket.close()
            except Exception as e:
                logger.warning(f"Error closing stale subscriber on {subscriber.channel}: {e}")
            logger.info(f"Cleaned up stale subscriber for user {subscriber.user_id} on {subscriber.channel}")
        return len(stale)


# Global channel registry instance
_channel_registry: Optional[ChannelRegistry] = None


def get_channel_registry() -> ChannelRegistry:
    """
    Get the global channel registry instance.

    Returns:
        ChannelRegistry instance
    """
    global _channel_registry
    if _channel_registry is None:
        _channel_registry = ChannelRegistry()
    return _channel_registry


def emit(instance_id: int, *kinds: EventKind) -> None:
    """Publish events on an instance channel in the background. Call after commit."""
    get_channel_registry().publish_nowait(instance_id, *kinds)
