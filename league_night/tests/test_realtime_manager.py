"""
Unit tests for the realtime channel registry.
Tests subscription bookkeeping, event fan-out and stale subscriber cleanup.
"""

import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from league_night.services import realtime_manager
from league_night.services.realtime_manager import (
    ChannelRegistry,
    ConnectionStatus,
    EventKind,
    build_event,
    channel_name,
)
from league_night.utils.background_tasks import wait_for_background_tasks
from league_night.utils.constants import REALTIME_TIMEOUT_SECONDS
from league_night.utils.datetime_utils import utcnow


@pytest_asyncio.fixture
async def registry():
    """Create a fresh channel registry for each test."""
    return ChannelRegistry()


def _mock_websocket():
    ws = AsyncMock()
    ws.send_text = AsyncMock()
    ws.close = AsyncMock()
    return ws


def test_channel_name_is_deterministic():
    assert channel_name(7) == "league-night-7"
    assert channel_name(7) == channel_name(7)


def test_build_event():
    event = build_event(7, EventKind.MATCHES_CHANGED)
    assert event["type"] == "league_night_event"
    assert event["event"] == "matches_changed"
    assert event["instance_id"] == 7
    assert "sent_at" in event


@pytest.mark.asyncio
async def test_subscribe_and_unsubscribe(registry):
    ws = _mock_websocket()

    subscriber = await registry.subscribe(7, ws, user_id=1)
    assert subscriber.status == ConnectionStatus.CONNECTED
    assert await registry.get_subscriber_count(7) == 1

    await registry.unsubscribe(subscriber)
    assert subscriber.status == ConnectionStatus.DISCONNECTED
    assert await registry.get_subscriber_count(7) == 0
    # The channel entry goes away with its last subscriber
    assert channel_name(7) not in registry.channels


@pytest.mark.asyncio
async def test_unsubscribe_with_error_status(registry):
    subscriber = await registry.subscribe(7, _mock_websocket(), user_id=1)

    await registry.unsubscribe(subscriber, ConnectionStatus.ERROR)
    assert subscriber.status == ConnectionStatus.ERROR


@pytest.mark.asyncio
async def test_publish_reaches_only_that_channel(registry):
    ws_a, ws_b, ws_other = _mock_websocket(), _mock_websocket(), _mock_websocket()
    await registry.subscribe(7, ws_a, user_id=1)
    await registry.subscribe(7, ws_b, user_id=2)
    await registry.subscribe(8, ws_other, user_id=3)

    delivered = await registry.publish(7, EventKind.CHECKINS_CHANGED)

    assert delivered == 2
    for ws in (ws_a, ws_b):
        ws.send_text.assert_awaited_once()
        message = json.loads(ws.send_text.call_args[0][0])
        assert message["event"] == "checkins_changed"
        assert message["instance_id"] == 7
    ws_other.send_text.assert_not_awaited()


@pytest.mark.asyncio
async def test_publish_without_subscribers(registry):
    assert await registry.publish(99, EventKind.MATCHES_CHANGED) == 0


@pytest.mark.asyncio
async def test_failed_send_drops_only_that_subscriber(registry):
    healthy = _mock_websocket()
    broken = _mock_websocket()
    broken.send_text.side_effect = RuntimeError("connection reset")

    await registry.subscribe(7, healthy, user_id=1)
    broken_subscriber = await registry.subscribe(7, broken, user_id=2)

    delivered = await registry.publish(7, EventKind.MATCHES_CHANGED)

    assert delivered == 1
    assert broken_subscriber.status == ConnectionStatus.ERROR
    assert await registry.get_subscriber_count(7) == 1

    # Later events still reach the healthy subscriber
    assert await registry.publish(7, EventKind.MATCHES_CHANGED) == 1
    assert healthy.send_text.await_count == 2


@pytest.mark.asyncio
async def test_touch_updates_last_activity(registry):
    subscriber = await registry.subscribe(7, _mock_websocket(), user_id=1)
    subscriber.last_activity = utcnow() - timedelta(minutes=5)

    await registry.touch(subscriber)
    assert subscriber.last_activity > utcnow() - timedelta(seconds=5)


@pytest.mark.asyncio
async def test_cleanup_stale_subscribers(registry):
    stale_ws, fresh_ws = _mock_websocket(), _mock_websocket()
    stale = await registry.subscribe(7, stale_ws, user_id=1)
    await registry.subscribe(7, fresh_ws, user_id=2)
    stale.last_activity = utcnow() - timedelta(seconds=REALTIME_TIMEOUT_SECONDS + 10)

    removed = await registry.cleanup_stale_subscribers()

    assert removed == 1
    assert stale.status == ConnectionStatus.DISCONNECTED
    stale_ws.close.assert_awaited_once()
    fresh_ws.close.assert_not_awaited()
    assert await registry.get_subscriber_count(7) == 1


@pytest.mark.asyncio
async def test_emit_publishes_in_background(fresh_channel_registry):
    ws = _mock_websocket()
    await fresh_channel_registry.subscribe(7, ws, user_id=1)

    realtime_manager.emit(7, EventKind.PARTNERSHIP_REQUESTS_CHANGED, EventKind.CONFIRMED_PARTNERSHIPS_CHANGED)
    await wait_for_background_tasks()

    events = sorted(json.loads(call.args[0])["event"] for call in ws.send_text.call_args_list)
    assert events == ["confirmed_partnerships_changed", "partnership_requests_changed"]


@pytest.mark.asyncio
async def test_service_mutation_emits_event(db_session, league, make_instance, fresh_channel_registry):
    from league_night.services import checkin_service

    instance = await make_instance()
    ws = _mock_websocket()
    await fresh_channel_registry.subscribe(instance.id, ws, user_id=league["players"][0])

    await checkin_service.check_in(db_session, instance.id, league["players"][0])
    await wait_for_background_tasks()

    message = json.loads(ws.send_text.call_args[0][0])
    assert message["event"] == EventKind.CHECKINS_CHANGED.value
    assert message["instance_id"] == instance.id
