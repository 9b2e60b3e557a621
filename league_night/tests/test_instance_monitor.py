"""
Tests for the instance monitor background worker.
"""

import asyncio
import contextlib
from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytz

from league_night.database.models import InstanceStatus, LeagueNightInstance
from league_night.services.instance_monitor_service import InstanceMonitorService
from league_night.utils.constants import REALTIME_TIMEOUT_SECONDS
from league_night.utils.datetime_utils import utcnow

TUESDAY = date(2026, 10, 20)


def _at(hour, minute=0, day=TUESDAY):
    return pytz.UTC.localize(datetime(day.year, day.month, day.day, hour, minute))


async def _status_of(session_factory, instance_id):
    async with session_factory() as session:
        return (await session.get(LeagueNightInstance, instance_id)).status


@pytest.mark.asyncio
async def test_run_once_starts_due_nights_only(session_factory, make_instance):
    tonight = await make_instance(night_date=TUESDAY)
    tomorrow = await make_instance(night_date=TUESDAY + timedelta(days=1))
    monitor = InstanceMonitorService(session_factory=session_factory)

    assert await monitor.run_once(now=_at(17, 59)) == 0
    assert await _status_of(session_factory, tonight.id) == InstanceStatus.SCHEDULED.value

    assert await monitor.run_once(now=_at(18, 30)) == 1
    assert await _status_of(session_factory, tonight.id) == InstanceStatus.IN_PROGRESS.value
    assert await _status_of(session_factory, tomorrow.id) == InstanceStatus.SCHEDULED.value

    # Nothing left to start on the next pass
    assert await monitor.run_once(now=_at(18, 31)) == 0


@pytest.mark.asyncio
async def test_run_once_skips_past_and_completed_nights(session_factory, make_instance):
    yesterday = await make_instance(night_date=TUESDAY - timedelta(days=1))
    ended = await make_instance(night_date=TUESDAY, status=InstanceStatus.COMPLETED.value)
    monitor = InstanceMonitorService(session_factory=session_factory)

    assert await monitor.run_once(now=_at(21)) == 0
    assert await _status_of(session_factory, yesterday.id) == InstanceStatus.SCHEDULED.value
    assert await _status_of(session_factory, ended.id) == InstanceStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_run_once_prunes_stale_subscribers(session_factory, fresh_channel_registry):
    websocket = AsyncMock()
    subscriber = await fresh_channel_registry.subscribe(3, websocket, user_id=1)
    subscriber.last_activity = utcnow() - timedelta(seconds=REALTIME_TIMEOUT_SECONDS * 2)
    monitor = InstanceMonitorService(session_factory=session_factory)

    await monitor.run_once()

    assert await fresh_channel_registry.get_subscriber_count(3) == 0
    websocket.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_start_and_stop(session_factory):
    monitor = InstanceMonitorService(session_factory=session_factory)

    monitor.start()
    assert monitor._worker_task is not None
    monitor.stop()
    with contextlib.suppress(asyncio.CancelledError):
        await monitor._worker_task
    assert monitor._worker_task.done()
