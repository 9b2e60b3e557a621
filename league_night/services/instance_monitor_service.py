"""
Instance monitor: background worker for time-driven league night upkeep.

Polls every minute. Scheduled nights whose start time has passed are moved
to in_progress (which also triggers match auto-assignment), and realtime
subscribers that went silent are dropped from the channel registry.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, and_

from league_night.database import db
from league_night.database.models import LeagueNightInstance, InstanceStatus
from league_night.services import lifecycle_service
from league_night.services.realtime_manager import get_channel_registry
from league_night.utils.constants import MONITOR_POLL_INTERVAL_SECONDS
from league_night.utils.datetime_utils import utcnow, league_today

logger = logging.getLogger(__name__)


class InstanceMonitorService:
    """Background service that auto-starts nights and prunes stale subscribers."""

    def __init__(self, session_factory=None):
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._session_factory = session_factory

    def start(self) -> None:
        """Start the background monitor worker."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info("Instance monitor worker started")

    def stop(self) -> None:
        """Stop the background monitor worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Instance monitor worker stopped")

    async def _poll_loop(self) -> None:
        """Main loop: run one pass, then sleep. Repeats until stopped."""
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in instance monitor worker: {e}", exc_info=True)

            # Wait for poll interval or until stop is signalled
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=MONITOR_POLL_INTERVAL_SECONDS
                )
                break
            except asyncio.TimeoutError:
                pass

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """
        Run a single monitor pass.

        Args:
            now: Optional current time

        Returns:
            Number of nights auto-started
        """
        started = await self._auto_start_due_instances(now or utcnow())
        removed = await get_channel_registry().cleanup_stale_subscribers()
        if removed:
            logger.info(f"Removed {removed} stale realtime subscriber(s)")
        return started

    async def _auto_start_due_instances(self, now: datetime) -> int:
        factory = self._session_factory or db.AsyncSessionLocal
        today = league_today(now)
        started = 0
        async with factory() as session:
            result = await session.execute(
                select(LeagueNightInstance).where(
                    and_(
                        LeagueNightInstance.status == InstanceStatus.SCHEDULED.value,
                        LeagueNightInstance.date == today,
                    )
                )
            )
            candidates = result.scalars().all()

            for instance in candidates:
                try:
                    await lifecycle_service.maybe_auto_start(session, instance, now=now)
                    if instance.status == InstanceStatus.IN_PROGRESS.value:
                        started += 1
                except Exception as e:
                    logger.error(f"Error auto-starting league night {instance.id}: {e}", exc_info=True)
                    await session.rollback()
        return started


# Global singleton
_monitor_service = InstanceMonitorService()


def get_instance_monitor_service() -> InstanceMonitorService:
    """Get the global instance monitor service."""
    return _monitor_service
