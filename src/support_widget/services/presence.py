"""APScheduler-based "last seen" pings for open chat screens."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from support_widget.config import PresenceConfig
from support_widget.core.types import SenderType
from support_widget.log import get_logger

if TYPE_CHECKING:
    from support_widget.sync.chat import ChatSynchronizer

logger = get_logger(__name__)


class PresenceService:
    """Runs ``mark_seen`` every few seconds for each watched (side, conversation)."""

    def __init__(self, config: PresenceConfig, sync: ChatSynchronizer):
        self._config = config
        self._sync = sync
        self._scheduler = AsyncIOScheduler(timezone=config.timezone)
        self._active = False

    async def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
        self._active = True
        logger.info("presence_started", interval=self._config.seen_interval_seconds)

    async def stop(self) -> None:
        self._active = False
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            # AsyncIOScheduler defers the shutdown onto the loop.
            await asyncio.sleep(0)
        logger.info("presence_stopped")

    async def health_check(self) -> bool:
        return self._active and self._scheduler.running

    @staticmethod
    def job_id(side: str | SenderType, conversation_id: str) -> str:
        return f"seen:{SenderType(side)}:{conversation_id}"

    def watch(self, side: str | SenderType, conversation_id: str) -> str:
        """Ping now and then on every interval until :meth:`unwatch`."""
        job_id = self.job_id(side, conversation_id)
        self._scheduler.add_job(
            self.ping,
            IntervalTrigger(seconds=self._config.seen_interval_seconds),
            id=job_id,
            kwargs={"side": str(SenderType(side)), "conversation_id": conversation_id},
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc),
            coalesce=True,
            max_instances=1,
        )
        logger.debug("presence_watch", job_id=job_id)
        return job_id

    def unwatch(self, job_id: str) -> bool:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.debug("presence_unwatch", job_id=job_id)
        return True

    async def ping(self, side: str, conversation_id: str) -> bool:
        result = await self._sync.mark_seen(side, conversation_id)
        return bool(result.ok and result.value)

    def list_jobs(self) -> list[dict[str, Any]]:
        return [
            {
                "id": job.id,
                "next_run_time": str(job.next_run_time) if job.next_run_time else None,
                "trigger": str(job.trigger),
            }
            for job in self._scheduler.get_jobs()
        ]
