"""Periodic retention sweep over export artifacts and idle chat sessions."""

from __future__ import annotations

from datetime import timedelta
from typing import Iterable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from datachat.core.session import SessionStore
from datachat.log import get_logger
from datachat.services.base import Service
from datachat.services.export import ExportSink

logger = get_logger(__name__)

SWEEP_JOB_ID = "retention_sweep"


class RetentionSweeper(Service):
    """Runs :meth:`sweep` on an APScheduler interval job."""

    critical = True

    def __init__(
        self,
        sink: ExportSink,
        session_stores: Iterable[SessionStore] = (),
        interval_minutes: int = 5,
        session_idle_minutes: int = 0,
    ):
        self._sink = sink
        self._stores = list(session_stores)
        self._interval = interval_minutes
        self._session_idle = timedelta(minutes=session_idle_minutes) if session_idle_minutes > 0 else None
        self._scheduler = AsyncIOScheduler()

    @property
    def service_name(self) -> str:
        return "sweeper"

    async def start(self) -> None:
        self._scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(minutes=self._interval),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("sweeper_started", interval_minutes=self._interval, session_expiry=bool(self._session_idle))

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("sweeper_stopped")

    async def health_check(self) -> bool:
        return self._scheduler.running

    async def sweep(self) -> dict[str, int]:
        """Drop expired exports and, when enabled, idle sessions."""
        exports = self._sink.sweep()
        sessions = 0
        if self._session_idle is not None:
            sessions = sum(store.sweep_idle(self._session_idle) for store in self._stores)
        logger.debug("sweep_completed", exports=exports, sessions=sessions)
        return {"exports": exports, "sessions": sessions}
