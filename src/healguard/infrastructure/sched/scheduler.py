# File: src/healguard/infrastructure/sched/scheduler.py
"""
MaintenanceScheduler - periodic jobs that keep the engine moving without API traffic.

Each job opens its own unit of work and is isolated from the others: a failing job is
logged and retried on the next tick.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Dict, Any, Optional, Callable, Awaitable, List

from healguard.config import settings
from healguard.domain.entities import utcnow
from healguard.infrastructure.db.repository import HealthRepository
from healguard.infrastructure.db.uow import session_scope

log = logging.getLogger(__name__)

AUTO_ADJUST_EVERY = timedelta(hours=1)


class MaintenanceScheduler:
    def __init__(self, services: Dict[str, Any], interval_seconds: Optional[int] = None, session_factory=None):
        self.services = services
        self.interval = interval_seconds or settings.SCHEDULER_INTERVAL_SECONDS
        self.session_factory = session_factory
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._last_auto_adjust = None

    # --- jobs (also exposed through /jobs/*) ---
    async def close_windows(self) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            report = await self.services["health_service"].close_due_windows(session)
            return {"windows_closed": len(report.windows), "windows_skipped": report.skipped,
                    "windows_failed": report.failed}

    async def run_retries(self) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            ran = await self.services["recovery_service"].run_due_retries(session)
            return {"retries_run": len(ran)}

    async def run_due_recommendations(self) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            ran = await self.services["recommendation_service"].run_due(session)
            return {"recommendations_run": ran}

    async def anomaly_sweep(self, auto_analyze: bool = True) -> Dict[str, Any]:
        since = utcnow() - timedelta(minutes=settings.ANOMALY_LOOKBACK_MINUTES)
        swept: List[str] = []
        with session_scope(self.session_factory) as session:
            owners = HealthRepository(session).owners_with_windows_since(since)
        for owner_id in owners:
            try:
                with session_scope(self.session_factory) as session:
                    await self.services["anomaly_service"].detect(
                        session, owner_id, settings.ANOMALY_LOOKBACK_MINUTES, auto_analyze=auto_analyze
                    )
                swept.append(owner_id)
            except Exception as e:
                log.error(f"Anomaly sweep failed for owner {owner_id}: {e}", exc_info=True)
        return {"owners_swept": len(swept)}

    async def auto_adjust(self) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            adjusted = await self.services["threshold_service"].auto_adjust(session)
            self._last_auto_adjust = utcnow()
            return {"thresholds_adjusted": len(adjusted)}

    # --- loop ---
    async def tick(self) -> None:
        jobs: List[Callable[[], Awaitable[Dict[str, Any]]]] = [
            self.close_windows,
            self.run_retries,
            self.run_due_recommendations,
            self.anomaly_sweep,
        ]
        if self._last_auto_adjust is None or utcnow() - self._last_auto_adjust >= AUTO_ADJUST_EVERY:
            jobs.append(self.auto_adjust)
        for job in jobs:
            try:
                result = await job()
                log.debug(f"Scheduled job {job.__name__}: {result}")
            except Exception as e:
                log.error(f"Scheduled job {job.__name__} failed: {e}", exc_info=True)

    async def _run(self):
        while self._running:
            await self.tick()
            await asyncio.sleep(self.interval)

    def start(self, loop=None):
        if self._running:
            return
        self._running = True
        if loop:
            self._task = loop.create_task(self._run())
        else:
            self._task = asyncio.create_task(self._run())
        log.info(f"MaintenanceScheduler started (every {self.interval}s).")

    def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
        log.info("MaintenanceScheduler stopped.")
