# src/healguard/infrastructure/monitoring/system_monitor.py
"""
System Monitor - samples the engine host and feeds it back as component telemetry.

The engine watches itself like any other component: each tick becomes one HealthSample
for `engine/healguard` with cpu / memory / disk usage as custom metrics and the
database round-trip as latency.
"""

import asyncio
import logging
import time
from typing import Dict, Any, Optional

import psutil
from sqlalchemy import text

from healguard.config import settings
from healguard.domain.entities import HealthSample, utcnow
from healguard.infrastructure.db.uow import session_scope

log = logging.getLogger(__name__)

ENGINE_COMPONENT = ("engine", "healguard")


class SystemMonitor:
    def __init__(self, health_service=None, check_interval: Optional[int] = None, session_factory=None):
        self.health_service = health_service
        self.check_interval = check_interval or settings.SCHEDULER_INTERVAL_SECONDS
        self.session_factory = session_factory
        self._task = None
        self._is_running = False

    def check_system_health(self) -> Dict[str, Any]:
        memory = psutil.virtual_memory()
        # non-blocking: percentage since the previous call
        cpu_percent = psutil.cpu_percent(interval=None)
        disk = psutil.disk_usage('/')
        health_info = {
            'cpu_usage': float(cpu_percent),
            'memory_usage': float(memory.percent),
            'disk_usage': float(disk.percent),
        }
        warnings = []
        if memory.percent > settings.MEMORY_EXHAUSTION_PCT:
            warnings.append(f"High memory usage: {memory.percent}%")
        if cpu_percent > settings.CPU_EXHAUSTION_PCT:
            warnings.append(f"High CPU usage: {cpu_percent}%")
        if disk.percent > 90:
            warnings.append(f"High disk usage: {disk.percent}%")
        health_info['warnings'] = warnings
        return health_info

    async def sample_once(self) -> Dict[str, Any]:
        health = self.check_system_health()
        if health['warnings']:
            log.warning(f"System warnings: {health['warnings']}")

        with session_scope(self.session_factory) as session:
            started = time.monotonic()
            success = True
            try:
                session.execute(text("SELECT 1"))
            except Exception as e:
                log.error(f"Database ping failed: {e}")
                success = False
            latency_ms = (time.monotonic() - started) * 1000.0

            sample = HealthSample(
                component_type=ENGINE_COMPONENT[0],
                component_name=ENGINE_COMPONENT[1],
                timestamp=utcnow(),
                latency_ms=latency_ms,
                success=success,
                metrics={k: v for k, v in health.items() if k != 'warnings'},
            )
            if self.health_service is not None:
                await self.health_service.ingest(session, settings.SYSTEM_OWNER_ID, [sample])
        return health

    async def _monitor_loop(self):
        while self._is_running:
            try:
                await self.sample_once()
            except Exception as e:
                log.error(f"Monitor loop error: {e}", exc_info=True)
            await asyncio.sleep(self.check_interval)

    def start(self):
        if self._is_running:
            return
        self._is_running = True
        self._task = asyncio.create_task(self._monitor_loop())
        log.info("System monitor started")

    def stop(self):
        self._is_running = False
        if self._task:
            self._task.cancel()
        log.info("System monitor stopped")
