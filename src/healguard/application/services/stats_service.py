# src/healguard/application/services/stats_service.py
"""Cached read views for dashboards. Writers invalidate `stats_prefix(owner)` on change."""

import logging
from datetime import timedelta
from typing import Dict, Any, Optional, Callable

from sqlalchemy.orm import Session

from healguard.domain.entities import utcnow
from healguard.domain.errors import ValidationError
from healguard.infrastructure.cache import stats_key
from healguard.infrastructure.db.stats_repository import StatsRepository

log = logging.getLogger(__name__)

MAX_HOURS = 24 * 30


class StatsService:
    def __init__(self, cache: Any = None, repo_class: type = StatsRepository):
        self.cache = cache
        self.repo_class = repo_class

    async def _cached(self, owner_id: str, view: str, hours: int, compute: Callable[[], Any]) -> Dict[str, Any]:
        if not 1 <= hours <= MAX_HOURS:
            raise ValidationError(f"hours must be between 1 and {MAX_HOURS}")
        key = stats_key(owner_id, view, hours)
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                return cached
        payload = {"hours": hours, "generated_at": utcnow().isoformat(), "data": compute()}
        if self.cache is not None:
            await self.cache.set(key, payload)
        return payload

    async def health_summary(self, db_session: Session, owner_id: str, hours: int = 24) -> Dict[str, Any]:
        since = utcnow() - timedelta(hours=hours)
        return await self._cached(owner_id, "health", hours,
                                  lambda: self.repo_class(db_session).health_by_component(owner_id, since))

    async def anomaly_stats(self, db_session: Session, owner_id: str, hours: int = 24) -> Dict[str, Any]:
        since = utcnow() - timedelta(hours=hours)
        return await self._cached(owner_id, "anomalies", hours,
                                  lambda: self.repo_class(db_session).anomaly_counts(owner_id, since))

    async def recovery_stats(self, db_session: Session, owner_id: str, hours: int = 24) -> Dict[str, Any]:
        since = utcnow() - timedelta(hours=hours)
        return await self._cached(owner_id, "recovery", hours,
                                  lambda: self.repo_class(db_session).recovery_summary(owner_id, since))
