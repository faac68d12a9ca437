# src/healguard/application/services/health_service.py
"""
HealthService - ingests raw component telemetry and closes fixed-size health windows.

Samples are staged until the window they fall in has ended. Closing a window computes
its summary once, stores it under its natural key (owner, component, window_start),
drops the staged samples, and feeds the summary to the threshold evaluator and the
anomaly detector.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from itertools import groupby
from typing import List, Optional, Dict, Any, Iterable, Sequence

from sqlalchemy.orm import Session

from healguard.config import settings
from healguard.domain.entities import HealthSample, WindowSummary, ComponentStatus, utcnow
from healguard.domain.errors import ValidationError
from healguard.application.engine.baseline import percentile
from healguard.infrastructure.cache import stats_prefix
from healguard.infrastructure.db.models import HealthSampleRecord, HealthWindow
from healguard.infrastructure.db.repository import HealthRepository
from healguard.infrastructure.monitoring.metrics import WINDOWS_CLOSED

log = logging.getLogger(__name__)

UNHEALTHY_ERROR_RATE = 0.10
UNHEALTHY_AVAILABILITY = 90.0
DEGRADED_ERROR_RATE = 0.05
DEGRADED_AVAILABILITY = 95.0


@dataclass
class IngestReport:
    accepted: int = 0
    duplicates: int = 0
    windows_closed: int = 0
    windows_skipped: int = 0
    anomalies_created: int = 0
    thresholds_triggered: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


@dataclass
class CloseReport:
    windows: List[HealthWindow] = field(default_factory=list)
    skipped: int = 0
    failed: int = 0
    anomalies_created: int = 0
    thresholds_triggered: int = 0


def _naive_utc(ts: datetime) -> datetime:
    if ts.tzinfo is not None:
        return ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def derive_sample_id(sample: HealthSample) -> str:
    """Content hash: the same observation resent by a client maps to the same id."""
    raw = json.dumps(
        [sample.component_type, sample.component_name, _naive_utc(sample.timestamp).isoformat(),
         sample.latency_ms, bool(sample.success), sorted((sample.metrics or {}).items())],
        default=str,
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def window_bounds(ts: datetime, window_seconds: int) -> tuple:
    epoch = int(ts.replace(tzinfo=timezone.utc).timestamp())
    start_epoch = epoch // window_seconds * window_seconds
    start = datetime.fromtimestamp(start_epoch, tz=timezone.utc).replace(tzinfo=None)
    return start, start + timedelta(seconds=window_seconds)


class HealthService:
    def __init__(self, threshold_service: Any = None, anomaly_service: Any = None,
                 audit_service: Any = None, cache: Any = None, window_seconds: Optional[int] = None,
                 recovery_service: Any = None):
        self.threshold_service = threshold_service
        self.anomaly_service = anomaly_service
        self.recovery_service = recovery_service
        self.audit = audit_service
        self.cache = cache
        self.window_seconds = window_seconds or settings.HEALTH_WINDOW_SECONDS
        if not 60 <= self.window_seconds <= 300:
            raise ValidationError("HEALTH_WINDOW_SECONDS must be between 60 and 300")

    # --- pure ---
    @staticmethod
    def summarize(samples: Sequence[Any]) -> WindowSummary:
        """Works on HealthSample records or staged rows alike."""
        if not samples:
            raise ValidationError("Cannot summarize an empty window")
        latencies = [float(s.latency_ms) for s in samples]
        total = len(samples)
        errors = sum(1 for s in samples if not s.success)
        error_rate = errors / total
        availability = 100.0 * (1.0 - error_rate)

        if error_rate > UNHEALTHY_ERROR_RATE or availability < UNHEALTHY_AVAILABILITY:
            status = ComponentStatus.UNHEALTHY
        elif error_rate > DEGRADED_ERROR_RATE or availability < DEGRADED_AVAILABILITY:
            status = ComponentStatus.DEGRADED
        else:
            status = ComponentStatus.HEALTHY

        sums: Dict[str, float] = {}
        counts: Dict[str, int] = {}
        for s in samples:
            for name, value in (s.metrics or {}).items():
                if value is None:
                    continue
                sums[name] = sums.get(name, 0.0) + float(value)
                counts[name] = counts.get(name, 0) + 1

        return WindowSummary(
            sample_count=total,
            latency_p50_ms=percentile(latencies, 50),
            latency_p95_ms=percentile(latencies, 95),
            latency_p99_ms=percentile(latencies, 99),
            error_count=errors,
            error_rate=error_rate,
            availability_percentage=availability,
            status=status,
            metrics_avg={name: sums[name] / counts[name] for name in sorted(sums)},
        )

    @staticmethod
    def _validate(sample: HealthSample) -> HealthSample:
        if not sample.component_type or not sample.component_name:
            raise ValidationError("component_type and component_name are required")
        if sample.latency_ms is None or sample.latency_ms < 0:
            raise ValidationError(f"latency_ms must be >= 0 (got {sample.latency_ms})")
        for name, value in (sample.metrics or {}).items():
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise ValidationError(f"metric '{name}' must be numeric")
        sample.timestamp = _naive_utc(sample.timestamp)
        return sample

    # --- commands ---
    async def ingest(self, db_session: Session, owner_id: str, samples: Iterable[HealthSample],
                     now: Optional[datetime] = None) -> IngestReport:
        now = now or utcnow()
        samples = [self._validate(s) for s in samples]
        repo = HealthRepository(db_session)
        report = IngestReport()
        current_start, _ = window_bounds(now, self.window_seconds)
        seen = set()

        for sample in samples:
            sample_id = sample.sample_id or derive_sample_id(sample)
            identity = (sample.component_type, sample.component_name, sample_id)
            if identity in seen or repo.staged_sample_exists(owner_id, *identity):
                report.duplicates += 1
                continue
            start, _ = window_bounds(sample.timestamp, self.window_seconds)
            if start < current_start and repo.find_window(owner_id, sample.component_type,
                                                          sample.component_name, start):
                # its window has already been summarized; a late sample cannot reopen it
                log.debug(f"Late sample {sample_id[:12]} for closed window {start} dropped.")
                report.duplicates += 1
                continue
            seen.add(identity)
            repo.stage_sample(HealthSampleRecord(
                owner_id=owner_id,
                sample_id=sample_id,
                component_type=sample.component_type,
                component_name=sample.component_name,
                timestamp=sample.timestamp,
                latency_ms=float(sample.latency_ms),
                success=bool(sample.success),
                metrics=dict(sample.metrics or {}),
            ))
            report.accepted += 1
        db_session.commit()

        closed = await self.close_due_windows(db_session, owner_id=owner_id, now=now)
        report.windows_closed = len(closed.windows)
        report.windows_skipped = closed.skipped
        report.anomalies_created = closed.anomalies_created
        report.thresholds_triggered = closed.thresholds_triggered
        log.info(
            f"Ingest for owner {owner_id}: accepted={report.accepted} duplicates={report.duplicates} "
            f"windows_closed={report.windows_closed}"
        )
        return report

    async def close_due_windows(self, db_session: Session, owner_id: Optional[str] = None,
                                now: Optional[datetime] = None) -> CloseReport:
        now = now or utcnow()
        cutoff, _ = window_bounds(now, self.window_seconds)
        repo = HealthRepository(db_session)
        report = CloseReport()
        touched_owners = set()

        staged = repo.staged_samples_before(cutoff, owner_id)

        def window_key(row):
            return (row.owner_id, row.component_type, row.component_name,
                    window_bounds(row.timestamp, self.window_seconds)[0])

        for (owner, comp_type, comp_name, start), group in groupby(staged, key=window_key):
            rows = list(group)
            try:
                window = await self._close_window(db_session, repo, owner, comp_type, comp_name, start, rows, report)
                if window is None:
                    report.skipped += 1
                else:
                    report.windows.append(window)
                    touched_owners.add(owner)
            except Exception as e:
                log.error(f"Failed to close window {comp_type}/{comp_name}@{start} for owner {owner}: {e}",
                          exc_info=True)
                db_session.rollback()
                report.failed += 1

        if self.cache is not None:
            for owner in touched_owners:
                await self.cache.invalidate_prefix(stats_prefix(owner))
        return report

    async def _close_window(self, db_session: Session, repo: HealthRepository, owner_id: str,
                            comp_type: str, comp_name: str, start: datetime,
                            rows: List[HealthSampleRecord], report: CloseReport) -> Optional[HealthWindow]:
        ids = [r.id for r in rows]
        if repo.find_window(owner_id, comp_type, comp_name, start):
            repo.delete_staged(ids)
            db_session.commit()
            return None

        summary = self.summarize(rows)
        window = repo.add_window(HealthWindow(
            owner_id=owner_id,
            component_type=comp_type,
            component_name=comp_name,
            window_start=start,
            window_end=start + timedelta(seconds=self.window_seconds),
            sample_count=summary.sample_count,
            latency_p50_ms=summary.latency_p50_ms,
            latency_p95_ms=summary.latency_p95_ms,
            latency_p99_ms=summary.latency_p99_ms,
            error_count=summary.error_count,
            error_rate=summary.error_rate,
            availability_percentage=summary.availability_percentage,
            status=summary.status,
            metrics_avg=summary.metrics_avg,
        ))
        repo.delete_staged(ids)
        db_session.commit()
        WINDOWS_CLOSED.labels(status=summary.status.value).inc()
        log.debug(f"Closed window {comp_type}/{comp_name}@{start}: {summary.status.value}")

        component = (comp_type, comp_name)
        if self.threshold_service is not None:
            observations = {
                "latency_p95_ms": summary.latency_p95_ms,
                "error_rate": summary.error_rate,
                "availability_percentage": summary.availability_percentage,
                **summary.metrics_avg,
            }
            for metric, value in observations.items():
                alerts = await self.threshold_service.evaluate(
                    db_session, owner_id, metric, value, now=window.window_end, component=component
                )
                report.thresholds_triggered += len(alerts)

        if self.anomaly_service is not None:
            created = await self.anomaly_service.analyze_window(db_session, window)
            report.anomalies_created += len(created)

        if self.recovery_service is not None:
            await self.recovery_service.score_effectiveness(db_session, window)
        return window

    def list_windows(self, db_session: Session, owner_id: str, since: datetime,
                     component_type: Optional[str] = None, component_name: Optional[str] = None) -> List[HealthWindow]:
        return HealthRepository(db_session).windows_since(
            owner_id, since, component_type=component_type, component_name=component_name
        )
