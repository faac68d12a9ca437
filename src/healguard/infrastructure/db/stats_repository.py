# File: src/healguard/infrastructure/db/stats_repository.py
"""
Aggregate read queries behind the /stats views.

Kept apart from the per-aggregate repositories: everything here is a GROUP BY over a
time window and never returns ORM objects.
"""

import logging
from datetime import datetime
from typing import Dict, Any, List

from sqlalchemy.orm import Session
from sqlalchemy import select, func, case

from healguard.domain.entities import RecoveryStatus
from .models import HealthWindow, AnomalySignal, RecoveryAction

log = logging.getLogger(__name__)


class StatsRepository:
    def __init__(self, session: Session):
        self.session = session

    def health_by_component(self, owner_id: str, since: datetime) -> List[Dict[str, Any]]:
        stmt = (
            select(
                HealthWindow.component_type,
                HealthWindow.component_name,
                func.count(HealthWindow.id).label("windows"),
                func.avg(HealthWindow.latency_p95_ms).label("avg_latency_p95_ms"),
                func.avg(HealthWindow.error_rate).label("avg_error_rate"),
                func.avg(HealthWindow.availability_percentage).label("avg_availability"),
                func.max(HealthWindow.window_start).label("last_window_start"),
            )
            .where(HealthWindow.owner_id == owner_id, HealthWindow.window_start >= since)
            .group_by(HealthWindow.component_type, HealthWindow.component_name)
            .order_by(HealthWindow.component_type, HealthWindow.component_name)
        )
        rows = self.session.execute(stmt).all()

        summary = []
        for row in rows:
            latest = self.session.execute(
                select(HealthWindow.status).where(
                    HealthWindow.owner_id == owner_id,
                    HealthWindow.component_type == row.component_type,
                    HealthWindow.component_name == row.component_name,
                    HealthWindow.window_start == row.last_window_start,
                )
            ).scalar()
            summary.append({
                "component_type": row.component_type,
                "component_name": row.component_name,
                "windows": int(row.windows),
                "avg_latency_p95_ms": round(float(row.avg_latency_p95_ms or 0.0), 2),
                "avg_error_rate": round(float(row.avg_error_rate or 0.0), 4),
                "avg_availability_percentage": round(float(row.avg_availability or 0.0), 2),
                "latest_status": latest.value if latest is not None else None,
            })
        return summary

    def _count_by(self, column, owner_id: str, since: datetime) -> Dict[str, int]:
        stmt = (
            select(column, func.count(AnomalySignal.id))
            .where(AnomalySignal.owner_id == owner_id, AnomalySignal.detected_at >= since)
            .group_by(column)
        )
        return {key.value: int(count) for key, count in self.session.execute(stmt).all()}

    def anomaly_counts(self, owner_id: str, since: datetime) -> Dict[str, Any]:
        by_severity = self._count_by(AnomalySignal.severity, owner_id, since)
        return {
            "total": sum(by_severity.values()),
            "by_severity": by_severity,
            "by_status": self._count_by(AnomalySignal.status, owner_id, since),
            "by_type": self._count_by(AnomalySignal.anomaly_type, owner_id, since),
        }

    def recovery_summary(self, owner_id: str, since: datetime) -> Dict[str, Any]:
        status = RecoveryAction.execution_status
        stmt = (
            select(
                func.count(RecoveryAction.id).label("total"),
                func.sum(case((status == RecoveryStatus.COMPLETED, 1), else_=0)).label("successful"),
                func.sum(case((status.in_([RecoveryStatus.FAILED, RecoveryStatus.TIMEOUT]), 1), else_=0)).label("failed"),
                func.sum(case((status.in_([RecoveryStatus.PENDING, RecoveryStatus.IN_PROGRESS]), 1), else_=0)).label("pending"),
                func.avg(RecoveryAction.execution_duration_ms).label("avg_duration_ms"),
                func.avg(RecoveryAction.recovery_effectiveness_score).label("avg_effectiveness"),
            )
            .where(RecoveryAction.owner_id == owner_id, RecoveryAction.created_at >= since)
        )
        row = self.session.execute(stmt).one()
        total = int(row.total or 0)
        successful = int(row.successful or 0)
        failed = int(row.failed or 0)
        finished = successful + failed
        return {
            "total": total,
            "successful": successful,
            "failed": failed,
            "pending": int(row.pending or 0),
            "avg_duration_ms": round(float(row.avg_duration_ms), 2) if row.avg_duration_ms is not None else None,
            "avg_effectiveness_score": round(float(row.avg_effectiveness), 2) if row.avg_effectiveness is not None else None,
            "success_rate": round(successful / finished * 100.0, 2) if finished else 0.0,
        }
