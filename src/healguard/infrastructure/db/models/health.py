# src/healguard/infrastructure/db/models/health.py
"""
Health telemetry tables.

`health_samples` stages raw samples of windows that are still open; rows are removed
once their window closes. `health_windows` holds one immutable summary per
(owner, component, window_start).
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Float, Enum, UniqueConstraint, Index, func
)

from healguard.domain.entities import ComponentStatus, utcnow
from .base import Base, JSONType


class HealthSampleRecord(Base):
    __tablename__ = 'health_samples'
    __table_args__ = (
        UniqueConstraint('owner_id', 'component_type', 'component_name', 'sample_id', name='uq_health_sample'),
        Index('ix_health_samples_component_ts', 'owner_id', 'component_type', 'component_name', 'timestamp'),
    )

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)
    sample_id = Column(String(64), nullable=False)
    component_type = Column(String(64), nullable=False)
    component_name = Column(String(128), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    latency_ms = Column(Float, nullable=False)
    success = Column(Boolean, nullable=False, default=True)
    metrics = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)


class HealthWindow(Base):
    __tablename__ = 'health_windows'
    __table_args__ = (
        UniqueConstraint('owner_id', 'component_type', 'component_name', 'window_start', name='uq_health_window_identity'),
    )

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)
    component_type = Column(String(64), nullable=False, index=True)
    component_name = Column(String(128), nullable=False, index=True)
    window_start = Column(DateTime, nullable=False, index=True)
    window_end = Column(DateTime, nullable=False)

    sample_count = Column(Integer, nullable=False)
    latency_p50_ms = Column(Float, nullable=False)
    latency_p95_ms = Column(Float, nullable=False)
    latency_p99_ms = Column(Float, nullable=False)
    error_count = Column(Integer, nullable=False)
    error_rate = Column(Float, nullable=False)
    availability_percentage = Column(Float, nullable=False)
    status = Column(Enum(ComponentStatus, name="componentstatus"), nullable=False, index=True)
    # window mean of custom metrics, e.g. {"cpu_usage": 72.5}
    metrics_avg = Column(JSONType, nullable=True)

    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)

    def snapshot(self) -> dict:
        """Same shape used for pre/post recovery metric captures."""
        return {
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "latency_p50_ms": self.latency_p50_ms,
            "latency_p95_ms": self.latency_p95_ms,
            "latency_p99_ms": self.latency_p99_ms,
            "error_count": self.error_count,
            "error_rate": self.error_rate,
            "availability_percentage": self.availability_percentage,
            "status": self.status.value if self.status else None,
        }

    def __repr__(self):
        return (
            f"<HealthWindow({self.component_type}/{self.component_name} @ {self.window_start}, "
            f"status={self.status.value if self.status else None})>"
        )
