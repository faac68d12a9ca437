# src/healguard/infrastructure/db/models/anomaly.py
"""AnomalySignal rows. Never deleted; only their status advances."""

from sqlalchemy import (
    Column, Integer, String, DateTime, Float, Enum, ForeignKey, UniqueConstraint, Index, func
)

from healguard.domain.entities import AnomalyType, AnomalyStatus, Severity, utcnow
from .base import Base, JSONType


class AnomalySignal(Base):
    __tablename__ = 'anomaly_signals'
    __table_args__ = (
        UniqueConstraint('owner_id', 'dedup_key', name='uq_anomaly_dedup'),
        Index('ix_anomaly_signals_owner_detected', 'owner_id', 'detected_at'),
    )

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)
    anomaly_type = Column(Enum(AnomalyType, name="anomalytype"), nullable=False, index=True)
    # free-form correlation key used by cluster escalation (e.g. "latency_spike", "stability_variance")
    event_type = Column(String(64), nullable=False)

    severity = Column(Enum(Severity, name="anomalyseverity"), nullable=False, index=True)
    # severity before any cluster escalation
    computed_severity = Column(Enum(Severity, name="anomalyseverity"), nullable=False)
    confidence_score = Column(Float, nullable=False)

    source_component_type = Column(String(64), nullable=False)
    source_component_name = Column(String(128), nullable=False)
    baseline_value = Column(Float, nullable=True)
    observed_value = Column(Float, nullable=False)
    deviation_percentage = Column(Float, nullable=True)

    status = Column(Enum(AnomalyStatus, name="anomalystatus"), nullable=False, default=AnomalyStatus.DETECTED, index=True)
    detection_method = Column(String(64), nullable=False)
    dedup_key = Column(String(255), nullable=False)
    metadata_ = Column("metadata", JSONType, nullable=True)

    triggered_recovery_action_id = Column(Integer, ForeignKey('recovery_actions.id', ondelete="SET NULL"), nullable=True)
    detected_at = Column(DateTime, nullable=False, default=utcnow)
    status_changed_at = Column(DateTime, nullable=True)
    status_changed_by = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)

    @property
    def component_key(self) -> str:
        return f"{self.source_component_type}/{self.source_component_name}"

    def __repr__(self):
        return (
            f"<AnomalySignal(id={self.id}, type={self.anomaly_type.value}, "
            f"severity={self.severity.value}, status={self.status.value})>"
        )
