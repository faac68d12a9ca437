# src/healguard/infrastructure/db/models/threshold.py
"""Threshold rules, the metric observations they are evaluated against, and alert history."""

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Float, Enum, Text,
    ForeignKey, UniqueConstraint, Index, func
)
from sqlalchemy.orm import relationship

from healguard.domain.entities import ThresholdType, AlertLevel, utcnow
from .base import Base, JSONType


class Threshold(Base):
    __tablename__ = 'metric_thresholds'
    __table_args__ = (
        UniqueConstraint('owner_id', 'metric_name', 'threshold_type', name='uq_threshold_owner_metric_type'),
    )

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)
    metric_name = Column(String(128), nullable=False, index=True)
    threshold_value = Column(Float, nullable=False)
    threshold_type = Column(Enum(ThresholdType, name="thresholdtype"), nullable=False)
    alert_level = Column(Enum(AlertLevel, name="alertlevel"), nullable=False, default=AlertLevel.WARNING)
    cooldown_minutes = Column(Integer, nullable=False, default=60, server_default='60')
    enabled = Column(Boolean, nullable=False, default=True, server_default='true')

    auto_adjusted = Column(Boolean, nullable=False, default=False, server_default='false')
    adjustment_factor = Column(Float, nullable=False, default=2.0, server_default='2.0')

    last_triggered_at = Column(DateTime, nullable=True)
    trigger_count = Column(Integer, nullable=False, default=0, server_default='0')
    alert_channels = Column(JSONType, nullable=True)

    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)

    alerts = relationship("AlertRecord", back_populates="threshold")

    def __repr__(self):
        return (
            f"<Threshold(id={self.id}, {self.metric_name} {self.threshold_type.value} "
            f"{self.threshold_value}, cooldown={self.cooldown_minutes}m)>"
        )


class MetricObservation(Base):
    __tablename__ = 'metric_observations'
    __table_args__ = (
        Index('ix_metric_observations_lookup', 'owner_id', 'metric_name', 'observed_at'),
    )

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False)
    metric_name = Column(String(128), nullable=False)
    value = Column(Float, nullable=False)
    component_type = Column(String(64), nullable=True)
    component_name = Column(String(128), nullable=True)
    observed_at = Column(DateTime, nullable=False, default=utcnow)


class AlertRecord(Base):
    __tablename__ = 'alert_history'

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)
    threshold_id = Column(Integer, ForeignKey('metric_thresholds.id', ondelete="CASCADE"), nullable=False, index=True)
    metric_name = Column(String(128), nullable=False)
    observed_value = Column(Float, nullable=False)
    threshold_value = Column(Float, nullable=False)
    alert_level = Column(Enum(AlertLevel, name="alertlevel"), nullable=False)
    message = Column(Text, nullable=False)
    triggered_at = Column(DateTime, nullable=False, default=utcnow)

    acknowledged = Column(Boolean, nullable=False, default=False, server_default='false')
    acknowledged_at = Column(DateTime, nullable=True)
    acknowledged_by = Column(String(128), nullable=True)

    threshold = relationship("Threshold", back_populates="alerts")
