# src/healguard/infrastructure/db/models/recovery.py
"""RecoveryAction rows, owned exclusively by the recovery orchestrator."""

from sqlalchemy import (
    Column, Integer, String, DateTime, Float, Boolean, Enum, Text, ForeignKey, Index, func
)
from sqlalchemy.orm import relationship

from healguard.domain.entities import RecoveryActionType, RecoveryStatus, TriggerType, utcnow
from .base import Base, JSONType


class RecoveryAction(Base):
    __tablename__ = 'recovery_actions'
    __table_args__ = (
        Index('ix_recovery_actions_due', 'execution_status', 'next_retry_at'),
    )

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)

    action_type = Column(Enum(RecoveryActionType, name="recoveryactiontype"), nullable=False, index=True)
    action_category = Column(String(32), nullable=False)
    target_component_type = Column(String(64), nullable=False)
    target_component_name = Column(String(128), nullable=False)
    action_config = Column(JSONType, nullable=True)

    trigger_type = Column(Enum(TriggerType, name="triggertype"), nullable=False, default=TriggerType.MANUAL)
    triggered_by = Column(String(128), nullable=True)
    triggered_by_anomaly_id = Column(Integer, nullable=True, index=True)

    execution_status = Column(Enum(RecoveryStatus, name="recoverystatus"), nullable=False, default=RecoveryStatus.PENDING, index=True)
    attempt_number = Column(Integer, nullable=False, default=1)
    max_attempts = Column(Integer, nullable=False, default=1)
    retry_policy = Column(JSONType, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)
    timeout_seconds = Column(Integer, nullable=False, default=300)
    dry_run = Column(Boolean, nullable=False, default=False)

    pre_action_metrics = Column(JSONType, nullable=True)
    post_action_metrics = Column(JSONType, nullable=True)
    recovery_effectiveness_score = Column(Float, nullable=True)
    metrics_improvement_percentage = Column(Float, nullable=True)
    execution_result = Column(JSONType, nullable=True)
    execution_duration_ms = Column(Float, nullable=True)
    error_message = Column(Text, nullable=True)

    rollback_action_id = Column(Integer, ForeignKey('recovery_actions.id', ondelete="SET NULL"), nullable=True)
    rollback_reason = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    rollback_action = relationship("RecoveryAction", remote_side=[id])

    @property
    def component_key(self) -> str:
        return f"{self.target_component_type}/{self.target_component_name}"

    def __repr__(self):
        return (
            f"<RecoveryAction(id={self.id}, {self.action_type.value} -> {self.component_key}, "
            f"status={self.execution_status.value}, attempt={self.attempt_number}/{self.max_attempts})>"
        )
