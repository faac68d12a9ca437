# src/healguard/infrastructure/db/models/recommendation.py
"""Recommendation queue items: approvable, schedulable units of work derived from decisions."""

from sqlalchemy import (
    Column, Integer, String, DateTime, Float, Enum, ForeignKey, Index, func
)
from sqlalchemy.orm import relationship

from healguard.domain.entities import (
    ApprovalStatus, QueueStatus, Urgency, RecommendationActionType, ExecutionMode, utcnow
)
from .base import Base, JSONType


class RecommendationQueueItem(Base):
    __tablename__ = 'recommendation_queue'
    __table_args__ = (
        Index('ix_recommendation_queue_due', 'execution_status', 'scheduled_for'),
    )

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)
    decision_event_id = Column(Integer, ForeignKey('decision_events.id', ondelete="CASCADE"), nullable=False, index=True)

    recommendation_type = Column(String(64), nullable=False)
    action_type = Column(Enum(RecommendationActionType, name="recommendationactiontype"), nullable=False)
    action_target = Column(String(255), nullable=True)
    action_payload = Column(JSONType, nullable=True)
    priority = Column(Integer, nullable=False, default=5)
    urgency = Column(Enum(Urgency, name="urgency"), nullable=False, default=Urgency.MEDIUM)

    approval_status = Column(Enum(ApprovalStatus, name="approvalstatus"), nullable=False, default=ApprovalStatus.PENDING, index=True)
    approved_by = Column(String(128), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejection_reason = Column(String(512), nullable=True)

    execution_status = Column(Enum(QueueStatus, name="queuestatus"), nullable=False, default=QueueStatus.QUEUED)
    execution_mode = Column(Enum(ExecutionMode, name="executionmode"), nullable=True)
    scheduled_for = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    execution_attempts = Column(Integer, nullable=False, default=0)
    execution_result = Column(JSONType, nullable=True)
    latency_ms = Column(Float, nullable=True)
    executed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)

    decision_event = relationship("DecisionEvent")

    def __repr__(self):
        return (
            f"<RecommendationQueueItem(id={self.id}, action={self.action_type.value}, "
            f"approval={self.approval_status.value}, status={self.execution_status.value})>"
        )
