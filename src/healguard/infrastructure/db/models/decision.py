# src/healguard/infrastructure/db/models/decision.py
"""DecisionEvent and its weighted DecisionFactor rows."""

from sqlalchemy import (
    Column, Integer, String, DateTime, Float, Boolean, Enum, ForeignKey, func
)
from sqlalchemy.orm import relationship

from healguard.domain.entities import (
    RiskLevel, ApprovalStatus, DecisionStatus, RecommendedAction, utcnow
)
from .base import Base, JSONType


class DecisionEvent(Base):
    __tablename__ = 'decision_events'

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)
    decision_type = Column(String(64), nullable=False, index=True)
    trigger_source = Column(String(64), nullable=False)
    context_data = Column(JSONType, nullable=True)

    confidence_score = Column(Float, nullable=False)
    risk_level = Column(Enum(RiskLevel, name="risklevel"), nullable=False)
    requires_approval = Column(Boolean, nullable=False, default=True)
    approval_status = Column(Enum(ApprovalStatus, name="approvalstatus"), nullable=False, default=ApprovalStatus.PENDING)
    approved_by = Column(String(128), nullable=True)
    approved_at = Column(DateTime, nullable=True)

    recommended_action = Column(Enum(RecommendedAction, name="recommendedaction"), nullable=False)
    priority = Column(Integer, nullable=False, default=5)
    status = Column(Enum(DecisionStatus, name="decisionstatus"), nullable=False, default=DecisionStatus.PENDING)
    expires_at = Column(DateTime, nullable=True)
    created_by = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)

    factors = relationship(
        "DecisionFactor", back_populates="decision_event", lazy="selectin", order_by="DecisionFactor.id"
    )

    def __repr__(self):
        return (
            f"<DecisionEvent(id={self.id}, type={self.decision_type}, "
            f"confidence={self.confidence_score:.3f}, risk={self.risk_level.value})>"
        )


class DecisionFactor(Base):
    __tablename__ = 'decision_factors'

    id = Column(Integer, primary_key=True)
    decision_event_id = Column(Integer, ForeignKey('decision_events.id', ondelete="CASCADE"), nullable=False, index=True)
    factor_name = Column(String(128), nullable=False)
    category = Column(String(64), nullable=True)
    current_value = Column(Float, nullable=False)
    baseline_value = Column(Float, nullable=True)
    threshold_value = Column(Float, nullable=True)
    weight = Column(Float, nullable=False)

    normalized_score = Column(Float, nullable=False)
    weighted_score = Column(Float, nullable=False)
    deviation_percentage = Column(Float, nullable=True)
    higher_is_better = Column(Boolean, nullable=False, default=True)

    decision_event = relationship("DecisionEvent", back_populates="factors")
