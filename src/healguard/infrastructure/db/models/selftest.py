# src/healguard/infrastructure/db/models/selftest.py
"""Smoke-check results consumed by dashboards."""

from sqlalchemy import Column, Integer, String, DateTime, Float, Enum, Text, func

from healguard.domain.entities import SelfTestOutcome, utcnow
from .base import Base


class SelfTestResult(Base):
    __tablename__ = 'selftest_results'

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)
    run_id = Column(String(64), nullable=False, index=True)
    test_name = Column(String(128), nullable=False)
    test_category = Column(String(64), nullable=False)
    test_type = Column(String(64), nullable=False, default="smoke")
    execution_status = Column(String(32), nullable=False)
    test_result = Column(Enum(SelfTestOutcome, name="selftestoutcome"), nullable=False)

    health_score = Column(Float, nullable=False, default=0.0)
    reliability_score = Column(Float, nullable=False, default=0.0)
    performance_score = Column(Float, nullable=False, default=0.0)
    duration_ms = Column(Float, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)
