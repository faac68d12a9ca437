# File: src/healguard/application/services/__init__.py

from .audit_service import AuditService
from .threshold_service import ThresholdService
from .anomaly_service import AnomalyService
from .health_service import HealthService
from .recovery_service import RecoveryService, RecoveryRequest
from .recommendation_service import RecommendationService
from .decision_service import DecisionService, DecisionRequest
from .selftest_service import SelfTestService
from .stats_service import StatsService

__all__ = [
    "AuditService",
    "ThresholdService",
    "AnomalyService",
    "HealthService",
    "RecoveryService",
    "RecoveryRequest",
    "RecommendationService",
    "DecisionService",
    "DecisionRequest",
    "SelfTestService",
    "StatsService",
]
