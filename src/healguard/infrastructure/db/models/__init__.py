# --- src/healguard/infrastructure/db/models/__init__.py ---
"""
This file makes the 'models' directory a package and ensures all SQLAlchemy ORM
models are discoverable by Alembic and the application.
Importing it also registers the audit-log immutability listeners.
"""

from .base import Base, JSONType
from .auth import Operator
from .health import HealthSampleRecord, HealthWindow
from .threshold import Threshold, MetricObservation, AlertRecord
from .anomaly import AnomalySignal
from .decision import DecisionEvent, DecisionFactor
from .recommendation import RecommendationQueueItem
from .recovery import RecoveryAction
from .audit import AuditLogEntry
from .selftest import SelfTestResult

__all__ = [
    "Base",
    "JSONType",
    "Operator",
    "HealthSampleRecord",
    "HealthWindow",
    "Threshold",
    "MetricObservation",
    "AlertRecord",
    "AnomalySignal",
    "DecisionEvent",
    "DecisionFactor",
    "RecommendationQueueItem",
    "RecoveryAction",
    "AuditLogEntry",
    "SelfTestResult",
]
# --- END of models init ---
