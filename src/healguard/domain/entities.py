# src/healguard/domain/entities.py
"""
Core enumerations, lifecycle rules and plain domain records.

Persistence lives in `infrastructure/db/models`; the ORM columns reuse these enums so
that one closed set of states is shared by storage, services and the API.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Set, Any
from enum import Enum

from .errors import InvalidTransitionError


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime follows this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# --- ENUMERATIONS ---

class ComponentStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ThresholdType(Enum):
    ABOVE = "above"
    BELOW = "below"
    EQUALS = "equals"
    CHANGE_PERCENTAGE = "change_percentage"


class AlertLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Severity(Enum):
    """Anomaly severity, ordered from least to most severe."""
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 1, Severity.MODERATE: 2, Severity.HIGH: 3, Severity.CRITICAL: 4}


class AnomalyType(Enum):
    LATENCY_SPIKE = "latency_spike"
    ERROR_RATE_INCREASE = "error_rate_increase"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    METRIC_DEVIATION = "metric_deviation"
    BEHAVIORAL_SIGNAL = "behavioral_signal"


class AnomalyStatus(Enum):
    DETECTED = "detected"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    def escalate(self) -> "RiskLevel":
        """One step up, saturating at CRITICAL."""
        order = list(RiskLevel)
        return order[min(order.index(self) + 1, len(order) - 1)]


_RISK_RANK = {RiskLevel.LOW: 1, RiskLevel.MEDIUM: 2, RiskLevel.HIGH: 3, RiskLevel.CRITICAL: 4}


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_APPROVED = "auto_approved"


class DecisionStatus(Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"


class RecommendedAction(Enum):
    APPROVE = "approve"
    REJECT = "reject"
    ESCALATE = "escalate"


class QueueStatus(Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    EXECUTED = "executed"
    FAILED = "failed"
    REJECTED = "rejected"
    EXPIRED = "expired"


class Urgency(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecommendationActionType(Enum):
    """Closed set of executor handlers for recommendation queue items."""
    CREATE_TASK = "create_task"
    SEND_NOTIFICATION = "send_notification"
    INVOKE_WEBHOOK = "invoke_webhook"
    ADJUST_THRESHOLD = "adjust_threshold"
    TRIGGER_RECOVERY = "trigger_recovery"
    RUN_SELF_TEST = "run_self_test"


class ExecutionMode(Enum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"


class RecoveryActionType(Enum):
    """Closed set of remediation actions the orchestrator knows how to run."""
    RESTART_FUNCTION = "restart_function"
    ROLLBACK_DEPLOYMENT = "rollback_deployment"
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    CLEAR_CACHE = "clear_cache"
    RESET_CONNECTION = "reset_connection"
    FAILOVER = "failover"
    CIRCUIT_BREAKER = "circuit_breaker"
    RATE_LIMIT = "rate_limit"
    ALERT_ESCALATION = "alert_escalation"

    @property
    def category(self) -> str:
        # restart_function -> restart, scale_up -> scale, circuit_breaker -> circuit
        return self.value.split("_")[0]


class RecoveryStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


class TriggerType(Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class ActorType(Enum):
    USER = "user"
    SYSTEM = "system"
    AUTOMATION = "automation"


class ValidationStatus(Enum):
    PASSED = "passed"
    REQUIRES_REVIEW = "requires_review"
    FAILED = "failed"


class ViolationSeverity(Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class SelfTestOutcome(Enum):
    PASS = "pass"
    FAIL = "fail"


# --- LIFECYCLE RULES ---

# IN_PROGRESS -> PENDING is the scheduled-retry edge.
RECOVERY_TRANSITIONS: Dict[RecoveryStatus, Set[RecoveryStatus]] = {
    RecoveryStatus.PENDING: {RecoveryStatus.IN_PROGRESS, RecoveryStatus.CANCELLED},
    RecoveryStatus.IN_PROGRESS: {
        RecoveryStatus.COMPLETED,
        RecoveryStatus.FAILED,
        RecoveryStatus.TIMEOUT,
        RecoveryStatus.PENDING,
    },
    RecoveryStatus.COMPLETED: {RecoveryStatus.ROLLED_BACK},
    RecoveryStatus.FAILED: {RecoveryStatus.ROLLED_BACK},
    RecoveryStatus.TIMEOUT: set(),
    RecoveryStatus.CANCELLED: set(),
    RecoveryStatus.ROLLED_BACK: set(),
}

ANOMALY_TRANSITIONS: Dict[AnomalyStatus, Set[AnomalyStatus]] = {
    AnomalyStatus.DETECTED: {AnomalyStatus.ACKNOWLEDGED, AnomalyStatus.RESOLVED, AnomalyStatus.FALSE_POSITIVE},
    AnomalyStatus.ACKNOWLEDGED: {AnomalyStatus.RESOLVED, AnomalyStatus.FALSE_POSITIVE},
    AnomalyStatus.RESOLVED: set(),
    AnomalyStatus.FALSE_POSITIVE: set(),
}

QUEUE_TRANSITIONS: Dict[QueueStatus, Set[QueueStatus]] = {
    QueueStatus.QUEUED: {QueueStatus.IN_PROGRESS, QueueStatus.REJECTED, QueueStatus.EXPIRED},
    QueueStatus.IN_PROGRESS: {QueueStatus.EXECUTED, QueueStatus.FAILED},
    QueueStatus.EXECUTED: set(),
    QueueStatus.FAILED: set(),
    QueueStatus.REJECTED: set(),
    QueueStatus.EXPIRED: set(),
}

_TABLES = {
    RecoveryStatus: RECOVERY_TRANSITIONS,
    AnomalyStatus: ANOMALY_TRANSITIONS,
    QueueStatus: QUEUE_TRANSITIONS,
}


def can_transition(current: Enum, target: Enum) -> bool:
    return target in _TABLES[type(current)].get(current, set())


def ensure_transition(current: Enum, target: Enum) -> None:
    """Raise InvalidTransitionError unless `current -> target` is a legal edge."""
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"{type(current).__name__}: cannot move from '{current.value}' to '{target.value}'"
        )


def is_terminal(status: Enum) -> bool:
    return not _TABLES[type(status)].get(status)


# --- RECORDS ---

@dataclass
class HealthSample:
    """One raw telemetry observation for a component."""
    component_type: str
    component_name: str
    timestamp: datetime
    latency_ms: float
    success: bool = True
    metrics: Dict[str, float] = field(default_factory=dict)
    sample_id: Optional[str] = None

    @property
    def component_key(self) -> str:
        return f"{self.component_type}/{self.component_name}"


@dataclass
class WindowSummary:
    """Aggregated view of a closed window. Computed, never mutated afterwards."""
    sample_count: int
    latency_p50_ms: float
    latency_p95_ms: float
    latency_p99_ms: float
    error_count: int
    error_rate: float
    availability_percentage: float
    status: ComponentStatus
    metrics_avg: Dict[str, float] = field(default_factory=dict)


@dataclass
class AnomalyCandidate:
    """A detection result before it is deduplicated and persisted."""
    anomaly_type: AnomalyType
    event_type: str
    severity: Severity
    confidence_score: float
    source_component_type: str
    source_component_name: str
    baseline_value: Optional[float]
    observed_value: float
    deviation_percentage: Optional[float]
    detection_method: str
    dedup_key: str
    detected_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)
