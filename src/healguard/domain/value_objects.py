# src/healguard/domain/value_objects.py
"""
Immutable value objects: tunable policies and the typed configuration of every
recovery action.

Action configuration is a discriminated union keyed by `RecoveryActionType`. Each
action type owns one frozen dataclass with explicit fields; keys it does not know
are preserved in `metadata` instead of being silently dropped.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields, asdict
from datetime import timedelta
from typing import Any, Dict, Optional, Type

from .entities import RecoveryActionType, RiskLevel, Severity
from .errors import ValidationError


# --- Policies ---

@dataclass(frozen=True)
class RetryPolicy:
    """Retry schedule for a RecoveryAction.

    Exponential backoff doubles per attempt (`backoff_seconds * 2**(attempt-1)`)
    and is capped at `max_backoff_seconds`.
    """
    max_attempts: int = 3
    backoff_seconds: int = 60
    exponential: bool = True
    max_backoff_seconds: int = 3600

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValidationError("retry_policy.max_attempts must be >= 1")
        if self.backoff_seconds < 0:
            raise ValidationError("retry_policy.backoff_seconds must be >= 0")

    def delay_for(self, attempt_number: int) -> timedelta:
        """Delay before the retry that follows the failed `attempt_number` (1-based)."""
        if not self.exponential:
            return timedelta(seconds=self.backoff_seconds)
        seconds = self.backoff_seconds * (2 ** max(attempt_number - 1, 0))
        return timedelta(seconds=min(seconds, self.max_backoff_seconds))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], defaults: Optional["RetryPolicy"] = None) -> "RetryPolicy":
        base = asdict(defaults or cls())
        base.update({k: v for k, v in (data or {}).items() if k in base and v is not None})
        return cls(**base)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RECOVERY_MAX_ATTEMPTS,
            backoff_seconds=settings.RECOVERY_BACKOFF_SECONDS,
            exponential=True,
            max_backoff_seconds=settings.RECOVERY_BACKOFF_CAP_SECONDS,
        )


@dataclass(frozen=True)
class SeverityPolicy:
    """Tiered severity classification for deviation / probability / rate signals."""
    critical_deviation: float = 0.30
    high_deviation: float = 0.25
    moderate_deviation: float = 0.20
    critical_probability: float = 0.50
    high_probability: float = 0.40
    moderate_probability: float = 0.30
    critical_rate_per_hour: float = 150.0
    high_rate_per_hour: float = 120.0

    @classmethod
    def from_settings(cls, settings) -> "SeverityPolicy":
        return cls(
            critical_deviation=settings.SEVERITY_CRITICAL_DEVIATION,
            high_deviation=settings.SEVERITY_HIGH_DEVIATION,
            moderate_deviation=settings.SEVERITY_MODERATE_DEVIATION,
            critical_probability=settings.SEVERITY_CRITICAL_PROBABILITY,
            high_probability=settings.SEVERITY_HIGH_PROBABILITY,
            moderate_probability=settings.SEVERITY_MODERATE_PROBABILITY,
            critical_rate_per_hour=settings.SEVERITY_CRITICAL_RATE_PER_HOUR,
            high_rate_per_hour=settings.SEVERITY_HIGH_RATE_PER_HOUR,
        )

    def classify(
        self,
        deviation: Optional[float] = None,
        probability: Optional[float] = None,
        rate_per_hour: Optional[float] = None,
    ) -> Severity:
        """Highest tier reached by any of the supplied signals."""
        dev = abs(deviation) if deviation is not None else None
        if (dev is not None and dev > self.critical_deviation) \
                or (probability is not None and probability > self.critical_probability) \
                or (rate_per_hour is not None and rate_per_hour > self.critical_rate_per_hour):
            return Severity.CRITICAL
        if (dev is not None and dev > self.high_deviation) \
                or (probability is not None and probability > self.high_probability) \
                or (rate_per_hour is not None and rate_per_hour > self.high_rate_per_hour):
            return Severity.HIGH
        if (dev is not None and dev > self.moderate_deviation) \
                or (probability is not None and probability > self.moderate_probability):
            return Severity.MODERATE
        return Severity.LOW


@dataclass(frozen=True)
class DecisionPolicy:
    min_confidence: float = 0.6
    auto_approve_threshold: float = 0.7
    max_auto_risk: RiskLevel = RiskLevel.MEDIUM
    weight_tolerance: float = 1e-2

    @classmethod
    def from_settings(cls, settings) -> "DecisionPolicy":
        try:
            max_risk = RiskLevel(settings.DECISION_MAX_AUTO_RISK.lower())
        except ValueError:
            raise ValidationError(f"Unknown DECISION_MAX_AUTO_RISK '{settings.DECISION_MAX_AUTO_RISK}'")
        return cls(
            min_confidence=settings.DECISION_MIN_CONFIDENCE,
            auto_approve_threshold=settings.DECISION_AUTO_APPROVE_THRESHOLD,
            max_auto_risk=max_risk,
        )


# --- Recovery action configuration (discriminated union) ---

@dataclass(frozen=True)
class ActionConfig:
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        meta = data.pop("metadata") or {}
        return {**meta, **data}


@dataclass(frozen=True)
class RestartFunctionConfig(ActionConfig):
    graceful: bool = True


@dataclass(frozen=True)
class RollbackDeploymentConfig(ActionConfig):
    target_version: str = "previous"


@dataclass(frozen=True)
class ScaleUpConfig(ActionConfig):
    replicas: int = 3


@dataclass(frozen=True)
class ScaleDownConfig(ActionConfig):
    replicas: int = 1


@dataclass(frozen=True)
class ClearCacheConfig(ActionConfig):
    cache_type: str = "all"


@dataclass(frozen=True)
class ResetConnectionConfig(ActionConfig):
    pool: str = "default"


@dataclass(frozen=True)
class FailoverConfig(ActionConfig):
    target_region: Optional[str] = None


@dataclass(frozen=True)
class CircuitBreakerConfig(ActionConfig):
    error_threshold: int = 50


@dataclass(frozen=True)
class RateLimitConfig(ActionConfig):
    requests_per_minute: int = 100


@dataclass(frozen=True)
class AlertEscalationConfig(ActionConfig):
    severity: str = "high"
    message: str = ""


ACTION_CONFIG_TYPES: Dict[RecoveryActionType, Type[ActionConfig]] = {
    RecoveryActionType.RESTART_FUNCTION: RestartFunctionConfig,
    RecoveryActionType.ROLLBACK_DEPLOYMENT: RollbackDeploymentConfig,
    RecoveryActionType.SCALE_UP: ScaleUpConfig,
    RecoveryActionType.SCALE_DOWN: ScaleDownConfig,
    RecoveryActionType.CLEAR_CACHE: ClearCacheConfig,
    RecoveryActionType.RESET_CONNECTION: ResetConnectionConfig,
    RecoveryActionType.FAILOVER: FailoverConfig,
    RecoveryActionType.CIRCUIT_BREAKER: CircuitBreakerConfig,
    RecoveryActionType.RATE_LIMIT: RateLimitConfig,
    RecoveryActionType.ALERT_ESCALATION: AlertEscalationConfig,
}

_unconfigured = set(RecoveryActionType) - set(ACTION_CONFIG_TYPES)
if _unconfigured:
    raise ValueError(f"No config class for: {sorted(m.value for m in _unconfigured)}")


def parse_action_config(action_type: RecoveryActionType, raw: Optional[Dict[str, Any]] = None) -> ActionConfig:
    """Build the typed config for `action_type` from a loose mapping."""
    config_cls = ACTION_CONFIG_TYPES[action_type]
    raw = dict(raw or {})
    known = {f.name for f in fields(config_cls)} - {"metadata"}
    kwargs = {k: raw.pop(k) for k in list(raw) if k in known}
    metadata = raw.pop("metadata", None) or {}
    metadata.update(raw)
    try:
        config = config_cls(metadata=metadata, **kwargs)
    except TypeError as e:
        raise ValidationError(f"Invalid config for {action_type.value}: {e}")

    for name in ("replicas", "error_threshold", "requests_per_minute"):
        value = getattr(config, name, None)
        if value is not None and (not isinstance(value, int) or value < 1):
            raise ValidationError(f"{action_type.value}.{name} must be a positive integer")
    return config
