# src/healguard/application/engine/remediation.py
"""
Remediation planning and effectiveness scoring (pure).

`plan_for_anomaly` maps a detected anomaly to the recovery action the orchestrator
should run. `effectiveness` compares two HealthWindow snapshots taken before and after
the action.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from healguard.domain.entities import AnomalyType, RecoveryActionType, Severity
from healguard.domain.value_objects import (
    ActionConfig, AlertEscalationConfig, CircuitBreakerConfig, ClearCacheConfig,
    RestartFunctionConfig, RollbackDeploymentConfig, ScaleUpConfig,
)

# metric -> (weight, higher_is_better)
EFFECTIVENESS_WEIGHTS: Dict[str, Tuple[float, bool]] = {
    "latency_p95_ms": (0.4, False),
    "error_rate": (0.4, False),
    "availability_percentage": (0.2, True),
}


@dataclass(frozen=True)
class RemediationPlan:
    action_type: RecoveryActionType
    config: ActionConfig
    reason: str


def _value(obj: Any, name: str):
    return obj.get(name) if isinstance(obj, dict) else getattr(obj, name, None)


def plan_for_anomaly(anomaly: Any) -> RemediationPlan:
    """`anomaly` needs anomaly_type, severity and optionally id / component fields."""
    anomaly_type = _value(anomaly, "anomaly_type")
    severity = _value(anomaly, "severity")
    anomaly_type = anomaly_type if isinstance(anomaly_type, AnomalyType) else AnomalyType(anomaly_type)
    severity = severity if isinstance(severity, Severity) else Severity(severity)
    ref = {"anomaly_id": _value(anomaly, "id")} if _value(anomaly, "id") is not None else {}

    if anomaly_type == AnomalyType.LATENCY_SPIKE:
        if severity == Severity.CRITICAL:
            return RemediationPlan(RecoveryActionType.RESTART_FUNCTION, RestartFunctionConfig(metadata=ref),
                                   "critical latency spike")
        if severity == Severity.HIGH:
            return RemediationPlan(RecoveryActionType.CLEAR_CACHE, ClearCacheConfig(cache_type="all", metadata=ref),
                                   "high latency spike")
    elif anomaly_type == AnomalyType.ERROR_RATE_INCREASE:
        if severity == Severity.CRITICAL:
            return RemediationPlan(RecoveryActionType.ROLLBACK_DEPLOYMENT,
                                   RollbackDeploymentConfig(target_version="previous", metadata=ref),
                                   "critical error-rate increase")
        if severity == Severity.HIGH:
            return RemediationPlan(RecoveryActionType.CIRCUIT_BREAKER,
                                   CircuitBreakerConfig(error_threshold=50, metadata=ref),
                                   "high error-rate increase")
    elif anomaly_type == AnomalyType.RESOURCE_EXHAUSTION:
        if severity == Severity.CRITICAL:
            return RemediationPlan(RecoveryActionType.SCALE_UP, ScaleUpConfig(replicas=3, metadata=ref),
                                   "critical resource exhaustion")
        if severity == Severity.HIGH:
            return RemediationPlan(RecoveryActionType.CLEAR_CACHE, ClearCacheConfig(cache_type="memory", metadata=ref),
                                   "high resource exhaustion")

    message = f"{anomaly_type.value} ({severity.value}) on {_value(anomaly, 'source_component_type')}/" \
              f"{_value(anomaly, 'source_component_name')} needs operator attention"
    return RemediationPlan(
        RecoveryActionType.ALERT_ESCALATION,
        AlertEscalationConfig(severity=severity.value, message=message, metadata=ref),
        "no automated remediation for this anomaly",
    )


def _relative_improvement(pre: Optional[float], post: Optional[float], higher_is_better: bool) -> Optional[float]:
    if pre is None or post is None:
        return None
    if pre == 0:
        if post == 0:
            return 0.0
        # from a perfect zero, any movement is a full step in one direction
        return 1.0 if (post > 0) == higher_is_better else -1.0
    delta = (post - pre) / abs(pre)
    return delta if higher_is_better else -delta


def effectiveness(pre: Optional[Dict[str, Any]], post: Optional[Dict[str, Any]]) -> Tuple[Optional[float], Optional[float]]:
    """
    Returns (effectiveness_score 0-100, metrics_improvement_percentage).
    50 means unchanged; both are None when either snapshot is missing.
    """
    if not pre or not post:
        return None, None
    total_weight = 0.0
    weighted = 0.0
    for metric, (weight, higher_is_better) in EFFECTIVENESS_WEIGHTS.items():
        change = _relative_improvement(pre.get(metric), post.get(metric), higher_is_better)
        if change is None:
            continue
        change = max(-1.0, min(1.0, change))
        weighted += weight * change
        total_weight += weight
    if total_weight == 0:
        return None, None
    improvement = weighted / total_weight
    score = max(0.0, min(100.0, 50.0 + 50.0 * improvement))
    return round(score, 2), round(improvement * 100.0, 2)
