# src/healguard/application/engine/scoring.py
"""
Decision scoring engine (pure).

Turns weighted factors into a composite confidence score, a risk level, an approval
requirement and a recommended action, and re-checks persisted decisions against policy
rules. No function in this module performs I/O; services persist the results.

Normalization: each factor is scored by where `current` sits on the line from
`baseline` (score 0.5) to `threshold` (score 1.0). Moving away from the threshold
lowers the score linearly down to 0. Direction comes from the threshold relative to the
baseline; names like "latency" or "cost" only decide it when the two coincide.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import List, Optional, Dict, Any, Iterable, Sequence

from healguard.domain.entities import (
    RiskLevel, RecommendedAction, DecisionStatus, ValidationStatus, ViolationSeverity, utcnow
)
from healguard.domain.errors import ValidationError
from healguard.domain.value_objects import DecisionPolicy

logger = logging.getLogger(__name__)

LOWER_IS_BETTER_HINTS = ("cost", "error", "latency", "downtime")
RISK_SENSITIVE_CATEGORIES = {"risk", "security", "compliance"}

CRITICAL_DEVIATION_PCT = 50.0
HIGH_DEVIATION_PCT = 25.0
LOW_CONFIDENCE = 0.3
FAVORABLE_DEVIATION_PCT = 15.0
APPROVE_CONFIDENCE = 0.7
REJECT_CONFIDENCE = 0.4


# --- Data classes ---
@dataclass(frozen=True)
class FactorInput:
    name: str
    current_value: float
    weight: float
    baseline_value: Optional[float] = None
    threshold_value: Optional[float] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class ScoredFactor:
    name: str
    category: Optional[str]
    current_value: float
    baseline_value: Optional[float]
    threshold_value: Optional[float]
    weight: float
    normalized_score: float
    weighted_score: float
    deviation_percentage: Optional[float]
    higher_is_better: bool

    @property
    def favorable_deviation(self) -> Optional[float]:
        if self.deviation_percentage is None:
            return None
        return self.deviation_percentage if self.higher_is_better else -self.deviation_percentage

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ConfidenceResult:
    confidence: float
    factors: List[ScoredFactor]


@dataclass(frozen=True)
class Assessment:
    confidence: float
    factors: List[ScoredFactor]
    risk_level: RiskLevel
    requires_approval: bool
    recommended_action: RecommendedAction


@dataclass
class Violation:
    rule: str
    severity: ViolationSeverity
    message: str
    recommendation: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule,
            "severity": self.severity.value,
            "message": self.message,
            "recommendation": self.recommendation,
        }


@dataclass
class ValidationReport:
    status: ValidationStatus
    violations: List[Violation] = field(default_factory=list)

    @property
    def recommendations(self) -> List[str]:
        return [v.recommendation for v in self.violations]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "validation_status": self.status.value,
            "violations": [v.to_dict() for v in self.violations],
            "recommendations": self.recommendations,
        }


# --- Factor scoring ---
def _clip(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def infer_direction(name: str, baseline: Optional[float], threshold: Optional[float]) -> bool:
    """True when a higher value is better."""
    if baseline is not None and threshold is not None and threshold != baseline:
        return threshold > baseline
    lowered = (name or "").lower()
    return not any(hint in lowered for hint in LOWER_IS_BETTER_HINTS)


def factor_deviation(current: float, baseline: Optional[float]) -> Optional[float]:
    if baseline is None or baseline == 0:
        return None
    return (current - baseline) / abs(baseline) * 100.0


def normalize_score(current: float, baseline: Optional[float], threshold: Optional[float],
                    higher_is_better: bool) -> float:
    if baseline is None or threshold is None or threshold == baseline:
        dev = factor_deviation(current, baseline)
        if dev is None:
            return 0.5
        return 0.5 if abs(dev) > 10.0 else 0.8

    progress = (current - baseline) / (threshold - baseline)
    # (threshold - baseline) already carries the direction; a mismatching explicit
    # direction mirrors the scale.
    if higher_is_better != (threshold > baseline):
        progress = -progress
    if progress >= 1.0:
        return 1.0
    if progress >= 0.0:
        return 0.5 + 0.5 * progress
    return _clip(0.5 + 0.5 * progress)


def score_factor(factor: FactorInput, higher_is_better: Optional[bool] = None) -> ScoredFactor:
    direction = higher_is_better if higher_is_better is not None else infer_direction(
        factor.name, factor.baseline_value, factor.threshold_value
    )
    normalized = normalize_score(factor.current_value, factor.baseline_value, factor.threshold_value, direction)
    return ScoredFactor(
        name=factor.name,
        category=factor.category,
        current_value=factor.current_value,
        baseline_value=factor.baseline_value,
        threshold_value=factor.threshold_value,
        weight=factor.weight,
        normalized_score=normalized,
        weighted_score=factor.weight * normalized,
        deviation_percentage=factor_deviation(factor.current_value, factor.baseline_value),
        higher_is_better=direction,
    )


def check_weights(weights: Iterable[float], tolerance: float = 1e-2) -> float:
    weights = list(weights)
    if not weights:
        raise ValidationError("At least one decision factor is required")
    for w in weights:
        if w < 0 or w > 1:
            raise ValidationError(f"Factor weight {w} is outside [0, 1]")
    total = sum(weights)
    if abs(total - 1.0) > tolerance:
        raise ValidationError(f"Factor weights must sum to 1.0 (got {total:.4f})")
    return total


def compute_confidence(factors: Sequence[FactorInput], tolerance: float = 1e-2) -> ConfidenceResult:
    check_weights((f.weight for f in factors), tolerance)
    scored = [score_factor(f) for f in factors]
    confidence = _clip(sum(f.weighted_score for f in scored))
    return ConfidenceResult(confidence=confidence, factors=scored)


# --- Classification ---
def classify_risk(result: ConfidenceResult) -> RiskLevel:
    deviations = [abs(f.deviation_percentage) for f in result.factors if f.deviation_percentage is not None]
    max_dev = max(deviations) if deviations else 0.0

    if max_dev > CRITICAL_DEVIATION_PCT:
        level = RiskLevel.CRITICAL
    elif max_dev > HIGH_DEVIATION_PCT:
        level = RiskLevel.HIGH
    elif result.confidence < LOW_CONFIDENCE:
        level = RiskLevel.HIGH
    elif result.confidence < 0.6:
        level = RiskLevel.MEDIUM
    else:
        level = RiskLevel.LOW

    if any((f.category or "").lower() in RISK_SENSITIVE_CATEGORIES and f.normalized_score < 0.5
           for f in result.factors):
        level = level.escalate()
    return level


def needs_approval(confidence: float, risk: RiskLevel, policy: DecisionPolicy,
                   override: Optional[bool] = None) -> bool:
    if override is not None:
        return bool(override)
    return confidence < policy.min_confidence or risk.rank > policy.max_auto_risk.rank


def recommend_action(result: ConfidenceResult) -> RecommendedAction:
    favorable = [f.favorable_deviation for f in result.factors if f.favorable_deviation is not None]
    if result.confidence < REJECT_CONFIDENCE or any(d < -FAVORABLE_DEVIATION_PCT for d in favorable):
        return RecommendedAction.REJECT
    if result.confidence > APPROVE_CONFIDENCE and any(d > FAVORABLE_DEVIATION_PCT for d in favorable):
        return RecommendedAction.APPROVE
    return RecommendedAction.ESCALATE


def assess(factors: Sequence[FactorInput], policy: DecisionPolicy,
           approval_override: Optional[bool] = None) -> Assessment:
    result = compute_confidence(factors, policy.weight_tolerance)
    risk = classify_risk(result)
    return Assessment(
        confidence=result.confidence,
        factors=result.factors,
        risk_level=risk,
        requires_approval=needs_approval(result.confidence, risk, policy, approval_override),
        recommended_action=recommend_action(result),
    )


# --- Validation (read-only) ---
DEFAULT_RULES: Dict[str, Any] = {
    "min_confidence": 0.6,
    "max_risk_level": "high",
    "required_factors": [],
    "approval_threshold": 0.7,
}


def _as_enum(enum_cls, value):
    return value if isinstance(value, enum_cls) else enum_cls(str(value).lower())


def validate_decision(event: Any, rules: Optional[Dict[str, Any]] = None,
                      now: Optional[datetime] = None, tolerance: float = 1e-2) -> ValidationReport:
    """
    Re-check a decision against policy rules. `event` only needs the DecisionEvent
    attributes; nothing is written.
    """
    merged = {**DEFAULT_RULES, **{k: v for k, v in (rules or {}).items() if v is not None}}
    now = now or utcnow()
    violations: List[Violation] = []

    try:
        max_risk = _as_enum(RiskLevel, merged["max_risk_level"])
    except ValueError:
        raise ValidationError(f"Unknown max_risk_level '{merged['max_risk_level']}'")

    confidence = float(event.confidence_score)
    risk = _as_enum(RiskLevel, event.risk_level)
    factors = list(getattr(event, "factors", None) or [])
    factor_names = {getattr(f, "factor_name", None) or getattr(f, "name", None) for f in factors}

    if confidence < float(merged["min_confidence"]):
        violations.append(Violation(
            rule="min_confidence",
            severity=ViolationSeverity.ERROR,
            message=f"Confidence {confidence:.3f} is below the minimum {float(merged['min_confidence']):.2f}",
            recommendation="Collect additional supporting factors or refresh baselines before acting.",
        ))

    if risk.rank > max_risk.rank:
        violations.append(Violation(
            rule="max_risk_level",
            severity=ViolationSeverity.CRITICAL,
            message=f"Risk level '{risk.value}' exceeds the allowed '{max_risk.value}'",
            recommendation="Route the decision to manual review and consider a lower-impact action.",
        ))

    missing = [name for name in (merged.get("required_factors") or []) if name not in factor_names]
    if missing:
        violations.append(Violation(
            rule="required_factors",
            severity=ViolationSeverity.WARNING,
            message=f"Missing required factors: {', '.join(missing)}",
            recommendation="Re-evaluate the decision including the required factors.",
        ))

    if getattr(event, "requires_approval", False) and confidence < float(merged["approval_threshold"]):
        violations.append(Violation(
            rule="approval_threshold",
            severity=ViolationSeverity.WARNING,
            message=f"Confidence {confidence:.3f} is below the approval threshold {float(merged['approval_threshold']):.2f}",
            recommendation="Obtain explicit operator approval before execution.",
        ))

    if factors:
        total = sum(float(f.weight) for f in factors)
        if abs(total - 1.0) > tolerance:
            violations.append(Violation(
                rule="weight_sum",
                severity=ViolationSeverity.WARNING,
                message=f"Factor weights sum to {total:.4f}",
                recommendation="Rebalance factor weights so they sum to 1.0.",
            ))

    expires_at = getattr(event, "expires_at", None)
    if expires_at is not None and expires_at < now:
        violations.append(Violation(
            rule="expiration",
            severity=ViolationSeverity.ERROR,
            message=f"Decision expired at {expires_at.isoformat()}",
            recommendation="Create a new decision from current data.",
        ))

    status = getattr(event, "status", None)
    if status is not None and _as_enum(DecisionStatus, status) == DecisionStatus.EXECUTED:
        violations.append(Violation(
            rule="already_executed",
            severity=ViolationSeverity.ERROR,
            message="Decision has already been executed",
            recommendation="Validate the follow-up decision instead.",
        ))

    if any(v.severity in (ViolationSeverity.ERROR, ViolationSeverity.CRITICAL) for v in violations):
        result = ValidationStatus.FAILED
    elif violations:
        result = ValidationStatus.REQUIRES_REVIEW
    else:
        result = ValidationStatus.PASSED
    logger.debug("Validation of decision %s -> %s (%d violations)",
                 getattr(event, "id", None), result.value, len(violations))
    return ValidationReport(status=result, violations=violations)
