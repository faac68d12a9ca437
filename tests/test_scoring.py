import pytest
from datetime import timedelta
from types import SimpleNamespace

from healguard.application.engine.scoring import (
    FactorInput, compute_confidence, classify_risk, recommend_action, assess, normalize_score,
    infer_direction, validate_decision, check_weights
)
from healguard.application.engine.baseline import percentile, build_profile, deviation_percentage
from healguard.application.engine.remediation import plan_for_anomaly, effectiveness
from healguard.domain.entities import (
    RiskLevel, RecommendedAction, ValidationStatus, AnomalyType, Severity, RecoveryActionType, utcnow
)
from healguard.domain.errors import ValidationError
from healguard.domain.value_objects import DecisionPolicy

REFERENCE = [
    FactorInput(name="revenue", current_value=120.0, baseline_value=100.0, threshold_value=150.0, weight=0.4),
    FactorInput(name="cost_efficiency", current_value=80.0, baseline_value=100.0, threshold_value=70.0, weight=0.3),
    FactorInput(name="customer_satisfaction", current_value=4.5, baseline_value=4.0, threshold_value=4.8, weight=0.3),
]


def test_reference_scenario_scores():
    result = compute_confidence(REFERENCE)
    scores = {f.name: f.normalized_score for f in result.factors}
    assert scores["revenue"] == pytest.approx(0.7)
    assert scores["cost_efficiency"] == pytest.approx(0.8333, abs=1e-4)
    assert scores["customer_satisfaction"] == pytest.approx(0.8125)
    assert result.confidence == pytest.approx(0.77375)


def test_reference_scenario_assessment():
    assessment = assess(REFERENCE, DecisionPolicy())
    assert assessment.risk_level == RiskLevel.LOW
    assert assessment.requires_approval is False
    assert assessment.recommended_action == RecommendedAction.APPROVE


def test_cost_factor_direction_comes_from_threshold():
    scored = {f.name: f for f in compute_confidence(REFERENCE).factors}
    assert scored["cost_efficiency"].higher_is_better is False
    assert scored["cost_efficiency"].favorable_deviation == pytest.approx(20.0)


def test_direction_falls_back_to_name_hints():
    assert infer_direction("p95_latency", None, None) is False
    assert infer_direction("throughput", None, None) is True


def test_normalize_score_bounds():
    assert normalize_score(200.0, 100.0, 150.0, True) == 1.0
    assert normalize_score(100.0, 100.0, 150.0, True) == 0.5
    assert normalize_score(0.0, 100.0, 150.0, True) == 0.0
    # no threshold: close to baseline scores 0.8, far from it 0.5
    assert normalize_score(105.0, 100.0, None, True) == 0.8
    assert normalize_score(150.0, 100.0, None, True) == 0.5


@pytest.mark.parametrize("weights", [[0.5, 0.4], [0.7, 0.7], [], [1.2, -0.2]])
def test_weights_must_sum_to_one(weights):
    with pytest.raises(ValidationError):
        check_weights(weights)


def test_weights_within_tolerance_are_accepted():
    assert check_weights([0.333, 0.333, 0.333]) == pytest.approx(0.999)


def test_large_deviation_is_critical_risk():
    factors = [FactorInput(name="throughput", current_value=40.0, baseline_value=100.0, threshold_value=150.0, weight=1.0)]
    result = compute_confidence(factors)
    assert classify_risk(result) == RiskLevel.CRITICAL
    assert recommend_action(result) == RecommendedAction.REJECT


def test_risk_sensitive_category_escalates_one_level():
    factors = [
        FactorInput(name="uptime", current_value=101.0, baseline_value=100.0, threshold_value=110.0, weight=0.5),
        FactorInput(name="exposure", current_value=98.0, baseline_value=100.0, threshold_value=110.0,
                    weight=0.5, category="security"),
    ]
    result = compute_confidence(factors)
    # confidence ~0.48 is MEDIUM, the failing security factor pushes it to HIGH
    assert classify_risk(result) == RiskLevel.HIGH


def test_approval_override_wins():
    assessment = assess(REFERENCE, DecisionPolicy(), approval_override=True)
    assert assessment.requires_approval is True


def test_validate_decision_flags_expired_and_executed():
    event = SimpleNamespace(
        id=1, confidence_score=0.9, risk_level="low", requires_approval=False, factors=[],
        expires_at=utcnow() - timedelta(minutes=1), status="executed",
    )
    report = validate_decision(event)
    assert report.status == ValidationStatus.FAILED
    assert {v.rule for v in report.violations} == {"expiration", "already_executed"}


def test_validate_decision_missing_factor_needs_review():
    event = SimpleNamespace(
        id=2, confidence_score=0.9, risk_level="low", requires_approval=False,
        factors=[SimpleNamespace(factor_name="revenue", weight=1.0)], expires_at=None, status="pending",
    )
    report = validate_decision(event, {"required_factors": ["revenue", "churn"]})
    assert report.status == ValidationStatus.REQUIRES_REVIEW
    assert report.to_dict()["violations"][0]["rule"] == "required_factors"


def test_validate_decision_rejects_unknown_risk_rule():
    event = SimpleNamespace(id=3, confidence_score=0.9, risk_level="low", factors=[])
    with pytest.raises(ValidationError):
        validate_decision(event, {"max_risk_level": "apocalyptic"})


# --- baseline statistics ---

def test_percentile_interpolates():
    values = [100.0 * i for i in range(1, 11)]
    assert percentile(values, 50) == pytest.approx(550.0)
    assert percentile(values, 95) == pytest.approx(955.0)
    assert percentile([7.0], 99) == 7.0


def test_profile_and_z_score():
    profile = build_profile([10, 10, 30, 30])
    assert profile.mean == 20
    assert profile.std_dev == 10
    assert profile.z_score(50) == pytest.approx(3.0)
    assert build_profile([]) is None
    assert deviation_percentage(150.0, 100.0) == pytest.approx(50.0)
    assert deviation_percentage(1.0, 0.0) is None


# --- remediation planning ---

@pytest.mark.parametrize("anomaly_type, severity, expected", [
    (AnomalyType.LATENCY_SPIKE, Severity.CRITICAL, RecoveryActionType.RESTART_FUNCTION),
    (AnomalyType.LATENCY_SPIKE, Severity.HIGH, RecoveryActionType.CLEAR_CACHE),
    (AnomalyType.ERROR_RATE_INCREASE, Severity.CRITICAL, RecoveryActionType.ROLLBACK_DEPLOYMENT),
    (AnomalyType.ERROR_RATE_INCREASE, Severity.HIGH, RecoveryActionType.CIRCUIT_BREAKER),
    (AnomalyType.RESOURCE_EXHAUSTION, Severity.CRITICAL, RecoveryActionType.SCALE_UP),
    (AnomalyType.METRIC_DEVIATION, Severity.CRITICAL, RecoveryActionType.ALERT_ESCALATION),
    (AnomalyType.LATENCY_SPIKE, Severity.MODERATE, RecoveryActionType.ALERT_ESCALATION),
])
def test_plan_for_anomaly(anomaly_type, severity, expected):
    plan = plan_for_anomaly({"anomaly_type": anomaly_type, "severity": severity, "id": 7,
                             "source_component_type": "api", "source_component_name": "checkout"})
    assert plan.action_type == expected
    assert plan.config.metadata["anomaly_id"] == 7


def test_effectiveness_scores_improvement():
    pre = {"latency_p95_ms": 1000.0, "error_rate": 0.2, "availability_percentage": 80.0}
    post = {"latency_p95_ms": 500.0, "error_rate": 0.1, "availability_percentage": 90.0}
    score, improvement = effectiveness(pre, post)
    assert score == pytest.approx(71.25)
    assert improvement == pytest.approx(42.5)


def test_effectiveness_unchanged_and_missing():
    snapshot = {"latency_p95_ms": 100.0, "error_rate": 0.0, "availability_percentage": 100.0}
    assert effectiveness(snapshot, dict(snapshot)) == (50.0, 0.0)
    assert effectiveness(None, snapshot) == (None, None)
