import logging

import pytest
from datetime import timedelta

from healguard.domain.entities import (
    RecoveryStatus, AnomalyStatus, QueueStatus, RiskLevel, Severity, RecoveryActionType,
    can_transition, ensure_transition, is_terminal
)
from healguard.domain.errors import InvalidTransitionError, ValidationError
from healguard.logging_conf import resolve_level
from healguard.domain.value_objects import (
    RetryPolicy, SeverityPolicy, DecisionPolicy, ScaleUpConfig, AlertEscalationConfig,
    ACTION_CONFIG_TYPES, parse_action_config
)


def test_recovery_lifecycle_edges():
    assert can_transition(RecoveryStatus.PENDING, RecoveryStatus.IN_PROGRESS)
    assert can_transition(RecoveryStatus.IN_PROGRESS, RecoveryStatus.PENDING)  # scheduled retry
    assert can_transition(RecoveryStatus.COMPLETED, RecoveryStatus.ROLLED_BACK)
    assert not can_transition(RecoveryStatus.PENDING, RecoveryStatus.COMPLETED)
    assert not can_transition(RecoveryStatus.CANCELLED, RecoveryStatus.PENDING)


def test_terminal_states_have_no_exit():
    for status in (RecoveryStatus.TIMEOUT, RecoveryStatus.CANCELLED, RecoveryStatus.ROLLED_BACK):
        assert is_terminal(status)
    assert is_terminal(AnomalyStatus.RESOLVED)
    assert is_terminal(QueueStatus.EXECUTED)
    assert not is_terminal(RecoveryStatus.COMPLETED)


def test_ensure_transition_raises_on_illegal_edge():
    with pytest.raises(InvalidTransitionError):
        ensure_transition(AnomalyStatus.RESOLVED, AnomalyStatus.ACKNOWLEDGED)
    ensure_transition(AnomalyStatus.DETECTED, AnomalyStatus.FALSE_POSITIVE)


def test_risk_escalation_saturates():
    assert RiskLevel.LOW.escalate() == RiskLevel.MEDIUM
    assert RiskLevel.CRITICAL.escalate() == RiskLevel.CRITICAL
    assert Severity.CRITICAL.rank > Severity.HIGH.rank > Severity.MODERATE.rank > Severity.LOW.rank


def test_action_category_is_first_word():
    assert RecoveryActionType.RESTART_FUNCTION.category == "restart"
    assert RecoveryActionType.SCALE_DOWN.category == "scale"
    assert RecoveryActionType.CIRCUIT_BREAKER.category == "circuit"


# --- Retry policy ---

def test_retry_policy_exponential_backoff_is_capped():
    policy = RetryPolicy(max_attempts=5, backoff_seconds=60, max_backoff_seconds=200)
    assert policy.delay_for(1) == timedelta(seconds=60)
    assert policy.delay_for(2) == timedelta(seconds=120)
    assert policy.delay_for(3) == timedelta(seconds=200)


def test_retry_policy_linear_and_from_dict():
    policy = RetryPolicy.from_dict({"exponential": False, "backoff_seconds": 10, "unknown": 1})
    assert policy.delay_for(4) == timedelta(seconds=10)
    assert policy.max_attempts == 3


def test_retry_policy_rejects_zero_attempts():
    with pytest.raises(ValidationError):
        RetryPolicy(max_attempts=0)


# --- Severity policy ---

@pytest.mark.parametrize("kwargs, expected", [
    ({"deviation": 0.35}, Severity.CRITICAL),
    ({"deviation": -0.27}, Severity.HIGH),
    ({"deviation": 0.22}, Severity.MODERATE),
    ({"deviation": 0.05}, Severity.LOW),
    ({"probability": 0.45}, Severity.HIGH),
    ({"rate_per_hour": 160.0}, Severity.CRITICAL),
    ({"deviation": 0.05, "probability": 0.55}, Severity.CRITICAL),
])
def test_severity_policy_takes_highest_tier(kwargs, expected):
    assert SeverityPolicy().classify(**kwargs) == expected


def test_decision_policy_rejects_unknown_risk_name():
    class _Settings:
        DECISION_MIN_CONFIDENCE = 0.6
        DECISION_AUTO_APPROVE_THRESHOLD = 0.7
        DECISION_MAX_AUTO_RISK = "extreme"

    with pytest.raises(ValidationError):
        DecisionPolicy.from_settings(_Settings())


# --- Action configuration ---

def test_every_action_type_has_a_config_class():
    assert set(ACTION_CONFIG_TYPES) == set(RecoveryActionType)


def test_parse_action_config_keeps_unknown_keys_as_metadata():
    config = parse_action_config(RecoveryActionType.SCALE_UP, {"replicas": 5, "zone": "eu-west-1"})
    assert isinstance(config, ScaleUpConfig)
    assert config.replicas == 5
    assert config.metadata == {"zone": "eu-west-1"}
    assert config.to_dict() == {"zone": "eu-west-1", "replicas": 5}


def test_parse_action_config_defaults():
    config = parse_action_config(RecoveryActionType.ALERT_ESCALATION)
    assert isinstance(config, AlertEscalationConfig)
    assert config.severity == "high"


@pytest.mark.parametrize("raw", [{"replicas": 0}, {"replicas": "three"}])
def test_parse_action_config_rejects_bad_replicas(raw):
    with pytest.raises(ValidationError):
        parse_action_config(RecoveryActionType.SCALE_UP, raw)


@pytest.mark.parametrize("env, override, expected", [
    ("dev", None, logging.DEBUG),
    ("prod", None, logging.INFO),
    ("prod", "warning", logging.WARNING),
    ("dev", "nonsense", logging.DEBUG),
])
def test_log_level_resolution(env, override, expected):
    assert resolve_level(env, override) == expected
