# --- START OF FILE: src/healguard/interfaces/api/schemas.py ---
from __future__ import annotations
from typing import List, Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime


def _to_str(v: Any) -> str | None:
    if v is None: return None
    if hasattr(v, "value"): return str(v.value)
    return str(v)


class _EnumOut(BaseModel):
    """Response base: reads ORM rows and flattens Enum columns to their values."""
    model_config = ConfigDict(from_attributes=True)


# --- Health ---
class HealthSampleIn(BaseModel):
    component_type: str = Field(min_length=1, max_length=64)
    component_name: str = Field(min_length=1, max_length=128)
    timestamp: datetime
    latency_ms: float = Field(ge=0)
    success: bool = True
    metrics: Dict[str, float] = Field(default_factory=dict)
    sample_id: str | None = Field(default=None, max_length=64)


class IngestIn(BaseModel):
    owner_id: str | None = None
    samples: List[HealthSampleIn] = Field(min_length=1, max_length=5000)


class IngestOut(BaseModel):
    accepted: int
    duplicates: int
    windows_closed: int
    windows_skipped: int
    anomalies_created: int
    thresholds_triggered: int


class HealthWindowOut(_EnumOut):
    id: int
    component_type: str
    component_name: str
    window_start: datetime
    window_end: datetime
    sample_count: int
    latency_p50_ms: float
    latency_p95_ms: float
    latency_p99_ms: float
    error_count: int
    error_rate: float
    availability_percentage: float
    status: str
    metrics_avg: Dict[str, float] | None = None

    @field_validator("status", mode="before")
    def _v_status(cls, v): return _to_str(v)


# --- Thresholds ---
class ThresholdIn(BaseModel):
    owner_id: str | None = None
    metric_name: str = Field(min_length=1, max_length=128)
    threshold_value: float
    threshold_type: str
    alert_level: str = "warning"
    cooldown_minutes: int = Field(default=60, ge=0)
    auto_adjusted: bool = False
    adjustment_factor: float = Field(default=2.0, gt=0)
    alert_channels: List[str] | None = None
    enabled: bool = True


class ThresholdOut(_EnumOut):
    id: int
    metric_name: str
    threshold_value: float
    threshold_type: str
    alert_level: str
    cooldown_minutes: int
    enabled: bool
    auto_adjusted: bool
    adjustment_factor: float
    last_triggered_at: datetime | None = None
    trigger_count: int
    alert_channels: List[str] | None = None

    @field_validator("threshold_type", "alert_level", mode="before")
    def _v_enum(cls, v): return _to_str(v)


class EvaluateMetricIn(BaseModel):
    owner_id: str | None = None
    metric_name: str = Field(min_length=1)
    value: float
    component_type: str | None = None
    component_name: str | None = None


class AlertOut(_EnumOut):
    id: int
    threshold_id: int
    metric_name: str
    observed_value: float
    threshold_value: float
    alert_level: str
    message: str
    triggered_at: datetime
    acknowledged: bool
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None

    @field_validator("alert_level", mode="before")
    def _v_level(cls, v): return _to_str(v)


# --- Anomalies ---
class DetectIn(BaseModel):
    owner_id: str | None = None
    time_window_minutes: int = Field(default=15, ge=1, le=1440)
    auto_analyze: bool = False


class SignalIn(BaseModel):
    owner_id: str | None = None
    event_type: str = Field(min_length=1, max_length=64)
    source_component_type: str = Field(min_length=1)
    source_component_name: str = Field(min_length=1)
    stability_variance: float | None = None
    instability_probability: float | None = Field(default=None, ge=0, le=1)
    reinforcement_rate: float | None = Field(default=None, ge=0)
    signal_id: str | None = None


class AnomalyOut(_EnumOut):
    id: int
    anomaly_type: str
    event_type: str
    severity: str
    computed_severity: str
    confidence_score: float
    source_component_type: str
    source_component_name: str
    baseline_value: float | None = None
    observed_value: float
    deviation_percentage: float | None = None
    status: str
    detection_method: str
    triggered_recovery_action_id: int | None = None
    detected_at: datetime

    @field_validator("anomaly_type", "severity", "computed_severity", "status", mode="before")
    def _v_enum(cls, v): return _to_str(v)


# --- Decisions ---
class FactorIn(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    current_value: float
    weight: float = Field(ge=0, le=1)
    baseline_value: float | None = None
    threshold_value: float | None = None
    category: str | None = None


class RecommendationSpecIn(BaseModel):
    action_type: str = "send_notification"
    action_target: str | None = None
    action_payload: Dict[str, Any] = Field(default_factory=dict)
    urgency: str | None = None


class DecisionEvaluateIn(BaseModel):
    owner_id: str | None = None
    decision_type: str = Field(min_length=1, max_length=64)
    trigger_source: str = Field(min_length=1, max_length=64)
    factors: List[FactorIn] = Field(min_length=1)
    context_data: Dict[str, Any] = Field(default_factory=dict)
    requires_approval: bool | None = None
    priority: int | None = Field(default=None, ge=1, le=10)
    expires_in_minutes: int | None = Field(default=None, gt=0)
    recommendation: RecommendationSpecIn = Field(default_factory=RecommendationSpecIn)


class DecisionValidateIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    owner_id: str | None = None
    decision_event_id: int
    rules: Dict[str, Any] = Field(default_factory=dict, alias="validation_rules")


class ApprovalIn(BaseModel):
    owner_id: str | None = None
    reason: str | None = None


class DecisionOut(_EnumOut):
    id: int
    decision_type: str
    trigger_source: str
    confidence_score: float
    risk_level: str
    requires_approval: bool
    approval_status: str
    approved_by: str | None = None
    recommended_action: str
    priority: int
    status: str
    expires_at: datetime | None = None
    created_at: datetime

    @field_validator("risk_level", "approval_status", "recommended_action", "status", mode="before")
    def _v_enum(cls, v): return _to_str(v)


# --- Recommendations ---
class RecommendationExecuteIn(BaseModel):
    owner_id: str | None = None
    recommendation_id: int
    execution_mode: str = "immediate"
    scheduled_for: datetime | None = None
    override_approval: bool = False


class RecommendationOut(_EnumOut):
    id: int
    decision_event_id: int
    recommendation_type: str
    action_type: str
    action_target: str | None = None
    priority: int
    urgency: str
    approval_status: str
    execution_status: str
    scheduled_for: datetime | None = None
    execution_attempts: int
    latency_ms: float | None = None
    executed_at: datetime | None = None

    @field_validator("action_type", "urgency", "approval_status", "execution_status", mode="before")
    def _v_enum(cls, v): return _to_str(v)


# --- Recovery ---
class RecoveryExecuteIn(BaseModel):
    owner_id: str | None = None
    action_type: str
    target_component_type: str = Field(min_length=1)
    target_component_name: str = Field(min_length=1)
    action_config: Dict[str, Any] = Field(default_factory=dict)
    retry_policy: Dict[str, Any] | None = None
    timeout_seconds: int | None = Field(default=None, gt=0)
    dry_run: bool = False


class RollbackIn(BaseModel):
    owner_id: str | None = None
    reason: str = Field(min_length=1)


class RecoveryOut(_EnumOut):
    id: int
    action_type: str
    action_category: str
    target_component_type: str
    target_component_name: str
    action_config: Dict[str, Any] | None = None
    trigger_type: str
    execution_status: str
    attempt_number: int
    max_attempts: int
    next_retry_at: datetime | None = None
    recovery_effectiveness_score: float | None = None
    metrics_improvement_percentage: float | None = None
    execution_duration_ms: float | None = None
    error_message: str | None = None
    rollback_action_id: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @field_validator("action_type", "trigger_type", "execution_status", mode="before")
    def _v_enum(cls, v): return _to_str(v)


# --- Audit ---
class AuditEntryOut(_EnumOut):
    id: int
    event_type: str
    event_category: str
    description: str
    decision_impact: str | None = None
    anomaly_detected: bool
    triggered_by: str | None = None
    actor_type: str
    subject_type: str | None = None
    subject_id: int | None = None
    previous_state: str | None = None
    new_state: str | None = None
    created_at: datetime

    @field_validator("actor_type", mode="before")
    def _v_actor(cls, v): return _to_str(v)


# --- Self test / jobs ---
class SelfTestIn(BaseModel):
    owner_id: str | None = None


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
# --- END OF FILE ---
