# src/healguard/infrastructure/monitoring/metrics.py
"""Prometheus collectors shared by services and infrastructure adapters."""

from prometheus_client import Counter, Histogram

WINDOWS_CLOSED = Counter("hg_health_windows_closed_total", "Health windows closed", ["status"])
ANOMALIES_CREATED = Counter("hg_anomalies_total", "Anomaly signals created", ["severity"])
THRESHOLD_ALERTS = Counter("hg_threshold_alerts_total", "Threshold alerts fired", ["alert_level"])
DECISIONS = Counter("hg_decisions_total", "Decision events created", ["risk_level", "recommended_action"])
DECISION_TO_EXECUTION = Histogram(
    "hg_decision_execution_latency_seconds",
    "Latency from decision creation to recommendation execution",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0, 30.0, 60.0, 300.0),
)
RECOVERY_OUTCOMES = Counter("hg_recovery_outcomes_total", "Recovery action attempt outcomes", ["action_type", "outcome"])
NOTIFICATIONS = Counter("hg_notifications_total", "Notification deliveries", ["channel", "outcome"])
AUDIT_WRITE_FAILURES = Counter("hg_audit_write_failures_total", "Audit entries that could not be persisted")
