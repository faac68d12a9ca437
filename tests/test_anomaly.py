import pytest
from datetime import timedelta

from conftest import OWNER, T0, make_window
from healguard.domain.entities import AnomalyType, AnomalyStatus, Severity, RecoveryStatus
from healguard.domain.errors import ValidationError, InvalidTransitionError, NotFoundError
from healguard.infrastructure.db.models import AnomalySignal, RecoveryAction
from healguard.infrastructure.db.repository import AnomalyRepository


@pytest.fixture
def anomaly_service(services):
    return services["anomaly_service"]


def _history(count=5, **kwargs):
    return [make_window(window_start=T0 - timedelta(minutes=count - i), **kwargs) for i in range(count)]


def _only(candidates, anomaly_type):
    found = [c for c in candidates if c.anomaly_type == anomaly_type]
    assert len(found) == 1
    return found[0]


# --- rules ---

def test_latency_deviation_against_history_is_critical(anomaly_service):
    window = make_window(latency_p95_ms=450.0)
    latency = _only(anomaly_service.candidates_for_window(window, _history(latency_p95_ms=100.0)),
                    AnomalyType.LATENCY_SPIKE)
    assert latency.deviation_percentage == pytest.approx(350.0)
    assert latency.severity == Severity.CRITICAL
    assert latency.detection_method == "baseline_deviation"
    assert latency.baseline_value == pytest.approx(100.0)


def test_absolute_latency_without_history(anomaly_service):
    latency = _only(anomaly_service.candidates_for_window(make_window(latency_p95_ms=2500.0), []),
                    AnomalyType.LATENCY_SPIKE)
    assert latency.severity == Severity.MODERATE
    assert latency.detection_method == "latency_threshold"
    assert latency.deviation_percentage is None


def test_quiet_window_has_no_candidates(anomaly_service):
    assert anomaly_service.candidates_for_window(make_window(), _history()) == []


@pytest.mark.parametrize("metric, value, expected", [
    ("cpu_usage", 92.0, Severity.HIGH),
    ("cpu_usage", 97.0, Severity.CRITICAL),
    ("memory_usage", 86.0, Severity.MODERATE),
])
def test_resource_exhaustion_tiers(anomaly_service, metric, value, expected):
    window = make_window(metrics_avg={metric: value})
    resource = _only(anomaly_service.candidates_for_window(window, []), AnomalyType.RESOURCE_EXHAUSTION)
    assert resource.severity == expected
    assert resource.confidence_score == 90.0
    assert resource.dedup_key.endswith(f":{metric}")


def test_resource_below_limit_is_ignored(anomaly_service):
    window = make_window(metrics_avg={"cpu_usage": 80.0, "memory_usage": 85.0})
    assert anomaly_service.candidates_for_window(window, []) == []


def test_custom_metric_z_score_deviation(anomaly_service):
    history = [make_window(window_start=T0 - timedelta(minutes=5 - i), metrics_avg={"queue_depth": v})
               for i, v in enumerate([10, 11, 9, 10, 10])]
    window = make_window(metrics_avg={"queue_depth": 20})
    deviation = _only(anomaly_service.candidates_for_window(window, history), AnomalyType.METRIC_DEVIATION)
    assert deviation.event_type == "queue_depth_deviation"
    assert deviation.detection_method == "z_score"
    assert deviation.baseline_value == pytest.approx(10.0)
    # value doubled the mean
    assert deviation.severity == Severity.CRITICAL


def test_custom_metric_needs_enough_history(anomaly_service):
    history = [make_window(window_start=T0 - timedelta(minutes=4 - i), metrics_avg={"queue_depth": v})
               for i, v in enumerate([10, 11, 9, 10])]
    window = make_window(metrics_avg={"queue_depth": 20})
    assert anomaly_service.candidates_for_window(window, history) == []


def test_small_error_rate_after_clean_baseline_is_ignored(anomaly_service):
    window = make_window(error_rate=0.005, error_count=1)
    assert anomaly_service.candidates_for_window(window, _history()) == []


def test_error_rate_from_zero_baseline(anomaly_service):
    window = make_window(error_rate=0.02, error_count=2)
    errors = _only(anomaly_service.candidates_for_window(window, _history()), AnomalyType.ERROR_RATE_INCREASE)
    assert errors.deviation_percentage == 1000.0
    assert errors.severity == Severity.CRITICAL
    assert errors.observed_value == pytest.approx(2.0)


def test_absolute_error_rate_without_history(anomaly_service):
    window = make_window(error_rate=0.12, error_count=12)
    errors = _only(anomaly_service.candidates_for_window(window, []), AnomalyType.ERROR_RATE_INCREASE)
    assert errors.severity == Severity.HIGH
    assert errors.detection_method == "error_rate_threshold"


# --- persistence and dedup ---

@pytest.mark.asyncio
async def test_analyze_window_is_idempotent(db_session, anomaly_service):
    window = make_window(latency_p95_ms=2500.0)
    db_session.add(window)
    db_session.commit()

    first = await anomaly_service.analyze_window(db_session, window)
    second = await anomaly_service.analyze_window(db_session, window)
    assert len(first) == 1
    assert second == []
    assert db_session.query(AnomalySignal).count() == 1

    entries = anomaly_service.audit.list_entries(db_session, OWNER, event_type="anomaly_detected")
    assert len(entries) == 1
    assert entries[0].subject_id == first[0].id


@pytest.mark.asyncio
async def test_conflicting_insert_keeps_the_rest_of_the_batch(db_session, session_factory, anomaly_service,
                                                              monkeypatch):
    window = make_window(latency_p95_ms=2500.0, error_rate=0.12, error_count=12)
    db_session.add(window)
    db_session.commit()
    latency, errors = anomaly_service.candidates_for_window(window, [])

    # another worker records the error-rate anomaly first
    other = session_factory()
    anomaly_service._create(other, OWNER, errors)
    other.commit()
    other.close()

    kept = anomaly_service._create(db_session, OWNER, latency)
    monkeypatch.setattr(AnomalyRepository, "exists", lambda self, owner_id, dedup_key: False)
    assert anomaly_service._create(db_session, OWNER, errors) is None
    db_session.commit()

    assert db_session.get(AnomalySignal, kept.id).anomaly_type == AnomalyType.LATENCY_SPIKE
    assert db_session.query(AnomalySignal).count() == 2
    assert len(anomaly_service.audit.list_entries(db_session, OWNER, event_type="anomaly_detected")) == 2


@pytest.mark.asyncio
async def test_history_comes_from_earlier_windows(db_session, anomaly_service):
    for w in _history(latency_p95_ms=100.0):
        db_session.add(w)
    # a window from another component must not feed the baseline
    db_session.add(make_window(component_name="search", window_start=T0 - timedelta(minutes=1),
                               latency_p95_ms=1000.0))
    window = make_window(latency_p95_ms=450.0)
    db_session.add(window)
    db_session.commit()

    [anomaly] = await anomaly_service.analyze_window(db_session, window)
    assert anomaly.baseline_value == pytest.approx(100.0)
    assert anomaly.severity == Severity.CRITICAL


@pytest.mark.asyncio
async def test_high_severity_anomalies_notify(db_session, anomaly_service, mock_notifier):
    window = make_window(metrics_avg={"cpu_usage": 92.0})
    db_session.add(window)
    db_session.commit()
    await anomaly_service.analyze_window(db_session, window)
    sent = mock_notifier.fire_and_forget.call_args.args[0]
    assert sent.severity == "high"


# --- behavioral signals ---

@pytest.mark.asyncio
async def test_record_signal_dedups_by_signal_id(db_session, anomaly_service):
    first = await anomaly_service.record_signal(
        db_session, OWNER, "route_instability", "router", "edge",
        instability_probability=0.45, signal_id="sig-1", now=T0,
    )
    again = await anomaly_service.record_signal(
        db_session, OWNER, "route_instability", "router", "edge",
        instability_probability=0.45, signal_id="sig-1", now=T0 + timedelta(seconds=5),
    )
    assert first.severity == Severity.HIGH
    assert first.anomaly_type == AnomalyType.BEHAVIORAL_SIGNAL
    assert first.confidence_score == pytest.approx(45.0)
    assert again is None


@pytest.mark.asyncio
async def test_record_signal_without_id_dedups_per_window(db_session, anomaly_service):
    first = await anomaly_service.record_signal(db_session, OWNER, "drift", "model", "ranker",
                                                stability_variance=0.22, now=T0 + timedelta(seconds=5))
    same_window = await anomaly_service.record_signal(db_session, OWNER, "drift", "model", "ranker",
                                                      stability_variance=0.22, now=T0 + timedelta(seconds=50))
    next_window = await anomaly_service.record_signal(db_session, OWNER, "drift", "model", "ranker",
                                                      stability_variance=0.22, now=T0 + timedelta(seconds=65))
    assert first.severity == Severity.MODERATE
    assert same_window is None
    assert next_window is not None


@pytest.mark.asyncio
async def test_record_signal_requires_a_measurement(db_session, anomaly_service):
    with pytest.raises(ValidationError):
        await anomaly_service.record_signal(db_session, OWNER, "drift", "model", "ranker", now=T0)


@pytest.mark.asyncio
async def test_three_event_types_escalate_the_cluster(db_session, anomaly_service, mock_notifier):
    for i, event_type in enumerate(["drift", "retry_storm", "queue_backlog"]):
        await anomaly_service.record_signal(db_session, OWNER, event_type, "worker", "billing",
                                            stability_variance=0.05, now=T0 + timedelta(minutes=i))

    anomalies = db_session.query(AnomalySignal).all()
    assert len(anomalies) == 3
    assert {a.severity for a in anomalies} == {Severity.CRITICAL}
    assert {a.computed_severity for a in anomalies} == {Severity.LOW}
    escalations = anomaly_service.audit.list_entries(db_session, OWNER, event_type="anomaly_cluster_escalated")
    assert len(escalations) == 3
    # low signals do not notify on their own, only the cluster does
    assert mock_notifier.fire_and_forget.call_count == 1


@pytest.mark.asyncio
async def test_spread_out_signals_do_not_cluster(db_session, anomaly_service):
    for i, event_type in enumerate(["drift", "retry_storm", "queue_backlog"]):
        await anomaly_service.record_signal(db_session, OWNER, event_type, "worker", "billing",
                                            stability_variance=0.05, now=T0 + timedelta(minutes=20 * i))
    assert {a.severity for a in db_session.query(AnomalySignal).all()} == {Severity.LOW}


# --- transitions ---

@pytest.mark.asyncio
async def test_status_transitions(db_session, anomaly_service):
    anomaly = await anomaly_service.record_signal(db_session, OWNER, "drift", "model", "ranker",
                                                  stability_variance=0.4, now=T0)
    acked = await anomaly_service.acknowledge(db_session, OWNER, anomaly.id, actor="oncall")
    assert acked.status == AnomalyStatus.ACKNOWLEDGED
    assert acked.status_changed_by == "oncall"

    resolved = await anomaly_service.resolve(db_session, OWNER, anomaly.id, actor="oncall")
    assert resolved.status == AnomalyStatus.RESOLVED
    with pytest.raises(InvalidTransitionError):
        await anomaly_service.mark_false_positive(db_session, OWNER, anomaly.id, actor="oncall")

    trail = anomaly_service.audit.list_entries(db_session, OWNER, subject_type="anomaly", subject_id=anomaly.id)
    assert [e.event_type for e in trail][:2] == ["anomaly_resolved", "anomaly_acknowledged"]


@pytest.mark.asyncio
async def test_transition_is_owner_scoped(db_session, anomaly_service):
    anomaly = await anomaly_service.record_signal(db_session, OWNER, "drift", "model", "ranker",
                                                  stability_variance=0.4, now=T0)
    with pytest.raises(NotFoundError):
        await anomaly_service.acknowledge(db_session, "someone-else@example.com", anomaly.id, actor="x")


# --- sweep ---

@pytest.mark.asyncio
async def test_detect_with_auto_analyze_triggers_self_healing(db_session, anomaly_service, mock_controller):
    db_session.add(make_window(latency_p95_ms=6000.0))
    db_session.commit()

    report = await anomaly_service.detect(db_session, OWNER, time_window_minutes=15, auto_analyze=True,
                                          now=T0 + timedelta(minutes=5))
    summary = report.to_dict()
    assert summary["anomalies_detected"] == 1
    assert summary["new_anomalies"] == 1
    assert summary["critical_anomalies"] == 1
    assert len(summary["remediation_action_ids"]) == 1

    anomaly = db_session.query(AnomalySignal).one()
    assert anomaly.status == AnomalyStatus.ACKNOWLEDGED
    action = db_session.get(RecoveryAction, anomaly.triggered_recovery_action_id)
    assert action.action_type.value == "restart_function"
    assert action.execution_status == RecoveryStatus.COMPLETED
    mock_controller.perform.assert_awaited_once()


@pytest.mark.asyncio
async def test_detect_without_auto_analyze_leaves_anomalies_alone(db_session, anomaly_service, mock_controller):
    db_session.add(make_window(latency_p95_ms=6000.0))
    db_session.commit()
    report = await anomaly_service.detect(db_session, OWNER, now=T0 + timedelta(minutes=5))
    assert report.remediated == []
    assert db_session.query(AnomalySignal).one().status == AnomalyStatus.DETECTED
    mock_controller.perform.assert_not_awaited()


@pytest.mark.asyncio
async def test_detect_rejects_non_positive_window(db_session, anomaly_service):
    with pytest.raises(ValidationError):
        await anomaly_service.detect(db_session, OWNER, time_window_minutes=0)


@pytest.mark.asyncio
async def test_detect_skips_a_failing_component(db_session, services, anomaly_service, monkeypatch):
    db_session.add(make_window(component_name="bad", latency_p95_ms=2500.0))
    db_session.add(make_window(component_name="good", latency_p95_ms=2500.0))
    db_session.commit()
    analyze = anomaly_service.analyze_window

    async def broken_for_bad(session, window, now=None):
        if window.component_name == "bad":
            # an audit row without an owner fails the flush and poisons the session
            services["audit_service"].record(session, None, "broken", "anomaly", "no owner")
        return await analyze(session, window, now)

    monkeypatch.setattr(anomaly_service, "analyze_window", broken_for_bad)
    report = await anomaly_service.detect(db_session, OWNER, 15, now=T0 + timedelta(minutes=5))

    assert report.failed_components == ["api/bad"]
    assert report.created == 1
    [anomaly] = report.anomalies
    assert anomaly.source_component_name == "good"
