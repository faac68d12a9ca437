import pytest
from datetime import timedelta

from conftest import OWNER, T0
from healguard.application.services.threshold_service import ThresholdService
from healguard.domain.entities import ThresholdType
from healguard.domain.errors import ValidationError, InvalidTransitionError
from healguard.infrastructure.db.models import Threshold, MetricObservation
from healguard.infrastructure.db.repository import ThresholdRepository


@pytest.fixture
def threshold_service(services):
    return services["threshold_service"]


def _threshold(kind=ThresholdType.ABOVE, value=100.0, cooldown=60, last=None, enabled=True) -> Threshold:
    return Threshold(threshold_type=kind, threshold_value=value, cooldown_minutes=cooldown,
                     last_triggered_at=last, enabled=enabled)


@pytest.mark.parametrize("kind, limit, observed, expected", [
    (ThresholdType.ABOVE, 100.0, 101.0, True),
    (ThresholdType.ABOVE, 100.0, 100.0, False),
    (ThresholdType.BELOW, 95.0, 94.9, True),
    (ThresholdType.EQUALS, 0.0, 0.0, True),
])
def test_should_trigger_comparisons(kind, limit, observed, expected):
    assert ThresholdService.should_trigger(_threshold(kind, limit), observed, now=T0) is expected


def test_change_percentage_needs_a_previous_value():
    t = _threshold(ThresholdType.CHANGE_PERCENTAGE, 20.0)
    assert ThresholdService.should_trigger(t, 125.0, previous_value=100.0, now=T0) is True
    assert ThresholdService.should_trigger(t, 110.0, previous_value=100.0, now=T0) is False
    assert ThresholdService.should_trigger(t, 125.0, previous_value=None, now=T0) is False


@pytest.mark.parametrize("minutes_since, expected", [(0, False), (2, False), (14, False), (15, True), (16, True)])
def test_cooldown_window(minutes_since, expected):
    t = _threshold(cooldown=15, last=T0)
    assert ThresholdService.should_trigger(t, 500.0, now=T0 + timedelta(minutes=minutes_since)) is expected


def test_disabled_threshold_never_triggers():
    assert ThresholdService.should_trigger(_threshold(enabled=False), 500.0, now=T0) is False


def test_create_threshold_rejects_duplicates_and_bad_types(db_session, threshold_service):
    threshold_service.create_threshold(db_session, OWNER, "latency_p95_ms", 2000, "above")
    with pytest.raises(ValidationError):
        threshold_service.create_threshold(db_session, OWNER, "latency_p95_ms", 3000, "above")
    with pytest.raises(ValidationError):
        threshold_service.create_threshold(db_session, OWNER, "latency_p95_ms", 3000, "sideways")
    # the same metric with another comparison is a different threshold
    threshold_service.create_threshold(db_session, OWNER, "latency_p95_ms", 10, "below")
    assert len(threshold_service.list_thresholds(db_session, OWNER)) == 2


@pytest.mark.asyncio
async def test_evaluate_respects_cooldown(db_session, threshold_service, mock_notifier):
    threshold = threshold_service.create_threshold(
        db_session, OWNER, "error_rate", 0.05, "above", alert_level="critical", cooldown_minutes=15,
    )

    first = await threshold_service.evaluate(db_session, OWNER, "error_rate", 0.2, now=T0)
    assert len(first) == 1
    assert first[0].threshold_id == threshold.id
    assert first[0].alert_level.value == "critical"

    again = await threshold_service.evaluate(db_session, OWNER, "error_rate", 0.3, now=T0 + timedelta(minutes=2))
    assert again == []

    later = await threshold_service.evaluate(db_session, OWNER, "error_rate", 0.3, now=T0 + timedelta(minutes=16))
    assert len(later) == 1

    db_session.refresh(threshold)
    assert threshold.trigger_count == 2
    assert threshold.last_triggered_at == T0 + timedelta(minutes=16)
    assert mock_notifier.fire_and_forget.call_count == 2
    sent = mock_notifier.fire_and_forget.call_args.args[0]
    assert sent.severity == "critical"


@pytest.mark.asyncio
async def test_evaluate_change_percentage_uses_previous_observation(db_session, threshold_service):
    threshold_service.create_threshold(db_session, OWNER, "queue_depth", 50, "change_percentage", cooldown_minutes=0)
    assert await threshold_service.evaluate(db_session, OWNER, "queue_depth", 100, now=T0) == []
    assert await threshold_service.evaluate(db_session, OWNER, "queue_depth", 120, now=T0 + timedelta(minutes=1)) == []
    alerts = await threshold_service.evaluate(db_session, OWNER, "queue_depth", 200, now=T0 + timedelta(minutes=2))
    assert len(alerts) == 1
    assert alerts[0].observed_value == 200


@pytest.mark.asyncio
async def test_alert_channels_fan_out(db_session, threshold_service, mock_notifier):
    threshold_service.create_threshold(
        db_session, OWNER, "cpu_usage", 80, "above", alert_channels=["slack", "telegram"],
    )
    await threshold_service.evaluate(db_session, OWNER, "cpu_usage", 90, now=T0)
    channels = [c.args[0].channel for c in mock_notifier.fire_and_forget.call_args_list]
    assert channels == ["slack", "telegram"]


@pytest.mark.asyncio
async def test_auto_adjust_uses_mean_plus_k_sigma(db_session, threshold_service):
    threshold = threshold_service.create_threshold(
        db_session, OWNER, "latency_p95_ms", 100, "above", auto_adjusted=True, adjustment_factor=2.0,
    )
    for i, value in enumerate([10, 10, 30, 30]):
        db_session.add(MetricObservation(owner_id=OWNER, metric_name="latency_p95_ms", value=value,
                                         observed_at=T0 - timedelta(hours=i + 1)))
    # outside the 7 day lookback
    db_session.add(MetricObservation(owner_id=OWNER, metric_name="latency_p95_ms", value=9000,
                                     observed_at=T0 - timedelta(days=8)))
    db_session.commit()

    adjusted = await threshold_service.auto_adjust(db_session, now=T0)
    assert [t.id for t in adjusted] == [threshold.id]
    assert threshold.threshold_value == pytest.approx(40.0)

    entries = _audit_entries(db_session, threshold_service, "threshold_auto_adjusted")
    assert len(entries) == 1
    assert entries[0].metadata_["previous_value"] == 100


@pytest.mark.asyncio
async def test_auto_adjust_below_threshold(db_session, threshold_service):
    threshold = threshold_service.create_threshold(
        db_session, OWNER, "availability_percentage", 95, "below", auto_adjusted=True, adjustment_factor=1.0,
    )
    for i, value in enumerate([90, 100]):
        db_session.add(MetricObservation(owner_id=OWNER, metric_name="availability_percentage", value=value,
                                         observed_at=T0 - timedelta(minutes=i + 1)))
    db_session.commit()
    await threshold_service.auto_adjust(db_session, owner_id=OWNER, now=T0)
    assert threshold.threshold_value == pytest.approx(90.0)


@pytest.mark.asyncio
async def test_acknowledge_alert_once(db_session, threshold_service):
    threshold_service.create_threshold(db_session, OWNER, "error_rate", 0.05, "above")
    [alert] = await threshold_service.evaluate(db_session, OWNER, "error_rate", 0.5, now=T0)

    acked = threshold_service.acknowledge_alert(db_session, OWNER, alert.id, actor="oncall")
    assert acked.acknowledged is True
    assert acked.acknowledged_by == "oncall"
    with pytest.raises(InvalidTransitionError):
        threshold_service.acknowledge_alert(db_session, OWNER, alert.id, actor="oncall")


def _audit_entries(db_session, threshold_service, event_type):
    return threshold_service.audit.list_entries(db_session, OWNER, event_type=event_type)


def test_trigger_claim_is_single_writer(db_session, session_factory, threshold_service):
    threshold = threshold_service.create_threshold(db_session, OWNER, "error_rate", 0.05, "above")
    other = session_factory()
    try:
        # both workers read the threshold before either fires it
        seen_here = db_session.get(Threshold, threshold.id).last_triggered_at
        seen_there = other.get(Threshold, threshold.id).last_triggered_at
        assert seen_here is None and seen_there is None

        assert ThresholdRepository(db_session).claim_trigger(threshold.id, seen_here, T0)
        db_session.commit()
        assert not ThresholdRepository(other).claim_trigger(threshold.id, seen_there, T0 + timedelta(seconds=1))
        other.rollback()

        fresh = other.get(Threshold, threshold.id, populate_existing=True)
        assert fresh.trigger_count == 1
        assert fresh.last_triggered_at == T0
    finally:
        other.close()
