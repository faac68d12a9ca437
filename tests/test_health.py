import pytest
from datetime import timedelta

from conftest import OWNER, T0
from healguard.application.services.health_service import HealthService, window_bounds, derive_sample_id
from healguard.domain.entities import HealthSample, ComponentStatus, utcnow
from healguard.domain.errors import ValidationError
from healguard.infrastructure.db.models import HealthSampleRecord, HealthWindow, AnomalySignal
from healguard.infrastructure.sched.scheduler import MaintenanceScheduler


@pytest.fixture
def health_service(services):
    return services["health_service"]


def _samples(count=10, start=T0, failures=0, latency_step=100.0, metrics=None, name="checkout"):
    return [
        HealthSample(
            component_type="api",
            component_name=name,
            timestamp=start + timedelta(seconds=i * 5),
            latency_ms=latency_step * (i + 1),
            success=i >= failures,
            metrics=dict(metrics or {}),
        )
        for i in range(count)
    ]


def test_summarize_percentiles_and_status():
    summary = HealthService.summarize(_samples(count=10, failures=1))
    assert summary.sample_count == 10
    assert summary.latency_p50_ms == pytest.approx(550.0)
    assert summary.latency_p95_ms == pytest.approx(955.0)
    assert summary.error_count == 1
    assert summary.error_rate == pytest.approx(0.1)
    assert summary.availability_percentage == pytest.approx(90.0)
    # exactly 10% errors is degraded, not unhealthy
    assert summary.status == ComponentStatus.DEGRADED


@pytest.mark.parametrize("failures, expected", [
    (0, ComponentStatus.HEALTHY),
    (1, ComponentStatus.HEALTHY),
    (2, ComponentStatus.DEGRADED),
    (3, ComponentStatus.UNHEALTHY),
])
def test_summarize_status_tiers(failures, expected):
    assert HealthService.summarize(_samples(count=20, failures=failures)).status == expected


def test_summarize_averages_custom_metrics():
    samples = _samples(count=2, metrics={"cpu_usage": 50.0})
    samples[1].metrics = {"cpu_usage": 70.0, "queue_depth": 4}
    summary = HealthService.summarize(samples)
    assert summary.metrics_avg == {"cpu_usage": 60.0, "queue_depth": 4.0}


def test_summarize_rejects_empty_window():
    with pytest.raises(ValidationError):
        HealthService.summarize([])


def test_window_bounds_align_to_epoch():
    start, end = window_bounds(T0 + timedelta(seconds=75), 60)
    assert start == T0 + timedelta(seconds=60)
    assert end == T0 + timedelta(seconds=120)


def test_derived_sample_id_is_stable():
    a, b = _samples(count=1), _samples(count=1)
    assert derive_sample_id(a[0]) == derive_sample_id(b[0])
    b[0].latency_ms += 1
    assert derive_sample_id(a[0]) != derive_sample_id(b[0])


def test_window_size_is_bounded():
    with pytest.raises(ValidationError):
        HealthService(window_seconds=30)


@pytest.mark.asyncio
async def test_ingest_stages_until_window_closes(db_session, health_service):
    report = await health_service.ingest(db_session, OWNER, _samples(), now=T0 + timedelta(seconds=50))
    assert report.accepted == 10
    assert report.windows_closed == 0
    assert db_session.query(HealthSampleRecord).count() == 10

    closed = await health_service.close_due_windows(db_session, owner_id=OWNER, now=T0 + timedelta(seconds=61))
    assert len(closed.windows) == 1
    window = closed.windows[0]
    assert window.window_start == T0
    assert window.window_end == T0 + timedelta(seconds=60)
    assert window.sample_count == 10
    assert window.status == ComponentStatus.HEALTHY
    # staged samples are dropped once summarized
    assert db_session.query(HealthSampleRecord).count() == 0


@pytest.mark.asyncio
async def test_ingest_is_idempotent(db_session, health_service):
    samples = _samples(count=5)
    first = await health_service.ingest(db_session, OWNER, samples, now=T0 + timedelta(seconds=30))
    second = await health_service.ingest(db_session, OWNER, _samples(count=5), now=T0 + timedelta(seconds=31))
    assert first.accepted == 5
    assert second.accepted == 0
    assert second.duplicates == 5


@pytest.mark.asyncio
async def test_duplicates_inside_one_batch(db_session, health_service):
    samples = _samples(count=3)
    for s in samples:
        s.sample_id = "same"
    report = await health_service.ingest(db_session, OWNER, samples, now=T0 + timedelta(seconds=30))
    assert report.accepted == 1
    assert report.duplicates == 2


@pytest.mark.asyncio
async def test_late_sample_cannot_reopen_a_closed_window(db_session, health_service):
    await health_service.ingest(db_session, OWNER, _samples(count=4), now=T0 + timedelta(seconds=30))
    report = await health_service.ingest(db_session, OWNER, [], now=T0 + timedelta(seconds=90))
    assert report.windows_closed == 1

    late = HealthSample(component_type="api", component_name="checkout", timestamp=T0 + timedelta(seconds=59),
                        latency_ms=10.0, sample_id="late-1")
    report = await health_service.ingest(db_session, OWNER, [late], now=T0 + timedelta(seconds=95))
    assert report.accepted == 0
    assert report.duplicates == 1
    assert db_session.query(HealthWindow).count() == 1


@pytest.mark.asyncio
async def test_ingest_rejects_negative_latency(db_session, health_service):
    bad = HealthSample(component_type="api", component_name="checkout", timestamp=T0, latency_ms=-1.0)
    with pytest.raises(ValidationError):
        await health_service.ingest(db_session, OWNER, [bad], now=T0)


@pytest.mark.asyncio
async def test_windows_are_per_component(db_session, health_service):
    samples = _samples(count=3, name="checkout") + _samples(count=3, name="search")
    await health_service.ingest(db_session, OWNER, samples, now=T0 + timedelta(seconds=30))
    closed = await health_service.close_due_windows(db_session, now=T0 + timedelta(minutes=2))
    assert sorted(w.component_name for w in closed.windows) == ["checkout", "search"]
    assert len(health_service.list_windows(db_session, OWNER, since=T0 - timedelta(minutes=1))) == 2


@pytest.mark.asyncio
async def test_closed_window_feeds_thresholds_and_anomalies(db_session, services, health_service):
    services["threshold_service"].create_threshold(db_session, OWNER, "latency_p95_ms", 3000, "above")
    slow = _samples(count=5, latency_step=1500.0)  # p95 of 1500..7500 is 7200
    await health_service.ingest(db_session, OWNER, slow, now=T0 + timedelta(seconds=30))
    report = await health_service.ingest(db_session, OWNER, [], now=T0 + timedelta(seconds=61))

    assert report.windows_closed == 1
    assert report.thresholds_triggered == 1
    assert report.anomalies_created == 1
    anomaly = db_session.query(AnomalySignal).one()
    assert anomaly.anomaly_type.value == "latency_spike"
    assert anomaly.severity.value == "critical"


@pytest.mark.asyncio
async def test_scheduler_closes_windows_in_its_own_session(db_session, session_factory, services, health_service):
    start, _ = window_bounds(utcnow() - timedelta(minutes=5), 60)
    await health_service.ingest(db_session, OWNER, _samples(count=3, start=start), now=start + timedelta(seconds=20))

    scheduler = MaintenanceScheduler(services, session_factory=session_factory)
    result = await scheduler.close_windows()
    assert result == {"windows_closed": 1, "windows_skipped": 0, "windows_failed": 0}
