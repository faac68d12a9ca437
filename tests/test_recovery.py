import asyncio
import pytest
from datetime import datetime, timedelta

from conftest import OWNER, T0, make_window
from healguard.application.services.health_service import window_bounds
from healguard.application.services.recovery_service import RecoveryService, RecoveryRequest
from healguard.domain.entities import RecoveryActionType, RecoveryStatus, AnomalyStatus, Severity, HealthSample, utcnow
from healguard.domain.errors import ValidationError, InvalidTransitionError, ExternalDependencyError
from healguard.infrastructure.db.models import RecoveryAction
from healguard.infrastructure.db.repository import RecoveryRepository


@pytest.fixture
def recovery_service(services):
    return services["recovery_service"]


def _request(action_type="restart_function", **kwargs) -> RecoveryRequest:
    return RecoveryRequest(action_type=action_type, target_component_type="api",
                           target_component_name="checkout", **kwargs)


@pytest.mark.asyncio
async def test_failed_action_retries_with_backoff_then_escalates(db_session, recovery_service,
                                                                mock_controller, mock_notifier):
    mock_controller.perform.side_effect = ExternalDependencyError("control plane returned 503")
    action = recovery_service.create_action(db_session, OWNER, _request())
    db_session.commit()

    action = await recovery_service.run_action(db_session, OWNER, action.id, now=T0)
    assert action.execution_status == RecoveryStatus.PENDING
    assert action.attempt_number == 2
    first_retry = action.next_retry_at
    assert T0 + timedelta(seconds=60) <= first_retry < T0 + timedelta(seconds=61)

    # not due yet: nobody can claim it
    early = await recovery_service.run_action(db_session, OWNER, action.id, now=T0 + timedelta(seconds=30))
    assert early.execution_status == RecoveryStatus.PENDING
    assert await recovery_service.run_due_retries(db_session, now=T0 + timedelta(seconds=30)) == []

    [retried] = await recovery_service.run_due_retries(db_session, now=first_retry)
    assert retried.attempt_number == 3
    second_retry = retried.next_retry_at
    # doubled backoff, counted from the second failure
    assert first_retry + timedelta(seconds=120) <= second_retry < first_retry + timedelta(seconds=121)

    [final] = await recovery_service.run_due_retries(db_session, now=second_retry)
    assert final.execution_status == RecoveryStatus.FAILED
    assert final.attempt_number == 3
    assert final.next_retry_at is None
    assert "503" in final.error_message
    assert [a["outcome"] for a in final.execution_result["attempts"]] == ["failed"] * 3

    assert mock_controller.perform.await_count == 3
    escalation = mock_notifier.fire_and_forget.call_args.args[0]
    assert escalation.subject.startswith("Recovery exhausted")
    assert escalation.severity == "critical"


@pytest.mark.asyncio
async def test_dry_run_completes_without_side_effects(db_session, recovery_service, mock_controller):
    result = await recovery_service.execute(db_session, OWNER, _request(dry_run=True))
    assert result["execution_status"] == "completed"
    mock_controller.perform.assert_not_awaited()
    action = db_session.get(RecoveryAction, result["recovery_action_id"])
    assert action.execution_result["last_result"]["dry_run"] is True


@pytest.mark.asyncio
async def test_successful_action(db_session, recovery_service, mock_controller):
    result = await recovery_service.execute(db_session, OWNER, _request("scale_up", action_config={"replicas": 4}))
    assert result["execution_status"] == "completed"
    assert result["attempt_number"] == 1
    assert result["next_retry_at"] is None
    args = mock_controller.perform.await_args.args
    assert args[:3] == ("api", "checkout", "scale_up")
    assert args[3]["replicas"] == 4


@pytest.mark.asyncio
async def test_completed_action_is_not_run_twice(db_session, recovery_service, mock_controller):
    result = await recovery_service.execute(db_session, OWNER, _request())
    again = await recovery_service.run_action(db_session, OWNER, result["recovery_action_id"])
    assert again.execution_status == RecoveryStatus.COMPLETED
    assert mock_controller.perform.await_count == 1


@pytest.mark.asyncio
async def test_unknown_action_type_is_rejected(db_session, recovery_service):
    with pytest.raises(ValidationError):
        await recovery_service.execute(db_session, OWNER, _request("reboot_universe"))


@pytest.mark.asyncio
async def test_cancel_only_from_pending(db_session, recovery_service):
    action = recovery_service.create_action(db_session, OWNER, _request())
    db_session.commit()

    cancelled = await recovery_service.cancel(db_session, OWNER, action.id, actor="oncall")
    assert cancelled.execution_status == RecoveryStatus.CANCELLED
    with pytest.raises(InvalidTransitionError):
        await recovery_service.cancel(db_session, OWNER, action.id, actor="oncall")


@pytest.mark.asyncio
async def test_rollback_runs_compensating_action(db_session, recovery_service, mock_controller):
    done = await recovery_service.execute(db_session, OWNER, _request("scale_up"))

    result = await recovery_service.rollback(db_session, OWNER, done["recovery_action_id"], reason="cost spike")
    assert result["execution_status"] == "rolled_back"
    assert result["rollback_action_status"] == "completed"

    original = db_session.get(RecoveryAction, done["recovery_action_id"])
    compensating = db_session.get(RecoveryAction, result["rollback_action_id"])
    assert original.rollback_action_id == compensating.id
    assert original.rollback_reason == "cost spike"
    assert compensating.action_type == RecoveryActionType.SCALE_DOWN
    assert compensating.max_attempts == 1
    assert mock_controller.perform.await_args.args[2] == "scale_down"


@pytest.mark.asyncio
async def test_rollback_without_inverse_escalates(db_session, recovery_service, mock_notifier):
    done = await recovery_service.execute(db_session, OWNER, _request("restart_function"))
    result = await recovery_service.rollback(db_session, OWNER, done["recovery_action_id"], reason="restart loop")
    compensating = db_session.get(RecoveryAction, result["rollback_action_id"])
    assert compensating.action_type == RecoveryActionType.ALERT_ESCALATION
    mock_notifier.dispatch.assert_awaited_once()


@pytest.mark.asyncio
async def test_rollback_requires_finished_action_and_reason(db_session, recovery_service):
    pending = recovery_service.create_action(db_session, OWNER, _request())
    db_session.commit()
    with pytest.raises(InvalidTransitionError):
        await recovery_service.rollback(db_session, OWNER, pending.id, reason="nope")

    done = await recovery_service.execute(db_session, OWNER, _request())
    with pytest.raises(ValidationError):
        await recovery_service.rollback(db_session, OWNER, done["recovery_action_id"], reason="")


@pytest.mark.asyncio
async def test_slow_handler_times_out(db_session, services, mock_notifier):
    async def hang(action, config):
        await asyncio.sleep(5)
        return {}

    service = RecoveryService(services["audit_service"], notifier=mock_notifier,
                              handlers={RecoveryActionType.RESTART_FUNCTION: hang})
    result = await service.execute(db_session, OWNER, _request(timeout_seconds=1, retry_policy={"max_attempts": 1}))
    assert result["execution_status"] == "timeout"
    action = db_session.get(RecoveryAction, result["recovery_action_id"])
    assert "timed out" in action.error_message
    mock_notifier.fire_and_forget.assert_called_once()


@pytest.mark.asyncio
async def test_undeliverable_escalation_fails(db_session, recovery_service, mock_notifier):
    mock_notifier.dispatch.return_value = {"slack": False}
    result = await recovery_service.execute(
        db_session, OWNER, _request("alert_escalation", retry_policy={"max_attempts": 1}),
    )
    assert result["execution_status"] == "failed"


@pytest.mark.asyncio
async def test_retry_backoff_counts_from_the_failure(db_session, services, mock_notifier):
    async def slow(action, config):
        await asyncio.sleep(3)
        return {}

    service = RecoveryService(services["audit_service"], notifier=mock_notifier,
                              handlers={RecoveryActionType.RESTART_FUNCTION: slow})
    action = service.create_action(db_session, OWNER, _request(
        timeout_seconds=1, retry_policy={"max_attempts": 2, "backoff_seconds": 1, "exponential": False},
    ))
    db_session.commit()

    action = await service.run_action(db_session, OWNER, action.id, now=T0)
    assert action.execution_status == RecoveryStatus.PENDING
    failed_at = datetime.fromisoformat(action.execution_result["attempts"][0]["finished_at"])
    assert failed_at >= T0 + timedelta(seconds=0.9)
    assert action.next_retry_at == failed_at + timedelta(seconds=1)
    # a timeout longer than the backoff still leaves the retry in the future
    assert await service.run_due_retries(db_session, now=T0 + timedelta(seconds=1.5)) == []


@pytest.mark.asyncio
async def test_effectiveness_waits_for_the_next_window(db_session, recovery_service):
    db_session.add(make_window(latency_p95_ms=300.0))
    db_session.commit()
    result = await recovery_service.execute(db_session, OWNER, _request())
    action = db_session.get(RecoveryAction, result["recovery_action_id"])
    assert action.pre_action_metrics["latency_p95_ms"] == 300.0
    assert action.post_action_metrics is None
    assert action.recovery_effectiveness_score is None

    earlier = make_window(window_start=action.completed_at - timedelta(minutes=1), latency_p95_ms=280.0)
    db_session.add(earlier)
    db_session.commit()
    assert await recovery_service.score_effectiveness(db_session, earlier) == []

    after = make_window(window_start=action.completed_at + timedelta(seconds=30), latency_p95_ms=150.0)
    db_session.add(after)
    db_session.commit()
    assert await recovery_service.score_effectiveness(db_session, after) == [action]
    assert action.post_action_metrics["latency_p95_ms"] == 150.0
    assert action.recovery_effectiveness_score > 50.0
    assert action.metrics_improvement_percentage > 0.0
    # scored once
    assert await recovery_service.score_effectiveness(db_session, after) == []


@pytest.mark.asyncio
async def test_closing_the_next_window_scores_the_action(db_session, services, recovery_service):
    health_service = services["health_service"]
    now = utcnow()
    db_session.add(make_window(window_start=now - timedelta(minutes=2), latency_p95_ms=400.0))
    db_session.commit()
    result = await recovery_service.execute(db_session, OWNER, _request())

    start, _ = window_bounds(now + timedelta(minutes=2), health_service.window_seconds)
    samples = [HealthSample("api", "checkout", start + timedelta(seconds=i * 5), latency_ms=100.0) for i in range(6)]
    await health_service.ingest(db_session, OWNER, samples,
                                now=start + timedelta(seconds=health_service.window_seconds + 1))

    action = db_session.get(RecoveryAction, result["recovery_action_id"])
    assert action.post_action_metrics["window_start"] == start.isoformat()
    assert action.recovery_effectiveness_score > 50.0
    [entry] = services["audit_service"].list_entries(db_session, OWNER, event_type="recovery_effectiveness_measured")
    assert entry.subject_id == action.id


@pytest.mark.asyncio
async def test_self_heal_links_anomaly_and_action(db_session, services, recovery_service):
    anomaly = await services["anomaly_service"].record_signal(
        db_session, OWNER, "drift", "api", "checkout", stability_variance=0.5, now=T0,
    )
    assert anomaly.severity == Severity.CRITICAL

    action = await recovery_service.self_heal(db_session, anomaly)
    assert anomaly.status == AnomalyStatus.ACKNOWLEDGED
    assert anomaly.triggered_recovery_action_id == action.id
    assert action.triggered_by_anomaly_id == anomaly.id
    # behavioral signals have no automated remedy
    assert action.action_type == RecoveryActionType.ALERT_ESCALATION
    assert action.execution_status == RecoveryStatus.COMPLETED


@pytest.mark.asyncio
async def test_only_one_worker_claims_an_action(db_session, session_factory, recovery_service, mock_controller):
    action = recovery_service.create_action(db_session, OWNER, _request())
    db_session.commit()
    other = session_factory()
    try:
        assert RecoveryRepository(db_session).claim(action.id, T0)
        db_session.commit()
        assert not RecoveryRepository(other).claim(action.id, T0)
        other.rollback()

        # the losing worker sees the winner's state and never calls the controller
        lost = await recovery_service.run_action(other, OWNER, action.id, now=T0)
        assert lost.execution_status == RecoveryStatus.IN_PROGRESS
        mock_controller.perform.assert_not_awaited()
    finally:
        other.close()
