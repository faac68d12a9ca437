import pytest

from conftest import OWNER
from healguard.application.services.selftest_service import SelfTestService
from healguard.infrastructure.db.models import AuditLogEntry
from healguard.infrastructure.db.repository import SelfTestRepository


@pytest.mark.asyncio
async def test_run_all_reports_every_check(db_session, services):
    summary = await services["selftest_service"].run_all(db_session, OWNER)
    results = {r["test_name"]: r for r in summary["results"]}
    assert list(results) == [
        "database_round_trip", "shared_cache_round_trip", "decision_scoring_reference",
        "audit_immutability", "host_resources",
    ]
    # host_resources depends on the machine running the suite
    for name in ("database_round_trip", "shared_cache_round_trip", "decision_scoring_reference", "audit_immutability"):
        assert results[name]["test_result"] == "pass", results[name]["error_message"]
    assert summary["passed"] + summary["failed"] == 5

    stored = SelfTestRepository(db_session).list_run(OWNER, summary["run_id"])
    assert len(stored) == 5


@pytest.mark.asyncio
async def test_sentinel_entry_survives_the_tamper_attempt(db_session, services):
    await services["selftest_service"].run_all(db_session, OWNER)
    sentinel = db_session.query(AuditLogEntry).filter(AuditLogEntry.event_type == "selftest_sentinel").one()
    assert sentinel.description == "audit immutability sentinel"


@pytest.mark.asyncio
async def test_missing_cache_fails_its_check_and_alerts(db_session, services, mock_notifier):
    service = SelfTestService(services["audit_service"], notifier=mock_notifier, cache=None)

    async def broken(db_session):
        raise RuntimeError("disk on fire")

    service._check_host = broken
    summary = await service.run_all(db_session, OWNER)
    results = {r["test_name"]: r for r in summary["results"]}
    assert results["shared_cache_round_trip"]["error_message"] == "shared cache not configured"
    assert results["host_resources"]["error_message"] == "disk on fire"
    assert summary["failed"] == 2
    # 2/5 failed is above the alert ratio
    assert mock_notifier.fire_and_forget.call_args.args[0].subject == "Self test failures"
