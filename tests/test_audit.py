import pytest
from datetime import timedelta

from sqlalchemy import update, delete

from conftest import OWNER
from healguard.domain.entities import ActorType, utcnow
from healguard.domain.errors import AuditImmutableError, AuditWriteError
from healguard.infrastructure.db.models import AuditLogEntry


@pytest.fixture
def audit_service(services):
    return services["audit_service"]


@pytest.fixture
def entry(db_session, audit_service):
    recorded = audit_service.record(
        db_session, OWNER, "threshold_created", "threshold", "latency_p95_ms above 2000",
        triggered_by="oncall", actor_type=ActorType.USER, subject_type="threshold", subject_id=1,
        metadata={"value": 2000},
    )
    db_session.commit()
    return recorded


def test_record_persists_every_field(db_session, entry):
    stored = db_session.get(AuditLogEntry, entry.id)
    assert stored.owner_id == OWNER
    assert stored.event_category == "threshold"
    assert stored.actor_type == ActorType.USER
    assert stored.metadata_ == {"value": 2000}
    assert stored.created_at is not None


def test_entries_cannot_be_updated(db_session, entry):
    entry.description = "rewritten history"
    with pytest.raises(AuditImmutableError):
        db_session.commit()
    db_session.rollback()
    assert db_session.get(AuditLogEntry, entry.id).description == "latency_p95_ms above 2000"


def test_entries_cannot_be_deleted(db_session, entry):
    db_session.delete(entry)
    with pytest.raises(AuditImmutableError):
        db_session.commit()
    db_session.rollback()
    assert db_session.query(AuditLogEntry).count() == 1


@pytest.mark.parametrize("statement", [
    update(AuditLogEntry).values(description="bulk rewrite"),
    delete(AuditLogEntry),
])
def test_bulk_statements_are_rejected(db_session, entry, statement):
    with pytest.raises(AuditImmutableError):
        db_session.execute(statement)
    db_session.rollback()
    assert db_session.query(AuditLogEntry).count() == 1


def test_failed_write_raises_and_alerts(db_session, audit_service, mock_notifier):
    with pytest.raises(AuditWriteError):
        audit_service.record(db_session, None, "orphan", "system", "no owner")
    db_session.rollback()
    alert = mock_notifier.fire_and_forget.call_args.args[0]
    assert alert.subject == "Audit log write failure"
    assert alert.severity == "critical"


def test_list_filters_and_order(db_session, audit_service, entry):
    audit_service.record(db_session, OWNER, "anomaly_detected", "anomaly", "latency spike",
                         anomaly_detected=True, subject_type="anomaly", subject_id=7)
    audit_service.record(db_session, OWNER, "anomaly_resolved", "anomaly", "resolved",
                         subject_type="anomaly", subject_id=7)
    audit_service.record(db_session, "other@example.com", "anomaly_detected", "anomaly", "not ours")
    db_session.commit()

    everything = audit_service.list_entries(db_session, OWNER)
    assert [e.event_type for e in everything] == ["anomaly_resolved", "anomaly_detected", "threshold_created"]

    anomaly_trail = audit_service.list_entries(db_session, OWNER, event_category="anomaly", subject_id=7)
    assert len(anomaly_trail) == 2
    assert audit_service.list_entries(db_session, OWNER, event_type="anomaly_detected")[0].anomaly_detected is True
    assert audit_service.list_entries(db_session, OWNER, limit=1)[0].event_type == "anomaly_resolved"
    assert audit_service.list_entries(db_session, OWNER, since=utcnow() + timedelta(minutes=1)) == []
