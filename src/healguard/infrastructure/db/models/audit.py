# src/healguard/infrastructure/db/models/audit.py
"""
Append-only audit trail.

Rows in `audit_log_entries` are immutable once flushed. The rule is enforced at the
storage boundary rather than by convention:
  - `AuditLogRepository` exposes `append` and reads only.
  - Session-level listeners below reject unit-of-work updates/deletes and bulk
    UPDATE/DELETE statements that target the table.
  - Mapper-level listeners reject anything that still reaches the flush.
  - On PostgreSQL the initial migration installs a trigger with the same rule.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Enum, Text, Index, event, func
)
from sqlalchemy.orm import Session

from healguard.domain.entities import ActorType, utcnow
from healguard.domain.errors import AuditImmutableError
from .base import Base, JSONType


class AuditLogEntry(Base):
    __tablename__ = 'audit_log_entries'
    __table_args__ = (
        Index('ix_audit_owner_created', 'owner_id', 'created_at'),
    )

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False)
    event_type = Column(String(64), nullable=False, index=True)
    event_category = Column(String(64), nullable=False, index=True)
    description = Column(Text, nullable=False)
    decision_impact = Column(String(32), nullable=True)
    anomaly_detected = Column(Boolean, nullable=False, default=False)
    triggered_by = Column(String(128), nullable=True)
    actor_type = Column(Enum(ActorType, name="actortype"), nullable=False, default=ActorType.SYSTEM)

    subject_type = Column(String(64), nullable=True)
    subject_id = Column(Integer, nullable=True)
    previous_state = Column(String(64), nullable=True)
    new_state = Column(String(64), nullable=True)
    metadata_ = Column("metadata", JSONType, nullable=True)

    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<AuditLogEntry(id={self.id}, {self.event_category}/{self.event_type})>"


def _immutable(verb: str, target=None) -> AuditImmutableError:
    suffix = f" #{target.id}" if target is not None and getattr(target, "id", None) else ""
    return AuditImmutableError(f"audit log entries are append-only; refusing to {verb} entry{suffix}")


@event.listens_for(Session, "before_flush")
def _reject_audit_changes_in_flush(session, flush_context, instances):
    for obj in session.deleted:
        if isinstance(obj, AuditLogEntry):
            raise _immutable("delete", obj)
    for obj in session.dirty:
        if isinstance(obj, AuditLogEntry) and session.is_modified(obj, include_collections=False):
            raise _immutable("update", obj)


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_audit_statements(orm_execute_state):
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    table = getattr(orm_execute_state.statement, "table", None)
    if getattr(table, "name", None) == AuditLogEntry.__tablename__:
        raise _immutable("update" if orm_execute_state.is_update else "delete")


@event.listens_for(AuditLogEntry, "before_update")
def _reject_update(mapper, connection, target):
    raise _immutable("update", target)


@event.listens_for(AuditLogEntry, "before_delete")
def _reject_delete(mapper, connection, target):
    raise _immutable("delete", target)
