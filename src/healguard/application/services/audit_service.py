# src/healguard/application/services/audit_service.py
"""
AuditService - the single write path into the append-only audit trail.

A failed audit write is an incident on its own: it is logged at CRITICAL, counted,
escalated through the notifier and surfaced to the caller as AuditWriteError.
"""

import logging
from typing import List, Optional, Dict, Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from healguard.domain.entities import ActorType
from healguard.domain.errors import AuditWriteError, AuditImmutableError
from healguard.infrastructure.db.models import AuditLogEntry
from healguard.infrastructure.db.repository import AuditLogRepository
from healguard.infrastructure.monitoring.metrics import AUDIT_WRITE_FAILURES
from healguard.infrastructure.notify.dispatcher import Notification

log = logging.getLogger(__name__)


class AuditService:
    def __init__(self, notifier: Any = None, repo_class: type = AuditLogRepository):
        self.notifier = notifier
        self.repo_class = repo_class

    def append(self, db_session: Session, entry: AuditLogEntry) -> AuditLogEntry:
        try:
            return self.repo_class(db_session).append(entry)
        except (SQLAlchemyError, AuditImmutableError) as e:
            AUDIT_WRITE_FAILURES.inc()
            log.critical(
                f"AUDIT WRITE FAILED for {entry.event_category}/{entry.event_type} "
                f"(owner={entry.owner_id}, subject={entry.subject_type}#{entry.subject_id}): {e}",
                exc_info=True,
            )
            if self.notifier is not None:
                self.notifier.fire_and_forget(Notification(
                    subject="Audit log write failure",
                    body=f"{entry.event_category}/{entry.event_type} for owner {entry.owner_id} was not recorded: {e}",
                    severity="critical",
                ))
            raise AuditWriteError(f"Could not persist audit entry {entry.event_category}/{entry.event_type}") from e

    def record(
        self,
        db_session: Session,
        owner_id: str,
        event_type: str,
        event_category: str,
        description: str,
        *,
        decision_impact: Optional[str] = None,
        anomaly_detected: bool = False,
        triggered_by: Optional[str] = None,
        actor_type: ActorType = ActorType.SYSTEM,
        subject_type: Optional[str] = None,
        subject_id: Optional[int] = None,
        previous_state: Optional[str] = None,
        new_state: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            owner_id=owner_id,
            event_type=event_type,
            event_category=event_category,
            description=description,
            decision_impact=decision_impact,
            anomaly_detected=anomaly_detected,
            triggered_by=triggered_by,
            actor_type=actor_type,
            subject_type=subject_type,
            subject_id=subject_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata_=metadata,
        )
        return self.append(db_session, entry)

    def list_entries(
        self,
        db_session: Session,
        owner_id: str,
        event_category: Optional[str] = None,
        event_type: Optional[str] = None,
        subject_type: Optional[str] = None,
        subject_id: Optional[int] = None,
        since=None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        return self.repo_class(db_session).list(
            owner_id,
            event_category=event_category,
            event_type=event_type,
            subject_type=subject_type,
            subject_id=subject_id,
            since=since,
            limit=min(max(limit, 1), 1000),
        )
