# src/healguard/application/services/selftest_service.py
"""
SelfTestService - smoke checks of the engine's own dependencies and invariants.

Each check returns (passed, scores, error). Results are persisted as SelfTestResult rows
under one run id; when too many checks fail an alert goes out.
"""

import logging
import time
import uuid
from typing import List, Optional, Dict, Any, Callable, Tuple

import psutil
from sqlalchemy import text, update
from sqlalchemy.orm import Session

from healguard.config import settings
from healguard.domain.entities import SelfTestOutcome, ActorType
from healguard.domain.errors import AuditImmutableError
from healguard.domain.value_objects import DecisionPolicy
from healguard.application.engine.scoring import FactorInput, compute_confidence
from healguard.infrastructure.db.models import SelfTestResult, AuditLogEntry
from healguard.infrastructure.db.repository import SelfTestRepository
from healguard.infrastructure.notify.dispatcher import Notification

log = logging.getLogger(__name__)

REFERENCE_SCENARIO = [
    FactorInput(name="revenue", current_value=120.0, baseline_value=100.0, threshold_value=150.0,
                weight=0.4, category="financial"),
    FactorInput(name="cost_efficiency", current_value=80.0, baseline_value=100.0, threshold_value=70.0,
                weight=0.3, category="operational"),
    FactorInput(name="customer_satisfaction", current_value=4.5, baseline_value=4.0, threshold_value=4.8,
                weight=0.3, category="customer"),
]
REFERENCE_MIN_CONFIDENCE = 0.6

CheckResult = Tuple[bool, Dict[str, float], Optional[str]]


class SelfTestService:
    def __init__(self, audit_service: Any, notifier: Any = None, cache: Any = None):
        self.audit = audit_service
        self.notifier = notifier
        self.cache = cache

    # --- checks ---
    async def _check_database(self, db_session: Session) -> CheckResult:
        started = time.monotonic()
        value = db_session.execute(text("SELECT 1")).scalar()
        elapsed_ms = (time.monotonic() - started) * 1000.0
        ok = value == 1
        return ok, {"performance": max(0.0, 100.0 - elapsed_ms / 10.0)}, None if ok else "unexpected result"

    async def _check_cache(self, db_session: Session) -> CheckResult:
        if self.cache is None:
            return False, {}, "shared cache not configured"
        key = f"selftest:{uuid.uuid4().hex}"
        await self.cache.set(key, {"ok": True}, ttl=30)
        value = await self.cache.get(key)
        await self.cache.invalidate(key)
        ok = value == {"ok": True}
        return ok, {}, None if ok else "round-trip mismatch"

    async def _check_scoring(self, db_session: Session) -> CheckResult:
        result = compute_confidence(REFERENCE_SCENARIO, DecisionPolicy().weight_tolerance)
        ok = result.confidence >= REFERENCE_MIN_CONFIDENCE
        error = None if ok else f"reference confidence {result.confidence:.3f} < {REFERENCE_MIN_CONFIDENCE}"
        return ok, {"performance": round(result.confidence * 100.0, 2)}, error

    async def _check_audit_immutability(self, db_session: Session) -> CheckResult:
        entry = self.audit.record(
            db_session, settings.SYSTEM_OWNER_ID, "selftest_sentinel", "selftest",
            "audit immutability sentinel", actor_type=ActorType.SYSTEM,
        )
        db_session.commit()

        entry.description = "tampered"
        try:
            db_session.flush()
            return False, {}, "audit entry update was accepted"
        except AuditImmutableError:
            pass
        finally:
            db_session.expunge_all()

        try:
            db_session.execute(
                update(AuditLogEntry).where(AuditLogEntry.id == entry.id).values(description="tampered")
            )
            return False, {}, "bulk audit update was accepted"
        except AuditImmutableError:
            return True, {}, None

    async def _check_host(self, db_session: Session) -> CheckResult:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')
        cpu = psutil.cpu_percent(interval=None)
        headroom = 100.0 - max(memory.percent, disk.percent, cpu)
        ok = memory.percent < 95 and disk.percent < 95
        error = None if ok else f"host saturated: mem={memory.percent}% disk={disk.percent}%"
        return ok, {"performance": max(0.0, headroom)}, error

    def checks(self) -> List[Tuple[str, str, Callable]]:
        return [
            ("database_round_trip", "storage", self._check_database),
            ("shared_cache_round_trip", "cache", self._check_cache),
            ("decision_scoring_reference", "decision", self._check_scoring),
            ("audit_immutability", "audit", self._check_audit_immutability),
            ("host_resources", "host", self._check_host),
        ]

    async def run_all(self, db_session: Session, owner_id: str) -> Dict[str, Any]:
        run_id = uuid.uuid4().hex
        rows: List[SelfTestResult] = []

        for name, category, check in self.checks():
            started = time.monotonic()
            try:
                ok, scores, error = await check(db_session)
            except Exception as e:
                log.error(f"Self test '{name}' raised: {e}", exc_info=True)
                ok, scores, error = False, {}, str(e) or type(e).__name__
            duration_ms = (time.monotonic() - started) * 1000.0
            rows.append(SelfTestResult(
                owner_id=owner_id,
                run_id=run_id,
                test_name=name,
                test_category=category,
                test_type="smoke",
                execution_status="completed",
                test_result=SelfTestOutcome.PASS if ok else SelfTestOutcome.FAIL,
                health_score=100.0 if ok else 0.0,
                reliability_score=100.0 if ok else 0.0,
                performance_score=round(scores.get("performance", 100.0 if ok else 0.0), 2),
                duration_ms=round(duration_ms, 2),
                error_message=error,
            ))

        SelfTestRepository(db_session).add_all(rows)
        failed = [r for r in rows if r.test_result == SelfTestOutcome.FAIL]
        ratio = len(failed) / len(rows)
        self.audit.record(
            db_session, owner_id, "selftest_completed", "selftest",
            f"Self test run {run_id}: {len(rows) - len(failed)}/{len(rows)} passed",
            decision_impact="high" if ratio > settings.SELFTEST_FAILURE_ALERT_RATIO else None,
            actor_type=ActorType.SYSTEM,
            metadata={"run_id": run_id, "failed": [r.test_name for r in failed]},
        )
        db_session.commit()

        if ratio > settings.SELFTEST_FAILURE_ALERT_RATIO and self.notifier is not None:
            self.notifier.fire_and_forget(Notification(
                subject="Self test failures",
                body=f"{len(failed)}/{len(rows)} checks failed: " + ", ".join(r.test_name for r in failed),
                severity="critical",
            ))
        log.info(f"Self test run {run_id} for owner {owner_id}: {len(rows) - len(failed)}/{len(rows)} passed")

        return {
            "run_id": run_id,
            "passed": len(rows) - len(failed),
            "failed": len(failed),
            "results": [
                {
                    "test_name": r.test_name,
                    "test_category": r.test_category,
                    "test_result": r.test_result.value,
                    "performance_score": r.performance_score,
                    "duration_ms": r.duration_ms,
                    "error_message": r.error_message,
                }
                for r in rows
            ],
        }
