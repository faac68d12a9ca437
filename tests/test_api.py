import pytest
from fastapi.testclient import TestClient

from conftest import OWNER
from healguard.infrastructure.db.base import get_session
from healguard.infrastructure.sched.scheduler import MaintenanceScheduler
from healguard.interfaces.api.main import app
from healguard.interfaces.api.security.auth import create_access_token

REFERENCE_FACTORS = [
    {"name": "revenue", "current_value": 120.0, "baseline_value": 100.0, "threshold_value": 150.0, "weight": 0.4},
    {"name": "cost_efficiency", "current_value": 80.0, "baseline_value": 100.0, "threshold_value": 70.0, "weight": 0.3},
    {"name": "customer_satisfaction", "current_value": 4.5, "baseline_value": 4.0, "threshold_value": 4.8,
     "weight": 0.3},
]


def _bearer(subject=OWNER, *roles):
    return {"Authorization": f"Bearer {create_access_token(subject, list(roles))}"}


@pytest.fixture
def client(db_session, session_factory, services):
    app.state.services = services
    app.state.scheduler = MaintenanceScheduler(services, session_factory=session_factory)
    app.dependency_overrides[get_session] = lambda: db_session
    # no context manager: the startup hook would rebuild services against the real settings
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.services = None
    app.state.scheduler = None


@pytest.fixture
def operator():
    return _bearer(OWNER, "operator")


@pytest.fixture
def admin():
    return _bearer("root@example.com", "admin")


def test_root_and_liveness(client):
    assert client.get("/").json() == {"message": "HealGuard API Running"}
    assert client.get("/health").json() == {"status": "ok"}


def test_reads_require_a_token(client):
    assert client.get("/thresholds").status_code == 401
    assert client.get("/thresholds", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401


def test_writes_require_operator_role(client, operator):
    body = {"metric_name": "latency_p95_ms", "threshold_value": 2000, "threshold_type": "above"}
    assert client.post("/thresholds", json=body, headers=_bearer(OWNER, "viewer")).status_code == 403

    resp = client.post("/thresholds", json=body, headers=operator)
    assert resp.status_code == 201
    assert resp.json()["threshold_type"] == "above"
    assert resp.json()["alert_level"] == "warning"

    listed = client.get("/thresholds", headers=_bearer(OWNER, "viewer")).json()
    assert [t["metric_name"] for t in listed] == ["latency_p95_ms"]


def test_owner_override_is_admin_only(client, operator, admin):
    body = {"metric_name": "error_rate", "threshold_value": 0.05, "threshold_type": "above",
            "owner_id": "other@example.com"}
    assert client.post("/thresholds", json=body, headers=operator).status_code == 403
    assert client.post("/thresholds", json=body, headers=admin).status_code == 201

    theirs = client.get("/thresholds", params={"owner_id": "other@example.com"}, headers=admin).json()
    assert len(theirs) == 1
    assert client.get("/thresholds", headers=operator).json() == []


def test_decision_round_trip(client, operator):
    resp = client.post("/decision/evaluate", headers=operator, json={
        "decision_type": "capacity_plan", "trigger_source": "detector", "factors": REFERENCE_FACTORS,
    })
    assert resp.status_code == 201
    decision_id = resp.json()["decision_event_id"]

    fetched = client.get(f"/decision/{decision_id}", headers=operator)
    assert fetched.status_code == 200
    assert fetched.json()["decision_type"] == "capacity_plan"
    assert fetched.json()["priority"] == 3


def test_validate_reads_validation_rules(client, operator):
    decision_id = client.post("/decision/evaluate", headers=operator, json={
        "decision_type": "capacity_plan", "trigger_source": "detector", "factors": REFERENCE_FACTORS,
    }).json()["decision_event_id"]

    resp = client.post("/decision/validate", headers=operator, json={
        "decision_event_id": decision_id, "validation_rules": {"min_confidence": 0.99},
    })
    assert resp.status_code == 200
    assert resp.json()["validation_status"] == "failed"
    assert "min_confidence" in [v["rule"] for v in resp.json()["violations"]]


def test_recommendation_routes(client, operator):
    evaluated = client.post("/decision/evaluate", headers=operator, json={
        "decision_type": "capacity_plan", "trigger_source": "detector", "factors": REFERENCE_FACTORS,
    }).json()
    recommendation_id = evaluated["recommendation_id"]
    assert recommendation_id is not None

    fetched = client.get(f"/recommendation/{recommendation_id}", headers=operator)
    assert fetched.status_code == 200
    assert fetched.json()["decision_event_id"] == evaluated["decision_event_id"]

    assert client.post("/decisions/evaluate", headers=operator, json={}).status_code == 404
    assert client.get(f"/recommendations/{recommendation_id}", headers=operator).status_code == 404


def test_unknown_decision_is_404(client, operator):
    resp = client.get("/decision/999", headers=operator)
    assert resp.status_code == 404
    assert resp.json()["error"] == "NotFoundError"


def test_bad_weights_are_422(client, operator):
    factors = [dict(f, weight=0.5) for f in REFERENCE_FACTORS]
    resp = client.post("/decision/evaluate", headers=operator, json={
        "decision_type": "capacity_plan", "trigger_source": "detector", "factors": factors,
    })
    assert resp.status_code == 422
    assert resp.json()["error"] == "ValidationError"


def test_recovery_dry_run(client, operator, mock_controller):
    resp = client.post("/recovery/execute", headers=operator, json={
        "action_type": "restart_function", "target_component_type": "api", "target_component_name": "checkout",
        "dry_run": True,
    })
    assert resp.status_code == 202
    assert resp.json()["execution_status"] == "completed"
    mock_controller.perform.assert_not_awaited()

    action_id = resp.json()["recovery_action_id"]
    assert client.get(f"/recovery/{action_id}", headers=operator).json()["execution_status"] == "completed"

    # cancel is only valid while pending
    cancel = client.post(f"/recovery/{action_id}/cancel", headers=operator)
    assert cancel.status_code == 409
    assert cancel.json()["error"] == "InvalidTransitionError"


def test_jobs_need_the_api_key(client):
    assert client.post("/jobs/close-windows").status_code == 401
    resp = client.post("/jobs/close-windows", headers={"X-API-Key": "test_api_key"})
    assert resp.status_code == 200
    assert resp.json()["windows_closed"] == 0


def test_audit_trail_is_listed(client, operator):
    client.post("/thresholds", headers=operator,
                json={"metric_name": "latency_p95_ms", "threshold_value": 2000, "threshold_type": "above"})
    entries = client.get("/audit", headers=operator).json()
    assert entries
    assert all(e["event_category"] == "threshold" for e in entries)
    assert client.get("/audit", params={"limit": 0}, headers=operator).status_code == 422


def test_metrics_endpoint(client):
    client.get("/")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "hg_requests_total" in resp.text
