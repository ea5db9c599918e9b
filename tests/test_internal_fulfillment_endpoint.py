from fastapi.testclient import TestClient

from src.domain.fulfillment import FulfillmentFailed, FulfillmentResult
from src.main import app
from src.routers import internal_fulfillment as internal_router


SECRET_HEADER = {"X-Internal-Scheduler-Secret": "sched-secret"}


class ScriptedHandler:
    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.calls = []

    def complete(self, session_id, *, request_id=None):
        self.calls.append(session_id)
        outcome = self.outcomes[session_id]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _failed_row(key, session_id):
    return {
        "id": f"row-{key}",
        "payment_intent_id": key,
        "stripe_session_id": session_id,
        "status": "failed",
        "last_error": "Job type not found for service: Drain Cleaning",
        "crm_job_id": None,
        "updated_at": f"2026-10-0{len(key)}T00:00:00+00:00",
    }


def _install(monkeypatch, fake_db, handler=None):
    monkeypatch.setattr(internal_router.settings, "internal_scheduler_secret", "sched-secret")
    monkeypatch.setattr(internal_router, "supabase", fake_db)
    if handler is not None:
        monkeypatch.setattr(internal_router, "build_fulfillment_handler", lambda _app: handler)


def test_list_requests_rejects_missing_secret(monkeypatch, fake_db):
    _install(monkeypatch, fake_db)
    client = TestClient(app)

    response = client.get("/api/internal/fulfillment/requests")

    assert response.status_code == 401
    assert response.json()["detail"] == "invalid scheduler secret"


def test_list_requests_rejects_invalid_secret(monkeypatch, fake_db):
    _install(monkeypatch, fake_db)
    client = TestClient(app)

    response = client.get(
        "/api/internal/fulfillment/requests",
        headers={"X-Internal-Scheduler-Secret": "wrong-secret"},
    )

    assert response.status_code == 401


def test_returns_503_when_scheduler_secret_not_configured(monkeypatch, fake_db):
    _install(monkeypatch, fake_db)
    monkeypatch.setattr(internal_router.settings, "internal_scheduler_secret", None)
    client = TestClient(app)

    response = client.post("/api/internal/fulfillment/retry-failed", json={}, headers=SECRET_HEADER)

    assert response.status_code == 503
    assert response.json()["detail"] == "internal scheduler secret is not configured"


def test_list_requests_filters_by_status(monkeypatch, fake_db):
    fake_db.tables["fulfillment_requests"] = [
        _failed_row("pi_1", "cs_1"),
        {"id": "row-2", "payment_intent_id": "pi_2", "status": "confirmed", "crm_job_id": 500},
    ]
    _install(monkeypatch, fake_db)
    client = TestClient(app)

    failed = client.get("/api/internal/fulfillment/requests", headers=SECRET_HEADER)
    confirmed = client.get("/api/internal/fulfillment/requests?status=confirmed", headers=SECRET_HEADER)

    assert failed.status_code == 200
    assert [item["payment_intent_id"] for item in failed.json()] == ["pi_1"]
    assert failed.json()[0]["last_error"].startswith("Job type not found")
    assert [item["crm_job_id"] for item in confirmed.json()] == [500]


def test_retry_failed_reruns_stored_sessions(monkeypatch, fake_db):
    fake_db.tables["fulfillment_requests"] = [
        _failed_row("pi_1", "cs_1"),
        _failed_row("pi_22", "cs_2"),
        _failed_row("pi_333", None),
    ]
    handler = ScriptedHandler(
        {
            "cs_1": FulfillmentResult(request_id="row-new", job_number="J-900", job_id=900),
            "cs_2": FulfillmentFailed("Failed to create job in CRM"),
        }
    )
    _install(monkeypatch, fake_db, handler)
    client = TestClient(app)

    response = client.post("/api/internal/fulfillment/retry-failed", json={"limit": 10}, headers=SECRET_HEADER)

    assert response.status_code == 200
    body = response.json()
    assert body["attempted"] == 3
    assert body["confirmed"] == 1
    assert body["failed"] == 1
    assert [(r["payment_intent_id"], r["status"]) for r in body["results"]] == [
        ("pi_1", "confirmed"),
        ("pi_22", "failed"),
        ("pi_333", "skipped"),
    ]
    assert body["results"][0]["job_number"] == "J-900"
    assert handler.calls == ["cs_1", "cs_2"]
    assert len(fake_db.rows("observability_metric_snapshots")) == 1


def test_retry_failed_with_nothing_to_do(monkeypatch, fake_db):
    _install(monkeypatch, fake_db)
    client = TestClient(app)

    response = client.post("/api/internal/fulfillment/retry-failed", json={}, headers=SECRET_HEADER)

    assert response.status_code == 200
    assert response.json()["attempted"] == 0
