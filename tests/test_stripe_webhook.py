import hashlib
import hmac
import json
import time

from fastapi.testclient import TestClient

from src.domain.errors import UpstreamRateLimited
from src.domain.fulfillment import FulfillmentFailed, FulfillmentResult
from src.main import app
from src.routers import webhooks as webhooks_router


WEBHOOK_SECRET = "whsec_stripe_test_secret"


def _signed(payload: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(payload).encode("utf-8")
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.".encode("utf-8") + body,
        hashlib.sha256,
    ).hexdigest()
    return body, {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


def _event(event_type="checkout.session.completed", session_id="cs_test_1"):
    return {
        "id": "evt_1",
        "object": "event",
        "type": event_type,
        "data": {"object": {"id": session_id, "object": "checkout.session", "payment_status": "paid"}},
    }


class RecordingHandler:
    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result or FulfillmentResult(request_id="row-1", job_number="J-500", job_id=500)
        self.error = error

    def complete(self, session_id, *, request_id=None):
        self.calls.append(session_id)
        if self.error:
            raise self.error
        return self.result


def _install(monkeypatch, handler):
    monkeypatch.setattr(webhooks_router.settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(webhooks_router, "build_fulfillment_handler", lambda _app: handler)


def test_checkout_completed_runs_fulfillment(monkeypatch):
    handler = RecordingHandler()
    _install(monkeypatch, handler)
    body, headers = _signed(_event())
    client = TestClient(app)

    response = client.post("/api/webhooks/stripe", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"received": True, "status": "processed", "job_number": "J-500"}
    assert handler.calls == ["cs_test_1"]


def test_other_event_types_are_acknowledged_and_ignored(monkeypatch):
    handler = RecordingHandler()
    _install(monkeypatch, handler)
    body, headers = _signed(_event(event_type="payment_intent.created"))
    client = TestClient(app)

    response = client.post("/api/webhooks/stripe", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert handler.calls == []


def test_invalid_signature_is_rejected_before_fulfillment(monkeypatch):
    handler = RecordingHandler()
    _install(monkeypatch, handler)
    body, headers = _signed(_event(), secret="whsec_wrong")
    client = TestClient(app)

    response = client.post("/api/webhooks/stripe", content=body, headers=headers)

    assert response.status_code == 400
    assert handler.calls == []


def test_missing_signature_header_is_rejected(monkeypatch):
    handler = RecordingHandler()
    _install(monkeypatch, handler)
    client = TestClient(app)

    response = client.post("/api/webhooks/stripe", content=json.dumps(_event()).encode())

    assert response.status_code == 400
    assert handler.calls == []


def test_missing_webhook_secret_returns_500(monkeypatch):
    monkeypatch.setattr(webhooks_router.settings, "stripe_webhook_secret", None)
    body, headers = _signed(_event())
    client = TestClient(app)

    response = client.post("/api/webhooks/stripe", content=body, headers=headers)

    assert response.status_code == 500


def test_failed_fulfillment_is_still_acknowledged(monkeypatch):
    handler = RecordingHandler(error=FulfillmentFailed("Failed to create job in CRM"))
    _install(monkeypatch, handler)
    body, headers = _signed(_event())
    client = TestClient(app)

    response = client.post("/api/webhooks/stripe", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"received": True, "status": "failed"}


def test_upstream_outage_asks_gateway_to_redeliver(monkeypatch):
    handler = RecordingHandler(error=UpstreamRateLimited("Stripe API returned HTTP 429"))
    _install(monkeypatch, handler)
    body, headers = _signed(_event())
    client = TestClient(app)

    response = client.post("/api/webhooks/stripe", content=body, headers=headers)

    assert response.status_code == 503
