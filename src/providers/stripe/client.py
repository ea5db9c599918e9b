from __future__ import annotations

from typing import Any

import stripe

from src.domain.errors import ResourceNotFound, UpstreamRateLimited, UpstreamUnavailable


CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"


class PaymentGatewayError(UpstreamUnavailable):
    """Provider-level exception for Stripe integration failures."""


def _to_plain(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, dict):
        return {key: _to_plain(item) for key, item in value.items()}
    return value


def retrieve_checkout_session(session_id: str, *, api_key: str | None) -> dict[str, Any]:
    if not api_key:
        raise PaymentGatewayError("Stripe secret key not configured")
    client = stripe.StripeClient(api_key)
    try:
        session = client.checkout.sessions.retrieve(session_id)
    except stripe.InvalidRequestError as exc:
        if getattr(exc, "http_status", None) == 404:
            raise ResourceNotFound(f"Checkout session not found: {session_id}") from exc
        raise PaymentGatewayError(f"Invalid Stripe request: {exc.user_message or exc}") from exc
    except stripe.RateLimitError as exc:
        raise UpstreamRateLimited("Stripe API returned HTTP 429") from exc
    except stripe.APIConnectionError as exc:
        raise PaymentGatewayError(f"Stripe connectivity error: {exc}") from exc
    except stripe.StripeError as exc:
        raise PaymentGatewayError(f"Stripe API returned HTTP {exc.http_status}: {exc}") from exc
    return _to_plain(session)


def construct_webhook_event(raw_body: bytes, signature_header: str, *, secret: str) -> dict[str, Any]:
    """Verify a Stripe webhook signature and return the event as a plain dict.

    Raises ``stripe.SignatureVerificationError`` on a bad signature and
    ``ValueError`` on a body that is not JSON.
    """
    event = stripe.Webhook.construct_event(raw_body, signature_header, secret)
    return _to_plain(event)
