from __future__ import annotations

from typing import Any, Protocol


class ProviderErrorLike(Protocol):
    @property
    def category(self) -> str: ...

    @property
    def retryable(self) -> bool: ...


class FulfillmentError(Exception):
    """Base class for failures surfaced by the fulfillment layer."""

    http_status = 500

    @property
    def category(self) -> str:
        return "terminal"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


class AuthenticationFailure(FulfillmentError):
    """Webhook signature or shared secret did not verify."""

    http_status = 400


class ValidationFailure(FulfillmentError):
    """Payload is malformed or describes an unusable state (e.g. unpaid session)."""

    http_status = 400


class ResourceNotFound(FulfillmentError):
    http_status = 404


class UpstreamUnavailable(FulfillmentError):
    http_status = 502

    @property
    def category(self) -> str:
        message = str(self).lower()
        if (
            "connectivity error" in message
            or "http 429" in message
            or "http 500" in message
            or "http 502" in message
            or "http 503" in message
            or "http 504" in message
        ):
            return "transient"
        if "not configured" in message or "invalid" in message or "unexpected" in message:
            return "terminal"
        return "unknown"


class UpstreamRateLimited(UpstreamUnavailable):
    http_status = 503

    @property
    def category(self) -> str:
        return "transient"


def provider_error_http_status(exc: ProviderErrorLike) -> int:
    return 503 if exc.retryable else 502


def provider_error_detail(*, provider: str, operation: str, exc: ProviderErrorLike) -> dict[str, Any]:
    return {
        "type": "provider_error",
        "provider": provider,
        "operation": operation,
        "category": exc.category,
        "retryable": exc.retryable,
        "message": str(exc),
    }
