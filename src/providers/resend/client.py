from __future__ import annotations

import time
from typing import Any, Callable

import httpx

from src.domain.errors import UpstreamRateLimited, UpstreamUnavailable
from src.domain.rate_limiter import RateLimiter
from src.providers.retry import RATE_LIMIT_STATUS_CODE, fetch_with_retry


RESEND_DEFAULT_API_BASE = "https://api.resend.com"
RESEND_RATE_LIMIT_KEY = "resend"


class ResendProviderError(UpstreamUnavailable):
    """Provider-level exception for Resend integration failures."""


class AttachmentTooLarge(ResendProviderError):
    def __init__(self, message: str, *, size: int, limit: int):
        super().__init__(message)
        self.size = size
        self.limit = limit

    @property
    def category(self) -> str:
        return "terminal"


def _headers(api_key: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Accept": "application/json",
    }


def _declared_length(response: httpx.Response) -> int:
    # An unparseable header counts as undeclared; the streamed byte count still caps it.
    try:
        return max(0, int(response.headers.get("content-length") or 0))
    except ValueError:
        return 0


def _gated_send(
    *,
    http: httpx.Client,
    request: httpx.Request,
    rate_limiter: RateLimiter,
    min_interval_seconds: float,
    stream: bool = False,
) -> Callable[[], httpx.Response]:
    def _send() -> httpx.Response:
        return rate_limiter.enqueue(
            RESEND_RATE_LIMIT_KEY,
            lambda: http.send(request, stream=stream),
            min_interval_seconds,
        )

    return _send


def download_attachment(
    *,
    email_id: str,
    attachment_id: str,
    api_key: str,
    max_bytes: int,
    rate_limiter: RateLimiter,
    min_interval_seconds: float = 0.6,
    max_retries: int = 3,
    base_url: str = RESEND_DEFAULT_API_BASE,
    timeout_seconds: float = 30.0,
    http_client: httpx.Client | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> bytes:
    """Stream one attachment, refusing anything larger than ``max_bytes``.

    The ``content-length`` header is checked before the body is read, and the
    running byte count is checked while reading, so an oversized attachment
    never sits fully in memory.
    """
    http = http_client or httpx.Client(timeout=timeout_seconds)
    try:
        request = http.build_request(
            "GET",
            f"{base_url.rstrip('/')}/emails/{email_id}/attachments/{attachment_id}",
            headers=_headers(api_key),
        )
        try:
            response = fetch_with_retry(
                _gated_send(
                    http=http,
                    request=request,
                    rate_limiter=rate_limiter,
                    min_interval_seconds=min_interval_seconds,
                    stream=True,
                ),
                max_retries=max_retries,
                sleep=sleep,
                label=RESEND_RATE_LIMIT_KEY,
            )
        except httpx.HTTPError as exc:
            raise ResendProviderError(f"Resend connectivity error: {exc}") from exc

        try:
            if response.status_code == RATE_LIMIT_STATUS_CODE:
                raise UpstreamRateLimited("Resend API returned HTTP 429 for attachment download")
            if response.status_code >= 400:
                raise ResendProviderError(f"Resend API returned HTTP {response.status_code} for attachment download")

            declared = _declared_length(response)
            if declared > max_bytes:
                raise AttachmentTooLarge(
                    f"Attachment declares {declared} bytes, limit is {max_bytes}",
                    size=declared,
                    limit=max_bytes,
                )
            chunks: list[bytes] = []
            received = 0
            try:
                for chunk in response.iter_bytes():
                    received += len(chunk)
                    if received > max_bytes:
                        raise AttachmentTooLarge(
                            f"Attachment exceeded {max_bytes} bytes while streaming",
                            size=received,
                            limit=max_bytes,
                        )
                    chunks.append(chunk)
            except httpx.HTTPError as exc:
                raise ResendProviderError(f"Resend connectivity error: {exc}") from exc
            return b"".join(chunks)
        finally:
            response.close()
    finally:
        if http_client is None:
            http.close()


def send_email(
    *,
    api_key: str,
    from_email: str,
    to: str,
    subject: str,
    html: str,
    rate_limiter: RateLimiter,
    min_interval_seconds: float = 0.6,
    max_retries: int = 3,
    base_url: str = RESEND_DEFAULT_API_BASE,
    timeout_seconds: float = 10.0,
    http_client: httpx.Client | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    http = http_client or httpx.Client(timeout=timeout_seconds)
    try:
        request = http.build_request(
            "POST",
            f"{base_url.rstrip('/')}/emails",
            headers={**_headers(api_key), "Content-Type": "application/json"},
            json={"from": from_email, "to": [to], "subject": subject, "html": html},
        )
        try:
            response = fetch_with_retry(
                _gated_send(
                    http=http,
                    request=request,
                    rate_limiter=rate_limiter,
                    min_interval_seconds=min_interval_seconds,
                ),
                max_retries=max_retries,
                sleep=sleep,
                label=RESEND_RATE_LIMIT_KEY,
            )
        except httpx.HTTPError as exc:
            raise ResendProviderError(f"Resend connectivity error: {exc}") from exc
    finally:
        if http_client is None:
            http.close()

    if response.status_code == RATE_LIMIT_STATUS_CODE:
        raise UpstreamRateLimited("Resend API returned HTTP 429 for email send")
    if response.status_code in {401, 403}:
        raise ResendProviderError("Invalid Resend API key")
    if response.status_code >= 400:
        raise ResendProviderError(f"Resend API returned HTTP {response.status_code}: {response.text[:200]}")
    try:
        return response.json()
    except ValueError as exc:
        raise ResendProviderError("Unexpected Resend non-JSON response") from exc
