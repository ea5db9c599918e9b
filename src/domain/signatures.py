from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Any, Mapping

from src.domain.errors import AuthenticationFailure


MESSAGE_ID_HEADER = "svix-id"
TIMESTAMP_HEADER = "svix-timestamp"
SIGNATURE_HEADER = "svix-signature"
_SECRET_PREFIX = "whsec_"
_SIGNATURE_VERSION = "v1"


class WebhookSignatureError(AuthenticationFailure):
    """Raised when an inbound webhook cannot be authenticated."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


def _decode_secret(secret: str) -> bytes:
    raw = secret[len(_SECRET_PREFIX):] if secret.startswith(_SECRET_PREFIX) else secret
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Webhook signing secret is not valid base64") from exc


def compute_signature(*, secret: str, message_id: str, timestamp: str, raw_body: bytes) -> str:
    signed_content = b".".join([message_id.encode("utf-8"), timestamp.encode("utf-8"), raw_body])
    digest = hmac.new(_decode_secret(secret), signed_content, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _candidate_signatures(header_value: str) -> list[str]:
    candidates: list[str] = []
    for item in header_value.split():
        version, _, signature = item.partition(",")
        if version == _SIGNATURE_VERSION and signature:
            candidates.append(signature)
    return candidates


def verify_webhook(
    *,
    raw_body: bytes,
    headers: Mapping[str, str],
    secret: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> dict[str, Any]:
    """Authenticate a timestamped HMAC webhook and return the parsed event.

    Fails closed: a missing header, a timestamp outside the tolerance window,
    or a signature mismatch raises ``WebhookSignatureError`` and nothing in
    the body is parsed before the signature check passes.
    """
    message_id = headers.get(MESSAGE_ID_HEADER)
    timestamp = headers.get(TIMESTAMP_HEADER)
    signature_header = headers.get(SIGNATURE_HEADER)
    if not message_id or not timestamp or not signature_header:
        raise WebhookSignatureError("missing_headers", "Missing webhook signature headers")

    try:
        sent_at = int(timestamp)
    except ValueError as exc:
        raise WebhookSignatureError("invalid_timestamp", "Invalid webhook timestamp") from exc
    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - sent_at) > tolerance_seconds:
        raise WebhookSignatureError("stale_timestamp", "Webhook timestamp outside tolerance window")

    expected = compute_signature(
        secret=secret,
        message_id=message_id,
        timestamp=timestamp,
        raw_body=raw_body,
    )
    matched = False
    for candidate in _candidate_signatures(signature_header):
        if hmac.compare_digest(expected.encode("ascii"), candidate.encode("ascii", errors="replace")):
            matched = True
    if not matched:
        raise WebhookSignatureError("invalid_signature", "Webhook signature verification failed")

    try:
        event = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookSignatureError("malformed_payload", "Signed payload is not valid JSON") from exc
    if not isinstance(event, dict):
        raise WebhookSignatureError("malformed_payload", "Signed payload is not a JSON object")
    return event
