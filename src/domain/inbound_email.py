from __future__ import annotations

import html
import logging
from typing import Any, Callable

from src.domain.errors import UpstreamUnavailable
from src.models.inbound_email import AttachmentDescriptor, FetchedAttachment, InboundEmailData
from src.observability import incr_metric, log_event
from src.providers.resend.client import AttachmentTooLarge


AttachmentDownloader = Callable[[AttachmentDescriptor, int], bytes]


def _skip(descriptor: AttachmentDescriptor, *, reason: str, request_id: str | None, **fields: Any) -> None:
    incr_metric("inbound_email.attachment_skipped", reason=reason)
    log_event(
        "inbound_email_attachment_skipped",
        level=logging.WARNING,
        request_id=request_id,
        attachment_id=descriptor.id,
        filename=descriptor.filename,
        reason=reason,
        **fields,
    )


def fetch_attachments(
    descriptors: list[AttachmentDescriptor],
    *,
    download: AttachmentDownloader,
    max_bytes: int,
    total_max_bytes: int,
    request_id: str | None = None,
) -> list[FetchedAttachment]:
    """Download attachments one at a time under a per-item and per-email byte cap.

    Each download is bounded by whichever cap is tighter at that moment, so
    the email never holds more than ``total_max_bytes`` in memory. Oversized
    or failing attachments are skipped and the rest are still fetched.
    """
    fetched: list[FetchedAttachment] = []
    total = 0
    for descriptor in descriptors:
        remaining = total_max_bytes - total
        if descriptor.size is not None and descriptor.size > max_bytes:
            _skip(descriptor, reason="attachment_too_large", request_id=request_id, size=descriptor.size, limit=max_bytes)
            continue
        if remaining <= 0 or (descriptor.size is not None and descriptor.size > remaining):
            _skip(descriptor, reason="total_too_large", request_id=request_id, size=descriptor.size, limit=remaining)
            continue

        limit = min(max_bytes, remaining)
        try:
            content = download(descriptor, limit)
        except AttachmentTooLarge as exc:
            reason = "attachment_too_large" if limit == max_bytes else "total_too_large"
            _skip(descriptor, reason=reason, request_id=request_id, size=exc.size, limit=exc.limit)
            continue
        except UpstreamUnavailable as exc:
            _skip(descriptor, reason="download_failed", request_id=request_id, error=str(exc))
            continue

        total += len(content)
        fetched.append(
            FetchedAttachment(
                filename=descriptor.filename,
                content_type=descriptor.content_type,
                content=content,
            )
        )
    return fetched


def render_chat_forward(email: InboundEmailData) -> tuple[str, str]:
    subject = f"Fwd: {email.subject}" if email.subject else "Fwd: (no subject)"
    attachment_names = ", ".join(a.filename for a in email.attachments) or "none"
    if email.html:
        body = email.html
    else:
        body = f"<pre>{html.escape(email.text or '')}</pre>"
    rendered = (
        f"<p><strong>From:</strong> {html.escape(email.sender)}<br>"
        f"<strong>Subject:</strong> {html.escape(email.subject)}<br>"
        f"<strong>Attachments:</strong> {html.escape(attachment_names)}</p>"
        f"<hr>{body}"
    )
    return subject, rendered


def forward_to_chat(
    email: InboundEmailData,
    *,
    send: Callable[..., dict[str, Any]],
    to: str | None,
    request_id: str | None = None,
) -> bool:
    """Best-effort copy of an inbound email to the chat inbox.

    Runs after the webhook response is sent, so failures only log.
    """
    if not to:
        return False
    subject, rendered = render_chat_forward(email)
    try:
        send(to=to, subject=subject, html=rendered)
    except Exception as exc:
        incr_metric("inbound_email.forward_failed", error_type=type(exc).__name__)
        log_event(
            "inbound_email_forward_failed",
            level=logging.WARNING,
            request_id=request_id,
            email_id=email.email_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False
    incr_metric("inbound_email.forwarded")
    log_event("inbound_email_forwarded", request_id=request_id, email_id=email.email_id)
    return True
