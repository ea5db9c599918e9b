from __future__ import annotations

import logging
from functools import partial
from typing import Any

import stripe
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from src.config import settings
from src.db import supabase
from src.domain.document_dispatch import SupabaseDocumentDispatcher
from src.domain.email_routing import ContentProcessors, route_email
from src.domain.errors import ResourceNotFound, UpstreamUnavailable, ValidationFailure
from src.domain.fulfillment import FulfillmentFailed
from src.domain.inbound_email import fetch_attachments, forward_to_chat
from src.domain.rate_limiter import RateLimiter, get_rate_limiter
from src.domain.signatures import WebhookSignatureError, verify_webhook
from src.models.inbound_email import EMAIL_RECEIVED_EVENT, AttachmentDescriptor, InboundEmailData, InboundEmailEvent
from src.observability import incr_metric, log_event
from src.providers.resend.client import download_attachment, send_email
from src.providers.stripe.client import CHECKOUT_COMPLETED_EVENT, construct_webhook_event
from src.routers.fulfillment import build_fulfillment_handler, fulfillment_http_exception, run_fulfillment


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def build_content_processors() -> ContentProcessors:
    return SupabaseDocumentDispatcher(supabase)


def _stripe_event_session_id(event: dict[str, Any]) -> str | None:
    data_object = (event.get("data") or {}).get("object") or {}
    session_id = data_object.get("id")
    return str(session_id) if session_id else None


@router.post("/stripe")
async def ingest_stripe_webhook(request: Request):
    req_id = _request_id(request)
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider_slug="stripe")
    if not settings.stripe_webhook_secret:
        log_event("webhook_secret_missing", level=logging.ERROR, request_id=req_id, provider_slug="stripe")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook signing secret not configured",
        )

    signature = request.headers.get("Stripe-Signature")
    if not signature:
        incr_metric("webhook.signature.rejected", provider_slug="stripe", reason="missing_headers")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe-Signature header")
    try:
        event = construct_webhook_event(raw_body, signature, secret=settings.stripe_webhook_secret)
    except stripe.SignatureVerificationError as exc:
        incr_metric("webhook.signature.rejected", provider_slug="stripe", reason="invalid_signature")
        log_event("webhook_signature_rejected", level=logging.WARNING, request_id=req_id, provider_slug="stripe")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature") from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc

    event_type = event.get("type") or "unknown"
    log_event("webhook_received", request_id=req_id, provider_slug="stripe", event_type=event_type, event_id=event.get("id"))
    if event_type != CHECKOUT_COMPLETED_EVENT:
        incr_metric("webhook.events.ignored", provider_slug="stripe")
        return {"received": True}

    session_id = _stripe_event_session_id(event)
    if not session_id:
        log_event("webhook_session_missing", level=logging.WARNING, request_id=req_id, provider_slug="stripe")
        return {"received": True}

    try:
        handler = build_fulfillment_handler(request.app)
        result = await run_in_threadpool(
            run_fulfillment,
            handler,
            session_id,
            source="stripe_webhook",
            request_id=req_id,
        )
    except FulfillmentFailed:
        # Row is stored as failed; the internal retry sweep picks it up.
        incr_metric("webhook.events.failed", provider_slug="stripe")
        return {"received": True, "status": "failed"}
    except (ValidationFailure, ResourceNotFound):
        incr_metric("webhook.events.ignored", provider_slug="stripe")
        return {"received": True, "status": "ignored"}
    except UpstreamUnavailable as exc:
        # Let the gateway redeliver when the upstream outage clears.
        incr_metric("webhook.events.failed", provider_slug="stripe")
        raise fulfillment_http_exception(exc, operation="stripe_webhook") from exc

    incr_metric("webhook.events.processed", provider_slug="stripe")
    return {
        "received": True,
        "status": "processing" if result.processing else "processed",
        "job_number": result.job_number,
    }


def _download_for(email_id: str, rate_limiter: RateLimiter):
    def _download(descriptor: AttachmentDescriptor, limit: int) -> bytes:
        return download_attachment(
            email_id=email_id,
            attachment_id=descriptor.id,
            api_key=settings.resend_api_key,
            max_bytes=limit,
            rate_limiter=rate_limiter,
            min_interval_seconds=settings.resend_min_interval_seconds,
            max_retries=settings.upstream_max_retries,
            base_url=settings.resend_api_base,
        )

    return _download


def _process_inbound_email(
    email: InboundEmailData,
    *,
    rate_limiter: RateLimiter,
    request_id: str | None,
) -> list[str]:
    attachments = []
    if email.attachments:
        if not settings.resend_api_key:
            log_event(
                "inbound_email_attachments_unavailable",
                level=logging.WARNING,
                request_id=request_id,
                email_id=email.email_id,
                attachment_count=len(email.attachments),
            )
        else:
            attachments = fetch_attachments(
                email.attachments,
                download=_download_for(email.email_id, rate_limiter),
                max_bytes=settings.attachment_max_bytes,
                total_max_bytes=settings.attachment_total_max_bytes,
                request_id=request_id,
            )
    return route_email(
        sender=email.sender,
        subject=email.subject,
        body=email.body,
        attachments=attachments,
        processors=build_content_processors(),
        request_id=request_id,
    )


@router.post("/resend/inbound")
async def ingest_resend_inbound_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    req_id = _request_id(request)
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider_slug="resend")
    secret = settings.resend_webhook_signing_secret
    if not secret:
        log_event("webhook_secret_missing", level=logging.ERROR, request_id=req_id, provider_slug="resend")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook signing secret not configured",
        )

    try:
        payload = verify_webhook(
            raw_body=raw_body,
            headers=request.headers,
            secret=secret,
            tolerance_seconds=settings.resend_webhook_tolerance_seconds,
        )
    except WebhookSignatureError as exc:
        incr_metric("webhook.signature.rejected", provider_slug="resend", reason=exc.reason)
        log_event(
            "webhook_signature_rejected",
            level=logging.WARNING,
            request_id=req_id,
            provider_slug="resend",
            reason=exc.reason,
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        log_event(
            "webhook_verification_error",
            level=logging.ERROR,
            request_id=req_id,
            provider_slug="resend",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook verification failed",
        ) from exc

    event_type = payload.get("type") or "unknown"
    if event_type != EMAIL_RECEIVED_EVENT:
        incr_metric("webhook.events.ignored", provider_slug="resend")
        log_event("webhook_event_ignored", request_id=req_id, provider_slug="resend", event_type=event_type)
        return {"received": True}

    try:
        event = InboundEmailEvent.model_validate(payload)
    except ValidationError as exc:
        incr_metric("webhook.events.failed", provider_slug="resend")
        log_event(
            "inbound_email_payload_invalid",
            level=logging.WARNING,
            request_id=req_id,
            errors=[".".join(str(part) for part in err["loc"]) for err in exc.errors()],
        )
        return {"received": True}

    email = event.data
    log_event(
        "inbound_email_received",
        request_id=req_id,
        email_id=email.email_id,
        sender=email.sender,
        attachment_count=len(email.attachments),
    )
    if settings.chat_forward_email and settings.resend_api_key:
        background_tasks.add_task(
            forward_to_chat,
            email,
            send=partial(
                send_email,
                api_key=settings.resend_api_key,
                from_email=settings.resend_from_email,
                rate_limiter=rate_limiter,
                min_interval_seconds=settings.resend_min_interval_seconds,
                max_retries=settings.upstream_max_retries,
                base_url=settings.resend_api_base,
            ),
            to=settings.chat_forward_email,
            request_id=req_id,
        )

    try:
        dispatched = await run_in_threadpool(
            _process_inbound_email,
            email,
            rate_limiter=rate_limiter,
            request_id=req_id,
        )
    except Exception as exc:
        incr_metric("webhook.events.failed", provider_slug="resend")
        log_event(
            "inbound_email_routing_failed",
            level=logging.ERROR,
            request_id=req_id,
            email_id=email.email_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return {"received": True}

    incr_metric("webhook.events.processed", provider_slug="resend")
    log_event("inbound_email_routed", request_id=req_id, email_id=email.email_id, dispatched=dispatched)
    return {"received": True}
