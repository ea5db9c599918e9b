from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Header, HTTPException, Query, Request, status

from src.config import settings
from src.db import supabase
from src.domain.errors import FulfillmentError
from src.domain.fulfillment_store import STATUS_FAILED, FulfillmentRequestStore
from src.models.fulfillment import (
    FulfillmentRequestItem,
    FulfillmentStatus,
    RetryFailedItem,
    RetryFailedRequest,
    RetryFailedResponse,
)
from src.observability import incr_metric, log_event, persist_metrics_snapshot
from src.routers.fulfillment import build_fulfillment_handler, run_fulfillment


router = APIRouter(prefix="/api/internal/fulfillment", tags=["internal-fulfillment"])


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _require_scheduler_secret(provided: str | None, *, request_id: str | None) -> None:
    configured_secret = settings.internal_scheduler_secret
    if not configured_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal scheduler secret is not configured",
        )
    if not provided or not hmac.compare_digest(provided, configured_secret):
        incr_metric("fulfillment.internal.auth_failed")
        log_event("fulfillment_internal_auth_failed", request_id=request_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid scheduler secret",
        )


def _store() -> FulfillmentRequestStore:
    return FulfillmentRequestStore(supabase, pending_wait_seconds=settings.fulfillment_pending_wait_seconds)


@router.get("/requests", response_model=list[FulfillmentRequestItem])
def list_fulfillment_requests(
    request: Request,
    status_filter: FulfillmentStatus = Query(default=STATUS_FAILED, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    x_internal_scheduler_secret: str | None = Header(default=None),
):
    request_id = getattr(request.state, "request_id", None)
    _require_scheduler_secret(x_internal_scheduler_secret, request_id=request_id)
    rows = _store().list_by_status(status_filter, limit=limit)
    return [FulfillmentRequestItem(**row) for row in rows]


@router.post("/retry-failed", response_model=RetryFailedResponse)
def retry_failed_fulfillments(
    data: RetryFailedRequest,
    request: Request,
    x_internal_scheduler_secret: str | None = Header(default=None),
):
    """Re-run fulfillment for stored failed rows using their saved session id.

    Each retry goes through the normal claim protocol, which replaces the
    failed row with a fresh pending attempt.
    """
    request_id = getattr(request.state, "request_id", None)
    _require_scheduler_secret(x_internal_scheduler_secret, request_id=request_id)
    started_at = _now_utc()
    rows = _store().list_by_status(STATUS_FAILED, limit=data.limit)
    handler = build_fulfillment_handler(request.app) if rows else None

    results: list[RetryFailedItem] = []
    for row in rows:
        key = row["payment_intent_id"]
        session_id = row.get("stripe_session_id") or (row.get("request_payload") or {}).get("session_id")
        if not session_id:
            results.append(RetryFailedItem(payment_intent_id=key, status="skipped", error="no session id stored"))
            continue
        try:
            result = run_fulfillment(handler, session_id, source="retry_sweep", request_id=request_id)
        except FulfillmentError as exc:
            results.append(RetryFailedItem(payment_intent_id=key, status="failed", error=str(exc)))
            continue
        results.append(
            RetryFailedItem(
                payment_intent_id=key,
                status="processing" if result.processing else "confirmed",
                job_number=result.job_number,
            )
        )

    confirmed = sum(1 for item in results if item.status == "confirmed")
    failed = sum(1 for item in results if item.status == "failed")
    incr_metric("fulfillment.retry_sweep.confirmed", value=confirmed)
    incr_metric("fulfillment.retry_sweep.failed", value=failed)
    log_event(
        "fulfillment_retry_sweep_finished",
        level=logging.WARNING if failed else logging.INFO,
        request_id=request_id,
        attempted=len(results),
        confirmed=confirmed,
        failed=failed,
    )
    persist_metrics_snapshot(
        supabase_client=supabase,
        source="fulfillment_retry_sweep",
        request_id=request_id,
        export_url=settings.observability_export_url,
        export_bearer_token=settings.observability_export_bearer_token,
        export_timeout_seconds=settings.observability_export_timeout_seconds,
    )
    return RetryFailedResponse(
        started_at=started_at,
        finished_at=_now_utc(),
        attempted=len(results),
        confirmed=confirmed,
        failed=failed,
        results=results,
    )
