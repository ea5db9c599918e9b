from __future__ import annotations

import logging

from fastapi import APIRouter, FastAPI, HTTPException, Request, status

from src.config import settings
from src.db import supabase
from src.domain.crm_resolver import CrmResolver
from src.domain.errors import (
    FulfillmentError,
    ResourceNotFound,
    UpstreamUnavailable,
    ValidationFailure,
    provider_error_detail,
    provider_error_http_status,
)
from src.domain.fulfillment import FulfillmentFailed, FulfillmentResult, PaymentFulfillmentHandler, ServiceDefaults
from src.domain.fulfillment_store import FulfillmentRequestStore
from src.models.fulfillment import CompleteBookingRequest, CompleteBookingResponse
from src.observability import incr_metric, log_event
from src.providers.servicetitan.client import ServiceTitanClient, ServiceTitanProviderError
from src.providers.stripe.client import retrieve_checkout_session


router = APIRouter(prefix="/api/fulfillment", tags=["fulfillment"])

GENERIC_FULFILLMENT_ERROR = "Failed to create job in CRM"


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _crm_client(app: FastAPI) -> ServiceTitanClient:
    client = getattr(app.state, "crm_client", None)
    if client is None:
        client = ServiceTitanClient(
            client_id=settings.servicetitan_client_id,
            client_secret=settings.servicetitan_client_secret,
            app_key=settings.servicetitan_app_key,
            tenant_id=settings.servicetitan_tenant_id,
            rate_limiter=app.state.rate_limiter,
            api_base=settings.servicetitan_api_base,
            auth_url=settings.servicetitan_auth_url,
            min_interval_seconds=settings.servicetitan_min_interval_seconds,
            max_retries=settings.upstream_max_retries,
            timezone_name=settings.crm_timezone,
        )
        app.state.crm_client = client
    return client


def build_fulfillment_handler(app: FastAPI) -> PaymentFulfillmentHandler:
    crm = _crm_client(app)
    return PaymentFulfillmentHandler(
        store=FulfillmentRequestStore(
            supabase,
            pending_wait_seconds=settings.fulfillment_pending_wait_seconds,
        ),
        resolver=CrmResolver(crm=crm, db=supabase, default_channel=settings.default_acquisition_channel),
        crm=crm,
        retrieve_session=lambda session_id: retrieve_checkout_session(session_id, api_key=settings.stripe_secret_key),
        defaults=ServiceDefaults(
            city=settings.default_service_city,
            state=settings.default_service_state,
            zip_code=settings.default_service_zip,
            booking_source=settings.default_acquisition_channel,
        ),
    )


def fulfillment_http_exception(exc: FulfillmentError, *, operation: str) -> HTTPException:
    """Translate a fulfillment-layer failure into the response the caller sees."""
    if isinstance(exc, FulfillmentFailed):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=GENERIC_FULFILLMENT_ERROR)
    if isinstance(exc, (ValidationFailure, ResourceNotFound)):
        return HTTPException(status_code=exc.http_status, detail=str(exc))
    if isinstance(exc, UpstreamUnavailable):
        provider = "servicetitan" if isinstance(exc, ServiceTitanProviderError) else "stripe"
        return HTTPException(
            status_code=provider_error_http_status(exc),
            detail=provider_error_detail(provider=provider, operation=operation, exc=exc),
        )
    return HTTPException(status_code=exc.http_status, detail=str(exc))


def run_fulfillment(
    handler: PaymentFulfillmentHandler,
    session_id: str,
    *,
    source: str,
    request_id: str | None,
) -> FulfillmentResult:
    incr_metric("fulfillment.requested", source=source)
    log_event("fulfillment_requested", request_id=request_id, source=source, session_id=session_id)
    try:
        return handler.complete(session_id, request_id=request_id)
    except FulfillmentError as exc:
        log_event(
            "fulfillment_request_rejected",
            level=logging.WARNING,
            request_id=request_id,
            source=source,
            session_id=session_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise


@router.post("/complete-booking", response_model=CompleteBookingResponse)
def complete_booking(data: CompleteBookingRequest, request: Request):
    request_id = _request_id(request)
    try:
        handler = build_fulfillment_handler(request.app)
        result = run_fulfillment(handler, data.session_id, source="client", request_id=request_id)
    except FulfillmentError as exc:
        raise fulfillment_http_exception(exc, operation="complete_booking") from exc

    return CompleteBookingResponse(
        success=True,
        request_id=result.request_id,
        job_number=result.job_number,
        job_id=result.job_id,
        appointment_id=result.appointment_id,
        message=result.message,
        already_processed=result.already_processed,
        processing=result.processing,
    )
