from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable

from pydantic import ValidationError

from src.domain.crm_resolver import CrmResolver
from src.domain.errors import FulfillmentError, ValidationFailure
from src.domain.fulfillment_store import STATUS_FAILED, STATUS_PENDING, FulfillmentClaim, FulfillmentRequestStore
from src.models.fulfillment import BookingDetails
from src.observability import incr_metric, log_event


PAID_STATUS = "paid"
PROCESSING_JOB_NUMBER = "Processing"


class FulfillmentFailed(FulfillmentError):
    """CRM resolution or job creation failed; the stored request is now failed."""


@dataclass
class ServiceDefaults:
    city: str = "Austin"
    state: str = "TX"
    zip_code: str = "78701"
    booking_source: str = "website"


@dataclass
class FulfillmentResult:
    request_id: str | None
    job_number: str
    job_id: int | None = None
    appointment_id: int | None = None
    message: str = ""
    already_processed: bool = False
    processing: bool = False


def format_amount(amount_minor_units: int) -> str:
    return f"${Decimal(amount_minor_units) / Decimal(100):.2f}"


def build_job_notes(
    *,
    product_name: str,
    amount_minor_units: int,
    payment_reference: str,
    session_id: str,
    referral_code: str | None = None,
    special_instructions: str | None = None,
) -> str:
    lines: list[str] = []
    if special_instructions and special_instructions.strip():
        lines.extend([special_instructions.strip(), ""])
    lines.append(f"PREPAID via Stripe: {format_amount(amount_minor_units)} for {product_name}")
    lines.append(f"Stripe Payment ID: {payment_reference}")
    lines.append(f"Stripe Session ID: {session_id}")
    if referral_code:
        lines.append(f"Referral Code: {referral_code}")
    return "\n".join(lines)


def build_job_summary(*, requested_service: str, product_name: str) -> str:
    if product_name and product_name.lower() != requested_service.lower():
        return f"{requested_service} - {product_name} - PREPAID"
    return f"{requested_service} - PREPAID"


def parse_booking(session: dict[str, Any]) -> BookingDetails:
    metadata = session.get("metadata") or {}
    raw_booking = metadata.get("booking_data") or metadata.get("bookingData")
    if not raw_booking:
        raise ValidationFailure("Checkout session is missing booking data")
    try:
        booking = json.loads(raw_booking) if isinstance(raw_booking, str) else dict(raw_booking)
    except (TypeError, ValueError) as exc:
        raise ValidationFailure("Checkout session booking data is not valid JSON") from exc
    if not isinstance(booking, dict):
        raise ValidationFailure("Checkout session booking data is not an object")

    customer_details = session.get("customer_details") or {}
    for key in ("customer_name", "customer_phone", "product_name", "referral_code", "utm_source"):
        if metadata.get(key):
            booking[key] = metadata[key]
    if not booking.get("customer_email"):
        booking["customer_email"] = customer_details.get("email")
    try:
        return BookingDetails.model_validate(booking)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
        raise ValidationFailure(f"Invalid booking data: {', '.join(fields)}") from exc


def idempotency_key_for(session: dict[str, Any]) -> str:
    payment_intent = session.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")
    key = payment_intent or session.get("id")
    if not key:
        raise ValidationFailure("Checkout session has no payment reference")
    return str(key)


def _existing_result(claim: FulfillmentClaim) -> FulfillmentResult:
    row = claim.row
    if claim.has_job:
        return FulfillmentResult(
            request_id=row.get("id"),
            job_number=str(row.get("crm_job_number") or row["crm_job_id"]),
            job_id=row.get("crm_job_id"),
            appointment_id=row.get("crm_appointment_id"),
            message="Booking already completed",
            already_processed=True,
        )
    return FulfillmentResult(
        request_id=row.get("id"),
        job_number=PROCESSING_JOB_NUMBER,
        message="Booking is being processed, please refresh in a moment",
        already_processed=True,
        processing=True,
    )


class PaymentFulfillmentHandler:
    def __init__(
        self,
        *,
        store: FulfillmentRequestStore,
        resolver: CrmResolver,
        crm: Any,
        retrieve_session: Callable[[str], dict[str, Any]],
        defaults: ServiceDefaults | None = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._crm = crm
        self._retrieve_session = retrieve_session
        self._defaults = defaults or ServiceDefaults()

    def complete(self, session_id: str, *, request_id: str | None = None) -> FulfillmentResult:
        session = self._retrieve_session(session_id)
        if session.get("payment_status") != PAID_STATUS:
            incr_metric("fulfillment.rejected", reason="payment_not_completed")
            raise ValidationFailure("Payment not completed")

        booking = parse_booking(session)
        key = idempotency_key_for(session)
        amount = int(session.get("amount_total") or 0)
        claim = self._store.claim(
            key,
            self._row_values(session, booking, amount),
            request_id=request_id,
        )
        if not claim.fresh:
            result = _existing_result(claim)
            log_event(
                "fulfillment_existing_request_returned",
                request_id=request_id,
                idempotency_key=key,
                row_status=claim.row.get("status"),
                job_number=result.job_number,
                processing=result.processing,
            )
            return result
        return self._fulfill(claim.row, session, booking, key=key, amount=amount, request_id=request_id)

    def _row_values(self, session: dict[str, Any], booking: BookingDetails, amount: int) -> dict[str, Any]:
        return {
            "stripe_session_id": session.get("id"),
            "customer_name": booking.customer_name,
            "customer_email": booking.customer_email,
            "customer_phone": booking.customer_phone,
            "address": booking.address,
            "city": booking.city or self._defaults.city,
            "state": booking.state or self._defaults.state,
            "zip_code": booking.zip_code or self._defaults.zip_code,
            "requested_service": booking.requested_service,
            "preferred_date": booking.preferred_date.isoformat() if booking.preferred_date else None,
            "preferred_time_slot": booking.preferred_time_slot,
            "special_instructions": booking.special_instructions,
            "booking_source": self._defaults.booking_source,
            "acquisition_channel": booking.utm_source,
            "referral_code": booking.referral_code,
            "product_name": booking.product_name,
            "payment_amount": amount,
            "payment_status": "succeeded",
            "request_payload": {
                "session_id": session.get("id"),
                "metadata": session.get("metadata") or {},
            },
        }

    def _fulfill(
        self,
        row: dict[str, Any],
        session: dict[str, Any],
        booking: BookingDetails,
        *,
        key: str,
        amount: int,
        request_id: str | None,
    ) -> FulfillmentResult:
        address = {
            "street": booking.address,
            "city": booking.city or self._defaults.city,
            "state": booking.state or self._defaults.state,
            "zip": booking.zip_code or self._defaults.zip_code,
        }
        product_name = booking.product_name or booking.requested_service
        try:
            context = self._resolver.resolve_job_context(
                requested_service=booking.requested_service,
                channel=booking.utm_source,
                request_id=request_id,
            )
            customer = self._crm.ensure_customer(
                name=booking.customer_name,
                phone=booking.customer_phone,
                email=booking.customer_email,
                address=address,
            )
            location = self._crm.ensure_location(
                customer["id"],
                name=booking.customer_name,
                phone=booking.customer_phone,
                email=booking.customer_email,
                address=address,
            )
            if booking.special_instructions and booking.special_instructions.strip():
                self._crm.create_location_note(
                    location["id"],
                    f"Special Instructions: {booking.special_instructions.strip()}",
                    True,
                )
            job = self._crm.create_job(
                customer_id=customer["id"],
                location_id=location["id"],
                business_unit_id=context.business_unit_id,
                job_type_id=context.job_type_id,
                summary=build_job_summary(requested_service=booking.requested_service, product_name=product_name),
                preferred_date=booking.preferred_date,
                preferred_time_slot=booking.preferred_time_slot,
                special_instructions=build_job_notes(
                    product_name=product_name,
                    amount_minor_units=amount,
                    payment_reference=key,
                    session_id=str(session.get("id")),
                    referral_code=booking.referral_code,
                    special_instructions=booking.special_instructions,
                ),
                campaign_id=context.campaign_id,
            )
        except Exception as exc:
            row_status = STATUS_FAILED
            try:
                self._store.mark_failed(row["id"], str(exc))
            except Exception as mark_exc:
                row_status = STATUS_PENDING
                incr_metric("fulfillment.mark_failed_error", error_type=type(mark_exc).__name__)
                log_event(
                    "fulfillment_mark_failed_error",
                    level=logging.ERROR,
                    request_id=request_id,
                    idempotency_key=key,
                    row_id=row.get("id"),
                    error_type=type(mark_exc).__name__,
                    error=str(mark_exc),
                )
            incr_metric("fulfillment.failed", error_type=type(exc).__name__)
            log_event(
                "fulfillment_failed",
                level=logging.ERROR,
                request_id=request_id,
                idempotency_key=key,
                row_id=row.get("id"),
                row_status=row_status,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise FulfillmentFailed("Failed to create job in CRM") from exc

        job_number = str(job.get("jobNumber") or job["id"])
        # Past this point the CRM job exists; the row must never become failed.
        self._store.mark_confirmed(
            row["id"],
            crm_customer_id=customer["id"],
            crm_location_id=location["id"],
            crm_job_id=job["id"],
            crm_job_number=job_number,
            crm_appointment_id=job.get("firstAppointmentId"),
        )
        incr_metric("fulfillment.confirmed")
        log_event(
            "fulfillment_confirmed",
            request_id=request_id,
            idempotency_key=key,
            row_id=row.get("id"),
            job_id=job["id"],
            job_number=job_number,
        )
        return FulfillmentResult(
            request_id=row.get("id"),
            job_number=job_number,
            job_id=job["id"],
            appointment_id=job.get("firstAppointmentId"),
            message=f"Appointment successfully scheduled and paid! Job #{job_number}",
        )
