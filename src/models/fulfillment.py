from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator


FulfillmentStatus = Literal["pending", "confirmed", "failed"]


class BookingDetails(BaseModel):
    """Service booking captured at checkout and carried in the session metadata."""

    customer_name: str = Field(min_length=1)
    customer_phone: str = Field(min_length=7)
    customer_email: str | None = None
    address: str = Field(min_length=1)
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    requested_service: str = Field(min_length=1)
    preferred_date: date | None = None
    preferred_time_slot: Literal["morning", "afternoon", "evening"] | None = None
    special_instructions: str | None = None
    product_name: str | None = None
    referral_code: str | None = None
    utm_source: str | None = None

    @field_validator("preferred_date", mode="before")
    @classmethod
    def _date_only(cls, value):
        if isinstance(value, str) and "T" in value:
            return value.split("T", 1)[0]
        return value

    @field_validator("preferred_time_slot", "customer_email", "referral_code", "utm_source", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class CompleteBookingRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=255)


class CompleteBookingResponse(BaseModel):
    success: bool = True
    request_id: str | None = None
    job_number: str
    job_id: int | None = None
    appointment_id: int | None = None
    message: str
    already_processed: bool = False
    processing: bool = False


class FulfillmentRequestItem(BaseModel):
    id: str
    payment_intent_id: str
    stripe_session_id: str | None = None
    status: FulfillmentStatus
    customer_name: str | None = None
    requested_service: str | None = None
    payment_amount: int | None = None
    crm_customer_id: int | None = None
    crm_location_id: int | None = None
    crm_job_id: int | None = None
    crm_job_number: str | None = None
    crm_appointment_id: int | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    booked_at: datetime | None = None
    updated_at: datetime | None = None


class RetryFailedRequest(BaseModel):
    limit: int = Field(default=10, ge=1, le=100)


class RetryFailedItem(BaseModel):
    payment_intent_id: str
    status: Literal["confirmed", "processing", "failed", "skipped"]
    job_number: str | None = None
    error: str | None = None


class RetryFailedResponse(BaseModel):
    started_at: datetime
    finished_at: datetime
    attempted: int
    confirmed: int
    failed: int
    results: list[RetryFailedItem]
