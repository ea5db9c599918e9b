from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from src.observability import incr_metric, log_event


FULFILLMENT_TABLE = "fulfillment_requests"
IDEMPOTENCY_COLUMN = "payment_intent_id"

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_FAILED = "failed"
FULFILLMENT_STATUSES = (STATUS_PENDING, STATUS_CONFIRMED, STATUS_FAILED)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_unique_violation(exc: Exception) -> bool:
    if str(getattr(exc, "code", "")) == "23505":
        return True
    message = str(exc).lower()
    return "duplicate" in message or "unique" in message


@dataclass
class FulfillmentClaim:
    """Result of running the idempotency protocol for one key.

    ``fresh`` is True only for the caller that owns a newly inserted pending
    row and must therefore run the CRM steps. Every other caller gets the
    row it found, which may still be pending.
    """

    row: dict[str, Any]
    fresh: bool

    @property
    def has_job(self) -> bool:
        return self.row.get("crm_job_id") is not None

    @property
    def processing(self) -> bool:
        return not self.fresh and not self.has_job and self.row.get("status") == STATUS_PENDING


class FulfillmentRequestStore:
    def __init__(
        self,
        client: Any,
        *,
        pending_wait_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._pending_wait_seconds = pending_wait_seconds
        self._sleep = sleep

    def _table(self):
        return self._client.table(FULFILLMENT_TABLE)

    def get(self, idempotency_key: str) -> dict[str, Any] | None:
        result = self._table().select("*").eq(IDEMPOTENCY_COLUMN, idempotency_key).limit(1).execute()
        return result.data[0] if result.data else None

    def insert_pending(self, values: dict[str, Any]) -> dict[str, Any]:
        now = _now_iso()
        payload = dict(values)
        payload.update(
            {
                "status": STATUS_PENDING,
                "crm_customer_id": None,
                "crm_location_id": None,
                "crm_job_id": None,
                "crm_job_number": None,
                "crm_appointment_id": None,
                "last_error": None,
                "booked_at": None,
                "updated_at": now,
            }
        )
        result = self._table().insert(payload).execute()
        return result.data[0] if result.data else payload

    def delete_failed(self, row_id: str) -> None:
        # Filtering on status keeps a concurrently revived row from being removed.
        self._table().delete().eq("id", row_id).eq("status", STATUS_FAILED).execute()

    def mark_confirmed(
        self,
        row_id: str,
        *,
        crm_customer_id: int,
        crm_location_id: int,
        crm_job_id: int,
        crm_job_number: str | None,
        crm_appointment_id: int | None,
    ) -> dict[str, Any] | None:
        now = _now_iso()
        result = (
            self._table()
            .update(
                {
                    "status": STATUS_CONFIRMED,
                    "crm_customer_id": crm_customer_id,
                    "crm_location_id": crm_location_id,
                    "crm_job_id": crm_job_id,
                    "crm_job_number": crm_job_number,
                    "crm_appointment_id": crm_appointment_id,
                    "last_error": None,
                    "booked_at": now,
                    "updated_at": now,
                }
            )
            .eq("id", row_id)
            .execute()
        )
        return result.data[0] if result.data else None

    def mark_failed(self, row_id: str, error: str) -> None:
        self._table().update(
            {"status": STATUS_FAILED, "last_error": error[:1000], "updated_at": _now_iso()}
        ).eq("id", row_id).execute()

    def list_by_status(self, status_value: str, limit: int = 50) -> list[dict[str, Any]]:
        result = (
            self._table()
            .select("*")
            .eq("status", status_value)
            .order("updated_at")
            .limit(limit)
            .execute()
        )
        return result.data or []

    def claim(
        self,
        idempotency_key: str,
        values: dict[str, Any],
        *,
        request_id: str | None = None,
    ) -> FulfillmentClaim:
        """Run the insert-or-read protocol: absent -> pending -> confirmed | failed.

        A failed row is replaced by a fresh pending attempt. A unique-constraint
        violation on insert means a concurrent delivery won the race, so the
        winner's row is read back instead of raising.
        """
        existing = self.get(idempotency_key)
        if existing is not None:
            if existing.get("status") != STATUS_FAILED:
                return self._resolve_existing(existing, idempotency_key, request_id=request_id)
            incr_metric("fulfillment.claim.retry_failed")
            log_event(
                "fulfillment_retrying_failed_request",
                request_id=request_id,
                idempotency_key=idempotency_key,
                previous_request_id=existing.get("id"),
                previous_error=existing.get("last_error"),
            )
            self.delete_failed(existing["id"])

        insert_values = dict(values)
        insert_values[IDEMPOTENCY_COLUMN] = idempotency_key
        try:
            row = self.insert_pending(insert_values)
        except Exception as exc:
            if not _is_unique_violation(exc):
                raise
            incr_metric("fulfillment.claim.concurrent_insert")
            log_event(
                "fulfillment_concurrent_insert_detected",
                request_id=request_id,
                idempotency_key=idempotency_key,
            )
            winner = self.get(idempotency_key)
            if winner is None:
                raise
            return self._resolve_existing(winner, idempotency_key, request_id=request_id)

        incr_metric("fulfillment.claim.fresh")
        log_event("fulfillment_claimed", request_id=request_id, idempotency_key=idempotency_key, row_id=row.get("id"))
        return FulfillmentClaim(row=row, fresh=True)

    def _resolve_existing(
        self,
        row: dict[str, Any],
        idempotency_key: str,
        *,
        request_id: str | None,
    ) -> FulfillmentClaim:
        if row.get("crm_job_id") is not None:
            incr_metric("fulfillment.claim.already_confirmed")
            return FulfillmentClaim(row=row, fresh=False)
        if row.get("status") == STATUS_FAILED:
            return FulfillmentClaim(row=row, fresh=False)

        # Another delivery is mid-flight: one bounded wait, one reread, no loop.
        log_event(
            "fulfillment_waiting_for_inflight_request",
            request_id=request_id,
            idempotency_key=idempotency_key,
            wait_seconds=self._pending_wait_seconds,
        )
        self._sleep(self._pending_wait_seconds)
        refreshed = self.get(idempotency_key) or row
        if refreshed.get("crm_job_id") is None:
            incr_metric("fulfillment.claim.still_processing")
            log_event(
                "fulfillment_still_processing",
                level=logging.WARNING,
                request_id=request_id,
                idempotency_key=idempotency_key,
                status=refreshed.get("status"),
            )
        return FulfillmentClaim(row=refreshed, fresh=False)
