from __future__ import annotations

import base64
import hashlib
from typing import Any

from src.observability import incr_metric, log_event


DISPATCH_TABLE = "inbound_document_dispatches"


class SupabaseDocumentDispatcher:
    """Hands routed email content to downstream processors through a queue table.

    Each call writes one row to ``inbound_document_dispatches``; the workers that
    parse invoices, estimates and customer exports read from there.
    """

    def __init__(self, db: Any) -> None:
        self._db = db

    def _record(
        self,
        kind: str,
        *,
        sender: str,
        subject: str,
        reference_number: str | None = None,
        filename: str | None = None,
        content: bytes | None = None,
    ) -> None:
        row: dict[str, Any] = {
            "kind": kind,
            "reference_number": reference_number,
            "sender": sender,
            "subject": subject,
            "filename": filename,
            "size": len(content) if content is not None else None,
            "sha256": hashlib.sha256(content).hexdigest() if content is not None else None,
            "content_b64": base64.b64encode(content).decode("ascii") if content is not None else None,
        }
        self._db.table(DISPATCH_TABLE).insert(row).execute()
        incr_metric("inbound_email.dispatched", kind=kind)
        log_event(
            "inbound_document_dispatched",
            kind=kind,
            reference_number=reference_number,
            filename=filename,
            size=row["size"],
        )

    def process_job_completion(self, *, job_id: int, sender: str, subject: str) -> None:
        self._record("job_completion", sender=sender, subject=subject, reference_number=str(job_id))

    def process_invoice(self, *, invoice_number: str, pdf: bytes, filename: str, sender: str, subject: str) -> None:
        self._record(
            "invoice",
            sender=sender,
            subject=subject,
            reference_number=invoice_number,
            filename=filename,
            content=pdf,
        )

    def process_estimate(self, *, estimate_number: str, pdf: bytes, filename: str, sender: str, subject: str) -> None:
        self._record(
            "estimate",
            sender=sender,
            subject=subject,
            reference_number=estimate_number,
            filename=filename,
            content=pdf,
        )

    def process_customer_data(self, *, spreadsheet: bytes, filename: str, sender: str, subject: str) -> None:
        self._record("customer_data", sender=sender, subject=subject, filename=filename, content=spreadsheet)
