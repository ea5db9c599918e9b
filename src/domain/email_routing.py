from __future__ import annotations

import io
import logging
import re
from typing import Protocol

import pdfplumber

from src.models.inbound_email import FetchedAttachment
from src.observability import incr_metric, log_event


PDF_CONTENT_TYPE = "application/pdf"
_PDF_TEXT_PAGE_LIMIT = 3

# A negation between "job" and "complete" ("is not complete", "isn't completed") is not a marker.
_JOB_COMPLETION_MARKER = re.compile(
    r"\bjob\b(?:(?!\bnot\b|n't\b)[^.\n]){0,40}?\bcompleted?\b|(?<!not )\bcompleted\s+job\b",
    re.IGNORECASE,
)
_JOB_ID = re.compile(r"\bjob\s*(?:id|number|no\.?)?\s*[:#]?\s*#?\s*(\d{4,})\b", re.IGNORECASE)
_INVOICE_FILENAME = re.compile(r"invoice.*\.pdf$", re.IGNORECASE)
_ESTIMATE_FILENAME = re.compile(r"estimate.*\.pdf$", re.IGNORECASE)
_SPREADSHEET_FILENAME = re.compile(r"\.(xlsx|xls)$", re.IGNORECASE)
_INVOICE_NUMBER = re.compile(r"\binvoice\s*(?:number|no\.?)?\s*[:#]?\s*#?\s*(\d{3,})\b", re.IGNORECASE)
_ESTIMATE_NUMBER = re.compile(r"\bestimate\s*(?:number|no\.?)?\s*[:#]?\s*#?\s*(\d{3,})\b", re.IGNORECASE)
_CUSTOMER_EXPORT_KEYWORDS = ("customer", "client", "contact")


class ContentProcessors(Protocol):
    def process_job_completion(self, *, job_id: int, sender: str, subject: str) -> None: ...

    def process_invoice(self, *, invoice_number: str, pdf: bytes, filename: str, sender: str, subject: str) -> None: ...

    def process_estimate(self, *, estimate_number: str, pdf: bytes, filename: str, sender: str, subject: str) -> None: ...

    def process_customer_data(self, *, spreadsheet: bytes, filename: str, sender: str, subject: str) -> None: ...


def has_job_completion_marker(subject: str, body: str) -> bool:
    return bool(_JOB_COMPLETION_MARKER.search(subject) or _JOB_COMPLETION_MARKER.search(body))


def extract_job_id(subject: str, body: str) -> int | None:
    for text in (subject, body):
        match = _JOB_ID.search(text)
        if match:
            return int(match.group(1))
    return None


def extract_pdf_text(content: bytes) -> str:
    try:
        with pdfplumber.open(io.BytesIO(content)) as pdf:
            return "\n".join(page.extract_text() or "" for page in pdf.pages[:_PDF_TEXT_PAGE_LIMIT])
    except Exception as exc:
        log_event("pdf_text_extraction_failed", level=logging.WARNING, error=str(exc))
        return ""


def extract_invoice_number(subject: str, pdf: bytes) -> str | None:
    match = _INVOICE_NUMBER.search(subject)
    if match:
        return match.group(1)
    match = _INVOICE_NUMBER.search(extract_pdf_text(pdf))
    return match.group(1) if match else None


def extract_estimate_number(subject: str) -> str | None:
    match = _ESTIMATE_NUMBER.search(subject)
    return match.group(1) if match else None


def is_customer_data_export(subject: str, filename: str) -> bool:
    haystack = f"{subject} {filename}".lower()
    return any(keyword in haystack for keyword in _CUSTOMER_EXPORT_KEYWORDS)


def _find_pdf(attachments: list[FetchedAttachment], pattern: re.Pattern[str]) -> FetchedAttachment | None:
    for attachment in attachments:
        if pattern.search(attachment.filename) and attachment.content_type.lower() == PDF_CONTENT_TYPE:
            return attachment
    return None


def route_email(
    *,
    sender: str,
    subject: str,
    body: str,
    attachments: list[FetchedAttachment],
    processors: ContentProcessors,
    request_id: str | None = None,
) -> list[str]:
    """Dispatch one inbound email to its content processors.

    Job completion is checked first and never stops routing, so a completion
    notice and an invoice in the same email both fire. After that the first
    matching category wins: invoice, estimate, customer-data export. An
    invoice PDF with no recoverable number falls through to the later checks.
    Returns the dispatched categories in order.
    """
    dispatched: list[str] = []

    if has_job_completion_marker(subject, body):
        job_id = extract_job_id(subject, body)
        if job_id is None:
            log_event("inbound_email_job_completion_without_id", level=logging.WARNING, request_id=request_id, subject=subject)
        else:
            try:
                processors.process_job_completion(job_id=job_id, sender=sender, subject=subject)
                dispatched.append("job_completion")
            except Exception as exc:
                incr_metric("inbound_email.dispatch_failed", category="job_completion")
                log_event(
                    "inbound_email_dispatch_failed",
                    level=logging.ERROR,
                    request_id=request_id,
                    category="job_completion",
                    job_id=job_id,
                    error=str(exc),
                )

    invoice_pdf = _find_pdf(attachments, _INVOICE_FILENAME)
    if invoice_pdf is not None:
        invoice_number = extract_invoice_number(subject, invoice_pdf.content)
        if invoice_number:
            processors.process_invoice(
                invoice_number=invoice_number,
                pdf=invoice_pdf.content,
                filename=invoice_pdf.filename,
                sender=sender,
                subject=subject,
            )
            dispatched.append("invoice")
            return dispatched
        log_event(
            "inbound_email_invoice_number_missing",
            level=logging.WARNING,
            request_id=request_id,
            filename=invoice_pdf.filename,
        )

    estimate_pdf = _find_pdf(attachments, _ESTIMATE_FILENAME)
    if estimate_pdf is not None:
        estimate_number = extract_estimate_number(subject)
        if estimate_number:
            processors.process_estimate(
                estimate_number=estimate_number,
                pdf=estimate_pdf.content,
                filename=estimate_pdf.filename,
                sender=sender,
                subject=subject,
            )
            dispatched.append("estimate")
            return dispatched
        log_event(
            "inbound_email_estimate_number_missing",
            level=logging.WARNING,
            request_id=request_id,
            filename=estimate_pdf.filename,
        )

    spreadsheet = next((a for a in attachments if _SPREADSHEET_FILENAME.search(a.filename)), None)
    if spreadsheet is not None and is_customer_data_export(subject, spreadsheet.filename):
        processors.process_customer_data(
            spreadsheet=spreadsheet.content,
            filename=spreadsheet.filename,
            sender=sender,
            subject=subject,
        )
        dispatched.append("customer_data")
        return dispatched

    if not dispatched:
        log_event("inbound_email_unmatched", request_id=request_id, subject=subject, attachment_count=len(attachments))
    return dispatched
