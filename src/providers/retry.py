from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable

import httpx

from src.observability import incr_metric, log_event


RATE_LIMIT_STATUS_CODE = 429
DEFAULT_MAX_RETRIES = 3
_MAX_RETRY_AFTER_SECONDS = 60.0


def parse_retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    text = raw.strip()
    if not text:
        return None
    try:
        seconds = float(text)
    except ValueError:
        try:
            when = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - datetime.now(timezone.utc)).total_seconds()
    return min(max(seconds, 0.0), _MAX_RETRY_AFTER_SECONDS)


def backoff_delay(response: httpx.Response, attempt: int) -> float:
    hinted = parse_retry_after(response)
    if hinted is not None:
        return hinted
    return float(2**attempt)


def fetch_with_retry(
    send: Callable[[], httpx.Response],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "upstream",
) -> httpx.Response:
    """Issue ``send`` and retry only while the response is HTTP 429.

    A rate-limited call is retried at most ``max_retries`` times, waiting for
    the ``Retry-After`` hint when present and ``2 ** attempt`` seconds
    otherwise. When the budget runs out the last 429 response is returned, not
    raised, so callers decide whether a degraded result is acceptable. Any
    other status comes back immediately. Transport errors propagate.
    """
    attempt = 0
    while True:
        response = send()
        if response.status_code != RATE_LIMIT_STATUS_CODE or attempt >= max_retries:
            if response.status_code == RATE_LIMIT_STATUS_CODE:
                incr_metric("upstream.rate_limit.exhausted", upstream=label)
                log_event(
                    "upstream_rate_limit_exhausted",
                    level=logging.WARNING,
                    upstream=label,
                    retries=attempt,
                )
            return response
        delay = backoff_delay(response, attempt)
        attempt += 1
        incr_metric("upstream.rate_limit.retried", upstream=label)
        log_event(
            "upstream_rate_limited",
            level=logging.WARNING,
            upstream=label,
            attempt=attempt,
            max_retries=max_retries,
            delay_seconds=delay,
        )
        response.close()
        sleep(delay)
