from __future__ import annotations

import json
import logging
from collections import Counter
from threading import Lock
from typing import Any

import httpx


logger = logging.getLogger("fieldservice_fulfillment")


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, bytes):
        return f"<{len(value)} bytes>"
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalize(v) for v in value]
    return str(value)


def metric_key(name: str, **labels: Any) -> str:
    if not labels:
        return name
    ordered = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}|{ordered}"


class CounterRegistry:
    """Process-local counters keyed by ``name|label=value,...``.

    Webhook handlers, background tasks and the retry sweep all increment
    concurrently, so every access goes through one lock.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._counts: Counter[str] = Counter()

    def incr(self, name: str, value: int = 1, **labels: Any) -> None:
        key = metric_key(name, **{k: _normalize(v) for k, v in labels.items()})
        with self._lock:
            self._counts[key] += value

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def discount(self, persisted: dict[str, int]) -> None:
        # Only the persisted amounts are removed; increments made after the snapshot survive.
        with self._lock:
            for key, value in persisted.items():
                remaining = self._counts.get(key, 0) - value
                if remaining > 0:
                    self._counts[key] = remaining
                else:
                    self._counts.pop(key, None)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()


counters = CounterRegistry()


def incr_metric(name: str, value: int = 1, **labels: Any) -> None:
    counters.incr(name, value, **labels)


def metrics_snapshot() -> dict[str, int]:
    return counters.snapshot()


def reset_metrics() -> None:
    counters.reset()


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    request_id: str | None = None,
    **fields: Any,
) -> None:
    payload = {"event": event}
    if request_id:
        payload["request_id"] = request_id
    for key, value in fields.items():
        payload[key] = _normalize(value)
    logger.log(level, json.dumps(payload, sort_keys=True))


def _export_snapshot(
    *,
    snapshot: dict[str, int],
    source: str,
    request_id: str | None,
    export_url: str,
    export_bearer_token: str | None,
    export_timeout_seconds: float,
) -> None:
    headers = {"Content-Type": "application/json"}
    if export_bearer_token:
        headers["Authorization"] = f"Bearer {export_bearer_token}"
    try:
        with httpx.Client(timeout=export_timeout_seconds) as client:
            response = client.post(
                export_url,
                headers=headers,
                json={"source": source, "request_id": request_id, "counters": snapshot},
            )
    except Exception as exc:
        log_event(
            "metrics_snapshot_export_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=source,
            error=str(exc),
        )
        return
    if response.status_code >= 400:
        log_event(
            "metrics_snapshot_export_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=source,
            status_code=response.status_code,
            response_text=response.text[:200],
        )


def persist_metrics_snapshot(
    *,
    supabase_client: Any,
    source: str,
    request_id: str | None = None,
    reset_after_persist: bool = False,
    export_url: str | None = None,
    export_bearer_token: str | None = None,
    export_timeout_seconds: float = 3.0,
) -> bool:
    """Store the current counters and optionally push them to an external collector.

    Failures are logged and reported through the return value; a metrics
    outage never fails the operation that triggered the snapshot.
    """
    snapshot = metrics_snapshot()
    try:
        supabase_client.table("observability_metric_snapshots").insert(
            {"source": source, "request_id": request_id, "counters": snapshot}
        ).execute()
    except Exception as exc:
        log_event(
            "metrics_snapshot_persist_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=source,
            error=str(exc),
        )
        return False

    if export_url:
        _export_snapshot(
            snapshot=snapshot,
            source=source,
            request_id=request_id,
            export_url=export_url,
            export_bearer_token=export_bearer_token,
            export_timeout_seconds=export_timeout_seconds,
        )

    log_event("metrics_snapshot_persisted", request_id=request_id, source=source, counter_count=len(snapshot))
    if reset_after_persist:
        counters.discount(snapshot)
    return True
