from __future__ import annotations

import re
import time
from datetime import date, datetime, timedelta
from threading import Lock
from typing import Any, Callable
from zoneinfo import ZoneInfo

import httpx

from src.domain.errors import ResourceNotFound, UpstreamRateLimited, UpstreamUnavailable
from src.domain.rate_limiter import RateLimiter
from src.providers.retry import RATE_LIMIT_STATUS_CODE, fetch_with_retry


SERVICETITAN_RATE_LIMIT_KEY = "servicetitan"
_CACHE_TTL_SECONDS = 300.0
_TOKEN_REFRESH_MARGIN_SECONDS = 60.0
_SLOT_START_HOURS = {"morning": 8, "afternoon": 13, "evening": 17}
_DEFAULT_SLOT_START_HOUR = 9
_ARRIVAL_WINDOW_HOURS = 4
_APPOINTMENT_HOURS = 2


class ServiceTitanProviderError(UpstreamUnavailable):
    """Provider-level exception for ServiceTitan integration failures."""


def _normalize_name(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", value.lower())


def _normalize_street(value: str) -> str:
    return re.sub(r"[^\w\s]", "", value.lower()).strip()


def arrival_window(
    preferred_date: date | None,
    time_slot: str | None,
    *,
    timezone_name: str,
    now: datetime | None = None,
) -> tuple[datetime, datetime]:
    """Customer-facing arrival window for a preferred day and slot.

    Without a preferred date the window is the next day, 09:00-13:00 local.
    """
    tz = ZoneInfo(timezone_name)
    if preferred_date is None:
        base_day = (now or datetime.now(tz)).astimezone(tz).date() + timedelta(days=1)
        start_hour = _DEFAULT_SLOT_START_HOUR
    else:
        base_day = preferred_date
        start_hour = _SLOT_START_HOURS.get((time_slot or "").lower(), _DEFAULT_SLOT_START_HOUR)
    start = datetime(base_day.year, base_day.month, base_day.day, start_hour, tzinfo=tz)
    return start, start + timedelta(hours=_ARRIVAL_WINDOW_HOURS)


class ServiceTitanClient:
    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        app_key: str | None,
        tenant_id: str | None,
        rate_limiter: RateLimiter,
        api_base: str = "https://api.servicetitan.io",
        auth_url: str = "https://auth.servicetitan.io/connect/token",
        min_interval_seconds: float = 0.25,
        max_retries: int = 3,
        timeout_seconds: float = 15.0,
        timezone_name: str = "America/Chicago",
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not (client_id and client_secret and app_key and tenant_id):
            raise ServiceTitanProviderError("ServiceTitan credentials not configured")
        self._client_id = client_id
        self._client_secret = client_secret
        self._app_key = app_key
        self._tenant_id = tenant_id
        self._rate_limiter = rate_limiter
        self._api_base = api_base.rstrip("/")
        self._auth_url = auth_url
        self._min_interval_seconds = min_interval_seconds
        self._max_retries = max_retries
        self._timezone_name = timezone_name
        self._http = http_client or httpx.Client(timeout=timeout_seconds)
        self._sleep = sleep
        self._token_lock = Lock()
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._cache: dict[str, tuple[float, list[dict[str, Any]]]] = {}

    def close(self) -> None:
        self._http.close()

    def _send(self, request: httpx.Request) -> httpx.Response:
        def _gated() -> httpx.Response:
            return self._rate_limiter.enqueue(
                SERVICETITAN_RATE_LIMIT_KEY,
                lambda: self._http.send(request),
                self._min_interval_seconds,
            )

        try:
            return fetch_with_retry(
                _gated,
                max_retries=self._max_retries,
                sleep=self._sleep,
                label=SERVICETITAN_RATE_LIMIT_KEY,
            )
        except httpx.HTTPError as exc:
            raise ServiceTitanProviderError(f"ServiceTitan connectivity error: {exc}") from exc

    def _access_token(self) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            request = self._http.build_request(
                "POST",
                self._auth_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
            )
            response = self._send(request)
            if response.status_code == RATE_LIMIT_STATUS_CODE:
                raise UpstreamRateLimited("ServiceTitan token endpoint returned HTTP 429")
            if response.status_code >= 400:
                raise ServiceTitanProviderError(
                    f"Invalid ServiceTitan credentials: token endpoint returned HTTP {response.status_code}"
                )
            payload = response.json()
            self._token = payload["access_token"]
            expires_in = float(payload.get("expires_in") or 900)
            self._token_expires_at = time.monotonic() + max(0.0, expires_in - _TOKEN_REFRESH_MARGIN_SECONDS)
            return self._token

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_payload: dict[str, Any] | None = None,
    ) -> Any:
        request = self._http.build_request(
            method,
            f"{self._api_base}/{path.format(tenant=self._tenant_id)}",
            params=params,
            json=json_payload,
            headers={
                "Authorization": f"Bearer {self._access_token()}",
                "ST-App-Key": self._app_key,
                "Accept": "application/json",
            },
        )
        response = self._send(request)
        if response.status_code == RATE_LIMIT_STATUS_CODE:
            raise UpstreamRateLimited(f"ServiceTitan API returned HTTP 429 for {method} {path}")
        if response.status_code == 404:
            raise ResourceNotFound(f"ServiceTitan resource not found: {method} {path}")
        if response.status_code in {401, 403}:
            raise ServiceTitanProviderError("Invalid ServiceTitan credentials")
        if response.status_code >= 400:
            raise ServiceTitanProviderError(
                f"ServiceTitan API returned HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ServiceTitanProviderError("Unexpected ServiceTitan non-JSON response") from exc

    def _list(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        payload = self._request_json("GET", path, params=params)
        if isinstance(payload, dict) and isinstance(payload.get("data"), list):
            return payload["data"]
        if isinstance(payload, list):
            return payload
        raise ServiceTitanProviderError(f"Unexpected ServiceTitan list response shape for {path}")

    def _cached_list(self, cache_key: str, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        cached = self._cache.get(cache_key)
        if cached and time.monotonic() - cached[0] < _CACHE_TTL_SECONDS:
            return cached[1]
        rows = self._list(path, params)
        self._cache[cache_key] = (time.monotonic(), rows)
        return rows

    def get_campaigns(self) -> list[dict[str, Any]]:
        return self._cached_list("campaigns", "marketing/v2/tenant/{tenant}/campaigns", {"active": "true"})

    def find_campaign_by_name(self, name: str) -> dict[str, Any] | None:
        wanted = name.strip().lower()
        for campaign in self.get_campaigns():
            if str(campaign.get("name") or "").lower() == wanted or str(campaign.get("source") or "").lower() == wanted:
                return campaign
        return None

    def get_job_types(self) -> list[dict[str, Any]]:
        return self._cached_list("job_types", "jpm/v2/tenant/{tenant}/job-types", {"active": "true"})

    def find_job_type_by_name(self, service_name: str) -> dict[str, Any] | None:
        wanted = _normalize_name(service_name)
        if not wanted:
            return None
        job_types = self.get_job_types()
        for job_type in job_types:
            if _normalize_name(str(job_type.get("name") or "")) == wanted:
                return job_type
        for job_type in job_types:
            candidate = _normalize_name(str(job_type.get("name") or ""))
            if candidate and (wanted in candidate or candidate in wanted):
                return job_type
        return None

    def get_business_units(self) -> list[dict[str, Any]]:
        return self._cached_list("business_units", "settings/v2/tenant/{tenant}/business-units", {"active": "true"})

    def find_customer(self, phone: str, email: str | None = None) -> dict[str, Any] | None:
        matches = self._list("crm/v2/tenant/{tenant}/customers", {"phone": phone, "active": "true"})
        if matches:
            return matches[0]
        if email:
            matches = self._list("crm/v2/tenant/{tenant}/customers", {"email": email, "active": "true"})
            if matches:
                return matches[0]
        return None

    def create_customer(self, *, name: str, phone: str, email: str | None, address: dict[str, str]) -> dict[str, Any]:
        return self._request_json(
            "POST",
            "crm/v2/tenant/{tenant}/customers",
            json_payload={
                "name": name,
                "type": "Residential",
                "address": {**address, "country": "USA"},
                "contacts": _contacts(phone, email),
                "locations": [{"name": name, "address": {**address, "country": "USA"}}],
            },
        )

    def ensure_customer(self, *, name: str, phone: str, email: str | None, address: dict[str, str]) -> dict[str, Any]:
        return self.find_customer(phone, email) or self.create_customer(
            name=name, phone=phone, email=email, address=address
        )

    def find_location(self, customer_id: int, street: str) -> dict[str, Any] | None:
        wanted = _normalize_street(street)
        for location in self._list("crm/v2/tenant/{tenant}/locations", {"customerId": customer_id, "active": "true"}):
            candidate = _normalize_street(str((location.get("address") or {}).get("street") or ""))
            if candidate and wanted and (wanted in candidate or candidate in wanted):
                return location
        return None

    def create_location(
        self,
        customer_id: int,
        *,
        name: str,
        phone: str,
        email: str | None,
        address: dict[str, str],
    ) -> dict[str, Any]:
        return self._request_json(
            "POST",
            "crm/v2/tenant/{tenant}/locations",
            json_payload={
                "customerId": customer_id,
                "name": name,
                "address": {**address, "country": "USA"},
                "contacts": _contacts(phone, email),
            },
        )

    def ensure_location(
        self,
        customer_id: int,
        *,
        name: str,
        phone: str,
        email: str | None,
        address: dict[str, str],
    ) -> dict[str, Any]:
        return self.find_location(customer_id, address["street"]) or self.create_location(
            customer_id, name=name, phone=phone, email=email, address=address
        )

    def create_location_note(self, location_id: int, text: str, pinned: bool = True) -> dict[str, Any]:
        return self._request_json(
            "POST",
            f"crm/v2/tenant/{{tenant}}/locations/{location_id}/notes",
            json_payload={"text": text, "pinned": pinned},
        )

    def create_job(
        self,
        *,
        customer_id: int,
        location_id: int,
        business_unit_id: int,
        job_type_id: int,
        summary: str,
        preferred_date: date | None = None,
        preferred_time_slot: str | None = None,
        special_instructions: str | None = None,
        campaign_id: int | None = None,
    ) -> dict[str, Any]:
        window_start, window_end = arrival_window(
            preferred_date, preferred_time_slot, timezone_name=self._timezone_name
        )
        appointment: dict[str, Any] = {
            "start": window_start.isoformat(),
            "end": (window_start + timedelta(hours=_APPOINTMENT_HOURS)).isoformat(),
            "arrivalWindowStart": window_start.isoformat(),
            "arrivalWindowEnd": window_end.isoformat(),
        }
        if special_instructions:
            appointment["specialInstructions"] = special_instructions
        payload: dict[str, Any] = {
            "customerId": customer_id,
            "locationId": location_id,
            "businessUnitId": business_unit_id,
            "jobTypeId": job_type_id,
            "priority": "Normal",
            "summary": summary,
            "appointments": [appointment],
        }
        if campaign_id is not None:
            payload["campaignId"] = campaign_id
        job = self._request_json("POST", "jpm/v2/tenant/{tenant}/jobs", json_payload=payload)
        if not isinstance(job, dict) or job.get("id") is None:
            raise ServiceTitanProviderError("Unexpected ServiceTitan create job response shape")
        return job


def _contacts(phone: str, email: str | None) -> list[dict[str, str]]:
    contacts = [{"type": "MobilePhone", "value": phone}]
    if email:
        contacts.append({"type": "Email", "value": email})
    return contacts
