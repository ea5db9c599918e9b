from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from src.domain.errors import ResourceNotFound
from src.observability import log_event


TRACKING_NUMBERS_TABLE = "tracking_numbers"


@dataclass
class ResolvedJobContext:
    campaign_id: int | None
    job_type_id: int
    business_unit_id: int


class CrmResolver:
    """Resolves the canonical CRM ids a job needs before it can be created."""

    def __init__(self, *, crm: Any, db: Any, default_channel: str = "website") -> None:
        self._crm = crm
        self._db = db
        self._default_channel = default_channel

    def _mapped_campaign_id(self, channel_key: str) -> int | None:
        result = (
            self._db.table(TRACKING_NUMBERS_TABLE)
            .select("channel_key, crm_campaign_id")
            .eq("channel_key", channel_key)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        campaign_id = result.data[0].get("crm_campaign_id")
        return int(campaign_id) if campaign_id is not None else None

    def resolve_campaign_id(self, channel: str | None, *, request_id: str | None = None) -> int | None:
        channel_key = (channel or self._default_channel).strip().lower()
        campaign_id = self._mapped_campaign_id(channel_key)
        source = "channel_mapping"
        if campaign_id is None and channel_key != self._default_channel:
            campaign_id = self._mapped_campaign_id(self._default_channel)
            source = "default_channel_mapping"
        if campaign_id is None:
            campaign = self._crm.find_campaign_by_name(self._default_channel)
            campaign_id = int(campaign["id"]) if campaign else None
            source = "crm_default_campaign" if campaign else "none"
        log_event(
            "crm_campaign_resolved",
            request_id=request_id,
            channel=channel_key,
            campaign_id=campaign_id,
            source=source,
        )
        return campaign_id

    def resolve_job_context(
        self,
        *,
        requested_service: str,
        channel: str | None,
        request_id: str | None = None,
    ) -> ResolvedJobContext:
        campaign_id = self.resolve_campaign_id(channel, request_id=request_id)

        job_type = self._crm.find_job_type_by_name(requested_service)
        if not job_type:
            raise ResourceNotFound(f"Job type not found for service: {requested_service}")

        business_unit_id = job_type.get("defaultBusinessUnitId")
        if business_unit_id is None:
            business_units = self._crm.get_business_units()
            if not business_units:
                raise ResourceNotFound("No active business units found in CRM")
            business_unit_id = business_units[0]["id"]

        log_event(
            "crm_job_context_resolved",
            request_id=request_id,
            job_type_id=job_type["id"],
            job_type_name=job_type.get("name"),
            business_unit_id=business_unit_id,
        )
        return ResolvedJobContext(
            campaign_id=campaign_id,
            job_type_id=int(job_type["id"]),
            business_unit_id=int(business_unit_id),
        )
