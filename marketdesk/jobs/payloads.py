"""Typed payloads for each job variant.

Every JobType owns exactly one payload model. Payloads are validated when a
job is enqueued, so a malformed or unknown job never reaches the table.
"""

from __future__ import annotations

from typing import Mapping
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from marketdesk.db.enums import JobType
from marketdesk.types import JsonObject


class UnknownJobTypeError(ValueError):
    """Raised when a job type is not part of the closed JobType set."""


class JobPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class MarketplacePollPayload(JobPayload):
    """Delta sync for the job's tenant. No parameters."""


class MarketplaceBackfillPayload(JobPayload):
    days: int = Field(default=365, ge=1)


class MarketplaceMissingItemsPayload(JobPayload):
    limit: int = Field(default=50, ge=1, le=500)


class OutboundSendPayload(JobPayload):
    delivery_id: UUID


PAYLOAD_MODELS: Mapping[JobType, type[JobPayload]] = {
    JobType.MARKETPLACE_POLL: MarketplacePollPayload,
    JobType.MARKETPLACE_BACKFILL: MarketplaceBackfillPayload,
    JobType.MARKETPLACE_MISSING_ITEMS: MarketplaceMissingItemsPayload,
    JobType.OUTBOUND_SEND: OutboundSendPayload,
}


def coerce_job_type(job_type: JobType | str) -> JobType:
    if isinstance(job_type, JobType):
        return job_type
    try:
        return JobType(job_type)
    except ValueError:
        raise UnknownJobTypeError(f"Unknown job type: {job_type}") from None


def validate_job_payload(job_type: JobType | str, payload: JsonObject | None) -> JsonObject:
    """Validate a raw payload for its job type and return the JSON form to store.

    Raises UnknownJobTypeError or pydantic.ValidationError.
    """
    model = PAYLOAD_MODELS[coerce_job_type(job_type)]
    return model.model_validate(payload or {}).model_dump(mode="json")


def parse_job_payload(job_type: JobType | str, payload: JsonObject | None) -> JobPayload:
    model = PAYLOAD_MODELS[coerce_job_type(job_type)]
    return model.model_validate(payload or {})
