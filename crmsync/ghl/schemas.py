from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


OpportunityStatus = Literal["open", "won", "lost", "abandoned"]
ActorType = Literal["practitioners", "patients"]
BackfillScope = Literal["unsynced", "all"]


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CustomField(BaseModel):
    key: str
    field_value: str


class ContactInput(_WireModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    tags: list[str] | None = None
    custom_fields: list[CustomField] | None = None
    location_id: str | None = None


class Contact(_WireModel):
    id: str
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    tags: list[str] = Field(default_factory=list)


class OpportunityInput(_WireModel):
    name: str
    pipeline_id: str
    pipeline_stage_id: str
    contact_id: str
    status: OpportunityStatus = "open"
    monetary_value: float | None = None
    assigned_to: str | None = None


class OpportunityUpdate(_WireModel):
    name: str | None = None
    pipeline_stage_id: str | None = None
    status: OpportunityStatus | None = None
    monetary_value: float | None = None
    assigned_to: str | None = None


class Opportunity(_WireModel):
    id: str
    name: str | None = None
    pipeline_id: str | None = None
    pipeline_stage_id: str | None = None
    contact_id: str | None = None
    status: str | None = None
    monetary_value: float | None = None


class PipelineStage(_WireModel):
    id: str
    name: str


class ConnectionTestResult(BaseModel):
    ok: bool
    error: str | None = None


class SyncLogProfile(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    first_name: str | None
    last_name: str | None
    email: str | None


class SyncLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_type: str
    user_id: UUID | None
    ghl_contact_id: str | None
    request_method: str | None
    request_path: str | None
    payload: Any | None
    response: Any | None
    success: bool
    error: str | None
    retry_of_id: UUID | None
    correlation_id: str | None
    created_at: datetime
    profile: SyncLogProfile | None = None


class RetryRequest(BaseModel):
    log_id: UUID


class RetryResponse(BaseModel):
    ok: bool
    log_id: UUID | None
    success: bool
    error: str | None = None
    linked_id: str | None = None


class AtRiskScanResult(BaseModel):
    processed: int
    total: int
