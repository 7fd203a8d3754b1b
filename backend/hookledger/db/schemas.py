from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from hookledger.db.models import EventStatus, Provider


class WebhookEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider: Provider
    provider_event_id: str
    event_type: str
    status: EventStatus
    attempts: int
    payload: dict[str, Any]
    created_at: datetime
    last_attempt_at: Optional[datetime]
    completed_at: Optional[datetime]
    error_message: Optional[str]


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    actor: str
    action: str
    resource_id: Optional[str]
    # Read from the ORM as ``details``, re-read from a dumped response as ``metadata``
    details: Optional[dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("details", "metadata"),
        serialization_alias="metadata",
    )
    created_at: datetime


class WebhookEventDetail(WebhookEventOut):
    audit: list[AuditEntryOut] = []


class RequeueResponse(BaseModel):
    status: str
    provider: Provider
    event_id: str
