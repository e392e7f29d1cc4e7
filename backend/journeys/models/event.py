from datetime import datetime, timezone
from typing import Any, Dict, Optional
import uuid

from pydantic import BaseModel, Field, field_validator

ENGAGEMENT_EVENTS = {"email_opened": "opened", "email_clicked": "clicked"}


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TriggerEvent(BaseModel):
    """An inbound event from any producer (webhook, engagement callback, tag mutation)."""

    event_id: str = Field(default_factory=lambda: f"event_{uuid.uuid4().hex}")
    event_type: str = Field(..., examples=["contact_created"])
    contact_id: Optional[str] = None
    owner_id: Optional[str] = None
    email: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    source: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("timestamp")
    @classmethod
    def timestamp_in_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class ContactEvent(BaseModel):
    """Historical record of an event observed for a contact."""

    event_id: str
    contact_id: str
    owner_id: Optional[str] = None
    event_type: str
    source: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("created_at")
    @classmethod
    def created_at_in_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def from_trigger_event(cls, event: TriggerEvent, contact_id: str, owner_id: Optional[str]) -> "ContactEvent":
        return cls(
            event_id=event.event_id,
            contact_id=contact_id,
            owner_id=owner_id,
            event_type=event.event_type,
            source=event.source,
            payload=event.payload,
            created_at=event.timestamp,
        )
