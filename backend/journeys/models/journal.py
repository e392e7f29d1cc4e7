from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


class JourneyJournal(BaseModel):
    """
    Represents a single state transition in a contact's journey.
    Used for auditing and debugging campaign flows.
    """

    journey_id: str
    campaign_id: str
    contact_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    message: str
    step_id: Optional[str] = None
    details: Optional[dict] = None
