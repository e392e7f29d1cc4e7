from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional
import uuid

from pydantic import BaseModel, Field

from journeys.models.campaign import START_STEP

JourneyStatus = Literal["active", "completed", "paused", "failed", "exited"]
NextAction = Literal["send_email", "evaluate_branch", "complete_journey"]

TERMINAL_STATUSES = ("completed", "failed", "exited")
PROGRESS_COUNTERS = ("emails_sent", "emails_opened", "emails_clicked", "goals_reached")


class JourneyProgress(BaseModel):
    emails_sent: int = 0
    emails_opened: int = 0
    emails_clicked: int = 0
    goals_reached: int = 0


class ContactJourney(BaseModel):
    """
    A contact's run through one campaign. At most one journey per
    (campaign_id, contact_id) may be `active` at any time.
    """

    journey_id: str = Field(default_factory=lambda: f"journey_{uuid.uuid4().hex}")
    campaign_id: str
    contact_id: str
    owner_id: Optional[str] = None
    trigger_event_type: Optional[str] = None
    status: JourneyStatus = "active"
    status_reason: Optional[str] = None
    current_step: str = START_STEP
    next_action: NextAction = "send_email"
    next_action_at: datetime
    progress: JourneyProgress = Field(default_factory=JourneyProgress)
    event_data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    claimed_by: Optional[str] = None
    claimed_until: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    terminated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
