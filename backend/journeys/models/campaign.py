from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
import uuid

from pydantic import BaseModel, Field, model_validator

START_STEP = "start"

FieldOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "greater_than",
    "less_than",
    "is_empty",
    "is_not_empty",
]


# ---------------------------------------------------------------------------
# Trigger conditions
# ---------------------------------------------------------------------------

class TagConditions(BaseModel):
    include: List[str] = Field(default_factory=list)
    exclude: List[str] = Field(default_factory=list)
    operation: Literal["any", "all"] = "any"


class FieldCondition(BaseModel):
    field: str
    operator: FieldOperator
    value: Optional[str] = None


class EventDataConditions(BaseModel):
    source: Optional[str] = None
    category: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)


class FrequencyCondition(BaseModel):
    type: Literal["first_time", "nth_time", "after_count"]
    count: Optional[int] = None
    period: Optional[int] = Field(default=None, description="Trailing window in days")


class TimeWindow(BaseModel):
    start: str = Field(..., examples=["09:00"])
    end: str = Field(..., examples=["17:30"])
    timezone: Optional[str] = None
    days_of_week: Optional[List[int]] = Field(default=None, description="0 = Sunday ... 6 = Saturday")


class AttributionConditions(BaseModel):
    channel: Optional[str] = None
    campaign: Optional[str] = None
    medium: Optional[str] = None
    referrer: Optional[str] = None


class TriggerConditions(BaseModel):
    tags: Optional[TagConditions] = None
    fields: List[FieldCondition] = Field(default_factory=list)
    event_data: Optional[EventDataConditions] = None
    frequency: Optional[FrequencyCondition] = None
    timing: Optional[TimeWindow] = None
    attribution: Optional[AttributionConditions] = None


class Trigger(BaseModel):
    event_type: str = Field(..., examples=["contact_created"])
    conditions: TriggerConditions = Field(default_factory=TriggerConditions)
    delay_minutes: int = Field(default=0, ge=0)
    priority: int = Field(default=5, ge=1, le=10)


# ---------------------------------------------------------------------------
# Flow: steps, post-send actions, branches, exit conditions
# ---------------------------------------------------------------------------

class EmailTemplate(BaseModel):
    subject: str
    content: str
    personalize_fields: List[str] = Field(default_factory=list)
    template_id: Optional[str] = None


class EngagementRequirement(BaseModel):
    previous_email_opened: Optional[bool] = None
    previous_email_clicked: Optional[bool] = None


class StepConditions(BaseModel):
    tags: List[str] = Field(default_factory=list)
    engagement: Optional[EngagementRequirement] = None


class AddTagAction(BaseModel):
    type: Literal["add_tag"]
    tag: str


class RemoveTagAction(BaseModel):
    type: Literal["remove_tag"]
    tag: str


class UpdateFieldAction(BaseModel):
    type: Literal["update_field"]
    field: str
    value: Any = None


class SendWebhookAction(BaseModel):
    type: Literal["send_webhook"]
    url: str
    payload: Dict[str, Any] = Field(default_factory=dict)


PostAction = Annotated[
    Union[AddTagAction, RemoveTagAction, UpdateFieldAction, SendWebhookAction],
    Field(discriminator="type"),
]


class Step(BaseModel):
    id: str
    delay_minutes: int = Field(default=0, ge=0)
    template: EmailTemplate
    conditions: Optional[StepConditions] = None
    actions: List[PostAction] = Field(default_factory=list)
    next: Optional[str] = Field(default=None, description="Step or branch id that follows; defaults to the next step in order")


class EmailEngagementCondition(BaseModel):
    type: Literal["email_engagement"]
    engagement: Literal["opened", "clicked"] = "opened"
    step_id: Optional[str] = None


class FieldValueCondition(BaseModel):
    type: Literal["field_value"]
    field: str
    operator: FieldOperator = "equals"
    value: Optional[str] = None


class TagPresenceCondition(BaseModel):
    type: Literal["tag_presence"]
    tag: str
    present: bool = True


class TimeElapsedCondition(BaseModel):
    type: Literal["time_elapsed"]
    minutes: int = Field(..., ge=0)
    since: Literal["enrollment", "previous_step", "branch"] = "enrollment"


class CustomEventCondition(BaseModel):
    type: Literal["custom_event"]
    event_type: str
    properties: Dict[str, Any] = Field(default_factory=dict)


BranchCondition = Annotated[
    Union[
        EmailEngagementCondition,
        FieldValueCondition,
        TagPresenceCondition,
        TimeElapsedCondition,
        CustomEventCondition,
    ],
    Field(discriminator="type"),
]


class Branch(BaseModel):
    id: str
    condition: BranchCondition
    true_path: str
    false_path: Optional[str] = None
    wait_minutes: int = Field(default=0, ge=0)


class TagAddedExit(BaseModel):
    type: Literal["tag_added"]
    tag: str


class FieldChangedExit(BaseModel):
    type: Literal["field_changed"]
    field: str
    value: Optional[str] = None


class GoalReachedExit(BaseModel):
    type: Literal["goal_reached"]
    goal: Optional[str] = None


class UnsubscribedExit(BaseModel):
    type: Literal["unsubscribed"]


class MaxDurationExit(BaseModel):
    type: Literal["max_duration"]
    days: float = Field(..., gt=0)


ExitCondition = Annotated[
    Union[TagAddedExit, FieldChangedExit, GoalReachedExit, UnsubscribedExit, MaxDurationExit],
    Field(discriminator="type"),
]


class CampaignFlow(BaseModel):
    steps: List[Step] = Field(default_factory=list)
    branches: List[Branch] = Field(default_factory=list)
    exit_conditions: List[ExitCondition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_graph(self):
        ids = [s.id for s in self.steps] + [b.id for b in self.branches]
        seen = set()
        for node_id in ids:
            if node_id == START_STEP:
                raise ValueError(f"'{START_STEP}' is a reserved step id")
            if node_id in seen:
                raise ValueError(f"Duplicate step/branch id: {node_id}")
            seen.add(node_id)

        for step in self.steps:
            if step.next is not None and step.next not in seen:
                raise ValueError(f"Step {step.id} points to unknown node {step.next}")
        for branch in self.branches:
            for path in (branch.true_path, branch.false_path):
                if path is not None and path not in seen:
                    raise ValueError(f"Branch {branch.id} points to unknown node {path}")

        self._detect_loops()
        return self

    def _detect_loops(self):
        visiting, visited = set(), set()

        def visit(node_id):
            if node_id in visiting:
                raise ValueError(f"Loop detected involving node {node_id}")
            if node_id in visited:
                return
            visiting.add(node_id)
            for target in self.successors(node_id):
                visit(target)
            visiting.remove(node_id)
            visited.add(node_id)

        for node_id in [s.id for s in self.steps] + [b.id for b in self.branches]:
            visit(node_id)

    def successors(self, node_id: str) -> List[str]:
        step = self.get_step(node_id)
        if step is not None:
            following = self.following(step)
            return [following] if following else []
        branch = self.get_branch(node_id)
        if branch is not None:
            return [p for p in (branch.true_path, branch.false_path) if p]
        return []

    def get_step(self, step_id: str) -> Optional[Step]:
        return next((s for s in self.steps if s.id == step_id), None)

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        return next((b for b in self.branches if b.id == branch_id), None)

    def first_step(self) -> Optional[Step]:
        return self.steps[0] if self.steps else None

    def following(self, step: Step) -> Optional[str]:
        """Id of the node after `step`: its explicit `next`, else its successor in order."""
        if step.next:
            return step.next
        for index, candidate in enumerate(self.steps):
            if candidate.id == step.id:
                if index + 1 < len(self.steps):
                    return self.steps[index + 1].id
                return None
        return None


class SendingWindow(BaseModel):
    start: str = Field(..., examples=["09:00"])
    end: str = Field(..., examples=["18:00"])
    days_of_week: Optional[List[int]] = None


class CampaignSettings(BaseModel):
    is_active: bool = True
    max_duration_days: Optional[float] = Field(default=None, gt=0)
    max_emails_per_contact: Optional[int] = Field(default=None, ge=1)
    respect_unsubscribe: bool = True
    timezone: Optional[str] = None
    sending_window: Optional[SendingWindow] = None


class GoalConfig(BaseModel):
    properties: Dict[str, Any] = Field(default_factory=dict)


class Goal(BaseModel):
    name: str
    event_type: str
    config: GoalConfig = Field(default_factory=GoalConfig)
    weight: float = 1.0


STATISTIC_COUNTERS = ("triggered", "entered", "completed", "exited", "emails_sent", "goals_reached")


class CampaignStatistics(BaseModel):
    triggered: int = 0
    entered: int = 0
    completed: int = 0
    exited: int = 0
    emails_sent: int = 0
    goals_reached: int = 0

    @property
    def conversion_rate(self) -> float:
        return self.goals_reached / max(self.entered, 1)

    def summary(self) -> dict:
        data = self.model_dump()
        data["conversion_rate"] = self.conversion_rate
        return data


class Campaign(BaseModel):
    campaign_id: str = Field(default_factory=lambda: f"campaign_{uuid.uuid4().hex[:12]}")
    owner_id: str
    name: str = Field(..., examples=["Welcome Series"])
    description: Optional[str] = None
    triggers: List[Trigger] = Field(default_factory=list)
    flow: CampaignFlow = Field(default_factory=CampaignFlow)
    settings: CampaignSettings = Field(default_factory=CampaignSettings)
    goals: List[Goal] = Field(default_factory=list)
    statistics: CampaignStatistics = Field(default_factory=CampaignStatistics)
    variables: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def triggers_for(self, event_type: str) -> List[Trigger]:
        """Triggers listening to `event_type`, highest priority first."""
        matching = [t for t in self.triggers if t.event_type == event_type]
        return sorted(matching, key=lambda t: t.priority, reverse=True)
