"""
Condition evaluation for triggers and steps.

Every public predicate here is total: malformed or missing condition data
yields False instead of raising, so a bad campaign definition can only stop
its own trigger or step from firing.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional, Union
from zoneinfo import ZoneInfo

from journeys.models.campaign import (
    AttributionConditions,
    EventDataConditions,
    FieldCondition,
    FrequencyCondition,
    SendingWindow,
    StepConditions,
    TagConditions,
    TimeWindow,
    TriggerConditions,
)
from journeys.models.contact import Contact
from journeys.models.event import TriggerEvent
from journeys.models.journey import ContactJourney

logger = logging.getLogger(__name__)


@dataclass
class ConditionContext:
    now: datetime
    timezone: str = "UTC"
    # Historical count of the event type for the contact, pre-fetched by the caller
    # when the conditions carry a frequency group.
    event_count: Optional[int] = None


def evaluate(
    conditions: Union[TriggerConditions, Mapping[str, Any], None],
    contact: Optional[Contact],
    event: Optional[TriggerEvent],
    context: ConditionContext,
) -> bool:
    """AND of every configured condition group. Empty conditions match."""
    try:
        if contact is None or event is None:
            return False
        if conditions is None:
            return True
        if not isinstance(conditions, TriggerConditions):
            conditions = TriggerConditions.model_validate(conditions)

        payload = event.payload or {}
        return (
            _tags_match(conditions.tags, contact.tags)
            and all(_field_matches(fc, contact) for fc in conditions.fields)
            and _event_data_matches(conditions.event_data, event, payload)
            and _frequency_matches(conditions.frequency, context.event_count)
            and _timing_matches(conditions.timing, context)
            and _attribution_matches(conditions.attribution, payload)
        )
    except Exception as e:
        logger.error(f"[CONDITIONS] Condition evaluation failed, treating as not met: {e}")
        return False


def _tags_match(tags: Optional[TagConditions], contact_tags: Iterable[str]) -> bool:
    if tags is None:
        return True
    present = set(contact_tags or [])
    if tags.include:
        if tags.operation == "all":
            if not all(tag in present for tag in tags.include):
                return False
        elif not any(tag in present for tag in tags.include):
            return False
    if tags.exclude and any(tag in present for tag in tags.exclude):
        return False
    return True


def _field_matches(condition: FieldCondition, contact: Contact) -> bool:
    value = contact.field_value(condition.field)
    return evaluate_field_condition(value, condition.operator, condition.value)


def evaluate_field_condition(field_value: Any, operator: str, condition_value: Any) -> bool:
    """
    Compare a contact field against a configured value. String operators are
    case-insensitive except equals/not_equals; numeric operators return False
    when either side is not a number.
    """
    try:
        field_str = "" if field_value is None else str(field_value)
        condition_str = "" if condition_value is None else str(condition_value)
        lower_field = field_str.lower()
        lower_condition = condition_str.lower()

        if operator == "equals":
            return field_str == condition_str
        if operator == "not_equals":
            return field_str != condition_str
        if operator == "contains":
            return lower_condition in lower_field
        if operator == "not_contains":
            return lower_condition not in lower_field
        if operator == "starts_with":
            return lower_field.startswith(lower_condition)
        if operator == "ends_with":
            return lower_field.endswith(lower_condition)
        if operator in ("greater_than", "less_than"):
            try:
                left, right = float(field_str), float(condition_str)
            except ValueError:
                return False
            return left > right if operator == "greater_than" else left < right
        if operator == "is_empty":
            return field_str.strip() == ""
        if operator == "is_not_empty":
            return field_str.strip() != ""
        logger.warning(f"[CONDITIONS] Unknown field operator: {operator}")
        return False
    except Exception as e:
        logger.error(f"[CONDITIONS] Field comparison failed: {e}")
        return False


def lookup(data: Any, dotted_key: str) -> Any:
    """Nested lookup of `a.b.c` in dicts; None when any segment is missing."""
    current = data
    for part in dotted_key.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def properties_match(expected: Mapping[str, Any], actual: Mapping[str, Any]) -> bool:
    return all(lookup(actual, key) == value for key, value in expected.items())


def event_properties(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    """Custom properties of an event: `payload.properties` when present, else the payload itself."""
    properties = (payload or {}).get("properties")
    return properties if isinstance(properties, Mapping) else (payload or {})


def _event_data_matches(conditions: Optional[EventDataConditions], event: TriggerEvent, payload: Mapping[str, Any]) -> bool:
    if conditions is None:
        return True
    if conditions.source is not None and payload.get("source", event.source) != conditions.source:
        return False
    if conditions.category is not None and payload.get("category") != conditions.category:
        return False
    if conditions.properties:
        if not properties_match(conditions.properties, payload.get("properties") or {}):
            return False
    return True


def _frequency_matches(frequency: Optional[FrequencyCondition], event_count: Optional[int]) -> bool:
    if frequency is None:
        return True
    if event_count is None:
        logger.warning("[CONDITIONS] Frequency condition without an event count, not met")
        return False
    if frequency.type == "first_time":
        return event_count <= 1
    if frequency.type == "nth_time":
        return frequency.count is not None and event_count == frequency.count
    if frequency.type == "after_count":
        return event_count > (frequency.count or 0)
    return False


def _timing_matches(window: Optional[TimeWindow], context: ConditionContext) -> bool:
    if window is None:
        return True
    return in_time_window(
        window.start,
        window.end,
        window.days_of_week,
        window.timezone or context.timezone,
        context.now,
    )


def _attribution_matches(conditions: Optional[AttributionConditions], payload: Mapping[str, Any]) -> bool:
    if conditions is None:
        return True
    attribution = payload.get("attribution") or {}
    for key, expected in conditions.model_dump(exclude_none=True).items():
        actual = attribution.get(key)
        if actual is None or str(actual).lower() != str(expected).lower():
            return False
    return True


# ---------------------------------------------------------------------------
# Time windows
# ---------------------------------------------------------------------------

def _parse_hhmm(value: str) -> time:
    hours, minutes = value.strip().split(":")
    return time(int(hours), int(minutes))


def _js_weekday(moment: datetime) -> int:
    # 0 = Sunday ... 6 = Saturday
    return (moment.weekday() + 1) % 7


def _to_local(now: datetime, tz_name: str) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(tz_name))


def in_time_window(start: str, end: str, days_of_week: Optional[Iterable[int]], tz_name: str, now: datetime) -> bool:
    """Whether `now` (in `tz_name`) falls in [start, end], inclusive at minute precision."""
    try:
        local = _to_local(now, tz_name)
        start_t, end_t = _parse_hhmm(start), _parse_hhmm(end)
        days = list(days_of_week or [])
        if days and _js_weekday(local) not in days:
            return False
        current = local.time().replace(second=0, microsecond=0)
        if start_t <= end_t:
            return start_t <= current <= end_t
        # Window wraps midnight, e.g. 22:00-06:00
        return current >= start_t or current <= end_t
    except Exception as e:
        logger.error(f"[CONDITIONS] Invalid time window {start}-{end} ({tz_name}): {e}")
        return False


def in_sending_window(window: Optional[SendingWindow], tz_name: str, now: datetime) -> bool:
    if window is None:
        return True
    return in_time_window(window.start, window.end, window.days_of_week, tz_name, now)


def next_window_start(window: SendingWindow, tz_name: str, now: datetime) -> Optional[datetime]:
    """Earliest moment after `now` when the sending window opens, in UTC."""
    try:
        tz = ZoneInfo(tz_name)
        local = _to_local(now, tz_name)
        start_t = _parse_hhmm(window.start)
        days = list(window.days_of_week or [])
        for offset in range(0, 8):
            day = local.date() + timedelta(days=offset)
            candidate = datetime.combine(day, start_t, tzinfo=tz)
            if candidate <= local:
                continue
            if days and _js_weekday(candidate) not in days:
                continue
            return candidate.astimezone(timezone.utc)
        return None
    except Exception as e:
        logger.error(f"[CONDITIONS] Cannot compute next sending window: {e}")
        return None


# ---------------------------------------------------------------------------
# Step conditions
# ---------------------------------------------------------------------------

def last_email_engagement(journey: ContactJourney) -> dict:
    last_step = (journey.metadata.get("last_email") or {}).get("step_id")
    if not last_step:
        return {}
    return (journey.metadata.get("engagement") or {}).get(last_step) or {}


def evaluate_step_conditions(conditions: Optional[StepConditions], contact: Contact, journey: ContactJourney) -> bool:
    try:
        if conditions is None:
            return True
        if conditions.tags and not any(tag in contact.tags for tag in conditions.tags):
            return False
        requirement = conditions.engagement
        if requirement is not None:
            engagement = last_email_engagement(journey)
            opened = bool(engagement.get("opened_at"))
            clicked = bool(engagement.get("clicked_at"))
            if requirement.previous_email_opened is not None and opened != requirement.previous_email_opened:
                return False
            if requirement.previous_email_clicked is not None and clicked != requirement.previous_email_clicked:
                return False
        return True
    except Exception as e:
        logger.error(f"[CONDITIONS] Step condition evaluation failed for journey {journey.journey_id}: {e}")
        return False
