import logging

from fastapi import APIRouter, Depends, HTTPException

from journeys.api.deps import get_engine, get_event_source
from journeys.models.event import TriggerEvent
from journeys.services.engine import EventSource, JourneyEngine

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/events", status_code=202)
async def emit_event(
    event: TriggerEvent,
    sync: bool = False,
    engine: JourneyEngine = Depends(get_engine),
    source: EventSource = Depends(get_event_source),
):
    """
    Accept an event from any producer. By default processing is queued and
    the call returns immediately; `?sync=true` processes it inline and
    returns the resulting enrollments.
    """
    if not event.contact_id and not event.email:
        raise HTTPException(status_code=422, detail="Event needs a contact_id or an email")

    logger.info(f"[TRIGGER] Event received: {event.event_type} (contact_id={event.contact_id}, email={event.email})")
    if sync:
        report = await engine.handle_event(event)
        return {"status": "processed", "event_id": event.event_id, "report": report.to_dict()}

    source.emit(event)
    return {"status": "accepted", "event_id": event.event_id}
