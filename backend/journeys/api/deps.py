from fastapi import Request

from journeys.services.engine import EventSource, JourneyEngine


def get_engine(request: Request) -> JourneyEngine:
    return request.app.state.engine


def get_event_source(request: Request) -> EventSource:
    return request.app.state.event_source
