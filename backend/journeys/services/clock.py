from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def minutes_from(moment: datetime, minutes: float) -> datetime:
    return moment + timedelta(minutes=minutes)
