# bazaar_flipper/schedule.py
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from .models import ScheduleWindow

HOUR = 60 * 60


def parse_windows(raw: Iterable[dict]) -> List[ScheduleWindow]:
    return [ScheduleWindow(float(w['start']), float(w['end'])) for w in raw or []]


def utc_hours(now: Optional[float] = None) -> float:
    """Fractional hour of the UTC day, e.g. 13.5 at 13:30."""
    moment = datetime.fromtimestamp(now, tz=timezone.utc) if now is not None else datetime.now(timezone.utc)
    return moment.hour + moment.minute / 60 + moment.second / 3600 + moment.microsecond / 3_600_000_000


def next_utc_midnight(now: float) -> float:
    moment = datetime.fromtimestamp(now, tz=timezone.utc)
    midnight = (moment + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.timestamp()


def is_scheduled(windows: Iterable[ScheduleWindow], hours: float) -> bool:
    """True when trading is allowed, i.e. no blackout window covers `hours`."""
    return not any(w.contains(hours) for w in windows)


def _segments(window: ScheduleWindow):
    if window.start_hour <= window.end_hour:
        return [(window.start_hour, window.end_hour)]
    return [(window.start_hour, 24.0), (0.0, window.end_hour)]


def remaining_time(windows: Iterable[ScheduleWindow], hours: float) -> float:
    """
    Seconds of trading time left before the next UTC midnight (the quota
    reset), with blackout windows taken out.
    """
    remaining = 24.0 - hours
    for window in windows:
        for start, end in _segments(window):
            overlap = min(end, 24.0) - max(start, hours)
            if overlap > 0:
                remaining -= overlap
    return max(0.0, remaining) * HOUR
