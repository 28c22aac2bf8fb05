from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

TIME_RANGE_DAYS = {"7d": 7, "30d": 30, "90d": 90, "365d": 365}
DEFAULT_TIME_RANGE = "30d"


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime


def resolve_time_range(
    time_range: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> Period:
    now = now or datetime.utcnow()
    slug = time_range or DEFAULT_TIME_RANGE
    days = TIME_RANGE_DAYS.get(slug)
    if days is None:
        allowed = ", ".join(TIME_RANGE_DAYS)
        raise ValueError(f"Unsupported time range {slug!r}; expected one of {allowed}")
    return Period(slug, now - timedelta(days=days), now)
