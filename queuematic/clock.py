from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from queuematic.config import settings


def now() -> datetime:
    return datetime.now(tz=timezone.utc)


def business_zone() -> ZoneInfo:
    return ZoneInfo(settings.business_timezone)


def business_date(moment: datetime | None = None) -> date:
    """Calendar day of ``moment`` in the branch business timezone."""
    moment = moment or now()
    return moment.astimezone(business_zone()).date()


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """UTC ``[start, end)`` covering one business day."""
    start = datetime.combine(day, time.min, tzinfo=business_zone())
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=business_zone())
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)
