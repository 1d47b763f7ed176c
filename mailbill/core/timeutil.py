from datetime import datetime, timezone

from dateutil.relativedelta import relativedelta


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.utcnow()


def add_months(value: datetime, months: int = 1) -> datetime:
    return value + relativedelta(months=months)


def from_timestamp(ts: int | float | None) -> datetime | None:
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).replace(tzinfo=None)


def add_interval(start: datetime, interval: str, count: int = 1) -> datetime:
    """Advance ``start`` by a payment-provider billing interval (day/week/month/year)."""
    count = max(1, int(count or 1))
    if interval == "day":
        return start + relativedelta(days=count)
    if interval == "week":
        return start + relativedelta(weeks=count)
    if interval == "year":
        return start + relativedelta(years=count)
    return start + relativedelta(months=count)
