from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def period_key(moment: Optional[datetime] = None) -> str:
    """Billing period (calendar month, UTC) as YYYY-MM"""
    moment = moment or utcnow()
    return f"{moment.year:04d}-{moment.month:02d}"


def period_reset_at(moment: Optional[datetime] = None) -> datetime:
    """First instant of the billing period following the given moment"""
    moment = moment or utcnow()
    if moment.month == 12:
        return datetime(moment.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(moment.year, moment.month + 1, 1, tzinfo=timezone.utc)


def report_window(period: str, moment: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """
    Start and end of the reporting window ending at the given moment

    Args:
        period: "weekly" (last 7 days) or "monthly" (current calendar month)
        moment: Reference time, defaults to now

    Returns:
        (start, end) tuple of aware datetimes
    """
    end = moment or utcnow()
    if period == "weekly":
        return end - timedelta(days=7), end
    if period == "monthly":
        return datetime(end.year, end.month, 1, tzinfo=timezone.utc), end
    raise ValueError(f"Unknown report period: {period}")
