"""Calendar-month arithmetic for billing periods."""
from calendar import monthrange
from datetime import datetime, timedelta


def add_months(start_date: datetime, months: int) -> datetime:
    """Same day-of-month `months` later, clamped to the target month's last day."""
    total_months = start_date.month - 1 + months
    year = start_date.year + total_months // 12
    month = total_months % 12 + 1
    day = min(start_date.day, monthrange(year, month)[1])
    return start_date.replace(year=year, month=month, day=day)


def cycle_bounds(cycle_start: datetime) -> tuple:
    """[start, start + 1 month - 1 day]: one paid monthly cycle."""
    return cycle_start, add_months(cycle_start, 1) - timedelta(days=1)


def months_between(start: datetime, end: datetime) -> int:
    """Whole calendar months from start to end (0 if end precedes start)."""
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if months > 0 and add_months(start, months) > end:
        months -= 1
    return max(0, months)
