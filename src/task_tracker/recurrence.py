"""
Recurrence calculation for repeating tasks.

Pure functions computing the next occurrence of a recurring task from its
current due date and recurrence pattern. Nothing here touches a store.

Calendar rules:
- Month and year arithmetic clamps to the last valid day of the target
  month (Jan 31 + 1 month = Feb 28/29, Feb 29 + 1 year = Feb 28).
- ``day_of_month`` is clamped the same way (31 in April gives April 30).
- Weekday numbers use Sunday=0 ... Saturday=6.
- An occurrence exactly on ``end_date`` is still valid; one strictly after
  it ends the series.
"""

import calendar
import logging
from datetime import datetime, timedelta
from typing import Iterator, Optional

from .errors import ValidationError
from .models import RecurrenceFrequency, RecurrencePattern, coerce_datetime

logger = logging.getLogger(__name__)


def sunday_based_weekday(moment: datetime) -> int:
    """Weekday number with Sunday=0, matching recurrence pattern weekdays."""
    return (moment.weekday() + 1) % 7


def add_months(moment: datetime, months: int, day: Optional[int] = None) -> datetime:
    """
    Shift ``moment`` by a whole number of months.

    Args:
        moment: Reference datetime
        months: Number of months to add (may be negative)
        day: Force this day of month instead of keeping the current one

    Returns:
        Shifted datetime with the day clamped to the target month's length
    """
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    wanted_day = day if day is not None else moment.day
    last_day = calendar.monthrange(year, month)[1]
    return moment.replace(year=year, month=month, day=min(wanted_day, last_day))


def _next_listed_weekday(moment: datetime, days_of_week) -> datetime:
    current = sunday_based_weekday(moment)
    later = [day for day in days_of_week if day > current]
    if later:
        return moment + timedelta(days=later[0] - current)
    # Wrap to the smallest listed weekday of the following week
    return moment + timedelta(days=7 - current + days_of_week[0])


def compute_next_occurrence(
    current_date: datetime, pattern: RecurrencePattern
) -> Optional[datetime]:
    """
    Compute the next occurrence date for a recurrence pattern.

    Args:
        current_date: Due date of the occurrence being completed
        pattern: Recurrence rule of the task

    Returns:
        The next due date, or None when the series has ended

    Raises:
        ValidationError: If the pattern carries an unknown frequency or a
            non-positive interval
    """
    if pattern.interval < 1:
        raise ValidationError(
            f"Recurrence interval must be at least 1, got {pattern.interval}",
            {"field": "recurrence.interval"},
        )

    current_date = coerce_datetime(current_date)
    frequency = pattern.frequency

    if frequency == RecurrenceFrequency.DAILY:
        next_date = current_date + timedelta(days=pattern.interval)
    elif frequency == RecurrenceFrequency.WEEKLY:
        next_date = current_date + timedelta(days=pattern.interval * 7)
        if pattern.days_of_week:
            # Weekday selection is relative to the interval-advanced date
            next_date = _next_listed_weekday(next_date, sorted(set(pattern.days_of_week)))
    elif frequency == RecurrenceFrequency.MONTHLY:
        next_date = add_months(current_date, pattern.interval, pattern.day_of_month)
    elif frequency == RecurrenceFrequency.YEARLY:
        next_date = add_months(current_date, pattern.interval * 12)
    else:
        raise ValidationError(
            f"Unknown recurrence frequency: {frequency!r}",
            {"field": "recurrence.frequency"},
        )

    if pattern.end_date is not None and next_date > coerce_datetime(pattern.end_date):
        logger.debug("Recurrence ended: %s is after end date %s", next_date, pattern.end_date)
        return None

    return next_date


def iter_occurrences(
    start: datetime, pattern: RecurrencePattern, limit: int
) -> Iterator[datetime]:
    """Yield up to ``limit`` successive occurrences after ``start``."""
    current = start
    for _ in range(limit):
        nxt = compute_next_occurrence(current, pattern)
        if nxt is None:
            return
        yield nxt
        current = nxt
