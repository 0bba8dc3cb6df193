"""Service for expanding a class's weekly time slot into concrete lesson dates."""

from __future__ import annotations

from datetime import date, datetime

from dateutil.rrule import FR, MO, SA, SU, TH, TU, WE, WEEKLY, rrule, weekday

from schedule_service.domain.errors import ValidationError
from schedule_service.domain.models import SchoolClass

# Classes store their weekday as 0=Sunday ... 6=Saturday.
_WEEKDAYS = (SU, MO, TU, WE, TH, FR, SA)


def to_rrule_weekday(day_of_week: int) -> weekday:
    if not 0 <= day_of_week <= 6:
        raise ValidationError(f"Invalid day of week {day_of_week}", field="dayOfWeek")
    return _WEEKDAYS[day_of_week]


def weekly_occurrences(
    class_def: SchoolClass,
    start: date | None = None,
    end: date | None = None,
) -> list[date]:
    """Return every date in ``[start, end]`` falling on the class's weekday.

    ``start``/``end`` default to the class's own start and end dates. The
    class must carry a complete weekly template (day, start and end time).
    """
    if class_def.day_of_week is None or not class_def.start_time or not class_def.end_time:
        raise ValidationError("Class has no weekly time slot to generate lessons from")

    start = start or class_def.start_date
    end = end or class_def.end_date
    if start is None or end is None:
        raise ValidationError("A start and end date are required to generate lessons", field="endDate")
    if end < start:
        raise ValidationError("End date must not be before start date", field="endDate")

    rule = rrule(
        WEEKLY,
        byweekday=to_rrule_weekday(class_def.day_of_week),
        dtstart=datetime.combine(start, datetime.min.time()),
        until=datetime.combine(end, datetime.min.time()),
    )
    return [dt.date() for dt in rule]
