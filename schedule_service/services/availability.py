"""Weekly occupied/available slot view for a teacher."""

from __future__ import annotations

from schedule_service.domain.models import ScheduleSlot, SchoolClass, TeacherSchedule
from schedule_service.services.conflicts import interval_minutes, intervals_overlap, to_minutes

SLOT_MINUTES = 60
# Monday to Saturday, using the classes' 0=Sunday numbering.
TEACHING_DAYS = range(1, 7)


def _hhmm(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def teacher_schedule(
    teacher_id: str,
    classes: list[SchoolClass],
    day_start: str = "08:00",
    day_end: str = "21:00",
) -> TeacherSchedule:
    """Split the teaching week into the teacher's class slots and free hourly slots.

    An hourly slot is free when it overlaps none of the teacher's active
    weekly classes on that day (touching boundaries are fine).
    """
    occupied = [
        ScheduleSlot(
            day_of_week=c.day_of_week,
            start_time=c.start_time,
            end_time=c.end_time,
            class_id=c.id,
            class_name=c.name,
            room=c.room,
            current_students=c.current_students,
            max_students=c.max_students,
        )
        for c in classes
        if c.is_active and c.day_of_week is not None and c.start_time and c.end_time
    ]
    busy = {
        (slot.day_of_week, to_minutes(slot.start_time), to_minutes(slot.end_time))
        for slot in occupied
    }

    first, last = interval_minutes(day_start, day_end, field="dayEnd")
    available: list[ScheduleSlot] = []
    for day in TEACHING_DAYS:
        for start in range(first, last, SLOT_MINUTES):
            end = min(start + SLOT_MINUTES, last)
            taken = any(
                busy_day == day and intervals_overlap(start, end, busy_start, busy_end)
                for busy_day, busy_start, busy_end in busy
            )
            if not taken:
                available.append(ScheduleSlot(day_of_week=day, start_time=_hhmm(start), end_time=_hhmm(end)))

    occupied.sort(key=lambda s: (s.day_of_week, to_minutes(s.start_time)))
    return TeacherSchedule(teacher_id=teacher_id, occupied_slots=occupied, available_slots=available)
