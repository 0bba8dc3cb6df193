"""Service for detecting scheduling conflicts between lessons.

Everything here is pure: no repositories, no clock. Callers load the
comparison set (same teacher, same date) and pass it in.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date

from schedule_service.domain.errors import InvalidIntervalError
from schedule_service.domain.models import ConflictCheckResult, Lesson, LessonStatus

_HHMM = re.compile(r"^(\d{2}):(\d{2})$")


@dataclass(frozen=True)
class Candidate:
    """A slot someone wants to book for a teacher."""

    teacher_id: str
    date: date
    start_time: str
    end_time: str
    exclude_lesson_id: str | None = None


def to_minutes(value: str) -> int:
    """Convert ``HH:MM`` into minutes since midnight."""
    match = _HHMM.match(value or "")
    if match is None:
        raise InvalidIntervalError(f"Invalid time {value!r}, expected HH:MM")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise InvalidIntervalError(f"Invalid time {value!r}, expected HH:MM")
    return hours * 60 + minutes


def interval_minutes(start_time: str, end_time: str, field: str = "endTime") -> tuple[int, int]:
    """Parse a well-formed interval; ``end`` must be strictly after ``start``."""
    start, end = to_minutes(start_time), to_minutes(end_time)
    if end <= start:
        raise InvalidIntervalError("End time must be after start time", field=field)
    return start, end


def intervals_overlap(s1: int, e1: int, s2: int, e2: int) -> bool:
    """Half-open overlap: touching boundaries (e1 == s2) do not overlap."""
    return s1 < e2 and s2 < e1


def find_conflicts(candidate: Candidate, existing: list[Lesson]) -> list[Lesson]:
    """Return every lesson overlapping the candidate, earliest start first.

    ``existing`` is expected to hold the teacher's lessons for the candidate's
    date; cancelled lessons and the lesson named by ``exclude_lesson_id`` are
    skipped.
    """
    start, end = interval_minutes(candidate.start_time, candidate.end_time)
    ordered = sorted(existing, key=lambda l: to_minutes(l.start_time))
    return [
        lesson
        for lesson in ordered
        if lesson.id != candidate.exclude_lesson_id
        and lesson.status != LessonStatus.CANCELLED
        and intervals_overlap(start, end, to_minutes(lesson.start_time), to_minutes(lesson.end_time))
    ]


def has_conflict(candidate: Candidate, existing: list[Lesson]) -> ConflictCheckResult:
    """Report the earliest-starting lesson the candidate would overlap, if any."""
    conflicts = find_conflicts(candidate, existing)
    if not conflicts:
        return ConflictCheckResult(has_conflict=False)
    return ConflictCheckResult(has_conflict=True, conflicting_lesson=conflicts[0])
