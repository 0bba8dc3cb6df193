"""Domain models for the lesson scheduling service."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import StrEnum
from typing import Annotated, Any

from dateutil import parser as date_parser
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class LessonStatus(StrEnum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingOutcome(StrEnum):
    CREATED = "created"
    CONFLICT = "conflict"
    INVALID = "invalid"
    ERROR = "error"


class TimelineEntryType(StrEnum):
    SCHEDULED = "scheduled"
    RESCHEDULED = "rescheduled"
    UPDATED = "updated"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _civil_date(value: Any) -> Any:
    """Accept ``YYYY-MM-DD`` or a full ISO timestamp and keep the date part."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        try:
            return date_parser.isoparse(value).date()
        except ValueError:
            return value
    return value


CivilDate = Annotated[date, BeforeValidator(_civil_date)]


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Core domain models
# ---------------------------------------------------------------------------


class SchoolClass(CamelModel):
    """A recurring teaching assignment; seeds the lessons generated from it."""

    id: str = Field(default_factory=_new_id)
    name: str
    teacher_id: str
    book_id: str | None = None
    unit_id: str | None = None
    # 0=Sunday ... 6=Saturday
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    start_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    end_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    room: str | None = None
    max_students: int = 15
    current_students: int = 0
    start_date: CivilDate | None = None
    end_date: CivilDate | None = None
    current_day: int = Field(default=1, ge=1)
    is_active: bool = True


class Lesson(CamelModel):
    id: str = Field(default_factory=_new_id)
    class_id: str
    title: str
    book_day: int = Field(default=1, ge=1)
    date: CivilDate
    start_time: str = Field(pattern=TIME_PATTERN)
    end_time: str = Field(pattern=TIME_PATTERN)
    room: str | None = None
    status: LessonStatus = LessonStatus.SCHEDULED
    notes: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class TimelineEntry(CamelModel):
    id: str = Field(default_factory=_new_id)
    lesson_id: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    type: TimelineEntryType
    payload: dict = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Request / Response DTOs
# ---------------------------------------------------------------------------


class LessonCreate(CamelModel):
    class_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    book_day: int = Field(default=1, ge=1)
    date: CivilDate
    start_time: str = Field(pattern=TIME_PATTERN)
    end_time: str = Field(pattern=TIME_PATTERN)
    room: str | None = None
    notes: str | None = None
    status: LessonStatus = LessonStatus.SCHEDULED


class LessonUpdate(CamelModel):
    class_id: str | None = Field(default=None, min_length=1)
    title: str | None = Field(default=None, min_length=1)
    book_day: int | None = Field(default=None, ge=1)
    date: CivilDate | None = None
    start_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    end_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    room: str | None = None
    notes: str | None = None
    status: LessonStatus | None = None


class ClassCreate(CamelModel):
    name: str = Field(min_length=1)
    teacher_id: str = Field(min_length=1)
    book_id: str | None = None
    unit_id: str | None = None
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    start_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    end_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    room: str | None = None
    max_students: int = Field(default=15, ge=1)
    start_date: CivilDate | None = None
    end_date: CivilDate | None = None
    current_day: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _end_after_start(self) -> ClassCreate:
        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class ClassUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1)
    teacher_id: str | None = Field(default=None, min_length=1)
    book_id: str | None = None
    unit_id: str | None = None
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    start_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    end_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    room: str | None = None
    max_students: int | None = Field(default=None, ge=1)
    current_students: int | None = Field(default=None, ge=0)
    start_date: CivilDate | None = None
    end_date: CivilDate | None = None
    current_day: int | None = Field(default=None, ge=1)
    is_active: bool | None = None

    @model_validator(mode="after")
    def _end_after_start(self) -> ClassUpdate:
        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class ConflictCheckRequest(CamelModel):
    teacher_id: str = Field(min_length=1)
    date: CivilDate
    start_time: str = Field(pattern=TIME_PATTERN)
    end_time: str = Field(pattern=TIME_PATTERN)
    exclude_lesson_id: str | None = None


class ConflictCheckResult(CamelModel):
    has_conflict: bool
    conflicting_lesson: Lesson | None = None


class RecurringLessonsRequest(CamelModel):
    """Either explicit occurrence dates or a window expanded from the weekly slot."""

    occurrences: list[CivilDate] | None = None
    start_date: CivilDate | None = None
    end_date: CivilDate | None = None


class BookingResult(CamelModel):
    date: CivilDate
    status: BookingOutcome
    lesson: Lesson | None = None
    message: str | None = None
    conflicting_lesson: Lesson | None = None


class ScheduleSlot(CamelModel):
    day_of_week: int
    start_time: str
    end_time: str
    class_id: str | None = None
    class_name: str | None = None
    room: str | None = None
    current_students: int | None = None
    max_students: int | None = None


class TeacherSchedule(CamelModel):
    teacher_id: str
    occupied_slots: list[ScheduleSlot] = Field(default_factory=list)
    available_slots: list[ScheduleSlot] = Field(default_factory=list)
