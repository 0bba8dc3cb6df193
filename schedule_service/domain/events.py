"""Domain events emitted by the booking orchestrator."""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel


class LessonScheduled(BaseModel):
    """Fired when a new Lesson is persisted."""

    lesson_id: str
    teacher_id: str
    date: date
    start_time: str
    end_time: str


class LessonRescheduled(BaseModel):
    """Fired when an update moved a lesson in time or to another teacher."""

    lesson_id: str
    teacher_id: str
    previous: dict
    current: dict


class LessonUpdated(BaseModel):
    """Fired for updates that leave the time slot untouched (room, notes, ...)."""

    lesson_id: str
    fields: list[str]


class LessonCancelled(BaseModel):
    lesson_id: str
    teacher_id: str


class BookingRejected(BaseModel):
    """Fired when a write was refused because of a double-booking."""

    lesson_id: str | None = None
    teacher_id: str
    date: date
    start_time: str
    end_time: str
    conflicting_lesson_id: str | None = None
