"""Error taxonomy for the scheduling core."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from schedule_service.domain.models import Lesson


class SchedulingError(Exception):
    """Base class for every error raised by the scheduling core."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(SchedulingError):
    """Malformed input: missing fields, bad time strings, inverted intervals."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field

    def to_errors(self) -> list[dict[str, Any]]:
        if self.field is None:
            return []
        return [{"field": self.field, "message": self.message}]


class InvalidIntervalError(ValidationError):
    """Raised by the conflict checker for zero-length, inverted or unparsable intervals."""


class NotFoundError(SchedulingError):
    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found")
        self.kind = kind
        self.identifier = identifier


class ConflictError(SchedulingError):
    """A real double-booking; carries the lesson that blocks the slot."""

    def __init__(self, conflicting_lesson: Lesson | None, message: str | None = None) -> None:
        if message is None:
            if conflicting_lesson is not None:
                message = (
                    f"Conflicts with lesson {conflicting_lesson.title!r} "
                    f"({conflicting_lesson.start_time}-{conflicting_lesson.end_time})"
                )
            else:
                message = "This time slot conflicts with an existing lesson"
        super().__init__(message)
        self.conflicting_lesson = conflicting_lesson


class StorageError(SchedulingError):
    """Underlying persistence failure."""


class OverlapConstraintError(StorageError):
    """Storage-level exclusion constraint on (teacher, date, time range) was violated."""

    def __init__(self, conflicting_lesson: Lesson) -> None:
        super().__init__("lesson overlaps an existing lesson for the same teacher")
        self.conflicting_lesson = conflicting_lesson
