"""Booking orchestrator: the only component that writes lessons.

Every write follows the same sequence: validate the input, resolve the
teacher through the lesson's class, load that teacher's lessons for the date,
run the conflict checker, then commit or reject. The check and the write run
under a per-(teacher, date) lock, and the repository's exclusion constraint
backs it up; a constraint violation is reported as a ``ConflictError`` like
any other double-booking. Writes are never retried here.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, TypeVar

from schedule_service.domain.bus import EventBus
from schedule_service.domain.errors import (
    ConflictError,
    NotFoundError,
    OverlapConstraintError,
    SchedulingError,
    StorageError,
    ValidationError,
)
from schedule_service.domain.events import (
    BookingRejected,
    LessonCancelled,
    LessonRescheduled,
    LessonScheduled,
    LessonUpdated,
)
from schedule_service.domain.models import (
    BookingOutcome,
    BookingResult,
    ClassUpdate,
    ConflictCheckRequest,
    ConflictCheckResult,
    Lesson,
    LessonCreate,
    LessonStatus,
    LessonUpdate,
    RecurringLessonsRequest,
    SchoolClass,
)
from schedule_service.repos.memory import ClassRepository, LessonStore
from schedule_service.services.conflicts import Candidate, has_conflict, interval_minutes
from schedule_service.services.locks import KeyedLocks
from schedule_service.services.recurrence import weekly_occurrences

logger = logging.getLogger(__name__)

T = TypeVar("T")

_REQUIRED_FIELDS = {
    "class_id": "classId",
    "title": "title",
    "book_day": "bookDay",
    "date": "date",
    "start_time": "startTime",
    "end_time": "endTime",
    "status": "status",
}


class BookingService:
    def __init__(
        self,
        lesson_repo: LessonStore,
        class_repo: ClassRepository,
        bus: EventBus | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.lesson_repo = lesson_repo
        self.class_repo = class_repo
        self.bus = bus or EventBus()
        self.locks = locks or KeyedLocks()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_lesson(self, data: LessonCreate) -> Lesson:
        """Book a single lesson or raise Validation/NotFound/ConflictError."""
        interval_minutes(data.start_time, data.end_time)
        school_class = self._resolve_class(data.class_id)
        lesson = Lesson(**data.model_dump())
        return self._book(lesson, school_class.teacher_id)

    def update_lesson(self, lesson_id: str, data: LessonUpdate) -> Lesson:
        """Apply a partial update.

        The conflict check only re-runs when the date, the times or the
        resolved teacher change, or when a cancelled lesson comes back; the
        lesson being edited is always excluded from its own comparison set.
        """
        current = self._storage(self.lesson_repo.get, lesson_id)
        if current is None:
            raise NotFoundError("Lesson", lesson_id)

        changes = data.model_dump(exclude_unset=True)
        merged = current.model_copy(update=changes)
        for field, alias in _REQUIRED_FIELDS.items():
            if getattr(merged, field) is None:
                raise ValidationError(f"{alias} is required", field=alias)
        interval_minutes(merged.start_time, merged.end_time)

        new_class = self._resolve_class(merged.class_id)
        old_class = self._storage(self.class_repo.get, current.class_id)
        old_teacher = old_class.teacher_id if old_class else None
        new_teacher = new_class.teacher_id

        previous = _slot(current, old_teacher)
        now = _slot(merged, new_teacher)
        moved = previous != now
        reactivated = current.status == LessonStatus.CANCELLED and merged.status != LessonStatus.CANCELLED
        needs_check = merged.status != LessonStatus.CANCELLED and (moved or reactivated)

        keys = {(new_teacher, merged.date)}
        if old_teacher is not None:
            keys.add((old_teacher, current.date))

        with self.locks.hold(*keys):
            if needs_check:
                self._ensure_free(merged, new_teacher, exclude_lesson_id=lesson_id)
            else:
                logger.debug("lesson %s keeps its slot, skipping conflict check", lesson_id)
            try:
                stored = self._storage(self.lesson_repo.update, lesson_id, changes)
            except OverlapConstraintError as exc:
                self._reject(merged, new_teacher, exc.conflicting_lesson, lesson_id=lesson_id)
                raise ConflictError(exc.conflicting_lesson) from exc

        if current.status != LessonStatus.CANCELLED and stored.status == LessonStatus.CANCELLED:
            self.bus.publish(LessonCancelled(lesson_id=stored.id, teacher_id=new_teacher))
        elif moved:
            self.bus.publish(
                LessonRescheduled(
                    lesson_id=stored.id, teacher_id=new_teacher, previous=previous, current=now
                )
            )
        else:
            fields = list(data.model_dump(by_alias=True, exclude_unset=True))
            self.bus.publish(LessonUpdated(lesson_id=stored.id, fields=fields))
        return stored

    def cancel_lesson(self, lesson_id: str) -> Lesson:
        """Cancellation is a status transition; the slot becomes free again."""
        return self.update_lesson(lesson_id, LessonUpdate(status=LessonStatus.CANCELLED))

    def delete_lesson(self, lesson_id: str) -> None:
        """Administrative hard delete; unknown ids raise ``NotFoundError``."""
        self._storage(self.lesson_repo.delete, lesson_id)
        logger.info("lesson %s deleted", lesson_id)

    def create_recurring_from_class(
        self, class_def: SchoolClass, occurrences: list[date]
    ) -> list[BookingResult]:
        """Book one lesson per occurrence date from the class's weekly template.

        Occurrences are processed in order, each against the state left by the
        previous ones. A rejected occurrence does not stop the batch; the
        result list says which dates were booked and why others were not.
        """
        if not class_def.start_time or not class_def.end_time:
            raise ValidationError("Class has no time slot to generate lessons from")
        interval_minutes(class_def.start_time, class_def.end_time)

        book_day = class_def.current_day
        results: list[BookingResult] = []
        for on in occurrences:
            lesson = Lesson(
                class_id=class_def.id,
                title=f"{class_def.name} - Day {book_day}",
                book_day=book_day,
                date=on,
                start_time=class_def.start_time,
                end_time=class_def.end_time,
                room=class_def.room,
            )
            try:
                stored = self._book(lesson, class_def.teacher_id)
            except ConflictError as exc:
                results.append(
                    BookingResult(
                        date=on,
                        status=BookingOutcome.CONFLICT,
                        message=exc.message,
                        conflicting_lesson=exc.conflicting_lesson,
                    )
                )
                continue
            except ValidationError as exc:
                results.append(BookingResult(date=on, status=BookingOutcome.INVALID, message=exc.message))
                continue
            except StorageError as exc:
                results.append(BookingResult(date=on, status=BookingOutcome.ERROR, message=exc.message))
                continue
            results.append(BookingResult(date=on, status=BookingOutcome.CREATED, lesson=stored))
            book_day += 1

        created = sum(1 for r in results if r.status == BookingOutcome.CREATED)
        logger.info(
            "generated %d/%d lessons for class %s", created, len(results), class_def.id
        )
        return results

    def schedule_class(self, class_id: str, request: RecurringLessonsRequest) -> list[BookingResult]:
        """Resolve a class and book either the given dates or its weekly slot in a window."""
        school_class = self._resolve_class(class_id)
        if request.occurrences is not None:
            occurrences = sorted(request.occurrences)
        else:
            occurrences = weekly_occurrences(school_class, request.start_date, request.end_date)
        return self.create_recurring_from_class(school_class, occurrences)

    def update_class(self, class_id: str, data: ClassUpdate) -> SchoolClass:
        """Apply a partial class edit.

        Handing the class to another teacher hands over its scheduled lessons
        too, so each non-cancelled lesson is checked against the new teacher's
        day first. One clash rejects the whole edit.
        """
        current = self._resolve_class(class_id)
        changes = data.model_dump(exclude_unset=True)
        for field, alias in (("name", "name"), ("teacher_id", "teacherId")):
            if field in changes and changes[field] is None:
                raise ValidationError(f"{alias} is required", field=alias)
        merged = current.model_copy(update=changes)
        if merged.start_time and merged.end_time:
            interval_minutes(merged.start_time, merged.end_time)

        if merged.teacher_id == current.teacher_id:
            stored = self._storage(self.class_repo.update, class_id, changes)
            logger.info("class %s updated", class_id)
            return stored

        lessons = [
            lesson
            for lesson in self._storage(self.lesson_repo.list_for_class, class_id)
            if lesson.status != LessonStatus.CANCELLED
        ]
        keys = {(teacher, lesson.date) for lesson in lessons for teacher in (current.teacher_id, merged.teacher_id)}
        with self.locks.hold(*keys):
            for lesson in lessons:
                candidate = Candidate(
                    teacher_id=merged.teacher_id,
                    date=lesson.date,
                    start_time=lesson.start_time,
                    end_time=lesson.end_time,
                )
                existing = self._storage(
                    self.lesson_repo.find_by_teacher_and_date, merged.teacher_id, lesson.date
                )
                result = has_conflict(candidate, existing)
                if result.has_conflict:
                    self._reject(lesson, merged.teacher_id, result.conflicting_lesson, lesson_id=lesson.id)
                    blocker = result.conflicting_lesson
                    raise ConflictError(
                        blocker,
                        message=(
                            f"Lesson {lesson.title!r} on {lesson.date.isoformat()} conflicts with "
                            f"{blocker.title!r} ({blocker.start_time}-{blocker.end_time})"
                        ),
                    )
            stored = self._storage(self.class_repo.update, class_id, changes)

        logger.info(
            "class %s moved from %s to %s with %d lessons",
            class_id,
            current.teacher_id,
            merged.teacher_id,
            len(lessons),
        )
        return stored

    def delete_class(self, class_id: str) -> None:
        """Remove a class that has no lessons left; cancelled ones count."""
        self._resolve_class(class_id)
        if self._storage(self.lesson_repo.list_for_class, class_id):
            raise ValidationError("Class still has lessons; delete or move them first")
        self._storage(self.class_repo.delete, class_id)
        logger.info("class %s deleted", class_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def check_conflicts(self, request: ConflictCheckRequest) -> ConflictCheckResult:
        """Non-authoritative preview using the same query and checker as the writes."""
        candidate = Candidate(
            teacher_id=request.teacher_id,
            date=request.date,
            start_time=request.start_time,
            end_time=request.end_time,
            exclude_lesson_id=request.exclude_lesson_id,
        )
        existing = self._storage(self.lesson_repo.find_by_teacher_and_date, request.teacher_id, request.date)
        return has_conflict(candidate, existing)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _book(self, lesson: Lesson, teacher_id: str) -> Lesson:
        with self.locks.hold((teacher_id, lesson.date)):
            if lesson.status != LessonStatus.CANCELLED:
                self._ensure_free(lesson, teacher_id)
            try:
                stored = self._storage(self.lesson_repo.create, lesson)
            except OverlapConstraintError as exc:
                self._reject(lesson, teacher_id, exc.conflicting_lesson)
                raise ConflictError(exc.conflicting_lesson) from exc

        self.bus.publish(
            LessonScheduled(
                lesson_id=stored.id,
                teacher_id=teacher_id,
                date=stored.date,
                start_time=stored.start_time,
                end_time=stored.end_time,
            )
        )
        return stored

    def _ensure_free(self, lesson: Lesson, teacher_id: str, exclude_lesson_id: str | None = None) -> None:
        candidate = Candidate(
            teacher_id=teacher_id,
            date=lesson.date,
            start_time=lesson.start_time,
            end_time=lesson.end_time,
            exclude_lesson_id=exclude_lesson_id,
        )
        existing = self._storage(self.lesson_repo.find_by_teacher_and_date, teacher_id, lesson.date)
        result = has_conflict(candidate, existing)
        if result.has_conflict:
            self._reject(lesson, teacher_id, result.conflicting_lesson, lesson_id=exclude_lesson_id)
            raise ConflictError(result.conflicting_lesson)

    def _reject(
        self,
        lesson: Lesson,
        teacher_id: str,
        conflicting: Lesson | None,
        lesson_id: str | None = None,
    ) -> None:
        self.bus.publish(
            BookingRejected(
                lesson_id=lesson_id,
                teacher_id=teacher_id,
                date=lesson.date,
                start_time=lesson.start_time,
                end_time=lesson.end_time,
                conflicting_lesson_id=conflicting.id if conflicting else None,
            )
        )

    def _resolve_class(self, class_id: str) -> SchoolClass:
        school_class = self._storage(self.class_repo.get, class_id)
        if school_class is None:
            raise NotFoundError("Class", class_id)
        return school_class

    @staticmethod
    def _storage(operation: Callable[..., T], *args: Any) -> T:
        """Run a repository call, reporting unexpected failures as ``StorageError``."""
        try:
            return operation(*args)
        except SchedulingError:
            raise
        except Exception as exc:
            logger.exception("storage failure in %s", getattr(operation, "__name__", operation))
            raise StorageError(f"Storage failure: {exc}") from exc


def _slot(lesson: Lesson, teacher_id: str | None) -> dict:
    return {
        "teacherId": teacher_id,
        "date": lesson.date.isoformat(),
        "startTime": lesson.start_time,
        "endTime": lesson.end_time,
    }
