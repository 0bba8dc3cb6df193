"""In-memory repositories for classes, lessons and the booking timeline."""

from __future__ import annotations

import threading
from datetime import date, datetime, timedelta, timezone
from typing import Any, Protocol

from schedule_service.domain.errors import NotFoundError, OverlapConstraintError
from schedule_service.domain.models import Lesson, LessonStatus, SchoolClass, TimelineEntry
from schedule_service.services.conflicts import intervals_overlap, to_minutes


class LessonStore(Protocol):
    """Storage contract the booking orchestrator depends on.

    Implementations carry no business rules beyond the exclusion constraint on
    (teacher, date, time range) and report persistence failures as
    ``StorageError``.
    """

    def get(self, lesson_id: str) -> Lesson | None: ...

    def list_for_class(self, class_id: str) -> list[Lesson]: ...

    def find_by_teacher_and_date(self, teacher_id: str, on: date) -> list[Lesson]: ...

    def create(self, lesson: Lesson) -> Lesson: ...

    def update(self, lesson_id: str, changes: dict[str, Any]) -> Lesson: ...

    def delete(self, lesson_id: str) -> None: ...


class ClassRepository:
    """Dict-backed store for SchoolClass instances, keyed by id."""

    def __init__(self) -> None:
        self._store: dict[str, SchoolClass] = {}
        self._lock = threading.Lock()

    def add(self, school_class: SchoolClass) -> SchoolClass:
        with self._lock:
            self._store[school_class.id] = school_class.model_copy(deep=True)
        return school_class

    def get(self, class_id: str) -> SchoolClass | None:
        with self._lock:
            found = self._store.get(class_id)
            return found.model_copy(deep=True) if found else None

    def list_all(self) -> list[SchoolClass]:
        with self._lock:
            return [c.model_copy(deep=True) for c in self._store.values() if c.is_active]

    def list_for_teacher(self, teacher_id: str, include_inactive: bool = False) -> list[SchoolClass]:
        with self._lock:
            return [
                c.model_copy(deep=True)
                for c in self._store.values()
                if c.teacher_id == teacher_id and (include_inactive or c.is_active)
            ]

    def update(self, class_id: str, changes: dict[str, Any]) -> SchoolClass:
        with self._lock:
            current = self._store.get(class_id)
            if current is None:
                raise NotFoundError("Class", class_id)
            updated = current.model_copy(update=changes, deep=True)
            self._store[class_id] = updated
            return updated.model_copy(deep=True)

    def delete(self, class_id: str) -> None:
        with self._lock:
            if self._store.pop(class_id, None) is None:
                raise NotFoundError("Class", class_id)


class LessonRepository:
    """Dict-backed lesson store.

    The teacher of a lesson is never stored on it; it is resolved through
    ``class_repo`` every time a query or the exclusion constraint needs it.
    Returned lessons are copies, so the only way to change a stored lesson is
    ``create``/``update``.
    """

    def __init__(self, class_repo: ClassRepository) -> None:
        self._class_repo = class_repo
        self._store: dict[str, Lesson] = {}
        self._lock = threading.RLock()

    # -- reads --------------------------------------------------------------

    def get(self, lesson_id: str) -> Lesson | None:
        with self._lock:
            found = self._store.get(lesson_id)
            return found.model_copy(deep=True) if found else None

    def list_all(self) -> list[Lesson]:
        """All lessons, newest date first."""
        with self._lock:
            lessons = [l.model_copy(deep=True) for l in self._store.values()]
        return sorted(lessons, key=lambda l: (l.date, to_minutes(l.start_time)), reverse=True)

    def list_for_class(self, class_id: str) -> list[Lesson]:
        with self._lock:
            lessons = [l.model_copy(deep=True) for l in self._store.values() if l.class_id == class_id]
        return sorted(lessons, key=_chronological)

    def list_for_teacher(self, teacher_id: str) -> list[Lesson]:
        class_ids = self._teacher_class_ids(teacher_id)
        with self._lock:
            lessons = [l.model_copy(deep=True) for l in self._store.values() if l.class_id in class_ids]
        return sorted(lessons, key=_chronological)

    def list_for_date(self, on: date) -> list[Lesson]:
        with self._lock:
            lessons = [l.model_copy(deep=True) for l in self._store.values() if l.date == on]
        return sorted(lessons, key=_chronological)

    def find_by_teacher_and_date(self, teacher_id: str, on: date) -> list[Lesson]:
        """Non-cancelled lessons of ``teacher_id`` on ``on``, earliest start first."""
        class_ids = self._teacher_class_ids(teacher_id)
        with self._lock:
            return self._active_for(class_ids, on)

    # -- writes -------------------------------------------------------------

    def create(self, lesson: Lesson) -> Lesson:
        with self._lock:
            stored = lesson.model_copy(deep=True)
            self._enforce_exclusion(stored)
            self._store[stored.id] = stored
            return stored.model_copy(deep=True)

    def update(self, lesson_id: str, changes: dict[str, Any]) -> Lesson:
        with self._lock:
            current = self._store.get(lesson_id)
            if current is None:
                raise NotFoundError("Lesson", lesson_id)
            updated = current.model_copy(
                update={**changes, "updated_at": datetime.now(timezone.utc)}, deep=True
            )
            self._enforce_exclusion(updated)
            self._store[lesson_id] = updated
            return updated.model_copy(deep=True)

    def delete(self, lesson_id: str) -> None:
        """Hard delete. Unknown ids raise ``NotFoundError``."""
        with self._lock:
            if self._store.pop(lesson_id, None) is None:
                raise NotFoundError("Lesson", lesson_id)

    # -- internals ----------------------------------------------------------

    def _teacher_class_ids(self, teacher_id: str) -> set[str]:
        return {c.id for c in self._class_repo.list_for_teacher(teacher_id, include_inactive=True)}

    def _active_for(self, class_ids: set[str], on: date) -> list[Lesson]:
        lessons = [
            l.model_copy(deep=True)
            for l in self._store.values()
            if l.class_id in class_ids and l.date == on and l.status != LessonStatus.CANCELLED
        ]
        return sorted(lessons, key=_chronological)

    def _enforce_exclusion(self, lesson: Lesson) -> None:
        """Refuse writes that would double-book a teacher; caller holds the lock."""
        if lesson.status == LessonStatus.CANCELLED:
            return
        owner = self._class_repo.get(lesson.class_id)
        if owner is None:
            return
        start, end = to_minutes(lesson.start_time), to_minutes(lesson.end_time)
        for other in self._active_for(self._teacher_class_ids(owner.teacher_id), lesson.date):
            if other.id == lesson.id:
                continue
            if intervals_overlap(start, end, to_minutes(other.start_time), to_minutes(other.end_time)):
                raise OverlapConstraintError(other)


class TimelineRepository:
    """List-backed store for TimelineEntry instances."""

    def __init__(self) -> None:
        self._entries: list[TimelineEntry] = []
        self._lock = threading.Lock()

    def add(self, entry: TimelineEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def list_for_lesson(self, lesson_id: str) -> list[TimelineEntry]:
        with self._lock:
            entries = [e for e in self._entries if e.lesson_id == lesson_id]
        return sorted(entries, key=lambda e: e.timestamp)

    def list_all(self) -> list[TimelineEntry]:
        with self._lock:
            return sorted(self._entries, key=lambda e: e.timestamp)


def _chronological(lesson: Lesson) -> tuple[date, int]:
    return lesson.date, to_minutes(lesson.start_time)


# ---------------------------------------------------------------------------
# Seed data – two teachers with a weekly class each and a few lessons
# ---------------------------------------------------------------------------


def seed_demo_data(class_repo: ClassRepository, lesson_repo: LessonRepository) -> None:
    today = datetime.now(timezone.utc).date()

    english = class_repo.add(
        SchoolClass(
            name="English Book 1 - Evening",
            teacher_id="teacher-ana",
            day_of_week=(today.isoweekday() % 7),
            start_time="19:00",
            end_time="20:30",
            room="Room 2",
            start_date=today,
            end_date=today + timedelta(weeks=12),
        )
    )
    spanish = class_repo.add(
        SchoolClass(
            name="Spanish Basics",
            teacher_id="teacher-bruno",
            day_of_week=((today + timedelta(days=1)).isoweekday() % 7),
            start_time="09:00",
            end_time="10:00",
            room="Room 5",
        )
    )

    lesson_repo.create(
        Lesson(
            class_id=english.id,
            title=f"{english.name} - Day 1",
            date=today,
            start_time="19:00",
            end_time="20:30",
            room=english.room,
        )
    )
    lesson_repo.create(
        Lesson(
            class_id=spanish.id,
            title=f"{spanish.name} - Day 1",
            date=today + timedelta(days=1),
            start_time="09:00",
            end_time="10:00",
            room=spanish.room,
        )
    )
