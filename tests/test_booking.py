"""Tests for the booking orchestrator — create, edit, batch and concurrency."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import date

import pytest

from schedule_service.domain.bus import EventBus
from schedule_service.domain.errors import (
    ConflictError,
    InvalidIntervalError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from schedule_service.domain.handlers import HandlerRegistry
from schedule_service.domain.models import (
    BookingOutcome,
    ClassUpdate,
    ConflictCheckRequest,
    LessonCreate,
    LessonStatus,
    LessonUpdate,
    RecurringLessonsRequest,
    SchoolClass,
    TimelineEntryType,
)
from schedule_service.repos.memory import ClassRepository, LessonRepository, TimelineRepository
from schedule_service.services.booking import BookingService
from schedule_service.services.locks import KeyedLocks

_DAY = date(2024, 3, 10)


@pytest.fixture()
def env():
    """Fresh bus + repos + service for each test."""
    bus = EventBus()
    class_repo = ClassRepository()
    lesson_repo = LessonRepository(class_repo)
    timeline_repo = TimelineRepository()
    HandlerRegistry(bus=bus, timeline_repo=timeline_repo)

    class Env:
        pass

    e = Env()
    e.bus = bus
    e.class_repo = class_repo
    e.lesson_repo = lesson_repo
    e.timeline_repo = timeline_repo
    e.service = BookingService(lesson_repo, class_repo, bus=bus)
    e.class_a = class_repo.add(
        SchoolClass(name="English 1", teacher_id="teacher-t", day_of_week=0, start_time="09:00", end_time="10:00")
    )
    e.class_b = class_repo.add(SchoolClass(name="English 2", teacher_id="teacher-t"))
    e.class_other = class_repo.add(SchoolClass(name="Spanish", teacher_id="teacher-u"))
    return e


def _create(class_id: str, start: str, end: str, on: date = _DAY, **overrides) -> LessonCreate:
    return LessonCreate(
        class_id=class_id, title="Lesson", book_day=1, date=on, start_time=start, end_time=end, **overrides
    )


# ---------------------------------------------------------------------------
# create_lesson
# ---------------------------------------------------------------------------


def test_scenario_overlap_adjacent_and_self_edit(env):
    a = env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))

    with pytest.raises(ConflictError) as exc_info:
        env.service.create_lesson(_create(env.class_b.id, "09:30", "10:30"))
    assert exc_info.value.conflicting_lesson.id == a.id

    c = env.service.create_lesson(_create(env.class_b.id, "10:00", "11:00"))
    assert c.start_time == "10:00"

    edited = env.service.update_lesson(a.id, LessonUpdate(start_time="09:00", end_time="10:00"))
    assert edited.id == a.id


def test_conflict_does_not_write(env):
    env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    with pytest.raises(ConflictError):
        env.service.create_lesson(_create(env.class_b.id, "09:15", "09:45"))
    assert len(env.lesson_repo.list_all()) == 1


def test_other_teacher_is_not_a_conflict(env):
    env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    env.service.create_lesson(_create(env.class_other.id, "09:00", "10:00"))
    assert len(env.lesson_repo.list_all()) == 2


def test_cancelled_lesson_frees_the_slot(env):
    a = env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    env.service.cancel_lesson(a.id)
    b = env.service.create_lesson(_create(env.class_b.id, "09:00", "10:00"))
    assert b.status == LessonStatus.SCHEDULED


def test_inverted_interval_is_a_validation_error(env):
    with pytest.raises(InvalidIntervalError):
        env.service.create_lesson(_create(env.class_a.id, "10:00", "09:00"))


def test_unknown_class(env):
    with pytest.raises(NotFoundError):
        env.service.create_lesson(_create("no-such-class", "09:00", "10:00"))


# ---------------------------------------------------------------------------
# update_lesson
# ---------------------------------------------------------------------------


def test_identical_edit_never_conflicts(env):
    a = env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    same = env.service.update_lesson(a.id, LessonUpdate(**a.model_dump(include=set(LessonUpdate.model_fields))))
    assert (same.date, same.start_time, same.end_time) == (a.date, a.start_time, a.end_time)


def test_room_only_edit_skips_the_check(env, monkeypatch):
    a = env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    calls = []
    original = env.lesson_repo.find_by_teacher_and_date

    def spy(teacher_id, on):
        calls.append((teacher_id, on))
        return original(teacher_id, on)

    monkeypatch.setattr(env.lesson_repo, "find_by_teacher_and_date", spy)
    updated = env.service.update_lesson(a.id, LessonUpdate(room="Lab 1", notes="bring books"))

    assert updated.room == "Lab 1"
    assert calls == []
    entries = env.timeline_repo.list_for_lesson(a.id)
    assert entries[-1].type == TimelineEntryType.UPDATED
    assert set(entries[-1].payload["fields"]) == {"room", "notes"}


def test_moving_onto_another_lesson_conflicts(env):
    env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    b = env.service.create_lesson(_create(env.class_b.id, "11:00", "12:00"))

    with pytest.raises(ConflictError):
        env.service.update_lesson(b.id, LessonUpdate(start_time="09:30", end_time="10:30"))
    assert env.lesson_repo.get(b.id).start_time == "11:00"


def test_changing_class_rechecks_the_new_teacher(env):
    env.service.create_lesson(_create(env.class_other.id, "09:00", "10:00"))
    a = env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))

    with pytest.raises(ConflictError):
        env.service.update_lesson(a.id, LessonUpdate(class_id=env.class_other.id))


def test_reactivating_a_cancelled_lesson_is_checked(env):
    a = env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    env.service.cancel_lesson(a.id)
    env.service.create_lesson(_create(env.class_b.id, "09:00", "10:00"))

    with pytest.raises(ConflictError):
        env.service.update_lesson(a.id, LessonUpdate(status=LessonStatus.SCHEDULED))


def test_partial_update_validates_merged_interval(env):
    a = env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    with pytest.raises(ValidationError):
        env.service.update_lesson(a.id, LessonUpdate(start_time="10:30"))


def test_required_field_cannot_be_cleared(env):
    a = env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    with pytest.raises(ValidationError) as exc_info:
        env.service.update_lesson(a.id, LessonUpdate(title=None))
    assert exc_info.value.field == "title"


def test_update_unknown_lesson(env):
    with pytest.raises(NotFoundError):
        env.service.update_lesson("missing", LessonUpdate(room="x"))


def test_reschedule_is_recorded(env):
    a = env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    env.service.update_lesson(a.id, LessonUpdate(start_time="13:00", end_time="14:00"))
    types = [e.type for e in env.timeline_repo.list_for_lesson(a.id)]
    assert types == [TimelineEntryType.SCHEDULED, TimelineEntryType.RESCHEDULED]


def test_delete_lesson(env):
    a = env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    env.service.delete_lesson(a.id)
    assert env.lesson_repo.get(a.id) is None
    with pytest.raises(NotFoundError):
        env.service.delete_lesson(a.id)


# ---------------------------------------------------------------------------
# check_conflicts preview
# ---------------------------------------------------------------------------


def test_preview_matches_write_path_and_has_no_side_effects(env):
    a = env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    request = ConflictCheckRequest(teacher_id="teacher-t", date=_DAY, start_time="09:30", end_time="10:30")

    first = env.service.check_conflicts(request)
    second = env.service.check_conflicts(request)

    assert first == second
    assert first.has_conflict is True
    assert first.conflicting_lesson.id == a.id
    assert len(env.lesson_repo.list_all()) == 1

    with pytest.raises(ConflictError):
        env.service.create_lesson(_create(env.class_b.id, "09:30", "10:30"))


def test_preview_excludes_the_edited_lesson(env):
    a = env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    request = ConflictCheckRequest(
        teacher_id="teacher-t", date=_DAY, start_time="09:00", end_time="10:00", exclude_lesson_id=a.id
    )
    assert env.service.check_conflicts(request).has_conflict is False


# ---------------------------------------------------------------------------
# create_recurring_from_class
# ---------------------------------------------------------------------------


def test_batch_reports_conflicts_within_the_batch(env):
    occurrences = [date(2024, 3, 3), date(2024, 3, 10), date(2024, 3, 10), date(2024, 3, 17)]
    results = env.service.create_recurring_from_class(env.class_a, occurrences)

    assert [r.status for r in results] == [
        BookingOutcome.CREATED,
        BookingOutcome.CREATED,
        BookingOutcome.CONFLICT,
        BookingOutcome.CREATED,
    ]
    assert results[2].conflicting_lesson.id == results[1].lesson.id
    assert [r.lesson.book_day for r in results if r.lesson] == [1, 2, 3]
    assert results[0].lesson.title == "English 1 - Day 1"
    assert results[0].lesson.start_time == "09:00"


def test_batch_continues_after_existing_conflict(env):
    blocker = env.service.create_lesson(_create(env.class_b.id, "09:30", "10:30", on=date(2024, 3, 3)))
    results = env.service.create_recurring_from_class(env.class_a, [date(2024, 3, 3), date(2024, 3, 10)])

    assert results[0].status == BookingOutcome.CONFLICT
    assert results[0].conflicting_lesson.id == blocker.id
    assert results[1].status == BookingOutcome.CREATED


def test_batch_needs_a_time_template(env):
    with pytest.raises(ValidationError):
        env.service.create_recurring_from_class(env.class_b, [_DAY])


def test_schedule_class_expands_weekly_window(env):
    results = env.service.schedule_class(
        env.class_a.id,
        RecurringLessonsRequest(start_date=date(2024, 3, 1), end_date=date(2024, 3, 20)),
    )
    assert [r.date for r in results] == [date(2024, 3, 3), date(2024, 3, 10), date(2024, 3, 17)]
    assert all(r.status == BookingOutcome.CREATED for r in results)


# ---------------------------------------------------------------------------
# Failures and concurrency
# ---------------------------------------------------------------------------


class _BrokenStore(LessonRepository):
    def find_by_teacher_and_date(self, teacher_id, on):
        raise RuntimeError("connection reset")


def test_storage_failures_are_wrapped(env):
    service = BookingService(_BrokenStore(env.class_repo), env.class_repo)
    with pytest.raises(StorageError):
        service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))


class _SlowStore(LessonRepository):
    """Widens the window between the read and the write."""

    def find_by_teacher_and_date(self, teacher_id, on):
        found = super().find_by_teacher_and_date(teacher_id, on)
        time.sleep(0.05)
        return found


class _RacingStore(LessonRepository):
    """Lets two writers both read an empty day before either writes."""

    def __init__(self, class_repo):
        super().__init__(class_repo)
        self.barrier = threading.Barrier(2)

    def find_by_teacher_and_date(self, teacher_id, on):
        found = super().find_by_teacher_and_date(teacher_id, on)
        self.barrier.wait(timeout=5)
        return found


class _NoLocks(KeyedLocks):
    @contextmanager
    def hold(self, *keys):
        yield


def _race(service, env) -> list[str]:
    requests = [
        _create(env.class_a.id, "09:00", "10:00"),
        _create(env.class_b.id, "09:30", "10:30"),
    ]

    def attempt(request):
        try:
            service.create_lesson(request)
        except ConflictError:
            return "conflict"
        return "created"

    with ThreadPoolExecutor(max_workers=2) as pool:
        return sorted(pool.map(attempt, requests))


def test_concurrent_bookings_for_same_teacher_are_serialized(env):
    store = _SlowStore(env.class_repo)
    service = BookingService(store, env.class_repo)

    assert _race(service, env) == ["conflict", "created"]
    assert len(store.find_by_teacher_and_date("teacher-t", _DAY)) == 1


def test_storage_constraint_catches_writers_that_slip_past_the_check(env):
    store = _RacingStore(env.class_repo)
    service = BookingService(store, env.class_repo, locks=_NoLocks())

    assert _race(service, env) == ["conflict", "created"]
    assert len(store.list_all()) == 1


class _FlakyStore(LessonRepository):
    """Fails the second insert it is asked to make."""

    def __init__(self, class_repo):
        super().__init__(class_repo)
        self.creates = 0

    def create(self, lesson):
        self.creates += 1
        if self.creates == 2:
            raise OSError("disk full")
        return super().create(lesson)


def test_batch_continues_after_storage_failure(env):
    store = _FlakyStore(env.class_repo)
    service = BookingService(store, env.class_repo)
    occurrences = [date(2024, 3, 3), date(2024, 3, 10), date(2024, 3, 17)]

    results = service.create_recurring_from_class(env.class_a, occurrences)

    assert [r.status for r in results] == [
        BookingOutcome.CREATED,
        BookingOutcome.ERROR,
        BookingOutcome.CREATED,
    ]
    assert "disk full" in results[1].message
    assert results[1].lesson is None
    assert sorted(l.date for l in store.list_all()) == [date(2024, 3, 3), date(2024, 3, 17)]
    assert [r.lesson.book_day for r in results if r.lesson] == [1, 2]


def test_locks_are_released_after_bookings(env):
    for day in range(1, 29):
        env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00", on=date(2024, 2, day)))
    moved = env.service.create_lesson(_create(env.class_b.id, "11:00", "12:00"))
    env.service.update_lesson(moved.id, LessonUpdate(date=date(2024, 3, 11)))
    with pytest.raises(ConflictError):
        env.service.create_lesson(_create(env.class_b.id, "09:30", "10:30", on=date(2024, 2, 1)))

    assert env.service.locks._locks == {}


def test_locks_are_released_after_concurrent_bookings(env):
    service = BookingService(_SlowStore(env.class_repo), env.class_repo)

    assert _race(service, env) == ["conflict", "created"]
    assert service.locks._locks == {}


# ---------------------------------------------------------------------------
# update_class / delete_class
# ---------------------------------------------------------------------------


def test_class_teacher_change_onto_busy_teacher_conflicts(env):
    moving = env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    blocker = env.service.create_lesson(_create(env.class_other.id, "09:30", "10:30"))

    with pytest.raises(ConflictError) as excinfo:
        env.service.update_class(env.class_a.id, ClassUpdate(teacher_id="teacher-u"))

    assert excinfo.value.conflicting_lesson.id == blocker.id
    assert env.class_repo.get(env.class_a.id).teacher_id == "teacher-t"
    assert [l.id for l in env.lesson_repo.find_by_teacher_and_date("teacher-t", _DAY)] == [moving.id]
    rejected = env.timeline_repo.list_for_lesson(moving.id)[-1]
    assert rejected.type == TimelineEntryType.REJECTED


def test_class_teacher_change_moves_its_lessons(env):
    moving = env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    cancelled = env.service.create_lesson(_create(env.class_a.id, "09:30", "10:30", on=date(2024, 3, 17)))
    env.service.cancel_lesson(cancelled.id)
    env.service.create_lesson(_create(env.class_other.id, "09:00", "10:00", on=date(2024, 3, 17)))
    env.service.create_lesson(_create(env.class_other.id, "10:00", "11:00"))

    updated = env.service.update_class(env.class_a.id, ClassUpdate(teacher_id="teacher-u", room="Room 9"))

    assert updated.teacher_id == "teacher-u"
    assert updated.room == "Room 9"
    assert moving.id in [l.id for l in env.lesson_repo.find_by_teacher_and_date("teacher-u", _DAY)]
    assert env.lesson_repo.find_by_teacher_and_date("teacher-t", _DAY) == []
    assert env.service.locks._locks == {}


def test_class_edit_validates_merged_slot(env):
    with pytest.raises(InvalidIntervalError):
        env.service.update_class(env.class_a.id, ClassUpdate(start_time="10:00"))
    with pytest.raises(ValidationError):
        env.service.update_class(env.class_a.id, ClassUpdate(teacher_id=None))
    with pytest.raises(NotFoundError):
        env.service.update_class("no-such-class", ClassUpdate(name="x"))


def test_delete_class_requires_no_lessons(env):
    lesson = env.service.create_lesson(_create(env.class_a.id, "09:00", "10:00"))
    with pytest.raises(ValidationError):
        env.service.delete_class(env.class_a.id)

    env.service.delete_lesson(lesson.id)
    env.service.delete_class(env.class_a.id)
    assert env.class_repo.get(env.class_a.id) is None
    with pytest.raises(NotFoundError):
        env.service.delete_class(env.class_a.id)
