"""FastAPI application — entry point for the lesson scheduling service."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from schedule_service.config import configure_logging, get_settings
from schedule_service.domain import errors
from schedule_service.domain.bus import EventBus
from schedule_service.domain.handlers import HandlerRegistry
from schedule_service.domain.models import (
    BookingResult,
    ClassCreate,
    ClassUpdate,
    ConflictCheckRequest,
    ConflictCheckResult,
    Lesson,
    LessonCreate,
    LessonUpdate,
    RecurringLessonsRequest,
    SchoolClass,
    TeacherSchedule,
    TimelineEntry,
)
from schedule_service.repos.memory import (
    ClassRepository,
    LessonRepository,
    TimelineRepository,
    seed_demo_data,
)
from schedule_service.services.availability import teacher_schedule
from schedule_service.services.booking import BookingService

settings = get_settings()
configure_logging(settings)
logger = logging.getLogger(__name__)

app = FastAPI(title="Lesson Scheduling Service")

# ── Singletons (created at import time for simplicity) ────────────────
event_bus = EventBus()
class_repo = ClassRepository()
lesson_repo = LessonRepository(class_repo)
timeline_repo = TimelineRepository()
booking_service = BookingService(lesson_repo, class_repo, bus=event_bus)

handler_registry = HandlerRegistry(bus=event_bus, timeline_repo=timeline_repo)

if settings.seed_demo:
    seed_demo_data(class_repo, lesson_repo)


def _lesson_json(lesson: Lesson | None) -> dict | None:
    return lesson.model_dump(mode="json", by_alias=True) if lesson else None


# ── Error rendering ───────────────────────────────────────────────────


@app.exception_handler(RequestValidationError)
async def _request_invalid(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"message": "Invalid request data", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(errors.ValidationError)
async def _invalid(request: Request, exc: errors.ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"message": exc.message, "errors": exc.to_errors()})


@app.exception_handler(errors.NotFoundError)
async def _not_found(request: Request, exc: errors.NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"message": exc.message})


@app.exception_handler(errors.ConflictError)
async def _conflict(request: Request, exc: errors.ConflictError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"message": exc.message, "conflictingLesson": _lesson_json(exc.conflicting_lesson)},
    )


@app.exception_handler(errors.StorageError)
async def _storage_failed(request: Request, exc: errors.StorageError) -> JSONResponse:
    logger.error("storage failure on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=500, content={"message": "Storage failure, please retry"})


# ── Lessons ───────────────────────────────────────────────────────────


@app.post("/lessons", response_model=Lesson, status_code=201)
def create_lesson(payload: LessonCreate) -> Lesson:
    """Book a lesson; 409 when the class's teacher is already busy."""
    return booking_service.create_lesson(payload)


@app.post("/lessons/check-conflicts", response_model=ConflictCheckResult)
def check_conflicts(payload: ConflictCheckRequest) -> ConflictCheckResult:
    """Read-only preview of the booking check, for interactive forms."""
    return booking_service.check_conflicts(payload)


@app.get("/lessons", response_model=list[Lesson])
def list_lessons() -> list[Lesson]:
    return lesson_repo.list_all()


@app.get("/lessons/today", response_model=list[Lesson])
def list_todays_lessons() -> list[Lesson]:
    return lesson_repo.list_for_date(settings.today())


@app.get("/lessons/class/{class_id}", response_model=list[Lesson])
def list_class_lessons(class_id: str) -> list[Lesson]:
    return lesson_repo.list_for_class(class_id)


@app.get("/lessons/teacher/{teacher_id}", response_model=list[Lesson])
def list_teacher_lessons(teacher_id: str) -> list[Lesson]:
    return lesson_repo.list_for_teacher(teacher_id)


@app.get("/lessons/{lesson_id}", response_model=Lesson)
def get_lesson(lesson_id: str) -> Lesson:
    lesson = lesson_repo.get(lesson_id)
    if lesson is None:
        raise errors.NotFoundError("Lesson", lesson_id)
    return lesson


@app.get("/lessons/{lesson_id}/timeline", response_model=list[TimelineEntry])
def get_lesson_timeline(lesson_id: str) -> list[TimelineEntry]:
    if lesson_repo.get(lesson_id) is None:
        raise errors.NotFoundError("Lesson", lesson_id)
    return timeline_repo.list_for_lesson(lesson_id)


@app.put("/lessons/{lesson_id}", response_model=Lesson)
def update_lesson(lesson_id: str, payload: LessonUpdate) -> Lesson:
    return booking_service.update_lesson(lesson_id, payload)


@app.post("/lessons/{lesson_id}/cancel", response_model=Lesson)
def cancel_lesson(lesson_id: str) -> Lesson:
    return booking_service.cancel_lesson(lesson_id)


@app.delete("/lessons/{lesson_id}", status_code=204, response_class=Response)
def delete_lesson(lesson_id: str) -> Response:
    booking_service.delete_lesson(lesson_id)
    return Response(status_code=204)


# ── Classes ───────────────────────────────────────────────────────────


@app.post("/classes", response_model=SchoolClass, status_code=201)
def create_class(payload: ClassCreate) -> SchoolClass:
    return class_repo.add(SchoolClass(**payload.model_dump()))


@app.get("/classes", response_model=list[SchoolClass])
def list_classes() -> list[SchoolClass]:
    return class_repo.list_all()


@app.get("/classes/teacher/{teacher_id}", response_model=list[SchoolClass])
def list_teacher_classes(teacher_id: str) -> list[SchoolClass]:
    return class_repo.list_for_teacher(teacher_id)


@app.get("/classes/{class_id}", response_model=SchoolClass)
def get_class(class_id: str) -> SchoolClass:
    school_class = class_repo.get(class_id)
    if school_class is None:
        raise errors.NotFoundError("Class", class_id)
    return school_class


@app.put("/classes/{class_id}", response_model=SchoolClass)
def update_class(class_id: str, payload: ClassUpdate) -> SchoolClass:
    """A teacher change is rejected with 409 if any scheduled lesson would clash."""
    return booking_service.update_class(class_id, payload)


@app.delete("/classes/{class_id}", status_code=204, response_class=Response)
def delete_class(class_id: str) -> Response:
    booking_service.delete_class(class_id)
    return Response(status_code=204)


@app.post("/classes/{class_id}/lessons", response_model=list[BookingResult])
def generate_class_lessons(class_id: str, payload: RecurringLessonsRequest) -> list[BookingResult]:
    """Book the class's weekly slot; each date succeeds or fails on its own."""
    return booking_service.schedule_class(class_id, payload)


# ── Teachers ──────────────────────────────────────────────────────────


@app.get("/teachers/{teacher_id}/schedule", response_model=TeacherSchedule)
def get_teacher_schedule(teacher_id: str) -> TeacherSchedule:
    return teacher_schedule(
        teacher_id,
        class_repo.list_for_teacher(teacher_id),
        day_start=settings.day_start,
        day_end=settings.day_end,
    )
