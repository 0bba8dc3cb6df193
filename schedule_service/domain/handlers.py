"""Domain-event handlers that keep the booking timeline — wired up at startup."""

from __future__ import annotations

import logging

from schedule_service.domain.bus import EventBus
from schedule_service.domain.events import (
    BookingRejected,
    LessonCancelled,
    LessonRescheduled,
    LessonScheduled,
    LessonUpdated,
)
from schedule_service.domain.models import TimelineEntry, TimelineEntryType
from schedule_service.repos.memory import TimelineRepository

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Subscribes timeline handlers to the bus."""

    def __init__(self, bus: EventBus, timeline_repo: TimelineRepository) -> None:
        self.bus = bus
        self.timeline_repo = timeline_repo
        self._register()

    def _register(self) -> None:
        self.bus.subscribe(LessonScheduled, self.on_lesson_scheduled)
        self.bus.subscribe(LessonRescheduled, self.on_lesson_rescheduled)
        self.bus.subscribe(LessonUpdated, self.on_lesson_updated)
        self.bus.subscribe(LessonCancelled, self.on_lesson_cancelled)
        self.bus.subscribe(BookingRejected, self.on_booking_rejected)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_lesson_scheduled(self, event: LessonScheduled) -> None:
        logger.info(
            "lesson %s scheduled for teacher %s on %s %s-%s",
            event.lesson_id,
            event.teacher_id,
            event.date,
            event.start_time,
            event.end_time,
        )
        self.timeline_repo.add(
            TimelineEntry(
                lesson_id=event.lesson_id,
                type=TimelineEntryType.SCHEDULED,
                payload={
                    "teacherId": event.teacher_id,
                    "date": event.date.isoformat(),
                    "startTime": event.start_time,
                    "endTime": event.end_time,
                },
            )
        )

    def on_lesson_rescheduled(self, event: LessonRescheduled) -> None:
        logger.info("lesson %s rescheduled: %s -> %s", event.lesson_id, event.previous, event.current)
        self.timeline_repo.add(
            TimelineEntry(
                lesson_id=event.lesson_id,
                type=TimelineEntryType.RESCHEDULED,
                payload={"previous": event.previous, "current": event.current},
            )
        )

    def on_lesson_updated(self, event: LessonUpdated) -> None:
        self.timeline_repo.add(
            TimelineEntry(
                lesson_id=event.lesson_id,
                type=TimelineEntryType.UPDATED,
                payload={"fields": event.fields},
            )
        )

    def on_lesson_cancelled(self, event: LessonCancelled) -> None:
        logger.info("lesson %s cancelled", event.lesson_id)
        self.timeline_repo.add(
            TimelineEntry(lesson_id=event.lesson_id, type=TimelineEntryType.CANCELLED)
        )

    def on_booking_rejected(self, event: BookingRejected) -> None:
        logger.warning(
            "booking rejected for teacher %s on %s %s-%s (conflicts with %s)",
            event.teacher_id,
            event.date,
            event.start_time,
            event.end_time,
            event.conflicting_lesson_id,
        )
        # Rejected creates have no lesson id yet; they are still recorded.
        self.timeline_repo.add(
            TimelineEntry(
                lesson_id=event.lesson_id,
                type=TimelineEntryType.REJECTED,
                payload={
                    "teacherId": event.teacher_id,
                    "date": event.date.isoformat(),
                    "startTime": event.start_time,
                    "endTime": event.end_time,
                    "conflictingLessonId": event.conflicting_lesson_id,
                },
            )
        )
