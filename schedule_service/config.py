"""Runtime configuration read from environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date, datetime
from zoneinfo import ZoneInfo

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    log_level: str = "INFO"
    seed_demo: bool = False
    day_start: str = "08:00"
    day_end: str = "21:00"
    timezone: str = "UTC"

    def today(self) -> date:
        """Today's civil date in the school's time zone."""
        return datetime.now(ZoneInfo(self.timezone)).date()


def get_settings() -> Settings:
    return Settings(
        log_level=os.environ.get("SCHEDULE_LOG_LEVEL", "INFO").upper(),
        seed_demo=os.environ.get("SCHEDULE_SEED_DEMO", "").lower() in _TRUTHY,
        day_start=os.environ.get("SCHEDULE_DAY_START", "08:00"),
        day_end=os.environ.get("SCHEDULE_DAY_END", "21:00"),
        timezone=os.environ.get("SCHEDULE_TIMEZONE", "UTC"),
    )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
