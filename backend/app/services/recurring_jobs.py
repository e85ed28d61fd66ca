from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.dependencies import SessionLocal
from app.services.appointment_reminders import run_appointment_reminders
from app.services.follow_up_scheduler import run_offer_follow_ups
from app.services.notification_outbox import process_notification_outbox_once
from app.utils.clock import now_utc

logger = logging.getLogger(__name__)


def _local_hour_reached(hour: int, now: Optional[datetime]) -> bool:
    settings = get_settings()
    now = now or now_utc()
    local_now = now.astimezone(ZoneInfo(settings.scheduler_timezone))
    return local_now.hour >= int(hour)


def follow_up_run_due(now: Optional[datetime] = None) -> bool:
    """The daily run starts once the local clock passes ``scheduler_run_hour``."""
    return _local_hour_reached(get_settings().scheduler_run_hour, now)


def appointment_reminder_run_due(now: Optional[datetime] = None) -> bool:
    return _local_hour_reached(get_settings().appointment_reminder_run_hour, now)


async def _worker_loop(
    name: str,
    *,
    interval_seconds: int,
    enabled: Callable[[Settings], bool],
    tick: Callable[[Session], None],
) -> None:
    """Run ``tick`` with a fresh session every ``interval_seconds`` while ``enabled`` holds."""
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            settings = get_settings()
            if settings.enable_recurring_jobs and enabled(settings) and SessionLocal is not None:
                db = SessionLocal()
                try:
                    tick(db)
                finally:
                    db.close()
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s worker error", name)
            await asyncio.sleep(error_sleep)


def _follow_up_tick(db: Session) -> None:
    # Later ticks on the same day are no-ops via last_completed_period.
    if follow_up_run_due():
        run_offer_follow_ups(db)


async def _follow_up_loop(*, interval_seconds: int) -> None:
    await _worker_loop(
        "Offer follow-up",
        interval_seconds=interval_seconds,
        enabled=lambda settings: True,
        tick=_follow_up_tick,
    )


def start_follow_up_worker() -> asyncio.Task | None:
    """
    Starts the in-process daily follow-up loop. Several processes may run it;
    the scheduler lease lets only one of them work a given day.
    """
    settings = get_settings()
    interval = int(getattr(settings, "follow_up_worker_interval_seconds", 900) or 900)
    interval = int(max(60, min(3600, interval)))
    return asyncio.create_task(_follow_up_loop(interval_seconds=interval))


def _appointment_reminder_tick(db: Session) -> None:
    if appointment_reminder_run_due():
        run_appointment_reminders(db)


async def _appointment_reminder_loop(*, interval_seconds: int) -> None:
    await _worker_loop(
        "Appointment reminder",
        interval_seconds=interval_seconds,
        enabled=lambda settings: settings.enable_appointment_reminders,
        tick=_appointment_reminder_tick,
    )


def start_appointment_reminder_worker() -> asyncio.Task | None:
    settings = get_settings()
    interval = int(max(60, min(3600, int(settings.reminder_worker_interval_seconds or 900))))
    return asyncio.create_task(_appointment_reminder_loop(interval_seconds=interval))


async def _notification_outbox_loop(
    *, interval_seconds: int, batch_size: int, max_attempts: int
) -> None:
    def _tick(db: Session) -> None:
        process_notification_outbox_once(db, batch_size=batch_size, max_attempts=max_attempts)
        db.commit()

    await _worker_loop(
        "Notification outbox",
        interval_seconds=interval_seconds,
        enabled=lambda settings: settings.enable_notification_outbox,
        tick=_tick,
    )


def start_notification_outbox_worker() -> asyncio.Task | None:
    settings = get_settings()
    interval = int(max(5, min(300, int(settings.notification_worker_interval_seconds or 30))))
    batch_size = int(max(1, min(200, int(settings.notification_worker_batch_size or 50))))
    max_attempts = int(max(1, min(20, int(settings.notification_worker_max_attempts or 5))))
    return asyncio.create_task(
        _notification_outbox_loop(
            interval_seconds=interval,
            batch_size=batch_size,
            max_attempts=max_attempts,
        )
    )
