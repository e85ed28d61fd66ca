"""
Daily appointment reminders.

Once per local day (``scheduler_timezone``) the job looks up appointments
still ``scheduled`` on the next local day and queues an
``appointment-reminder`` email to the customer and to the assigned
inspector. ``reminder_sent_at`` marks an appointment as reminded for the
day, and the outbox payload carries the period, so a forced re-run on the
same day queues nothing new.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.errors import SchedulerSkew
from app.models.inspection import Appointment, User
from app.schemas.appointment import AppointmentStatus
from app.services.appointment_lifecycle import APPOINTMENT_ENTITY
from app.services.notification_outbox import enqueue_notification
from app.services.notification_outbox_channels import build_email_payload
from app.services.scheduler_lease import acquire_lease, default_holder, ensure_period_open, release_lease
from app.utils.alerting import alert_tracker
from app.utils.clock import as_utc, local_day, local_day_bounds, now_utc

logger = logging.getLogger(__name__)

REMINDER_JOB = "appointment_reminders"
REMINDER_TEMPLATE = "appointment-reminder"


@dataclass
class ReminderRunSummary:
    period: str
    appointment_day: str
    skipped: Optional[str] = None
    reminded: int = 0
    already_sent: int = 0
    no_recipient: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _scheduled_ids(db: Session, day: date, tz_name: str) -> list[str]:
    starts, ends = local_day_bounds(day, tz_name)
    return list(
        db.execute(
            select(Appointment.id)
            .where(
                Appointment.status == AppointmentStatus.SCHEDULED.value,
                Appointment.scheduled_at >= starts,
                Appointment.scheduled_at < ends,
            )
            .order_by(Appointment.scheduled_at.asc(), Appointment.id.asc())
        )
        .scalars()
        .all()
    )


def _recipients(db: Session, appointment: Appointment) -> list[str]:
    emails = []
    if appointment.customer_email:
        emails.append(appointment.customer_email)
    inspector = db.get(User, appointment.assigned_inspector_id)
    if inspector is not None and inspector.is_active and inspector.email:
        emails.append(inspector.email)
    return list(dict.fromkeys(emails))


def _remind(
    db: Session,
    appointment_id: str,
    *,
    now: datetime,
    period: date,
    settings: Settings,
    summary: ReminderRunSummary,
) -> None:
    appointment = db.get(Appointment, appointment_id, populate_existing=True)
    if appointment is None or appointment.status != AppointmentStatus.SCHEDULED.value:
        return

    last_sent = as_utc(appointment.reminder_sent_at)
    if last_sent is not None and local_day(last_sent, settings.scheduler_timezone) == period:
        summary.already_sent += 1
        return

    recipients = _recipients(db, appointment)
    if not recipients:
        logger.warning("No reminder recipient for appointment %s", appointment_id)
        summary.no_recipient += 1
        return

    # Bumping row_version makes a concurrent transition re-read the appointment.
    expected = int(appointment.row_version or 1)
    result = db.execute(
        update(Appointment)
        .where(
            Appointment.id == appointment_id,
            Appointment.row_version == expected,
            Appointment.status == AppointmentStatus.SCHEDULED.value,
        )
        .values(reminder_sent_at=now, row_version=expected + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.info("Appointment %s changed while reminding, skipped", appointment_id)
        return

    starts_local = as_utc(appointment.scheduled_at).astimezone(ZoneInfo(settings.scheduler_timezone))
    day_text = starts_local.date().isoformat()
    time_text = starts_local.strftime("%H:%M")
    for to_email in recipients:
        payload = build_email_payload(
            to_email=to_email,
            subject="Reminder: roof inspection tomorrow",
            body_text=(
                f"The roof inspection for {appointment.customer_name or 'the customer'} is scheduled "
                f"for tomorrow ({day_text}) at {time_text}.\n"
            ),
            template=REMINDER_TEMPLATE,
            data={
                "appointmentId": appointment.id,
                "customerName": appointment.customer_name,
                "appointmentDate": day_text,
                "appointmentTime": time_text,
                "period": period.isoformat(),
            },
        )
        enqueue_notification(
            db,
            entity_type=APPOINTMENT_ENTITY,
            entity_id=appointment.id,
            channel="email",
            template_key=REMINDER_TEMPLATE,
            payload_json=payload,
            now=now,
        )
    db.commit()
    summary.reminded += 1


def run_appointment_reminders(
    db: Session,
    *,
    now: Optional[datetime] = None,
    holder: Optional[str] = None,
    force: bool = False,
) -> ReminderRunSummary:
    """Queue reminders for tomorrow's scheduled appointments, once per local day."""
    settings = get_settings()
    now = as_utc(now) if now is not None else now_utc()
    period = local_day(now, settings.scheduler_timezone)
    appointment_day = period + timedelta(days=1)
    holder = holder or default_holder()
    summary = ReminderRunSummary(period=period.isoformat(), appointment_day=appointment_day.isoformat())

    lease = acquire_lease(
        db,
        job_name=REMINDER_JOB,
        holder=holder,
        now=now,
        ttl_seconds=settings.scheduler_lease_seconds,
    )
    if lease is None:
        summary.skipped = "lease-held"
        return summary

    completed = False
    try:
        try:
            ensure_period_open(lease, period, force=force)
        except SchedulerSkew as exc:
            logger.info("%s; nothing to do", exc)
            summary.skipped = "already-processed"
            return summary

        for appointment_id in _scheduled_ids(db, appointment_day, settings.scheduler_timezone):
            try:
                _remind(db, appointment_id, now=now, period=period, settings=settings, summary=summary)
            except Exception:
                db.rollback()
                summary.failed += 1
                alert_tracker.record(
                    "APPOINTMENT_REMINDER_FAILED",
                    {"appointment_id": appointment_id, "period": summary.period},
                )
                logger.exception("Appointment reminder failed for %s", appointment_id)
        completed = True
    finally:
        release_lease(
            db,
            job_name=REMINDER_JOB,
            holder=holder,
            completed_period=period if completed else None,
        )

    logger.info(
        "Appointment reminders %s for %s: reminded=%s already_sent=%s no_recipient=%s failed=%s",
        summary.period,
        summary.appointment_day,
        summary.reminded,
        summary.already_sent,
        summary.no_recipient,
        summary.failed,
    )
    return summary
