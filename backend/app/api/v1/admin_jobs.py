from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.auth import require_level
from app.core.dependencies import get_db
from app.schemas.access import ROLE_LEVELS, PermissionContext, Role
from app.schemas.appointment import ReminderRunOut
from app.schemas.offer import FollowUpRunOut
from app.services.appointment_reminders import run_appointment_reminders
from app.services.follow_up_scheduler import run_offer_follow_ups
from app.services.notification_outbox import process_notification_outbox_once

router = APIRouter()

_require_superadmin = require_level(ROLE_LEVELS[Role.SUPERADMIN])


@router.post("/admin/jobs/offer-follow-ups", response_model=FollowUpRunOut)
async def run_offer_follow_ups_route(
    force: bool = Query(False),
    ctx: PermissionContext = Depends(_require_superadmin),
    db: Session = Depends(get_db),
):
    summary = run_offer_follow_ups(db, holder=f"manual:{ctx.actor_id}", force=force)
    return FollowUpRunOut(**summary.to_dict())


@router.post("/admin/jobs/appointment-reminders", response_model=ReminderRunOut)
async def run_appointment_reminders_route(
    force: bool = Query(False),
    ctx: PermissionContext = Depends(_require_superadmin),
    db: Session = Depends(get_db),
):
    summary = run_appointment_reminders(db, holder=f"manual:{ctx.actor_id}", force=force)
    return ReminderRunOut(**summary.to_dict())


@router.post("/admin/jobs/notification-outbox")
async def run_notification_outbox_route(
    ctx: PermissionContext = Depends(_require_superadmin),
    db: Session = Depends(get_db),
):
    settings = get_settings()
    sent = process_notification_outbox_once(
        db,
        batch_size=settings.notification_worker_batch_size,
        max_attempts=settings.notification_worker_max_attempts,
    )
    db.commit()
    return {"sent": sent}
