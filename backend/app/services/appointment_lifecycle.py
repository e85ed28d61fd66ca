"""
Appointment state machine.

    scheduled ──start──▶ in_progress ──complete──▶ completed
        ├──cancel──▶ cancelled
        ├──no_show─▶ no_show
        └──complete_directly──▶ completed   (only with allow_direct_appointment_completion)

``report_id`` is written once, on entering ``completed``. Writes follow the
offer lifecycle: compare-and-set on ``row_version`` plus status history in
one commit, retried from the read on a lost race.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.errors import Conflict, EntityNotFound, InvalidTransition
from app.models.inspection import Appointment, Report, User
from app.schemas.access import Operation, PermissionContext, Resource
from app.schemas.appointment import AppointmentStatus
from app.services.permissions import ensure_allowed
from app.services.status_history import StatusEntry, append_status_entry
from app.utils.alerting import alert_tracker
from app.utils.clock import as_utc, now_utc

logger = logging.getLogger(__name__)

APPOINTMENT_ENTITY = "appointment"

ALLOWED_TRANSITIONS = {
    AppointmentStatus.SCHEDULED: frozenset(
        {AppointmentStatus.IN_PROGRESS, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
    ),
    AppointmentStatus.IN_PROGRESS: frozenset({AppointmentStatus.COMPLETED}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

# Gated by Settings.allow_direct_appointment_completion.
DIRECT_COMPLETION = (AppointmentStatus.SCHEDULED, AppointmentStatus.COMPLETED)

INACTIVE_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW})


@dataclass(frozen=True)
class AppointmentChange:
    # Statuses entered, in order; the last one is stored on the row.
    steps: tuple[AppointmentStatus, ...]
    values: dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None


def _current_status(appointment: Appointment) -> AppointmentStatus:
    return AppointmentStatus(appointment.status)


def _require(appointment: Appointment, target: AppointmentStatus, attempted: str) -> AppointmentStatus:
    current = _current_status(appointment)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(current.value, attempted)
    return current


def _completion_values(
    appointment: Appointment,
    *,
    now: datetime,
    report_id: Optional[str],
    inspector_notes: Optional[str],
) -> dict[str, Any]:
    values: dict[str, Any] = {"completed_at": now}
    if report_id is not None:
        if appointment.report_id is not None and appointment.report_id != report_id:
            raise InvalidTransition(_current_status(appointment).value, "complete", "report already linked")
        values["report_id"] = report_id
    if inspector_notes:
        values["inspector_notes"] = inspector_notes
    return values


def _write_change(
    db: Session,
    appointment: Appointment,
    change: AppointmentChange,
    *,
    actor_id: str,
    actor_name: str,
    now: datetime,
) -> None:
    expected = int(appointment.row_version or 1)
    values = dict(change.values)
    values.update(status=change.steps[-1].value, row_version=expected + 1, updated_at=now)
    result = db.execute(
        update(Appointment)
        .where(Appointment.id == appointment.id, Appointment.row_version == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Conflict(APPOINTMENT_ENTITY, appointment.id)

    for step in change.steps:
        append_status_entry(
            db,
            entity_type=APPOINTMENT_ENTITY,
            entity_id=appointment.id,
            entry=StatusEntry(
                status=step.value,
                timestamp=now,
                changed_by=actor_id,
                changed_by_name=actor_name,
                reason=change.reason,
            ),
        )


def _run_transition(
    db: Session,
    *,
    appointment_id: str,
    attempted: str,
    plan: Callable[[Appointment], Optional[AppointmentChange]],
    ctx: PermissionContext,
    now: datetime,
) -> Appointment:
    max_attempts = max(1, int(get_settings().transition_max_retries))
    for attempt in range(1, max_attempts + 1):
        appointment = db.get(Appointment, appointment_id, populate_existing=True)
        if appointment is None:
            raise EntityNotFound(APPOINTMENT_ENTITY, appointment_id)
        ensure_allowed(ctx, appointment, Operation.UPDATE)

        change = plan(appointment)
        if change is None:
            return appointment

        try:
            _write_change(
                db,
                appointment,
                change,
                actor_id=ctx.actor_id,
                actor_name=ctx.actor_name,
                now=now,
            )
            db.commit()
        except (Conflict, IntegrityError) as exc:
            db.rollback()
            alert_tracker.record(
                "TRANSITION_CONFLICT",
                {"entity_type": APPOINTMENT_ENTITY, "entity_id": appointment_id, "transition": attempted},
            )
            if attempt >= max_attempts:
                if isinstance(exc, Conflict):
                    raise
                raise Conflict(APPOINTMENT_ENTITY, appointment_id) from exc
            continue
        except Exception:
            db.rollback()
            raise

        db.refresh(appointment)
        logger.info("Appointment %s: %s -> %s by %s", appointment_id, attempted, appointment.status, ctx.actor_id)
        return appointment

    raise Conflict(APPOINTMENT_ENTITY, appointment_id)


def _resolve_now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else now_utc()


def _ensure_report(db: Session, report_id: Optional[str]) -> None:
    if report_id is not None and db.get(Report, report_id) is None:
        raise EntityNotFound("report", report_id)


def find_conflicts(
    db: Session,
    *,
    inspector_id: str,
    starts_at: datetime,
    duration_minutes: int,
    exclude_id: Optional[str] = None,
) -> list[Appointment]:
    """Active appointments of ``inspector_id`` overlapping the given slot."""
    starts_at = as_utc(starts_at)
    ends_at = starts_at + timedelta(minutes=duration_minutes)
    # Anything that started more than the longest booking ago has already ended.
    longest = db.execute(
        select(func.max(Appointment.duration_minutes)).where(Appointment.assigned_inspector_id == inspector_id)
    ).scalar()
    if longest is None:
        return []
    candidates = (
        db.execute(
            select(Appointment).where(
                Appointment.assigned_inspector_id == inspector_id,
                Appointment.status.not_in([status.value for status in INACTIVE_STATUSES]),
                Appointment.scheduled_at < ends_at,
                Appointment.scheduled_at > starts_at - timedelta(minutes=int(longest)),
            )
        )
        .scalars()
        .all()
    )
    conflicts = []
    for other in candidates:
        if exclude_id is not None and other.id == exclude_id:
            continue
        other_start = as_utc(other.scheduled_at)
        other_end = other_start + timedelta(minutes=int(other.duration_minutes or 0))
        if other_start < ends_at and starts_at < other_end:
            conflicts.append(other)
    return conflicts


def _lock_inspector(db: Session, inspector_id: str) -> None:
    # Serializes bookings per inspector on PostgreSQL. SQLite has no FOR UPDATE;
    # there the insert waits for the write lock and the re-check after flush
    # sees whatever committed first.
    stmt = select(User.id).where(User.id == inspector_id)
    if db.get_bind().dialect.name != "sqlite":
        stmt = stmt.with_for_update()
    db.execute(stmt)


def _raise_on_overlap(
    db: Session,
    inspector_id: str,
    starts_at: datetime,
    duration_minutes: int,
    *,
    exclude_id: Optional[str] = None,
) -> None:
    conflicts = find_conflicts(
        db,
        inspector_id=inspector_id,
        starts_at=starts_at,
        duration_minutes=duration_minutes,
        exclude_id=exclude_id,
    )
    if conflicts:
        raise Conflict(
            APPOINTMENT_ENTITY,
            conflicts[0].id,
            detail=f"Inspector {inspector_id} is already booked in this slot",
        )


def create_appointment(
    db: Session,
    ctx: PermissionContext,
    *,
    assigned_inspector_id: str,
    scheduled_at: datetime,
    duration_minutes: int = 60,
    branch_id: Optional[str] = None,
    company_id: Optional[str] = None,
    customer_name: Optional[str] = None,
    customer_email: Optional[str] = None,
) -> Appointment:
    if branch_id is None and not ctx.principal.has_cross_branch_access:
        branch_id = ctx.principal.branch_id
    ensure_allowed(
        ctx,
        Resource(id=None, created_by=ctx.actor_id, branch_id=branch_id, company_id=company_id),
        Operation.CREATE,
    )

    appointment = Appointment(
        branch_id=branch_id,
        company_id=company_id,
        created_by=ctx.actor_id,
        assigned_inspector_id=assigned_inspector_id,
        customer_name=customer_name,
        customer_email=customer_email,
        scheduled_at=as_utc(scheduled_at),
        duration_minutes=duration_minutes,
        status=AppointmentStatus.SCHEDULED.value,
        row_version=1,
    )
    try:
        _lock_inspector(db, assigned_inspector_id)
        _raise_on_overlap(db, assigned_inspector_id, scheduled_at, duration_minutes)
        db.add(appointment)
        db.flush()
        _raise_on_overlap(db, assigned_inspector_id, scheduled_at, duration_minutes, exclude_id=appointment.id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(appointment)
    logger.info("Appointment %s created by %s", appointment.id, ctx.actor_id)
    return appointment


def start_appointment(
    db: Session,
    *,
    appointment_id: str,
    ctx: PermissionContext,
    now: Optional[datetime] = None,
) -> Appointment:
    now = _resolve_now(now)

    def plan(appointment: Appointment) -> AppointmentChange:
        _require(appointment, AppointmentStatus.IN_PROGRESS, "start")
        return AppointmentChange(steps=(AppointmentStatus.IN_PROGRESS,), reason="Inspection started")

    return _run_transition(db, appointment_id=appointment_id, attempted="start", plan=plan, ctx=ctx, now=now)


def complete_appointment(
    db: Session,
    *,
    appointment_id: str,
    ctx: PermissionContext,
    report_id: Optional[str] = None,
    inspector_notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Appointment:
    now = _resolve_now(now)
    _ensure_report(db, report_id)

    def plan(appointment: Appointment) -> AppointmentChange:
        _require(appointment, AppointmentStatus.COMPLETED, "complete")
        return AppointmentChange(
            steps=(AppointmentStatus.COMPLETED,),
            values=_completion_values(appointment, now=now, report_id=report_id, inspector_notes=inspector_notes),
            reason="Inspection completed",
        )

    return _run_transition(db, appointment_id=appointment_id, attempted="complete", plan=plan, ctx=ctx, now=now)


def start_then_complete(
    db: Session,
    *,
    appointment_id: str,
    ctx: PermissionContext,
    report_id: Optional[str] = None,
    inspector_notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Appointment:
    """scheduled -> in_progress -> completed in one commit, two history entries."""
    now = _resolve_now(now)
    _ensure_report(db, report_id)

    def plan(appointment: Appointment) -> AppointmentChange:
        _require(appointment, AppointmentStatus.IN_PROGRESS, "start_then_complete")
        return AppointmentChange(
            steps=(AppointmentStatus.IN_PROGRESS, AppointmentStatus.COMPLETED),
            values=_completion_values(appointment, now=now, report_id=report_id, inspector_notes=inspector_notes),
            reason="Inspection started and completed",
        )

    return _run_transition(
        db,
        appointment_id=appointment_id,
        attempted="start_then_complete",
        plan=plan,
        ctx=ctx,
        now=now,
    )


def complete_directly(
    db: Session,
    *,
    appointment_id: str,
    ctx: PermissionContext,
    report_id: Optional[str] = None,
    inspector_notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Appointment:
    """scheduled -> completed without passing in_progress, when the policy allows it."""
    now = _resolve_now(now)
    allowed = bool(get_settings().allow_direct_appointment_completion)
    _ensure_report(db, report_id)

    def plan(appointment: Appointment) -> AppointmentChange:
        current = _current_status(appointment)
        if (current, AppointmentStatus.COMPLETED) != DIRECT_COMPLETION:
            raise InvalidTransition(current.value, "complete_directly")
        if not allowed:
            raise InvalidTransition(current.value, "complete_directly", "direct completion is disabled")
        return AppointmentChange(
            steps=(AppointmentStatus.COMPLETED,),
            values=_completion_values(appointment, now=now, report_id=report_id, inspector_notes=inspector_notes),
            reason="Completed without start",
        )

    return _run_transition(
        db,
        appointment_id=appointment_id,
        attempted="complete_directly",
        plan=plan,
        ctx=ctx,
        now=now,
    )


def cancel_appointment(
    db: Session,
    *,
    appointment_id: str,
    ctx: PermissionContext,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Appointment:
    now = _resolve_now(now)

    def plan(appointment: Appointment) -> AppointmentChange:
        _require(appointment, AppointmentStatus.CANCELLED, "cancel")
        return AppointmentChange(
            steps=(AppointmentStatus.CANCELLED,),
            values={"cancelled_at": now, "cancel_reason": reason},
            reason=reason or "Appointment cancelled",
        )

    return _run_transition(db, appointment_id=appointment_id, attempted="cancel", plan=plan, ctx=ctx, now=now)


def mark_no_show(
    db: Session,
    *,
    appointment_id: str,
    ctx: PermissionContext,
    now: Optional[datetime] = None,
) -> Appointment:
    now = _resolve_now(now)

    def plan(appointment: Appointment) -> AppointmentChange:
        _require(appointment, AppointmentStatus.NO_SHOW, "no_show")
        return AppointmentChange(steps=(AppointmentStatus.NO_SHOW,), reason="Customer not present")

    return _run_transition(db, appointment_id=appointment_id, attempted="no_show", plan=plan, ctx=ctx, now=now)


def link_report(
    db: Session,
    *,
    appointment_id: str,
    ctx: PermissionContext,
    report_id: str,
) -> Appointment:
    """Idempotent confirmation of the report attached on completion.

    The link itself is only written by the completing transition; any other
    id, or a missing link, is an ``InvalidTransition``.
    """

    def plan(appointment: Appointment) -> None:
        current = _current_status(appointment)
        if current != AppointmentStatus.COMPLETED:
            raise InvalidTransition(current.value, "link_report", "report is linked on completion")
        if appointment.report_id is None:
            raise InvalidTransition(current.value, "link_report", "no report was linked on completion")
        if appointment.report_id != report_id:
            raise InvalidTransition(current.value, "link_report", "report already linked")
        return None

    return _run_transition(
        db,
        appointment_id=appointment_id,
        attempted="link_report",
        plan=plan,
        ctx=ctx,
        now=now_utc(),
    )
