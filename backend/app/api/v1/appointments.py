from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.auth import get_permission_context
from app.core.dependencies import get_db
from app.core.errors import EntityNotFound
from app.models.inspection import Appointment
from app.schemas.access import Operation, PermissionContext
from app.schemas.appointment import (
    AppointmentCancelRequest,
    AppointmentCompleteRequest,
    AppointmentCreate,
    AppointmentLinkReportRequest,
    AppointmentOut,
    AppointmentStatus,
)
from app.schemas.offer import StatusEntryOut
from app.services import appointment_lifecycle as lifecycle
from app.services.access_predicates import scope_clause
from app.services.permissions import ensure_allowed
from app.services.status_history import list_status_history

router = APIRouter()


def _appointment_to_out(db: Session, appointment: Appointment, *, with_history: bool = True) -> AppointmentOut:
    history = []
    if with_history:
        history = [
            StatusEntryOut(
                status=entry.status,
                timestamp=entry.timestamp,
                changed_by=entry.changed_by,
                changed_by_name=entry.changed_by_name,
                reason=entry.reason,
            )
            for entry in list_status_history(
                db, entity_type=lifecycle.APPOINTMENT_ENTITY, entity_id=appointment.id
            )
        ]
    return AppointmentOut(
        id=appointment.id,
        branch_id=appointment.branch_id,
        company_id=appointment.company_id,
        created_by=appointment.created_by,
        assigned_inspector_id=appointment.assigned_inspector_id,
        customer_name=appointment.customer_name,
        customer_email=appointment.customer_email,
        scheduled_at=appointment.scheduled_at,
        duration_minutes=int(appointment.duration_minutes),
        status=AppointmentStatus(appointment.status),
        report_id=appointment.report_id,
        completed_at=appointment.completed_at,
        cancelled_at=appointment.cancelled_at,
        cancel_reason=appointment.cancel_reason,
        reminder_sent_at=appointment.reminder_sent_at,
        status_history=history,
    )


@router.post("/appointments", response_model=AppointmentOut, status_code=201)
async def create_appointment_route(
    payload: AppointmentCreate,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    appointment = lifecycle.create_appointment(
        db,
        ctx,
        assigned_inspector_id=payload.assigned_inspector_id,
        scheduled_at=payload.scheduled_at,
        duration_minutes=payload.duration_minutes,
        branch_id=payload.branch_id,
        company_id=payload.company_id,
        customer_name=payload.customer_name,
        customer_email=payload.customer_email,
    )
    return _appointment_to_out(db, appointment)


@router.get("/appointments", response_model=list[AppointmentOut])
async def list_appointments(
    status: Optional[AppointmentStatus] = Query(None),
    inspector_id: Optional[str] = Query(None),
    from_ts: Optional[datetime] = Query(None),
    to_ts: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    stmt = select(Appointment).where(scope_clause(ctx.principal, Appointment, Operation.READ))
    if status is not None:
        stmt = stmt.where(Appointment.status == status.value)
    if inspector_id:
        stmt = stmt.where(Appointment.assigned_inspector_id == inspector_id)
    if from_ts is not None:
        stmt = stmt.where(Appointment.scheduled_at >= from_ts)
    if to_ts is not None:
        stmt = stmt.where(Appointment.scheduled_at < to_ts)
    rows = db.execute(stmt.order_by(Appointment.scheduled_at.asc()).limit(limit)).scalars().all()
    return [_appointment_to_out(db, row, with_history=False) for row in rows]


@router.get("/appointments/{appointment_id}", response_model=AppointmentOut)
async def get_appointment(
    appointment_id: str,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise EntityNotFound(lifecycle.APPOINTMENT_ENTITY, appointment_id)
    ensure_allowed(ctx, appointment, Operation.READ)
    return _appointment_to_out(db, appointment)


@router.post("/appointments/{appointment_id}/start", response_model=AppointmentOut)
async def start_appointment_route(
    appointment_id: str,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    appointment = lifecycle.start_appointment(db, appointment_id=appointment_id, ctx=ctx)
    return _appointment_to_out(db, appointment)


@router.post("/appointments/{appointment_id}/complete", response_model=AppointmentOut)
async def complete_appointment_route(
    appointment_id: str,
    payload: AppointmentCompleteRequest,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    appointment = lifecycle.complete_appointment(
        db,
        appointment_id=appointment_id,
        ctx=ctx,
        report_id=payload.report_id,
        inspector_notes=payload.inspector_notes,
    )
    return _appointment_to_out(db, appointment)


@router.post("/appointments/{appointment_id}/start-and-complete", response_model=AppointmentOut)
async def start_and_complete_appointment_route(
    appointment_id: str,
    payload: AppointmentCompleteRequest,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    appointment = lifecycle.start_then_complete(
        db,
        appointment_id=appointment_id,
        ctx=ctx,
        report_id=payload.report_id,
        inspector_notes=payload.inspector_notes,
    )
    return _appointment_to_out(db, appointment)


@router.post("/appointments/{appointment_id}/complete-directly", response_model=AppointmentOut)
async def complete_directly_route(
    appointment_id: str,
    payload: AppointmentCompleteRequest,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    appointment = lifecycle.complete_directly(
        db,
        appointment_id=appointment_id,
        ctx=ctx,
        report_id=payload.report_id,
        inspector_notes=payload.inspector_notes,
    )
    return _appointment_to_out(db, appointment)


@router.post("/appointments/{appointment_id}/cancel", response_model=AppointmentOut)
async def cancel_appointment_route(
    appointment_id: str,
    payload: AppointmentCancelRequest,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    appointment = lifecycle.cancel_appointment(db, appointment_id=appointment_id, ctx=ctx, reason=payload.reason)
    return _appointment_to_out(db, appointment)


@router.post("/appointments/{appointment_id}/no-show", response_model=AppointmentOut)
async def no_show_appointment_route(
    appointment_id: str,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    appointment = lifecycle.mark_no_show(db, appointment_id=appointment_id, ctx=ctx)
    return _appointment_to_out(db, appointment)


@router.post("/appointments/{appointment_id}/link-report", response_model=AppointmentOut)
async def link_report_route(
    appointment_id: str,
    payload: AppointmentLinkReportRequest,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    appointment = lifecycle.link_report(db, appointment_id=appointment_id, ctx=ctx, report_id=payload.report_id)
    return _appointment_to_out(db, appointment)
