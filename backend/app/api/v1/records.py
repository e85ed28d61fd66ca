from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.auth import get_permission_context
from app.core.dependencies import get_db
from app.core.errors import Conflict, EntityNotFound
from app.models.inspection import Appointment, Customer, Offer, Report
from app.schemas.access import Operation, PermissionContext
from app.schemas.records import CustomerListResponse, CustomerOut, ReportListResponse, ReportOut
from app.services.access_predicates import scope_clause
from app.services.permissions import ensure_allowed

router = APIRouter()


def _customer_to_out(customer: Customer) -> CustomerOut:
    return CustomerOut(
        id=customer.id,
        branch_id=customer.branch_id,
        company_id=customer.company_id,
        created_by=customer.created_by,
        name=customer.name,
        email=customer.email,
        created_at=customer.created_at,
    )


def _report_to_out(report: Report) -> ReportOut:
    return ReportOut(
        id=report.id,
        branch_id=report.branch_id,
        company_id=report.company_id,
        created_by=report.created_by,
        is_public=bool(report.is_public),
        title=report.title,
        status=report.status,
        offer_status=report.offer_status,
        created_at=report.created_at,
    )


def _load(db: Session, model, entity_type: str, entity_id: str):
    row = db.get(model, entity_id)
    if row is None:
        raise EntityNotFound(entity_type, entity_id)
    return row


def _report_links(db: Session, report_id: str) -> list[str]:
    linked = []
    if db.execute(select(Offer.id).where(Offer.report_id == report_id).limit(1)).first():
        linked.append("offer")
    if db.execute(select(Appointment.id).where(Appointment.report_id == report_id).limit(1)).first():
        linked.append("appointment")
    return linked


@router.get("/customers", response_model=CustomerListResponse)
async def list_customers(
    limit: int = Query(100, ge=1, le=500),
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    rows = (
        db.execute(
            select(Customer)
            .where(scope_clause(ctx.principal, Customer, Operation.READ))
            .order_by(Customer.name.asc(), Customer.id.asc())
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return CustomerListResponse(items=[_customer_to_out(row) for row in rows])


@router.get("/customers/{customer_id}", response_model=CustomerOut)
async def get_customer(
    customer_id: str,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    customer = _load(db, Customer, "customer", customer_id)
    ensure_allowed(ctx, customer, Operation.READ)
    return _customer_to_out(customer)


@router.delete("/customers/{customer_id}", status_code=204)
async def delete_customer(
    customer_id: str,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    customer = _load(db, Customer, "customer", customer_id)
    ensure_allowed(ctx, customer, Operation.DELETE)
    db.delete(customer)
    db.commit()
    return Response(status_code=204)


@router.get("/reports", response_model=ReportListResponse)
async def list_reports(
    limit: int = Query(100, ge=1, le=500),
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    rows = (
        db.execute(
            select(Report)
            .where(scope_clause(ctx.principal, Report, Operation.READ))
            .order_by(Report.created_at.desc(), Report.id.asc())
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return ReportListResponse(items=[_report_to_out(row) for row in rows])


@router.get("/reports/{report_id}", response_model=ReportOut)
async def get_report(
    report_id: str,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    report = _load(db, Report, "report", report_id)
    ensure_allowed(ctx, report, Operation.READ)
    return _report_to_out(report)


@router.delete("/reports/{report_id}", status_code=204)
async def delete_report(
    report_id: str,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    report = _load(db, Report, "report", report_id)
    ensure_allowed(ctx, report, Operation.DELETE)
    # Offer and appointment links are write-once; the report outlives them.
    linked = _report_links(db, report_id)
    if linked:
        raise Conflict("report", report_id, detail=f"Report is linked to an {' and '.join(linked)}")
    db.delete(report)
    db.commit()
    return Response(status_code=204)
