from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.auth import get_optional_permission_context, get_permission_context
from app.core.dependencies import get_db
from app.core.errors import EntityNotFound
from app.models.inspection import Offer
from app.schemas.access import Operation, PermissionContext
from app.schemas.offer import (
    OfferCreate,
    OfferExtendRequest,
    OfferListResponse,
    OfferOut,
    OfferRejectRequest,
    OfferStatus,
    StatusEntryOut,
)
from app.services.access_predicates import scope_clause
from app.services.offer_lifecycle import (
    OFFER_ENTITY,
    create_offer,
    customer_accept,
    customer_reject,
    delete_offer,
    extend_validity,
    send_offer,
)
from app.services.permissions import ensure_allowed
from app.services.status_history import list_status_history

router = APIRouter()


def _offer_to_out(db: Session, offer: Offer, *, with_history: bool = True) -> OfferOut:
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
            for entry in list_status_history(db, entity_type=OFFER_ENTITY, entity_id=offer.id)
        ]
    return OfferOut(
        id=offer.id,
        report_id=offer.report_id,
        branch_id=offer.branch_id,
        company_id=offer.company_id,
        created_by=offer.created_by,
        is_public=bool(offer.is_public),
        title=offer.title,
        customer_name=offer.customer_name,
        total_amount=float(offer.total_amount) if offer.total_amount is not None else None,
        currency=offer.currency,
        status=OfferStatus(offer.status),
        sent_at=offer.sent_at,
        valid_until=offer.valid_until,
        follow_up_attempts=int(offer.follow_up_attempts or 0),
        last_follow_up_at=offer.last_follow_up_at,
        responded_at=offer.responded_at,
        customer_response=offer.customer_response,
        status_history=history,
    )


def _get_offer(db: Session, offer_id: str) -> Offer:
    offer = db.get(Offer, offer_id)
    if offer is None:
        raise EntityNotFound(OFFER_ENTITY, offer_id)
    return offer


@router.post("/offers", response_model=OfferOut, status_code=201)
async def create_offer_route(
    payload: OfferCreate,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    offer = create_offer(
        db,
        ctx,
        title=payload.title,
        valid_until=payload.valid_until,
        report_id=payload.report_id,
        branch_id=payload.branch_id,
        company_id=payload.company_id,
        customer_name=payload.customer_name,
        customer_email=payload.customer_email,
        total_amount=payload.total_amount,
        currency=payload.currency,
        is_public=payload.is_public,
    )
    return _offer_to_out(db, offer)


@router.get("/offers", response_model=OfferListResponse)
async def list_offers(
    status: Optional[OfferStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    stmt = select(Offer).where(scope_clause(ctx.principal, Offer, Operation.READ))
    if status is not None:
        stmt = stmt.where(Offer.status == status.value)
    rows = db.execute(stmt.order_by(Offer.created_at.desc(), Offer.id.asc()).limit(limit)).scalars().all()
    return OfferListResponse(items=[_offer_to_out(db, offer, with_history=False) for offer in rows])


@router.get("/offers/{offer_id}", response_model=OfferOut)
async def get_offer(
    offer_id: str,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    offer = _get_offer(db, offer_id)
    ensure_allowed(ctx, offer, Operation.READ)
    return _offer_to_out(db, offer)


@router.get("/public/offers/{offer_id}", response_model=OfferOut)
async def get_public_offer(
    offer_id: str,
    ctx: Optional[PermissionContext] = Depends(get_optional_permission_context),
    db: Session = Depends(get_db),
):
    offer = _get_offer(db, offer_id)
    ensure_allowed(ctx, offer, Operation.READ)
    return _offer_to_out(db, offer, with_history=False)


@router.post("/offers/{offer_id}/send", response_model=OfferOut)
async def send_offer_route(
    offer_id: str,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    offer = send_offer(db, offer_id=offer_id, ctx=ctx)
    return _offer_to_out(db, offer)


@router.post("/offers/{offer_id}/accept", response_model=OfferOut)
async def accept_offer_route(
    offer_id: str,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    offer = customer_accept(db, offer_id=offer_id, ctx=ctx)
    return _offer_to_out(db, offer)


@router.post("/offers/{offer_id}/reject", response_model=OfferOut)
async def reject_offer_route(
    offer_id: str,
    payload: OfferRejectRequest,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    offer = customer_reject(db, offer_id=offer_id, ctx=ctx, reason=payload.reason)
    return _offer_to_out(db, offer)


@router.post("/offers/{offer_id}/extend", response_model=OfferOut)
async def extend_offer_route(
    offer_id: str,
    payload: OfferExtendRequest,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    offer = extend_validity(db, offer_id=offer_id, ctx=ctx, valid_until=payload.valid_until)
    return _offer_to_out(db, offer)


@router.delete("/offers/{offer_id}", status_code=204)
async def delete_offer_route(
    offer_id: str,
    ctx: PermissionContext = Depends(get_permission_context),
    db: Session = Depends(get_db),
):
    delete_offer(db, offer_id=offer_id, ctx=ctx)
    return Response(status_code=204)
