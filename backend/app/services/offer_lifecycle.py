"""
Offer state machine.

    pending ──send──▶ awaiting_response ──accept──▶ accepted
                         │   ▲    ├──────reject──▶ rejected
                         └───┘    └──────expire──▶ expired
                      follow-up / extend

accepted, rejected and expired are terminal. Every named transition runs the
same unit of work: load the offer, authorize, plan the change against the
state that was read, then compare-and-set on ``row_version`` and append one
status history row (plus report propagation and outbox rows) in a single
commit. A lost race is retried from the read; a retry that finds a terminal
state surfaces ``InvalidTransition``.

Staff send and extend offers; only the customer answers them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.errors import Conflict, EntityNotFound, InvalidTransition, SchedulerSkew
from app.models.inspection import NotificationOutbox, Offer, Report, User
from app.schemas.access import (
    CUSTOMER_ROLES,
    STAFF_ROLES,
    SYSTEM_ACTOR_ID,
    SYSTEM_ACTOR_NAME,
    Operation,
    PermissionContext,
    Resource,
    Role,
)
from app.schemas.offer import CustomerResponse, OfferStatus
from app.services.notification_outbox import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RETRY,
    enqueue_notification,
)
from app.services.notification_outbox_channels import build_email_payload
from app.services.permissions import ensure_allowed, ensure_role
from app.services.status_history import StatusEntry, append_status_entry
from app.utils.alerting import alert_tracker
from app.utils.clock import as_utc, local_day, now_utc

logger = logging.getLogger(__name__)

OFFER_ENTITY = "offer"

ALLOWED_TRANSITIONS = {
    OfferStatus.PENDING: frozenset({OfferStatus.AWAITING_RESPONSE}),
    OfferStatus.AWAITING_RESPONSE: frozenset(
        {
            OfferStatus.AWAITING_RESPONSE,
            OfferStatus.ACCEPTED,
            OfferStatus.REJECTED,
            OfferStatus.EXPIRED,
        }
    ),
    OfferStatus.ACCEPTED: frozenset(),
    OfferStatus.REJECTED: frozenset(),
    OfferStatus.EXPIRED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)

SCHEDULED_EXPIRE = "scheduled_expire"
SCHEDULED_ESCALATE = "scheduled_escalate"
SCHEDULED_FOLLOW_UP = "scheduled_follow_up"


@dataclass(frozen=True)
class NotificationRequest:
    template: str
    recipient: str  # customer / creator / branch_admins
    subject: str
    body_text: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OfferChange:
    status: OfferStatus
    values: dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    report_offer_status: Optional[str] = None
    notifications: tuple[NotificationRequest, ...] = ()
    # Escalation only emits; it neither touches the row nor writes history.
    write_offer: bool = True


Planner = Callable[[Offer], Optional[OfferChange]]


def _current_status(offer: Offer) -> OfferStatus:
    return OfferStatus(offer.status)


def _require_transition(offer: Offer, target: OfferStatus, attempted: str) -> OfferStatus:
    current = _current_status(offer)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(current.value, attempted)
    return current


def _days_since_sent(offer: Offer, now: datetime) -> Optional[int]:
    sent_at = as_utc(offer.sent_at)
    if sent_at is None:
        return None
    return (now - sent_at).days


def _offer_link(settings: Settings, offer: Offer) -> str:
    return f"{settings.app_base_url.rstrip('/')}/offers/{offer.id}"


def _public_link(settings: Settings, offer: Offer) -> str:
    return f"{settings.app_base_url.rstrip('/')}/offer/public/{offer.id}"


# ── planners: pure, read the loaded row, raise or describe the change ──


def _plan_send(offer: Offer, now: datetime, settings: Settings) -> OfferChange:
    current = _require_transition(offer, OfferStatus.AWAITING_RESPONSE, "send")
    if current != OfferStatus.PENDING:
        raise InvalidTransition(current.value, "send")
    if now > as_utc(offer.valid_until):
        raise InvalidTransition(current.value, "send", "offer validity has passed")
    return OfferChange(
        status=OfferStatus.AWAITING_RESPONSE,
        values={"sent_at": now},
        reason="Offer sent to customer",
        notifications=(
            NotificationRequest(
                template="offer-sent",
                recipient="customer",
                subject=f"Offer: {offer.title}",
                body_text=(
                    f"Hello {offer.customer_name or ''},\n\n"
                    f"You have received an offer: {offer.title}.\n"
                    f"Valid until {as_utc(offer.valid_until).date().isoformat()}.\n"
                    f"{_public_link(settings, offer)}\n"
                ),
                data={
                    "offerId": offer.id,
                    "offerTitle": offer.title,
                    "validUntil": as_utc(offer.valid_until).isoformat(),
                    "publicLink": _public_link(settings, offer),
                },
            ),
        ),
    )


def _plan_response(
    offer: Offer,
    now: datetime,
    settings: Settings,
    *,
    accept: bool,
    reason: Optional[str],
) -> OfferChange:
    target = OfferStatus.ACCEPTED if accept else OfferStatus.REJECTED
    attempted = "customer_accept" if accept else "customer_reject"
    current = _require_transition(offer, target, attempted)
    if accept and now > as_utc(offer.valid_until):
        raise InvalidTransition(current.value, attempted, "offer validity has passed")

    response = CustomerResponse.ACCEPT if accept else CustomerResponse.REJECT
    if accept:
        history_reason = "Customer accepted the offer"
    else:
        history_reason = f"Customer rejected: {reason}" if reason else "Customer rejected the offer"
    template = "offer-accepted" if accept else "offer-rejected"
    return OfferChange(
        status=target,
        values={
            "responded_at": now,
            "customer_response": response.value,
            "customer_response_reason": reason,
        },
        reason=history_reason,
        report_offer_status=target.value,
        notifications=(
            NotificationRequest(
                template=template,
                recipient="creator",
                subject=f"Offer {target.value}: {offer.title}",
                body_text=(
                    f"{offer.customer_name or 'The customer'} {target.value} the offer "
                    f"{offer.title}.\n"
                    + (f"Reason: {reason}\n" if reason else "")
                    + f"{_offer_link(settings, offer)}\n"
                ),
                data={
                    "offerId": offer.id,
                    "offerTitle": offer.title,
                    "customerName": offer.customer_name,
                    "rejectionReason": reason,
                },
            ),
        ),
    )


def _plan_extend(offer: Offer, valid_until: datetime) -> OfferChange:
    current = _current_status(offer)
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(current.value, "extend_validity")
    if valid_until <= as_utc(offer.valid_until):
        raise InvalidTransition(current.value, "extend_validity", "new validity must be later than the current one")
    return OfferChange(
        status=current,
        values={"valid_until": valid_until},
        reason=f"Offer validity extended to {valid_until.date().isoformat()}",
    )


def _plan_follow_up(offer: Offer, now: datetime, settings: Settings) -> Optional[OfferChange]:
    current = _require_transition(offer, OfferStatus.AWAITING_RESPONSE, SCHEDULED_FOLLOW_UP)
    if current != OfferStatus.AWAITING_RESPONSE:
        raise InvalidTransition(current.value, SCHEDULED_FOLLOW_UP)

    days = _days_since_sent(offer, now)
    if days is None or days < settings.offer_follow_up_after_days:
        return None

    today = local_day(now, settings.scheduler_timezone)
    last = as_utc(offer.last_follow_up_at)
    if last is not None and local_day(last, settings.scheduler_timezone) == today:
        raise SchedulerSkew(SCHEDULED_FOLLOW_UP, today.isoformat(), entity_id=offer.id)

    attempts = int(offer.follow_up_attempts or 0)
    if attempts >= settings.offer_max_follow_up_attempts:
        return None

    return OfferChange(
        status=OfferStatus.AWAITING_RESPONSE,
        values={"follow_up_attempts": attempts + 1, "last_follow_up_at": now},
        reason=f"Automatic follow-up after {days} days",
        notifications=(
            NotificationRequest(
                template="offer-reminder",
                recipient="creator",
                subject="Offer follow-up required",
                body_text=(
                    f"The offer {offer.title} for {offer.customer_name or 'the customer'} has been "
                    f"pending for {days} days. Please follow up with the customer.\n"
                    f"{_offer_link(settings, offer)}\n"
                ),
                data={
                    "offerId": offer.id,
                    "offerTitle": offer.title,
                    "daysSinceSent": days,
                    "attempt": attempts + 1,
                    "period": today.isoformat(),
                },
            ),
        ),
    )


def _plan_escalate(offer: Offer, now: datetime, settings: Settings) -> Optional[OfferChange]:
    current = _current_status(offer)
    if current != OfferStatus.AWAITING_RESPONSE:
        raise InvalidTransition(current.value, SCHEDULED_ESCALATE)

    days = _days_since_sent(offer, now)
    if days is None or days < settings.offer_escalation_after_days:
        return None

    today = local_day(now, settings.scheduler_timezone)
    return OfferChange(
        status=current,
        write_offer=False,
        notifications=(
            NotificationRequest(
                template="offer-escalation",
                recipient="branch_admins",
                subject="Offer escalation required",
                body_text=(
                    f"The offer {offer.title} for {offer.customer_name or 'the customer'} has been "
                    f"pending for {days} days and requires your attention.\n"
                    f"{_offer_link(settings, offer)}\n"
                ),
                data={
                    "offerId": offer.id,
                    "offerTitle": offer.title,
                    "daysSinceSent": days,
                    "period": today.isoformat(),
                },
            ),
        ),
    )


def _expiry_reason(offer: Offer, now: datetime, settings: Settings) -> Optional[str]:
    if now > as_utc(offer.valid_until):
        return "Offer validity period expired"
    days = _days_since_sent(offer, now)
    if days is not None and days >= settings.offer_max_age_days:
        return f"No customer response within {settings.offer_max_age_days} days"
    return None


def _plan_expire(offer: Offer, now: datetime, settings: Settings) -> Optional[OfferChange]:
    _require_transition(offer, OfferStatus.EXPIRED, SCHEDULED_EXPIRE)
    reason = _expiry_reason(offer, now, settings)
    if reason is None:
        return None
    return OfferChange(status=OfferStatus.EXPIRED, reason=reason)


def due_scheduled_actions(offer: Offer, now: datetime, settings: Optional[Settings] = None) -> list[str]:
    """Scheduled transitions whose thresholds hold for ``offer``, in the order to apply them.

    Expiry short-circuits; escalation and follow-up may both be due.
    """
    settings = settings or get_settings()
    now = as_utc(now)
    if _current_status(offer) != OfferStatus.AWAITING_RESPONSE:
        return []
    if _expiry_reason(offer, now, settings) is not None:
        return [SCHEDULED_EXPIRE]

    actions = []
    days = _days_since_sent(offer, now)
    if days is None:
        return actions
    if days >= settings.offer_escalation_after_days:
        actions.append(SCHEDULED_ESCALATE)
    if (
        days >= settings.offer_follow_up_after_days
        and int(offer.follow_up_attempts or 0) < settings.offer_max_follow_up_attempts
    ):
        actions.append(SCHEDULED_FOLLOW_UP)
    return actions


# ── unit of work ──


def _recipients(db: Session, offer: Offer, recipient: str) -> list[str]:
    if recipient == "customer":
        return [offer.customer_email] if offer.customer_email else []
    if recipient == "creator":
        user = db.get(User, offer.created_by)
        return [user.email] if user is not None and user.is_active and user.email else []
    if recipient == "branch_admins":
        if not offer.branch_id:
            return []
        rows = (
            db.execute(
                select(User.email).where(
                    User.role == Role.BRANCH_ADMIN.value,
                    User.branch_id == offer.branch_id,
                    User.is_active.is_(True),
                )
            )
            .scalars()
            .all()
        )
        return sorted(email for email in rows if email)
    raise ValueError(f"Unknown recipient kind: {recipient}")


def _emit(db: Session, offer: Offer, request: NotificationRequest, now: datetime) -> int:
    queued = 0
    recipients = _recipients(db, offer, request.recipient)
    if not recipients:
        logger.warning(
            "No %s recipient for %s on offer %s",
            request.recipient,
            request.template,
            offer.id,
        )
        return 0
    for to_email in recipients:
        payload = build_email_payload(
            to_email=to_email,
            subject=request.subject,
            body_text=request.body_text,
            template=request.template,
            data=request.data,
        )
        if enqueue_notification(
            db,
            entity_type=OFFER_ENTITY,
            entity_id=offer.id,
            channel="email",
            template_key=request.template,
            payload_json=payload,
            now=now,
        ):
            queued += 1
    return queued


def _write_change(
    db: Session,
    offer: Offer,
    change: OfferChange,
    *,
    actor_id: str,
    actor_name: str,
    now: datetime,
) -> None:
    if change.write_offer:
        expected = int(offer.row_version or 1)
        values = dict(change.values)
        values.update(status=change.status.value, row_version=expected + 1, updated_at=now)
        result = db.execute(
            update(Offer)
            .where(Offer.id == offer.id, Offer.row_version == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Conflict(OFFER_ENTITY, offer.id)

        append_status_entry(
            db,
            entity_type=OFFER_ENTITY,
            entity_id=offer.id,
            entry=StatusEntry(
                status=change.status.value,
                timestamp=now,
                changed_by=actor_id,
                changed_by_name=actor_name,
                reason=change.reason,
            ),
        )

    if change.report_offer_status and offer.report_id:
        db.execute(
            update(Report)
            .where(Report.id == offer.report_id)
            .values(offer_status=change.report_offer_status, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    for request in change.notifications:
        _emit(db, offer, request, now)


def _run_transition(
    db: Session,
    *,
    offer_id: str,
    attempted: str,
    plan: Planner,
    ctx: Optional[PermissionContext],
    now: datetime,
    roles: Optional[frozenset[Role]] = None,
) -> Optional[Offer]:
    settings = get_settings()
    max_attempts = max(1, int(settings.transition_max_retries))
    if ctx is None:
        actor_id, actor_name = SYSTEM_ACTOR_ID, SYSTEM_ACTOR_NAME
    else:
        actor_id, actor_name = ctx.actor_id, ctx.actor_name

    for attempt in range(1, max_attempts + 1):
        offer = db.get(Offer, offer_id, populate_existing=True)
        if offer is None:
            raise EntityNotFound(OFFER_ENTITY, offer_id)
        if ctx is not None:
            ensure_allowed(ctx, offer, Operation.UPDATE)
            if roles is not None:
                ensure_role(ctx, offer, Operation.UPDATE, roles)

        change = plan(offer)
        if change is None:
            return None

        try:
            _write_change(db, offer, change, actor_id=actor_id, actor_name=actor_name, now=now)
            db.commit()
        except (Conflict, IntegrityError) as exc:
            db.rollback()
            alert_tracker.record(
                "TRANSITION_CONFLICT",
                {"entity_type": OFFER_ENTITY, "entity_id": offer_id, "transition": attempted},
            )
            if attempt >= max_attempts:
                logger.warning("Offer %s %s lost %s races, giving up", offer_id, attempted, attempt)
                if isinstance(exc, Conflict):
                    raise
                raise Conflict(OFFER_ENTITY, offer_id) from exc
            logger.info("Offer %s %s conflict (attempt %s), retrying", offer_id, attempted, attempt)
            continue
        except Exception:
            db.rollback()
            raise

        db.refresh(offer)
        logger.info(
            "Offer %s: %s -> %s by %s",
            offer_id,
            attempted,
            offer.status,
            actor_id,
        )
        return offer

    raise Conflict(OFFER_ENTITY, offer_id)


def _resolve_now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else now_utc()


# ── named transitions ──


def create_offer(
    db: Session,
    ctx: PermissionContext,
    *,
    title: str,
    valid_until: datetime,
    report_id: Optional[str] = None,
    branch_id: Optional[str] = None,
    company_id: Optional[str] = None,
    customer_name: Optional[str] = None,
    customer_email: Optional[str] = None,
    total_amount: Any = None,
    currency: str = "SEK",
    is_public: bool = False,
) -> Offer:
    """Insert an offer in ``pending``. Creation is not a transition: no history row."""
    if report_id:
        report = db.get(Report, report_id)
        if report is None:
            raise EntityNotFound("report", report_id)
        branch_id = branch_id or report.branch_id
        company_id = company_id or report.company_id
    if branch_id is None and not ctx.principal.has_cross_branch_access:
        branch_id = ctx.principal.branch_id

    ensure_allowed(
        ctx,
        Resource(
            id=None,
            created_by=ctx.actor_id,
            branch_id=branch_id,
            company_id=company_id,
            is_public=is_public,
        ),
        Operation.CREATE,
    )

    offer = Offer(
        report_id=report_id,
        branch_id=branch_id,
        company_id=company_id,
        created_by=ctx.actor_id,
        is_public=is_public,
        title=title,
        customer_name=customer_name,
        customer_email=customer_email,
        total_amount=total_amount,
        currency=currency,
        status=OfferStatus.PENDING.value,
        valid_until=as_utc(valid_until),
        follow_up_attempts=0,
        row_version=1,
    )
    db.add(offer)
    if report_id:
        db.execute(
            update(Report)
            .where(Report.id == report_id)
            .values(offer_status=OfferStatus.PENDING.value)
            .execution_options(synchronize_session=False)
        )
    db.commit()
    db.refresh(offer)
    logger.info("Offer %s created by %s", offer.id, ctx.actor_id)
    return offer


def send_offer(
    db: Session,
    *,
    offer_id: str,
    ctx: PermissionContext,
    now: Optional[datetime] = None,
) -> Offer:
    now = _resolve_now(now)
    settings = get_settings()
    return _run_transition(
        db,
        offer_id=offer_id,
        attempted="send",
        plan=lambda offer: _plan_send(offer, now, settings),
        ctx=ctx,
        now=now,
        roles=STAFF_ROLES,
    )


def customer_accept(
    db: Session,
    *,
    offer_id: str,
    ctx: PermissionContext,
    now: Optional[datetime] = None,
) -> Offer:
    now = _resolve_now(now)
    settings = get_settings()
    return _run_transition(
        db,
        offer_id=offer_id,
        attempted="customer_accept",
        plan=lambda offer: _plan_response(offer, now, settings, accept=True, reason=None),
        ctx=ctx,
        now=now,
        roles=CUSTOMER_ROLES,
    )


def customer_reject(
    db: Session,
    *,
    offer_id: str,
    ctx: PermissionContext,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Offer:
    now = _resolve_now(now)
    settings = get_settings()
    return _run_transition(
        db,
        offer_id=offer_id,
        attempted="customer_reject",
        plan=lambda offer: _plan_response(offer, now, settings, accept=False, reason=reason),
        ctx=ctx,
        now=now,
        roles=CUSTOMER_ROLES,
    )


def extend_validity(
    db: Session,
    *,
    offer_id: str,
    ctx: PermissionContext,
    valid_until: datetime,
    now: Optional[datetime] = None,
) -> Offer:
    now = _resolve_now(now)
    valid_until = as_utc(valid_until)
    return _run_transition(
        db,
        offer_id=offer_id,
        attempted="extend_validity",
        plan=lambda offer: _plan_extend(offer, valid_until),
        ctx=ctx,
        now=now,
        roles=STAFF_ROLES,
    )


def delete_offer(db: Session, *, offer_id: str, ctx: PermissionContext) -> None:
    """Remove an offer and clear the mirrored decision on its report.

    Deletion is not a transition. The history rows stay behind as the audit
    trail; notifications still queued for the offer are parked as FAILED.
    """
    offer = db.get(Offer, offer_id)
    if offer is None:
        raise EntityNotFound(OFFER_ENTITY, offer_id)
    ensure_allowed(ctx, offer, Operation.DELETE)

    report_id = offer.report_id
    try:
        db.delete(offer)
        if report_id:
            db.execute(
                update(Report)
                .where(Report.id == report_id)
                .values(offer_status=None, updated_at=now_utc())
                .execution_options(synchronize_session=False)
            )
        db.execute(
            update(NotificationOutbox)
            .where(
                NotificationOutbox.entity_type == OFFER_ENTITY,
                NotificationOutbox.entity_id == offer_id,
                NotificationOutbox.status.in_([STATUS_PENDING, STATUS_RETRY]),
            )
            .values(status=STATUS_FAILED, last_error="ENTITY_DELETED")
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Offer %s deleted by %s (report=%s)", offer_id, ctx.actor_id, report_id)


def scheduled_follow_up(db: Session, *, offer_id: str, now: Optional[datetime] = None) -> Optional[Offer]:
    """Reminder self-loop. ``None`` when not due; ``SchedulerSkew`` when already done today."""
    now = _resolve_now(now)
    settings = get_settings()
    return _run_transition(
        db,
        offer_id=offer_id,
        attempted=SCHEDULED_FOLLOW_UP,
        plan=lambda offer: _plan_follow_up(offer, now, settings),
        ctx=None,
        now=now,
    )


def scheduled_escalate(db: Session, *, offer_id: str, now: Optional[datetime] = None) -> Optional[Offer]:
    now = _resolve_now(now)
    settings = get_settings()
    return _run_transition(
        db,
        offer_id=offer_id,
        attempted=SCHEDULED_ESCALATE,
        plan=lambda offer: _plan_escalate(offer, now, settings),
        ctx=None,
        now=now,
    )


def scheduled_expire(db: Session, *, offer_id: str, now: Optional[datetime] = None) -> Optional[Offer]:
    now = _resolve_now(now)
    settings = get_settings()
    return _run_transition(
        db,
        offer_id=offer_id,
        attempted=SCHEDULED_EXPIRE,
        plan=lambda offer: _plan_expire(offer, now, settings),
        ctx=None,
        now=now,
    )


SCHEDULED_TRANSITIONS = {
    SCHEDULED_EXPIRE: scheduled_expire,
    SCHEDULED_ESCALATE: scheduled_escalate,
    SCHEDULED_FOLLOW_UP: scheduled_follow_up,
}

