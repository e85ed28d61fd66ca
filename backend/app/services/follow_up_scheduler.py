"""
Daily offer follow-up run.

One run per local calendar day (``scheduler_timezone``). A lease row in
``scheduler_leases`` keeps two workers from running at the same time, and
``last_completed_period`` turns a second run on the same day into a no-op.
Each offer is handled in its own transaction; a failure on one offer is
logged and the run moves on.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.errors import InvalidTransition, SchedulerSkew
from app.models.inspection import Offer
from app.schemas.offer import OfferStatus
from app.services.offer_lifecycle import (
    SCHEDULED_ESCALATE,
    SCHEDULED_EXPIRE,
    SCHEDULED_FOLLOW_UP,
    SCHEDULED_TRANSITIONS,
    due_scheduled_actions,
)
from app.services.scheduler_lease import acquire_lease, default_holder, ensure_period_open, release_lease
from app.utils.alerting import alert_tracker
from app.utils.clock import as_utc, local_day, now_utc

logger = logging.getLogger(__name__)

FOLLOW_UP_JOB = "offer_follow_ups"

_ACTION_COUNTERS = {
    SCHEDULED_EXPIRE: "expired",
    SCHEDULED_ESCALATE: "escalated",
    SCHEDULED_FOLLOW_UP: "followed_up",
}


@dataclass
class FollowUpRunSummary:
    period: str
    skipped: Optional[str] = None
    processed: int = 0
    expired: int = 0
    escalated: int = 0
    followed_up: int = 0
    not_due: int = 0
    already_processed: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _awaiting_offer_ids(db: Session) -> list[str]:
    return list(
        db.execute(
            select(Offer.id)
            .where(Offer.status == OfferStatus.AWAITING_RESPONSE.value)
            .order_by(Offer.sent_at.asc(), Offer.id.asc())
        )
        .scalars()
        .all()
    )


def _process_offer(
    db: Session,
    offer_id: str,
    *,
    now: datetime,
    settings: Settings,
    summary: FollowUpRunSummary,
) -> None:
    offer = db.get(Offer, offer_id, populate_existing=True)
    if offer is None:
        return
    actions = due_scheduled_actions(offer, now, settings)
    if not actions:
        summary.not_due += 1
        return

    summary.processed += 1
    for action in actions:
        try:
            result = SCHEDULED_TRANSITIONS[action](db, offer_id=offer_id, now=now)
        except SchedulerSkew as exc:
            logger.info("%s", exc)
            summary.already_processed += 1
            continue
        except InvalidTransition as exc:
            # The offer left awaiting_response between the query and the write.
            logger.info("Offer %s skipped %s: %s", offer_id, action, exc)
            return
        if result is None:
            summary.not_due += 1
            continue
        counter = _ACTION_COUNTERS[action]
        setattr(summary, counter, getattr(summary, counter) + 1)


def run_offer_follow_ups(
    db: Session,
    *,
    now: Optional[datetime] = None,
    holder: Optional[str] = None,
    force: bool = False,
) -> FollowUpRunSummary:
    """Expire, escalate and follow up on every awaiting offer for today's period.

    Returns a summary; ``skipped`` is set when the lease is held elsewhere or the
    period was already completed (``force`` re-runs it, per-offer dedupe still holds).
    """
    settings = get_settings()
    now = as_utc(now) if now is not None else now_utc()
    period = local_day(now, settings.scheduler_timezone)
    holder = holder or default_holder()
    summary = FollowUpRunSummary(period=period.isoformat())

    lease = acquire_lease(
        db,
        job_name=FOLLOW_UP_JOB,
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

        for offer_id in _awaiting_offer_ids(db):
            try:
                _process_offer(db, offer_id, now=now, settings=settings, summary=summary)
            except Exception:
                db.rollback()
                summary.failed += 1
                alert_tracker.record("FOLLOW_UP_RECORD_FAILED", {"offer_id": offer_id, "period": summary.period})
                logger.exception("Offer follow-up failed for %s", offer_id)
        completed = True
    finally:
        release_lease(
            db,
            job_name=FOLLOW_UP_JOB,
            holder=holder,
            completed_period=period if completed else None,
        )

    logger.info(
        "Offer follow-ups %s: processed=%s expired=%s escalated=%s followed_up=%s failed=%s",
        summary.period,
        summary.processed,
        summary.expired,
        summary.escalated,
        summary.followed_up,
        summary.failed,
    )
    return summary
