"""
Lease rows for the daily jobs.

``scheduler_leases`` holds one row per job. A worker takes the lease by
inserting the row or by taking over an expired one with a compare-and-set on
``expires_at``; ``last_completed_period`` records the last local day a run
finished so a second run that day is a no-op.
"""

from __future__ import annotations

import logging
import os
import socket
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import SchedulerSkew
from app.models.inspection import SchedulerLease
from app.utils.clock import as_utc

logger = logging.getLogger(__name__)


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def acquire_lease(
    db: Session,
    *,
    job_name: str,
    holder: str,
    now: datetime,
    ttl_seconds: int,
) -> Optional[SchedulerLease]:
    """Take the job lease, or return None while another holder's lease is live."""
    expires_at = now + timedelta(seconds=int(ttl_seconds))
    lease = db.get(SchedulerLease, job_name, populate_existing=True)

    if lease is None:
        db.add(SchedulerLease(job_name=job_name, holder=holder, expires_at=expires_at))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Lease %s: lost insert race to another worker", job_name)
            return None
        return db.get(SchedulerLease, job_name, populate_existing=True)

    current_expiry = as_utc(lease.expires_at)
    if lease.holder and lease.holder != holder and current_expiry is not None and current_expiry > now:
        logger.info("Lease %s held by %s until %s", job_name, lease.holder, current_expiry.isoformat())
        return None

    stmt = update(SchedulerLease).where(SchedulerLease.job_name == job_name)
    if lease.expires_at is None:
        stmt = stmt.where(SchedulerLease.expires_at.is_(None))
    else:
        stmt = stmt.where(SchedulerLease.expires_at == lease.expires_at)
    result = db.execute(
        stmt.values(holder=holder, expires_at=expires_at).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.info("Lease %s: lost takeover race", job_name)
        return None
    db.commit()
    return db.get(SchedulerLease, job_name, populate_existing=True)


def release_lease(
    db: Session,
    *,
    job_name: str,
    holder: str,
    completed_period: Optional[date] = None,
) -> None:
    values: dict = {"holder": None, "expires_at": None}
    if completed_period is not None:
        values["last_completed_period"] = completed_period
    db.execute(
        update(SchedulerLease)
        .where(SchedulerLease.job_name == job_name, SchedulerLease.holder == holder)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def ensure_period_open(lease: SchedulerLease, period: date, *, force: bool = False) -> None:
    if force:
        return
    if lease.last_completed_period is not None and lease.last_completed_period >= period:
        raise SchedulerSkew(lease.job_name, period.isoformat())
