from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.inspection import StatusHistoryEntry
from app.utils.clock import as_utc

logger = logging.getLogger(__name__)

_MIN_STEP = timedelta(microseconds=1)


@dataclass(frozen=True)
class StatusEntry:
    status: str
    timestamp: datetime
    changed_by: str
    changed_by_name: str
    reason: Optional[str] = None


def _last_entry(db: Session, entity_type: str, entity_id: str) -> Optional[StatusHistoryEntry]:
    return (
        db.execute(
            select(StatusHistoryEntry)
            .where(
                StatusHistoryEntry.entity_type == entity_type,
                StatusHistoryEntry.entity_id == str(entity_id),
            )
            .order_by(StatusHistoryEntry.sequence.desc())
            .limit(1)
        )
        .scalars()
        .first()
    )


def append_status_entry(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    entry: StatusEntry,
) -> StatusHistoryEntry:
    """
    Append one entry inside the caller's transaction.
    Only lifecycle transitions call this, after their compare-and-set update
    succeeded, so the entry commits or rolls back together with the state.
    - sequence is previous + 1 (unique per entity; a racing writer fails the insert)
    - timestamp is moved to previous + 1us when the clock did not advance
    """
    last = _last_entry(db, entity_type, entity_id)
    timestamp = as_utc(entry.timestamp)
    sequence = 1
    if last is not None:
        sequence = int(last.sequence) + 1
        previous = as_utc(last.timestamp)
        if timestamp <= previous:
            logger.debug(
                "Clamping status timestamp for %s %s: %s -> %s",
                entity_type,
                entity_id,
                timestamp,
                previous + _MIN_STEP,
            )
            timestamp = previous + _MIN_STEP

    row = StatusHistoryEntry(
        entity_type=entity_type,
        entity_id=str(entity_id),
        sequence=sequence,
        status=entry.status,
        timestamp=timestamp,
        changed_by=entry.changed_by,
        changed_by_name=entry.changed_by_name,
        reason=entry.reason,
    )
    db.add(row)
    db.flush()
    return row


def list_status_history(db: Session, *, entity_type: str, entity_id: str) -> list[StatusEntry]:
    rows = (
        db.execute(
            select(StatusHistoryEntry)
            .where(
                StatusHistoryEntry.entity_type == entity_type,
                StatusHistoryEntry.entity_id == str(entity_id),
            )
            .order_by(StatusHistoryEntry.sequence.asc())
        )
        .scalars()
        .all()
    )
    return [
        StatusEntry(
            status=row.status,
            timestamp=as_utc(row.timestamp),
            changed_by=row.changed_by,
            changed_by_name=row.changed_by_name,
            reason=row.reason,
        )
        for row in rows
    ]
