from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.inspection import NotificationOutbox
from app.services.notification_outbox_channels import SmtpConfig, outbox_channel_send
from app.utils.alerting import alert_tracker
from app.utils.clock import now_utc

logger = logging.getLogger(__name__)

STATUS_PENDING = "PENDING"
STATUS_RETRY = "RETRY"
STATUS_SENT = "SENT"
STATUS_FAILED = "FAILED"


def _canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def _dedupe_key(*, channel: str, template_key: str, entity_type: str, entity_id: str, payload_json: Any) -> str:
    raw = _canonical_json(
        {
            "channel": channel,
            "template_key": template_key,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "payload": payload_json,
        }
    )
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    return f"{channel}:{template_key}:{entity_type}:{entity_id}:{digest[:16]}"


def enqueue_notification(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    channel: str,
    template_key: str,
    payload_json: dict[str, Any],
    now: Optional[datetime] = None,
) -> bool:
    """
    Inserts a notification request into the outbox inside the caller's transaction.
    Identical requests collapse on dedupe_key, so a repeated transition or a re-run
    scheduler never queues the same email twice.
    """
    entity_id = str(entity_id)
    dedupe = _dedupe_key(
        channel=channel,
        template_key=template_key,
        entity_type=entity_type,
        entity_id=entity_id,
        payload_json=payload_json,
    )

    values = {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "channel": channel,
        "template_key": template_key,
        "payload_json": payload_json,
        "dedupe_key": dedupe,
        "status": STATUS_PENDING,
        "attempt_count": 0,
        "next_attempt_at": now or now_utc(),
    }

    # A duplicate must not abort the caller's transaction, so conflicts are ignored in SQL.
    dialect = getattr(getattr(db, "bind", None), "dialect", None)
    dialect_name = getattr(dialect, "name", "") or ""
    table = NotificationOutbox.__table__

    if dialect_name == "postgresql":
        stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=["dedupe_key"])
        result = db.execute(stmt)
        return bool(result.rowcount)
    if dialect_name == "sqlite":
        stmt = sqlite_insert(table).values(**values).prefix_with("OR IGNORE")
        result = db.execute(stmt)
        return bool(result.rowcount)

    # Other dialects: look up, then insert. The unique index still guards a race.
    existing = db.execute(
        select(NotificationOutbox.id).where(NotificationOutbox.dedupe_key == dedupe)
    ).scalar_one_or_none()
    if existing is not None:
        return False
    db.execute(insert(table).values(**values))
    return True


def _compute_backoff(attempt_count: int) -> timedelta:
    # 1m, 2m, 4m, 8m, ... capped to 60m
    seconds = 60 * (2 ** max(0, attempt_count - 1))
    seconds = max(60, min(3600, seconds))
    return timedelta(seconds=seconds)


def _smtp_config() -> Optional[SmtpConfig]:
    settings = get_settings()
    if not settings.smtp_configured:
        return None
    return SmtpConfig(
        host=settings.smtp_host,
        port=int(settings.smtp_port),
        user=settings.smtp_user or None,
        password=settings.smtp_password or None,
        use_tls=bool(settings.smtp_use_tls),
        from_email=settings.smtp_from_email,
    )


def _due_rows(db: Session, *, now: datetime, batch_size: int) -> list[NotificationOutbox]:
    return list(
        db.execute(
            select(NotificationOutbox)
            .where(
                NotificationOutbox.status.in_([STATUS_PENDING, STATUS_RETRY]),
                NotificationOutbox.next_attempt_at <= now,
            )
            .order_by(NotificationOutbox.next_attempt_at.asc(), NotificationOutbox.id.asc())
            .limit(int(max(1, batch_size)))
        )
        .scalars()
        .all()
    )


def _mark_failed_attempt(row: NotificationOutbox, exc: Exception, *, now: datetime, max_attempts: int) -> None:
    row.last_error = str(exc)
    alert_tracker.record(
        "NOTIFICATION_SEND_FAILED",
        {"outbox_id": row.id, "template_key": row.template_key, "attempt": row.attempt_count},
    )
    if row.attempt_count >= max_attempts:
        row.status = STATUS_FAILED
        # Parked; FAILED rows are never picked up again.
        row.next_attempt_at = now + timedelta(days=365)
        logger.warning("Notification %s (%s) failed permanently: %s", row.id, row.template_key, exc)
        return
    row.status = STATUS_RETRY
    row.next_attempt_at = now + _compute_backoff(row.attempt_count)
    logger.info("Notification %s attempt %s failed, retry at %s", row.id, row.attempt_count, row.next_attempt_at)


def process_notification_outbox_once(
    db: Session,
    *,
    batch_size: int = 50,
    max_attempts: int = 5,
    now: Optional[datetime] = None,
) -> int:
    """
    Sends one batch of due notifications. The caller commits.
    Returns the number of rows that reached SENT.
    """
    now = now or now_utc()
    smtp = _smtp_config()
    max_attempts = int(max_attempts)

    due = _due_rows(db, now=now, batch_size=batch_size)
    sent = 0
    for row in due:
        row.attempt_count = int(row.attempt_count or 0) + 1
        try:
            outbox_channel_send(channel=row.channel, payload=row.payload_json or {}, smtp=smtp)
        except Exception as exc:
            _mark_failed_attempt(row, exc, now=now, max_attempts=max_attempts)
            continue
        row.status = STATUS_SENT
        row.sent_at = now
        row.last_error = None
        sent += 1

    if due:
        logger.info("Notification outbox batch: sent=%s total=%s", sent, len(due))
    return sent
