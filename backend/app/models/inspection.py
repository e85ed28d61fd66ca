import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


def _id_column():
    return Column(String(64), primary_key=True, default=_new_id)


class User(Base):
    """Canonical principal record. Token claims are checked against it."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("permission_level BETWEEN -1 AND 2", name="chk_user_permission_level"),
        Index("idx_users_branch_role", "branch_id", "role"),
    )

    id = _id_column()
    email = Column(String(255), nullable=False, unique=True)
    display_name = Column(String(255))
    role = Column(String(32), nullable=False)
    permission_level = Column(SmallInteger, nullable=False)
    branch_id = Column(String(64))
    company_id = Column(String(64))
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (Index("idx_customers_branch", "branch_id"),)

    id = _id_column()
    branch_id = Column(String(64))
    company_id = Column(String(64))
    created_by = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Report(Base):
    __tablename__ = "reports"
    __table_args__ = (Index("idx_reports_branch", "branch_id"),)

    id = _id_column()
    branch_id = Column(String(64))
    company_id = Column(String(64))
    created_by = Column(String(64), nullable=False)
    is_public = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    title = Column(String(255), nullable=False, default="", server_default=text("''"))
    status = Column(String(32), nullable=False, default="draft", server_default=text("'draft'"))
    # Mirror of the linked offer's decision; written only by the offer lifecycle.
    offer_status = Column(String(32))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Offer(Base):
    __tablename__ = "offers"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','awaiting_response','accepted','rejected','expired')",
            name="chk_offer_status",
        ),
        CheckConstraint("follow_up_attempts >= 0", name="chk_offer_follow_up_attempts"),
        Index("idx_offers_status", "status"),
        Index("idx_offers_branch", "branch_id"),
        Index("idx_offers_report", "report_id"),
    )

    id = _id_column()
    report_id = Column(String(64), ForeignKey("reports.id", ondelete="RESTRICT"))
    branch_id = Column(String(64))
    company_id = Column(String(64))
    created_by = Column(String(64), nullable=False)
    is_public = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    title = Column(String(255), nullable=False)
    customer_name = Column(String(255))
    customer_email = Column(String(255))
    total_amount = Column(Numeric(12, 2))
    currency = Column(String(10), nullable=False, default="SEK", server_default=text("'SEK'"))
    status = Column(String(32), nullable=False, default="pending", server_default=text("'pending'"))
    sent_at = Column(DateTime(timezone=True))
    valid_until = Column(DateTime(timezone=True), nullable=False)
    follow_up_attempts = Column(Integer, nullable=False, default=0, server_default=text("0"))
    last_follow_up_at = Column(DateTime(timezone=True))
    responded_at = Column(DateTime(timezone=True))
    customer_response = Column(String(16))
    customer_response_reason = Column(Text)
    row_version = Column(Integer, nullable=False, default=1, server_default=text("1"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint(
            "status IN ('scheduled','in_progress','completed','cancelled','no_show')",
            name="chk_appointment_status",
        ),
        CheckConstraint("duration_minutes > 0", name="chk_appointment_duration"),
        Index("idx_appointments_inspector_time", "assigned_inspector_id", "scheduled_at"),
        Index("idx_appointments_branch", "branch_id"),
        Index("idx_appointments_report", "report_id"),
        Index("idx_appointments_status_time", "status", "scheduled_at"),
    )

    id = _id_column()
    branch_id = Column(String(64))
    company_id = Column(String(64))
    created_by = Column(String(64), nullable=False)
    assigned_inspector_id = Column(String(64), nullable=False)
    customer_name = Column(String(255))
    customer_email = Column(String(255))
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=60, server_default=text("60"))
    status = Column(String(32), nullable=False, default="scheduled", server_default=text("'scheduled'"))
    report_id = Column(String(64), ForeignKey("reports.id", ondelete="RESTRICT"))
    completed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    cancel_reason = Column(Text)
    inspector_notes = Column(Text)
    # Set by the daily reminder job; not a transition, so no history row.
    reminder_sent_at = Column(DateTime(timezone=True))
    row_version = Column(Integer, nullable=False, default=1, server_default=text("1"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class StatusHistoryEntry(Base):
    __tablename__ = "status_history"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "sequence", name="uniq_status_history_sequence"),
        Index("idx_status_history_entity", "entity_type", "entity_id"),
    )

    id = _id_column()
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(64), nullable=False)
    sequence = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    changed_by = Column(String(64), nullable=False)
    changed_by_name = Column(String(255), nullable=False)
    reason = Column(Text)


@event.listens_for(StatusHistoryEntry, "before_update")
def _reject_status_history_update(_mapper, _connection, target) -> None:  # type: ignore[no-untyped-def]
    raise ValueError(f"status_history is append-only (entry {target.id})")


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uniq_notification_outbox_dedupe_key"),
        Index("idx_notification_outbox_status_next", "status", "next_attempt_at"),
    )

    id = _id_column()
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(String(64), nullable=False)

    channel = Column(String(32), nullable=False)  # email
    template_key = Column(String(64), nullable=False)
    payload_json = Column(JSON_TYPE, nullable=False)
    dedupe_key = Column(String(160), nullable=False)

    status = Column(String(16), nullable=False, default="PENDING", server_default=text("'PENDING'"))
    attempt_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    next_attempt_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    sent_at = Column(DateTime(timezone=True))
    last_error = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class SchedulerLease(Base):
    __tablename__ = "scheduler_leases"

    job_name = Column(String(64), primary_key=True)
    holder = Column(String(128))
    expires_at = Column(DateTime(timezone=True))
    last_completed_period = Column(Date)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
