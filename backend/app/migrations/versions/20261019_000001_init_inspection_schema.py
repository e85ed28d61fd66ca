"""init inspection schema

Revision ID: 20261019_000001
Revises: 
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    json_type = sa.JSON().with_variant(postgresql.JSONB, "postgresql")

    op.create_table(
        "users",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("display_name", sa.String(length=255)),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("permission_level", sa.SmallInteger(), nullable=False),
        sa.Column("branch_id", sa.String(length=64)),
        sa.Column("company_id", sa.String(length=64)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("permission_level BETWEEN -1 AND 2", name="chk_user_permission_level"),
    )
    op.create_index("idx_users_branch_role", "users", ["branch_id", "role"])

    op.create_table(
        "customers",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("branch_id", sa.String(length=64)),
        sa.Column("company_id", sa.String(length=64)),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_customers_branch", "customers", ["branch_id"])

    op.create_table(
        "reports",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("branch_id", sa.String(length=64)),
        sa.Column("company_id", sa.String(length=64)),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("title", sa.String(length=255), nullable=False, server_default=sa.text("''")),
        sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'draft'")),
        sa.Column("offer_status", sa.String(length=32)),
        *_timestamps(),
    )
    op.create_index("idx_reports_branch", "reports", ["branch_id"])

    op.create_table(
        "offers",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("report_id", sa.String(length=64), sa.ForeignKey("reports.id", ondelete="RESTRICT")),
        sa.Column("branch_id", sa.String(length=64)),
        sa.Column("company_id", sa.String(length=64)),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("customer_name", sa.String(length=255)),
        sa.Column("customer_email", sa.String(length=255)),
        sa.Column("total_amount", sa.Numeric(12, 2)),
        sa.Column("currency", sa.String(length=10), nullable=False, server_default=sa.text("'SEK'")),
        sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("follow_up_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_follow_up_at", sa.DateTime(timezone=True)),
        sa.Column("responded_at", sa.DateTime(timezone=True)),
        sa.Column("customer_response", sa.String(length=16)),
        sa.Column("customer_response_reason", sa.Text()),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending','awaiting_response','accepted','rejected','expired')",
            name="chk_offer_status",
        ),
        sa.CheckConstraint("follow_up_attempts >= 0", name="chk_offer_follow_up_attempts"),
    )
    op.create_index("idx_offers_status", "offers", ["status"])
    op.create_index("idx_offers_branch", "offers", ["branch_id"])
    op.create_index("idx_offers_report", "offers", ["report_id"])

    op.create_table(
        "appointments",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("branch_id", sa.String(length=64)),
        sa.Column("company_id", sa.String(length=64)),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column("assigned_inspector_id", sa.String(length=64), nullable=False),
        sa.Column("customer_name", sa.String(length=255)),
        sa.Column("customer_email", sa.String(length=255)),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'scheduled'")),
        sa.Column("report_id", sa.String(length=64), sa.ForeignKey("reports.id", ondelete="RESTRICT")),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancel_reason", sa.Text()),
        sa.Column("inspector_notes", sa.Text()),
        sa.Column("reminder_sent_at", sa.DateTime(timezone=True)),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('scheduled','in_progress','completed','cancelled','no_show')",
            name="chk_appointment_status",
        ),
        sa.CheckConstraint("duration_minutes > 0", name="chk_appointment_duration"),
    )
    op.create_index(
        "idx_appointments_inspector_time",
        "appointments",
        ["assigned_inspector_id", "scheduled_at"],
    )
    op.create_index("idx_appointments_branch", "appointments", ["branch_id"])
    op.create_index("idx_appointments_report", "appointments", ["report_id"])
    op.create_index("idx_appointments_status_time", "appointments", ["status", "scheduled_at"])

    op.create_table(
        "status_history",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("changed_by", sa.String(length=64), nullable=False),
        sa.Column("changed_by_name", sa.String(length=255), nullable=False),
        sa.Column("reason", sa.Text()),
        sa.UniqueConstraint("entity_type", "entity_id", "sequence", name="uniq_status_history_sequence"),
    )
    op.create_index("idx_status_history_entity", "status_history", ["entity_type", "entity_id"])

    op.create_table(
        "notification_outbox",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("template_key", sa.String(length=64), nullable=False),
        sa.Column("payload_json", json_type, nullable=False),
        sa.Column("dedupe_key", sa.String(length=160), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint("dedupe_key", name="uniq_notification_outbox_dedupe_key"),
    )
    op.create_index(
        "idx_notification_outbox_status_next",
        "notification_outbox",
        ["status", "next_attempt_at"],
    )

    op.create_table(
        "scheduler_leases",
        sa.Column("job_name", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("holder", sa.String(length=128)),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("last_completed_period", sa.Date()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("scheduler_leases")
    op.drop_index("idx_notification_outbox_status_next", table_name="notification_outbox")
    op.drop_table("notification_outbox")
    op.drop_index("idx_status_history_entity", table_name="status_history")
    op.drop_table("status_history")
    op.drop_index("idx_appointments_status_time", table_name="appointments")
    op.drop_index("idx_appointments_report", table_name="appointments")
    op.drop_index("idx_appointments_branch", table_name="appointments")
    op.drop_index("idx_appointments_inspector_time", table_name="appointments")
    op.drop_table("appointments")
    op.drop_index("idx_offers_report", table_name="offers")
    op.drop_index("idx_offers_branch", table_name="offers")
    op.drop_index("idx_offers_status", table_name="offers")
    op.drop_table("offers")
    op.drop_index("idx_reports_branch", table_name="reports")
    op.drop_table("reports")
    op.drop_index("idx_customers_branch", table_name="customers")
    op.drop_table("customers")
    op.drop_index("idx_users_branch_role", table_name="users")
    op.drop_table("users")
