"""Baseline booking schema: engagements, provider time blocks, provider locks."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision = "0001_booking_baseline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "engagements" not in existing_tables:
        op.create_table(
            "engagements",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("client_id", sa.String(), nullable=False),
            sa.Column("category", sa.String(), nullable=False),
            sa.Column("tasks", sa.JSON(), nullable=False),
            sa.Column("location", sa.JSON(), nullable=True),
            sa.Column("scheduled_date", sa.DateTime(), nullable=True),
            sa.Column(
                "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
            ),
            sa.Column("recurrence", sa.JSON(), nullable=True),
            sa.Column(
                "status", sa.String(), nullable=False, server_default="requested"
            ),
            sa.Column("selected_provider_id", sa.String(), nullable=True),
            sa.Column("provider_name", sa.String(), nullable=True),
            sa.Column("hold_id", sa.String(), nullable=True),
            sa.Column("hold_expires_at", sa.DateTime(), nullable=True),
            sa.Column("recurrence_series_id", sa.String(), nullable=True),
            sa.Column("recurrence_index", sa.Integer(), nullable=True),
            sa.Column(
                "reminder_sent", sa.Boolean(), nullable=False, server_default=sa.false()
            ),
            sa.Column("reminder_sent_at", sa.DateTime(), nullable=True),
            sa.Column("reminder_skip_reason", sa.String(), nullable=True),
            sa.Column("quotation_id", sa.String(), nullable=True),
            sa.Column("contractor_id", sa.String(), nullable=True),
            sa.Column("ended_by", sa.String(), nullable=True),
            sa.Column("ended_at", sa.DateTime(), nullable=True),
            sa.Column("provider_response_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint(
                "recurrence_series_id",
                "recurrence_index",
                name="uq_engagements_series_index",
            ),
        )
        for column in (
            "client_id",
            "scheduled_date",
            "is_recurring",
            "status",
            "selected_provider_id",
            "recurrence_series_id",
            "created_at",
        ):
            op.create_index(f"ix_engagements_{column}", "engagements", [column])

    if "time_blocks" not in existing_tables:
        op.create_table(
            "time_blocks",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("provider_id", sa.String(), nullable=False),
            sa.Column("job_id", sa.String(), nullable=False),
            sa.Column("client_id", sa.String(), nullable=True),
            sa.Column("status", sa.String(), nullable=False),
            sa.Column("service_start", sa.DateTime(), nullable=False),
            sa.Column("service_end", sa.DateTime(), nullable=False),
            sa.Column("padded_start", sa.DateTime(), nullable=False),
            sa.Column("padded_end", sa.DateTime(), nullable=False),
            sa.Column("hold_expires_at", sa.DateTime(), nullable=True),
            sa.Column(
                "occurrence_index", sa.Integer(), nullable=False, server_default="0"
            ),
            sa.Column(
                "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
            ),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        for column in ("provider_id", "job_id", "status", "padded_start"):
            op.create_index(f"ix_time_blocks_{column}", "time_blocks", [column])

    if "provider_locks" not in existing_tables:
        op.create_table(
            "provider_locks",
            sa.Column("provider_id", sa.String(), primary_key=True),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )


def downgrade() -> None:
    op.drop_table("provider_locks")
    op.drop_table("time_blocks")
    op.drop_table("engagements")
