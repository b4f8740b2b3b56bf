"""Processed webhook event receipts.

Revision ID: 002
Revises: 001
Create Date: 2026-10-20
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "processed_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("event_key", sa.String(255), nullable=False),
        sa.Column("booking_id", sa.String(36), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("event_key", name="uq_processed_events_event_key"),
    )
    op.create_index("ix_processed_events_booking_id", "processed_events", ["booking_id"])


def downgrade() -> None:
    op.drop_index("ix_processed_events_booking_id", table_name="processed_events")
    op.drop_table("processed_events")
