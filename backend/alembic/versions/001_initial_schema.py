"""Initial schema: bookings and audit trail, loyalty, stats, outbox, subscriptions, tasks.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

BOOKING_STATUSES = (
    "pending", "confirmed", "seated", "ordered", "appetizers", "main_course", "dessert",
    "completed", "declined_by_restaurant", "cancelled_by_user", "cancelled_by_restaurant", "no_show",
)


def _id() -> sa.Column:
    return sa.Column("id", sa.String(36), primary_key=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Users (read model of the auth service)
    op.create_table(
        "users",
        _id(),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # Bookings
    statuses = ", ".join(f"'{s}'" for s in BOOKING_STATUSES)
    op.create_table(
        "bookings",
        _id(),
        sa.Column("restaurant_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=True),
        sa.Column("guest_name", sa.String(100), nullable=True),
        sa.Column("guest_email", sa.String(255), nullable=True),
        sa.Column("guest_phone", sa.String(40), nullable=True),
        sa.Column("party_size", sa.Integer(), nullable=False),
        sa.Column("booking_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("turn_time_minutes", sa.Integer(), nullable=False, server_default=sa.text("120")),
        sa.Column("status", sa.String(30), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("confirmation_code", sa.String(16), nullable=False),
        sa.Column("applied_offer_id", sa.String(36), nullable=True),
        sa.Column("request_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.CheckConstraint("party_size > 0", name="check_booking_party_size_positive"),
        sa.CheckConstraint(f"status IN ({statuses})", name="check_booking_status"),
        sa.UniqueConstraint("confirmation_code"),
    )
    op.create_index("ix_bookings_restaurant_id", "bookings", ["restaurant_id"])
    op.create_index("ix_bookings_user_id", "bookings", ["user_id"])
    # Day sheet: "all bookings of restaurant X between T1 and T2"
    op.create_index("ix_bookings_restaurant_time", "bookings", ["restaurant_id", "booking_time"])
    # Expiry sweep: WHERE status = 'pending' AND request_expires_at <= now
    op.create_index("ix_bookings_status_expiry", "bookings", ["status", "request_expires_at"])

    op.create_table(
        "booking_status_history",
        _id(),
        sa.Column("booking_id", sa.String(36), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("old_status", sa.String(30), nullable=True),
        sa.Column("new_status", sa.String(30), nullable=False),
        sa.Column("changed_by", sa.String(36), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_booking_status_history_booking_id", "booking_status_history", ["booking_id"])

    op.create_table(
        "booking_tables",
        _id(),
        sa.Column("booking_id", sa.String(36), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("table_id", sa.String(36), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("booking_id", "table_id", name="uq_booking_table"),
    )
    op.create_index("ix_booking_tables_booking_id", "booking_tables", ["booking_id"])

    op.create_table(
        "offer_redemptions",
        _id(),
        sa.Column("booking_id", sa.String(36), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("offer_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'redeemed'")),
        sa.Column("reversed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('redeemed', 'reversed')", name="check_offer_redemption_status"),
    )
    op.create_index("ix_offer_redemptions_booking_id", "offer_redemptions", ["booking_id"])

    # Loyalty
    op.create_table(
        "restaurant_loyalty_rules",
        _id(),
        sa.Column("restaurant_id", sa.String(36), nullable=False),
        sa.Column("rule_name", sa.String(100), nullable=False, server_default=sa.text("''")),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("applicable_days", sa.JSON(), nullable=False),
        sa.Column("minimum_party_size", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("maximum_party_size", sa.Integer(), nullable=True),
        sa.Column("start_time_minutes", sa.Integer(), nullable=True),
        sa.Column("end_time_minutes", sa.Integer(), nullable=True),
        sa.Column("points_to_award", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint("points_to_award >= 0", name="check_rule_points_non_negative"),
        sa.CheckConstraint("minimum_party_size >= 1", name="check_rule_min_party_size"),
    )
    op.create_index("ix_restaurant_loyalty_rules_restaurant_id", "restaurant_loyalty_rules", ["restaurant_id"])

    op.create_table(
        "loyalty_transactions",
        _id(),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("restaurant_id", sa.String(36), nullable=False),
        sa.Column("booking_id", sa.String(36), nullable=True),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(20), nullable=False, server_default=sa.text("'earned'")),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("booking_id", "transaction_type", name="uq_loyalty_booking_type"),
    )
    op.create_index("ix_loyalty_transactions_user_id", "loyalty_transactions", ["user_id"])
    op.create_index("ix_loyalty_transactions_restaurant_id", "loyalty_transactions", ["restaurant_id"])

    op.create_table(
        "loyalty_balances",
        _id(),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("restaurant_id", sa.String(36), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "restaurant_id", name="uq_loyalty_balance_user_restaurant"),
    )

    # Behaviour tracking and restaurant counters
    op.create_table(
        "user_restaurant_stats",
        _id(),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("restaurant_id", sa.String(36), nullable=False),
        sa.Column("no_show_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "restaurant_id", name="uq_user_restaurant_stats"),
    )

    op.create_table(
        "flagged_users",
        _id(),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("restaurant_id", sa.String(36), nullable=False),
        sa.Column("reason", sa.String(50), nullable=False),
        sa.Column("flag_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending_review'")),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "restaurant_id", "reason", name="uq_flagged_user_reason"),
    )

    op.create_table(
        "restaurant_stats",
        _id(),
        sa.Column("restaurant_id", sa.String(36), nullable=False),
        sa.Column("total_bookings", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("completed_bookings", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cancelled_bookings", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("no_show_bookings", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.UniqueConstraint("restaurant_id"),
    )

    # Device registry and preferences
    op.create_table(
        "push_subscriptions",
        _id(),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("p256dh", sa.Text(), nullable=False),
        sa.Column("auth", sa.Text(), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("restaurant_id", sa.String(36), nullable=True),
        sa.Column("browser", sa.String(50), nullable=False, server_default=sa.text("'unknown'")),
        sa.Column("device_type", sa.String(50), nullable=False, server_default=sa.text("'unknown'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("endpoint"),
    )
    op.create_index("ix_push_subscriptions_user_id", "push_subscriptions", ["user_id"])
    op.create_index("ix_push_subscriptions_restaurant_id", "push_subscriptions", ["restaurant_id"])

    op.create_table(
        "restaurant_notification_preferences",
        _id(),
        sa.Column("restaurant_id", sa.String(36), nullable=False),
        sa.Column("quiet_hours_start", sa.String(5), nullable=True),
        sa.Column("quiet_hours_end", sa.String(5), nullable=True),
        sa.Column("new_bookings", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("cancellations", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("modifications", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("waitlist_updates", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("table_ready", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("order_updates", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.UniqueConstraint("restaurant_id"),
    )

    # Outbox
    op.create_table(
        "notification_outbox",
        _id(),
        sa.Column("user_id", sa.String(36), nullable=True),
        sa.Column("restaurant_id", sa.String(36), nullable=True),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("type", sa.String(50), nullable=False, server_default=sa.text("'general'")),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'queued'")),
        sa.Column("priority", sa.String(10), nullable=False, server_default=sa.text("'normal'")),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("suppressed_reason", sa.String(50), nullable=True),
        sa.Column("idempotency_key", sa.String(150), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('queued', 'sent', 'failed')", name="check_outbox_status"),
        sa.CheckConstraint("priority IN ('high', 'normal', 'low')", name="check_outbox_priority"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index("ix_notification_outbox_user_id", "notification_outbox", ["user_id"])
    # Worker poll: WHERE status = 'queued' AND scheduled_for <= now
    op.create_index("ix_outbox_status_scheduled", "notification_outbox", ["status", "scheduled_for"])

    op.create_table(
        "notification_history",
        _id(),
        sa.Column("outbox_entry_id", sa.String(36), sa.ForeignKey("notification_outbox.id"), nullable=False),
        sa.Column("subscription_id", sa.String(36), nullable=True),
        sa.Column("user_id", sa.String(36), nullable=True),
        sa.Column("restaurant_id", sa.String(36), nullable=True),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("delivered", sa.Boolean(), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("permanent_failure", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_notification_history_outbox_entry_id", "notification_history", ["outbox_entry_id"])

    op.create_table(
        "user_notifications",
        _id(),
        sa.Column("user_id", sa.String(36), nullable=True),
        sa.Column("restaurant_id", sa.String(36), nullable=True),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
    )
    op.create_index("ix_user_notifications_user_id", "user_notifications", ["user_id"])
    op.create_index("ix_user_notifications_restaurant_id", "user_notifications", ["restaurant_id"])

    # Deferred tasks
    op.create_table(
        "scheduled_tasks",
        _id(),
        sa.Column("task_type", sa.String(50), nullable=False),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("idempotency_key", sa.String(150), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('pending', 'done', 'failed')", name="check_task_status"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index("ix_scheduled_tasks_status_due", "scheduled_tasks", ["status", "due_at"])


def downgrade() -> None:
    op.drop_table("scheduled_tasks")
    op.drop_table("user_notifications")
    op.drop_table("notification_history")
    op.drop_table("notification_outbox")
    op.drop_table("restaurant_notification_preferences")
    op.drop_table("push_subscriptions")
    op.drop_table("restaurant_stats")
    op.drop_table("flagged_users")
    op.drop_table("user_restaurant_stats")
    op.drop_table("loyalty_balances")
    op.drop_table("loyalty_transactions")
    op.drop_table("restaurant_loyalty_rules")
    op.drop_table("offer_redemptions")
    op.drop_table("booking_tables")
    op.drop_table("booking_status_history")
    op.drop_table("bookings")
    op.drop_table("users")
