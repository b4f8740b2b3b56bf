"""
Notification outbox, delivery audit trail and device registry.

Key design decisions:
- PushSubscription.endpoint is globally unique; re-registration updates in place
- Subscriptions are soft-deactivated, never deleted
- OutboxEntry.status only moves forward: queued -> sent | failed
- NotificationHistory is write-once, one row per delivery attempt
- Partial index-friendly composite (status, scheduled_for) drives the worker poll
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from bookingcore.db.base import Base, TimestampMixin, UTCDateTime, new_id, utcnow


class PushSubscription(Base, TimestampMixin):
    __tablename__ = "push_subscriptions"

    id = Column(String(36), primary_key=True, default=new_id)
    endpoint = Column(Text, nullable=False, unique=True)
    p256dh = Column(Text, nullable=False)
    auth = Column(Text, nullable=False)
    user_id = Column(String(36), nullable=False, index=True)
    restaurant_id = Column(String(36), nullable=True, index=True)
    browser = Column(String(50), nullable=False, default="unknown")
    device_type = Column(String(50), nullable=False, default="unknown")
    is_active = Column(Boolean, nullable=False, default=True)
    last_used_at = Column(UTCDateTime(), nullable=True, default=utcnow)

    def __repr__(self) -> str:
        return f"<PushSubscription(id={self.id}, user={self.user_id}, active={self.is_active})>"


class NotificationPreference(Base, TimestampMixin):
    __tablename__ = "restaurant_notification_preferences"

    id = Column(String(36), primary_key=True, default=new_id)
    restaurant_id = Column(String(36), nullable=False, unique=True)
    quiet_hours_start = Column(String(5), nullable=True)  # "HH:MM"
    quiet_hours_end = Column(String(5), nullable=True)
    new_bookings = Column(Boolean, nullable=False, default=True)
    cancellations = Column(Boolean, nullable=False, default=True)
    modifications = Column(Boolean, nullable=False, default=True)
    waitlist_updates = Column(Boolean, nullable=False, default=True)
    table_ready = Column(Boolean, nullable=False, default=True)
    order_updates = Column(Boolean, nullable=False, default=True)


class OutboxEntry(Base, TimestampMixin):
    __tablename__ = "notification_outbox"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=True, index=True)  # NULL = every restaurant device
    restaurant_id = Column(String(36), nullable=True)
    channel = Column(String(20), nullable=False)
    type = Column(String(50), nullable=False, default="general")
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default="queued")
    priority = Column(String(10), nullable=False, default="normal")
    scheduled_for = Column(UTCDateTime(), nullable=False, default=utcnow)
    attempts = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    sent_at = Column(UTCDateTime(), nullable=True)
    last_error = Column(Text, nullable=True)
    suppressed_reason = Column(String(50), nullable=True)
    idempotency_key = Column(String(150), nullable=True, unique=True)

    __table_args__ = (
        CheckConstraint("status IN ('queued', 'sent', 'failed')", name="check_outbox_status"),
        CheckConstraint("priority IN ('high', 'normal', 'low')", name="check_outbox_priority"),
        Index("ix_outbox_status_scheduled", "status", "scheduled_for"),
    )

    def __repr__(self) -> str:
        return f"<OutboxEntry(id={self.id}, channel={self.channel}, status={self.status})>"


class NotificationHistory(Base):
    __tablename__ = "notification_history"

    id = Column(String(36), primary_key=True, default=new_id)
    outbox_entry_id = Column(String(36), ForeignKey("notification_outbox.id"), nullable=False, index=True)
    subscription_id = Column(String(36), nullable=True)
    user_id = Column(String(36), nullable=True)
    restaurant_id = Column(String(36), nullable=True)
    channel = Column(String(20), nullable=False)
    delivered = Column(Boolean, nullable=False)
    delivered_at = Column(UTCDateTime(), nullable=True)
    permanent_failure = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)


class UserNotification(Base, TimestampMixin):
    """In-app inbox row written by the in_app channel."""

    __tablename__ = "user_notifications"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=True, index=True)
    restaurant_id = Column(String(36), nullable=True, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
