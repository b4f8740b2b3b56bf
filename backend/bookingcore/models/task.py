"""
Deferred work for the time-driven task consumer (review requests).
"""

from sqlalchemy import JSON, CheckConstraint, Column, Index, Integer, String, Text

from bookingcore.db.base import Base, TimestampMixin, UTCDateTime, new_id


class ScheduledTask(Base, TimestampMixin):
    __tablename__ = "scheduled_tasks"

    id = Column(String(36), primary_key=True, default=new_id)
    task_type = Column(String(50), nullable=False)
    due_at = Column(UTCDateTime(), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    idempotency_key = Column(String(150), nullable=False, unique=True)
    processed_at = Column(UTCDateTime(), nullable=True)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'done', 'failed')", name="check_task_status"),
        Index("ix_scheduled_tasks_status_due", "status", "due_at"),
    )

    def __repr__(self) -> str:
        return f"<ScheduledTask(id={self.id}, type={self.task_type}, status={self.status})>"
