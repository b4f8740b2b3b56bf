"""
In-app channel - writes to the recipient's notification inbox.
"""

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from bookingcore.core.metrics import record_delivery
from bookingcore.models.notification import OutboxEntry, UserNotification
from bookingcore.services.interfaces.channel import AttemptOutcome, DeliveryChannel, DeliveryReport


class InAppChannel(DeliveryChannel):
    """
    One inbox row per entry. Always delivered unless the entry has no
    recipient; restaurant-wide entries have no inbox to land in.
    """

    name = "in_app"

    async def send(self, db: AsyncSession, entry: OutboxEntry, now: datetime) -> DeliveryReport:
        if not entry.user_id:
            return DeliveryReport(suppressed_reason="no_recipient")

        db.add(UserNotification(
            user_id=entry.user_id,
            restaurant_id=entry.restaurant_id,
            type=entry.type,
            title=entry.title,
            message=entry.body,
            data=entry.payload or {},
        ))
        await db.flush()
        record_delivery(self.name, "delivered")
        return DeliveryReport(attempts=[
            AttemptOutcome(subscription_id=None, user_id=entry.user_id, delivered=True),
        ])
