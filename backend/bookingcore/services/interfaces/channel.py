"""
Delivery channel interface.
Lets the delivery worker hand any outbox entry to any transport through one
contract, so adding a channel never touches the worker.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from bookingcore.models.notification import OutboxEntry


@dataclass
class AttemptOutcome:
    """Result of one delivery attempt to one endpoint (or one inbox)."""

    subscription_id: Optional[str]
    user_id: Optional[str]
    delivered: bool
    error: Optional[str] = None
    permanent: bool = False


@dataclass
class DeliveryReport:
    attempts: list[AttemptOutcome] = field(default_factory=list)
    suppressed_reason: Optional[str] = None

    @property
    def delivered(self) -> int:
        return sum(1 for a in self.attempts if a.delivered)

    @property
    def permanent_failures(self) -> list[str]:
        return [a.subscription_id for a in self.attempts if a.permanent and a.subscription_id]

    @property
    def has_transient_failure(self) -> bool:
        return any(not a.delivered and not a.permanent for a in self.attempts)


class DeliveryChannel(ABC):
    """
    Interface for notification transports.

    Implementations:
    - WebPushChannel: fan-out to every active browser/device subscription
    - InAppChannel: one row in the recipient's notification inbox
    """

    name: str

    @abstractmethod
    async def send(self, db: AsyncSession, entry: OutboxEntry, now: datetime) -> DeliveryReport:
        """
        Deliver one outbox entry.

        Per-endpoint failures are reported in the returned attempts, never
        raised. A suppressed entry comes back with no attempts and a
        suppressed_reason.
        """
        pass
