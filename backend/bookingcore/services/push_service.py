"""
Web Push delivery.

FAN-OUT STRATEGY
================
One outbox entry can address hundreds of devices (every staff tablet of a
restaurant, or every browser a diner ever subscribed from). Attempts run in
parallel, bounded two ways:

  - asyncio.Semaphore(DELIVERY_CONCURRENCY) caps awaited attempts
  - asyncio.wait_for(DELIVERY_TIMEOUT_SECONDS) caps each attempt; a timeout
    is a transient failure

Attempts are joined with gather(return_exceptions=True): one dead endpoint
never cancels its siblings, and every attempt yields an outcome.

Outcome mapping:
  - 2xx                 -> delivered
  - 404 / 410           -> permanent, subscription gets deactivated
  - anything else       -> transient (5xx, 429, network, timeout)

pywebpush is synchronous (requests under the hood), so each send runs in a
worker thread. wait_for cannot cancel that thread; it ends when the requests
timeout (the same DELIVERY_TIMEOUT_SECONDS) fires.
"""

import asyncio
import json
import time
from datetime import datetime
from typing import Optional

from pywebpush import WebPushException, webpush
from sqlalchemy.ext.asyncio import AsyncSession

from bookingcore.core.config import Settings
from bookingcore.core.errors import DeliveryError
from bookingcore.core.logging import get_logger
from bookingcore.core.metrics import delivery_latency, notifications_suppressed, record_delivery
from bookingcore.models.notification import OutboxEntry
from bookingcore.services.interfaces.channel import AttemptOutcome, DeliveryChannel, DeliveryReport
from bookingcore.services.subscription_registry import SubscriptionRegistry, suppression_reason

logger = get_logger(__name__)

PERMANENT_STATUSES = frozenset({404, 410})


class WebPushSender:
    """Sends one encrypted payload to one subscription with VAPID auth."""

    def __init__(self, settings: Settings):
        self.private_key = settings.VAPID_PRIVATE_KEY
        self.email = settings.VAPID_EMAIL
        self.timeout = settings.DELIVERY_TIMEOUT_SECONDS

    async def send(self, subscription_info: dict, data: str) -> None:
        if not self.private_key:
            raise DeliveryError("Web push is not configured")
        await asyncio.to_thread(self._send_sync, subscription_info, data)

    def _send_sync(self, subscription_info: dict, data: str) -> None:
        try:
            webpush(
                subscription_info=subscription_info,
                data=data,
                vapid_private_key=self.private_key,
                # webpush adds aud/exp to the claims dict, so build a fresh one per call
                vapid_claims={"sub": f"mailto:{self.email}"},
                timeout=self.timeout,
            )
        except WebPushException as e:
            endpoint_status = e.response.status_code if e.response is not None else None
            raise DeliveryError(
                f"Push service returned {endpoint_status}" if endpoint_status else str(e),
                permanent=endpoint_status in PERMANENT_STATUSES,
                status_code=endpoint_status,
            ) from e
        except OSError as e:
            # requests' connection errors are OSError subclasses
            raise DeliveryError(f"Push request failed: {e}") from e


class WebPushChannel(DeliveryChannel):
    name = "push"

    def __init__(self, registry: SubscriptionRegistry, sender, settings: Settings):
        self.registry = registry
        self.sender = sender
        self.settings = settings

    async def send(self, db: AsyncSession, entry: OutboxEntry, now: datetime) -> DeliveryReport:
        # Restaurant preferences govern staff devices only; diner pushes always go out
        if entry.user_id is None and entry.restaurant_id:
            prefs = await self.registry.preferences_for(db, entry.restaurant_id)
            reason = suppression_reason(
                prefs, entry.type, entry.priority, now, self.settings.NOTIFICATION_TIMEZONE
            )
            if reason:
                notifications_suppressed.labels(reason=reason).inc()
                logger.info("notification_suppressed", outbox_entry_id=entry.id, reason=reason)
                return DeliveryReport(suppressed_reason=reason)

        user_ids = [entry.user_id] if entry.user_id else None
        subscriptions = await self.registry.active_subscriptions_for(db, user_ids, entry.restaurant_id)
        if not subscriptions:
            return DeliveryReport(suppressed_reason="no_subscriptions")

        data = json.dumps({
            "title": entry.title,
            "body": entry.body,
            "data": {**(entry.payload or {}), "type": entry.type, "outbox_entry_id": entry.id},
        })
        # Plain tuples: the fan-out must not touch ORM state
        targets = [
            (
                s.id,
                s.user_id,
                {"endpoint": s.endpoint, "keys": {"p256dh": s.p256dh, "auth": s.auth}},
            )
            for s in subscriptions
        ]

        outcomes = await self.fan_out(targets, data)
        report = DeliveryReport(attempts=outcomes)
        logger.info(
            "push_fan_out_completed",
            outbox_entry_id=entry.id,
            targets=len(targets),
            delivered=report.delivered,
            permanent_failures=len(report.permanent_failures),
        )
        return report

    async def fan_out(self, targets: list[tuple[str, Optional[str], dict]], data: str) -> list[AttemptOutcome]:
        semaphore = asyncio.Semaphore(self.settings.DELIVERY_CONCURRENCY)
        timeout = self.settings.DELIVERY_TIMEOUT_SECONDS

        async def attempt(subscription_id: str, user_id: Optional[str], info: dict) -> AttemptOutcome:
            async with semaphore:
                start = time.perf_counter()
                try:
                    # A timed-out send keeps its worker thread until the HTTP timeout
                    # fires, so threads in flight can briefly exceed DELIVERY_CONCURRENCY
                    await asyncio.wait_for(self.sender.send(info, data), timeout=timeout)
                except asyncio.TimeoutError:
                    record_delivery(self.name, "transient")
                    return AttemptOutcome(subscription_id, user_id, delivered=False, error="timeout")
                except DeliveryError as e:
                    record_delivery(self.name, "permanent" if e.permanent else "transient")
                    return AttemptOutcome(
                        subscription_id, user_id, delivered=False, error=e.message, permanent=e.permanent
                    )
                finally:
                    delivery_latency.observe(time.perf_counter() - start)
                record_delivery(self.name, "delivered")
                return AttemptOutcome(subscription_id, user_id, delivered=True)

        results = await asyncio.gather(
            *(attempt(sid, uid, info) for sid, uid, info in targets),
            return_exceptions=True,
        )

        outcomes = []
        for (subscription_id, user_id, _), result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error("push_attempt_crashed", subscription_id=subscription_id, error=repr(result))
                record_delivery(self.name, "transient")
                result = AttemptOutcome(subscription_id, user_id, delivered=False, error=repr(result))
            outcomes.append(result)
        return outcomes
