"""
Tests for the outbox delivery worker and its channels.

Push goes through FakePushSender (see conftest); every drain runs at
`later_tonight` so quiet-hour checks see a fixed 23:00 UTC.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from bookingcore.core.config import get_settings
from bookingcore.core.errors import DeliveryError
from bookingcore.models import NotificationHistory, OutboxEntry, PushSubscription, UserNotification
from bookingcore.services.channel_factory import build_services
from bookingcore.services.outbox_service import enqueue_notification
from tests.conftest import RESTAURANT_ID, USER_ID, count_rows


async def add_device(services, db, endpoint, user_id="staff-1", restaurant_id=RESTAURANT_ID):
    subscription = await services.registry.register(
        db,
        endpoint=endpoint,
        p256dh="p256dh-key",
        auth="auth-secret",
        user_id=user_id,
        restaurant_id=restaurant_id,
    )
    await db.commit()
    return subscription


async def queue(db, **overrides) -> OutboxEntry:
    values = dict(
        channel="push",
        title="New Booking",
        body="A new booking has been made for 4 guests",
        restaurant_id=RESTAURANT_ID,
        type="new_booking",
        payload={"booking_id": "booking-1"},
    )
    values.update(overrides)
    entry, _ = await enqueue_notification(db, **values)
    await db.commit()
    return entry


async def reload(db, entry: OutboxEntry) -> OutboxEntry:
    return await db.get(OutboxEntry, entry.id, populate_existing=True)


class TestPushFanOut:
    @pytest.mark.asyncio
    async def test_restaurant_entry_reaches_every_device(self, db_session, services, push_sender, later_tonight):
        await add_device(services, db_session, "https://push.example/tablet-1")
        await add_device(services, db_session, "https://push.example/tablet-2", user_id="staff-2")
        await add_device(services, db_session, "https://push.example/other", restaurant_id="elsewhere")
        entry = await queue(db_session)

        report = await services.worker.drain(db_session, now=later_tonight)

        assert report.processed == 1
        assert report.sent == 1
        assert sorted(endpoint for endpoint, _ in push_sender.sent) == [
            "https://push.example/tablet-1",
            "https://push.example/tablet-2",
        ]
        _, data = push_sender.sent[0]
        assert data["title"] == "New Booking"
        assert data["data"]["type"] == "new_booking"
        assert data["data"]["booking_id"] == "booking-1"
        assert data["data"]["outbox_entry_id"] == entry.id

        stored = await reload(db_session, entry)
        assert stored.status == "sent"
        assert stored.attempts == 1
        assert stored.sent_at == later_tonight
        history = (await db_session.execute(select(NotificationHistory))).scalars().all()
        assert len(history) == 2
        assert all(h.delivered for h in history)

    @pytest.mark.asyncio
    async def test_user_entry_targets_only_that_users_devices(self, db_session, services, push_sender, later_tonight):
        await add_device(services, db_session, "https://push.example/phone", user_id=USER_ID, restaurant_id=None)
        await add_device(services, db_session, "https://push.example/tablet-1")
        await queue(db_session, user_id=USER_ID, restaurant_id=None, type="booking_confirmed")

        await services.worker.drain(db_session, now=later_tonight)

        assert [endpoint for endpoint, _ in push_sender.sent] == ["https://push.example/phone"]

    @pytest.mark.asyncio
    async def test_gone_endpoint_is_deactivated(self, db_session, services, push_sender, later_tonight):
        dead = await add_device(services, db_session, "https://push.example/dead")
        await add_device(services, db_session, "https://push.example/alive")
        push_sender.failures["https://push.example/dead"] = DeliveryError(
            "Push service returned 410", permanent=True, status_code=410
        )
        entry = await queue(db_session)

        report = await services.worker.drain(db_session, now=later_tonight)

        assert report.sent == 1
        assert (await reload(db_session, entry)).status == "sent"
        subscription = await db_session.get(PushSubscription, dead.id, populate_existing=True)
        assert subscription.is_active is False

        failure = (await db_session.execute(
            select(NotificationHistory).where(NotificationHistory.delivered.is_(False))
        )).scalar_one()
        assert failure.subscription_id == dead.id
        assert failure.permanent_failure is True

    @pytest.mark.asyncio
    async def test_all_transient_failures_mark_entry_failed(self, db_session, services, push_sender, later_tonight):
        await add_device(services, db_session, "https://push.example/flaky")
        push_sender.failures["https://push.example/flaky"] = DeliveryError("Push service returned 503")
        entry = await queue(db_session)

        report = await services.worker.drain(db_session, now=later_tonight)

        assert report.failed == 1
        stored = await reload(db_session, entry)
        assert stored.status == "failed"
        assert stored.last_error == "Push service returned 503"
        # Transient failures never deactivate a device
        assert await count_rows(db_session, PushSubscription, PushSubscription.is_active.is_(True)) == 1

    @pytest.mark.asyncio
    async def test_transient_failure_is_requeued_when_retries_enabled(
        self, db_session, push_sender, later_tonight
    ):
        retry_settings = get_settings().model_copy(
            update={"OUTBOX_MAX_ATTEMPTS": 3, "OUTBOX_RETRY_BASE_SECONDS": 60}
        )
        services = build_services(retry_settings, sender=push_sender)
        await add_device(services, db_session, "https://push.example/flaky")
        push_sender.failures["https://push.example/flaky"] = DeliveryError("Push service returned 503")
        entry = await queue(db_session)

        report = await services.worker.drain(db_session, now=later_tonight)

        assert report.requeued == 1
        stored = await reload(db_session, entry)
        assert stored.status == "queued"
        assert stored.retry_count == 1
        assert stored.scheduled_for == later_tonight + timedelta(seconds=60)

        # Not due again until the backoff has passed
        early = await services.worker.drain(db_session, now=later_tonight + timedelta(seconds=30))
        assert early.processed == 0

        second = await services.worker.drain(db_session, now=later_tonight + timedelta(seconds=60))
        assert second.requeued == 1
        stored = await reload(db_session, entry)
        assert stored.scheduled_for == later_tonight + timedelta(seconds=180)

        third = await services.worker.drain(db_session, now=later_tonight + timedelta(seconds=180))
        assert third.failed == 1
        stored = await reload(db_session, entry)
        assert stored.status == "failed"
        assert stored.attempts == 3

    @pytest.mark.asyncio
    async def test_slow_endpoint_times_out_without_blocking_others(self, db_session, push_sender, later_tonight):
        fast_settings = get_settings().model_copy(update={"DELIVERY_TIMEOUT_SECONDS": 0.05})
        services = build_services(fast_settings, sender=push_sender)
        await add_device(services, db_session, "https://push.example/slow")
        await add_device(services, db_session, "https://push.example/fast")
        push_sender.failures["https://push.example/slow"] = "slow"
        entry = await queue(db_session)

        report = await services.worker.drain(db_session, now=later_tonight)

        assert report.sent == 1
        assert [endpoint for endpoint, _ in push_sender.sent] == ["https://push.example/fast"]
        timeout = (await db_session.execute(
            select(NotificationHistory).where(NotificationHistory.delivered.is_(False))
        )).scalar_one()
        assert timeout.error == "timeout"
        assert timeout.permanent_failure is False
        assert (await reload(db_session, entry)).status == "sent"

    @pytest.mark.asyncio
    async def test_no_subscriptions_is_suppressed(self, db_session, services, push_sender, later_tonight):
        entry = await queue(db_session)

        report = await services.worker.drain(db_session, now=later_tonight)

        assert report.suppressed == 1
        stored = await reload(db_session, entry)
        assert stored.status == "sent"
        assert stored.suppressed_reason == "no_subscriptions"
        assert push_sender.sent == []


class TestPreferences:
    @pytest.mark.asyncio
    async def test_quiet_hours_suppress_normal_priority(self, db_session, services, push_sender, later_tonight):
        await add_device(services, db_session, "https://push.example/tablet-1")
        await services.registry.update_preferences(
            db_session, RESTAURANT_ID, {"quiet_hours_start": "22:00", "quiet_hours_end": "07:00"}
        )
        await db_session.commit()
        entry = await queue(db_session)

        report = await services.worker.drain(db_session, now=later_tonight)

        assert report.suppressed == 1
        stored = await reload(db_session, entry)
        assert stored.status == "sent"
        assert stored.suppressed_reason == "quiet_hours"
        assert push_sender.sent == []

    @pytest.mark.asyncio
    async def test_high_priority_ignores_quiet_hours(self, db_session, services, push_sender, later_tonight):
        await add_device(services, db_session, "https://push.example/tablet-1")
        await services.registry.update_preferences(
            db_session, RESTAURANT_ID, {"quiet_hours_start": "22:00", "quiet_hours_end": "07:00"}
        )
        await db_session.commit()
        await queue(db_session, type="booking_cancelled", priority="high")

        report = await services.worker.drain(db_session, now=later_tonight)

        assert report.sent == 1
        assert len(push_sender.sent) == 1

    @pytest.mark.asyncio
    async def test_disabled_category_is_suppressed(self, db_session, services, push_sender, later_tonight):
        await add_device(services, db_session, "https://push.example/tablet-1")
        await services.registry.update_preferences(db_session, RESTAURANT_ID, {"new_bookings": False})
        await db_session.commit()
        new_booking = await queue(db_session)
        cancelled = await queue(db_session, type="booking_cancelled", title="Booking Cancelled")

        report = await services.worker.drain(db_session, now=later_tonight)

        assert report.suppressed == 1
        assert report.sent == 1
        assert (await reload(db_session, new_booking)).suppressed_reason == "category_disabled"
        assert (await reload(db_session, cancelled)).suppressed_reason is None
        assert [data["title"] for _, data in push_sender.sent] == ["Booking Cancelled"]

    @pytest.mark.asyncio
    async def test_restaurant_preferences_do_not_silence_diners(
        self, db_session, services, push_sender, later_tonight
    ):
        await add_device(services, db_session, "https://push.example/diner-phone", user_id=USER_ID, restaurant_id=None)
        await services.registry.update_preferences(
            db_session,
            RESTAURANT_ID,
            {"cancellations": False, "quiet_hours_start": "22:00", "quiet_hours_end": "07:00"},
        )
        await db_session.commit()
        cancelled = await queue(
            db_session, user_id=USER_ID, type="booking_cancelled", priority="high",
            title="Booking Cancelled", body="Your booking has been cancelled by the restaurant",
        )
        confirmed = await queue(db_session, user_id=USER_ID, type="booking_confirmed", title="Booking Confirmed")

        report = await services.worker.drain(db_session, now=later_tonight)

        assert report.sent == 2
        assert report.suppressed == 0
        assert (await reload(db_session, cancelled)).suppressed_reason is None
        assert (await reload(db_session, confirmed)).suppressed_reason is None
        assert sorted(data["title"] for _, data in push_sender.sent) == ["Booking Cancelled", "Booking Confirmed"]
        assert {endpoint for endpoint, _ in push_sender.sent} == {"https://push.example/diner-phone"}


class TestWorker:
    @pytest.mark.asyncio
    async def test_in_app_entry_writes_inbox_row(self, db_session, services, later_tonight):
        entry = await queue(
            db_session, channel="in_app", user_id=USER_ID, type="booking_confirmed",
            title="Booking Confirmed", body="See you soon",
        )

        report = await services.worker.drain(db_session, now=later_tonight)

        assert report.sent == 1
        inbox = (await db_session.execute(select(UserNotification))).scalar_one()
        assert inbox.user_id == USER_ID
        assert inbox.message == "See you soon"
        assert inbox.is_read is False
        assert (await reload(db_session, entry)).status == "sent"
        assert await count_rows(db_session, NotificationHistory, NotificationHistory.channel == "in_app") == 1

    @pytest.mark.asyncio
    async def test_in_app_without_recipient_is_suppressed(self, db_session, services, later_tonight):
        entry = await queue(db_session, channel="in_app", user_id=None)

        await services.worker.drain(db_session, now=later_tonight)

        stored = await reload(db_session, entry)
        assert stored.status == "sent"
        assert stored.suppressed_reason == "no_recipient"
        assert await count_rows(db_session, UserNotification) == 0

    @pytest.mark.asyncio
    async def test_unsupported_channel_fails(self, db_session, services, later_tonight):
        entry = await queue(db_session, channel="sms")

        report = await services.worker.drain(db_session, now=later_tonight)

        assert report.failed == 1
        stored = await reload(db_session, entry)
        assert stored.status == "failed"
        assert stored.last_error == "unsupported_channel"

    @pytest.mark.asyncio
    async def test_high_priority_drains_first(self, db_session, push_sender, later_tonight):
        one_at_a_time = get_settings().model_copy(update={"OUTBOX_BATCH_SIZE": 1})
        services = build_services(one_at_a_time, sender=push_sender)
        low = await queue(db_session, priority="low", type="general")
        high = await queue(db_session, priority="high", type="general")

        await services.worker.drain(db_session, now=later_tonight)

        assert (await reload(db_session, high)).status == "sent"
        assert (await reload(db_session, low)).status == "queued"

    @pytest.mark.asyncio
    async def test_future_entries_are_left_alone(self, db_session, services, later_tonight):
        entry = await queue(db_session, scheduled_for=later_tonight + timedelta(hours=1))

        report = await services.worker.drain(db_session, now=later_tonight)

        assert report.processed == 0
        stored = await reload(db_session, entry)
        assert stored.status == "queued"
        assert stored.attempts == 0

    @pytest.mark.asyncio
    async def test_entry_claimed_elsewhere_is_skipped(self, db_session, services, later_tonight):
        entry = await queue(db_session)
        seen = await reload(db_session, entry)
        await db_session.execute(
            update(OutboxEntry)
            .where(OutboxEntry.id == entry.id)
            .values(attempts=OutboxEntry.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        await db_session.commit()

        assert await services.worker.claim(db_session, seen, later_tonight) is False


class TestCronEndpoint:
    @pytest.mark.asyncio
    async def test_requires_cron_secret(self, client):
        response = await client.post("/api/v1/cron/process-notifications")
        assert response.status_code == 401

        response = await client.post(
            "/api/v1/cron/process-notifications", headers={"Authorization": "Bearer wrong"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_drains_due_entries(self, client, db_session, cron_headers, push_sender, services):
        await add_device(services, db_session, "https://push.example/tablet-1")
        await queue(db_session, type="general")

        response = await client.post("/api/v1/cron/process-notifications", headers=cron_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["processed"] == 1
        assert body["sent"] == 1
        assert len(push_sender.sent) == 1
