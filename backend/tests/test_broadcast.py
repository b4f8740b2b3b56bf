"""
Tests for admin broadcast sends: target resolution, chunked inserts and
scheduling.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from bookingcore.models import OutboxEntry, User
from bookingcore.schemas.notification import BroadcastRequest
from bookingcore.services import outbox_service
from bookingcore.services.outbox_service import broadcast, resolve_send_time, resolve_target_user_ids
from tests.conftest import RESTAURANT_ID, count_rows

URL = "/api/v1/admin/notifications/send"


async def seed_users(db, count: int) -> list[str]:
    users = [User(id=f"user-{i:05d}", email=f"diner{i}@example.com") for i in range(count)]
    db.add_all(users)
    await db.commit()
    return [u.id for u in users]


def request(**overrides) -> BroadcastRequest:
    values = {
        "title": "Kitchen closed Monday",
        "body": "We are closed for a private event.",
        "channels": ["push", "in_app"],
        "target": {"type": "all_users"},
    }
    values.update(overrides)
    return BroadcastRequest.model_validate(values)


@pytest.mark.asyncio
async def test_large_broadcast_is_inserted_in_chunks(db_session, settings, services):
    await seed_users(db_session, 1200)

    result = await broadcast(db_session, request(), settings, services.channels)

    assert result.recipients == 1200
    assert result.queue_items == 2400
    assert result.chunk_sizes == [1000, 1000, 400]
    assert result.failed_chunks == 0
    assert result.scheduled is False
    assert await count_rows(db_session, OutboxEntry, OutboxEntry.status == "queued") == 2400

    per_user = await db_session.execute(
        select(OutboxEntry.user_id, func.count()).group_by(OutboxEntry.user_id).having(func.count() != 2)
    )
    assert per_user.all() == []


@pytest.mark.asyncio
async def test_keyset_paging_visits_every_user_once(db_session):
    ids = await seed_users(db_session, 7)

    pages = [page async for page in outbox_service._page_all_users(db_session, page_size=3)]

    assert [len(p) for p in pages] == [3, 3, 1]
    assert [uid for page in pages for uid in page] == sorted(ids)


@pytest.mark.asyncio
async def test_inactive_users_are_not_targeted(db_session, settings):
    await seed_users(db_session, 3)
    db_session.add(User(id="user-retired", email="gone@example.com", is_active=False))
    await db_session.commit()

    user_ids = await resolve_target_user_ids(db_session, request(), settings.BROADCAST_PAGE_SIZE)
    assert "user-retired" not in user_ids
    assert len(user_ids) == 3


@pytest.mark.asyncio
async def test_restaurant_users_are_distinct_bookers(db_session, settings, make_booking):
    await make_booking("pending", user_id="diner-a")
    await make_booking("confirmed", user_id="diner-a")
    await make_booking("pending", user_id="diner-b")
    await make_booking("pending", user_id="diner-c", restaurant_id="elsewhere")
    await make_booking("pending", user_id=None)

    user_ids = await resolve_target_user_ids(
        db_session,
        request(target={"type": "restaurant_users", "restaurant_ids": [RESTAURANT_ID]}),
        page_size=1,
    )
    assert user_ids == ["diner-a", "diner-b"]


@pytest.mark.asyncio
async def test_specific_users_are_deduplicated(db_session, settings, services):
    result = await broadcast(
        db_session,
        request(channels=["in_app"], target={"type": "specific_users", "user_ids": ["u1", "u2", "u1"]}),
        settings,
        services.channels,
    )
    assert result.recipients == 2
    assert result.queue_items == 2


def test_naive_send_at_is_read_in_request_timezone():
    send_at, scheduled = resolve_send_time(request(
        scheduling={"send_at": "2026-12-01T09:00:00", "timezone": "Europe/Berlin"},
    ))
    assert scheduled is True
    assert send_at.astimezone(timezone.utc) == datetime(2026, 12, 1, 8, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_scheduled_broadcast_is_not_due_yet(db_session, settings, services):
    result = await broadcast(
        db_session,
        request(
            target={"type": "specific_users", "user_ids": ["u1"]},
            scheduling={"send_at": "2099-01-01T09:00:00+00:00"},
        ),
        settings,
        services.channels,
    )
    assert result.scheduled is True

    report = await services.worker.drain(db_session)
    assert report.processed == 0


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

PAYLOAD = {
    "title": "Hello",
    "body": "News from the kitchen",
    "channels": ["push"],
    "priority": "normal",
    "target": {"type": "specific_users", "user_ids": ["u1", "u2"]},
}


@pytest.mark.asyncio
async def test_broadcast_requires_token(client):
    response = await client.post(URL, json=PAYLOAD)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_broadcast_requires_admin(client, auth_headers):
    response = await client.post(URL, json=PAYLOAD, headers=auth_headers)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_broadcast(client, db_session, admin_headers):
    response = await client.post(URL, json=PAYLOAD, headers=admin_headers)

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "recipients": 2,
        "notifications": 0,
        "queue_items": 2,
        "scheduled": False,
    }
    assert await count_rows(db_session, OutboxEntry) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "change",
    [
        {"target": {"type": "specific_users"}},
        {"target": {"type": "restaurant_users"}},
        {"channels": ["carrier_pigeon"]},
        {"channels": []},
        {"title": ""},
        {"body": None},
    ],
)
async def test_broadcast_rejects_bad_requests(client, db_session, admin_headers, change):
    response = await client.post(URL, json={**PAYLOAD, **change}, headers=admin_headers)
    assert response.status_code == 400
    assert await count_rows(db_session, OutboxEntry) == 0


@pytest.mark.asyncio
async def test_empty_target_set_is_rejected(client, admin_headers):
    response = await client.post(URL, json={**PAYLOAD, "target": {"type": "all_users"}}, headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["error"] == "No target users found"


@pytest.mark.asyncio
async def test_missing_title_is_rejected(client, admin_headers):
    payload = {k: v for k, v in PAYLOAD.items() if k != "title"}
    response = await client.post(URL, json=payload, headers=admin_headers)
    assert response.status_code == 400
    assert "title" in response.json()["error"]
