"""
Notification outbox writers.

Two entry paths:
  - enqueue_notification: one ready-to-send entry from a domain event,
    de-duplicated by idempotency key so a replayed event cannot notify twice
  - broadcast: an admin send resolved to a user-id set and expanded into one
    entry per (user, channel)

BROADCAST RESOLUTION
====================
Target users are read in fixed-size keyset pages (WHERE id > :last ORDER BY
id LIMIT :page) so memory stays bounded by page size rather than table size.
Entries are inserted in sequential chunks of at most OUTBOX_CHUNK_SIZE rows;
chunk N+1 is only built after chunk N is committed. A failed chunk is rolled
back, logged and counted, and the remaining chunks still go out, so the
caller sees recipients vs queue_items and can tell a partial send apart.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Iterable, Iterator, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bookingcore.core.config import Settings
from bookingcore.core.errors import ValidationError
from bookingcore.core.logging import get_logger
from bookingcore.core.metrics import outbox_entries_created
from bookingcore.db.base import new_id, utcnow
from bookingcore.models.booking import Booking
from bookingcore.models.notification import OutboxEntry
from bookingcore.models.user import User
from bookingcore.schemas.notification import BroadcastRequest, TargetType

logger = get_logger(__name__)


@dataclass
class BroadcastResult:
    recipients: int
    queue_items: int
    scheduled: bool
    notifications: int = 0
    failed_chunks: int = 0
    chunk_sizes: list[int] = field(default_factory=list)


async def enqueue_notification(
    db: AsyncSession,
    *,
    channel: str,
    title: str,
    body: str,
    user_id: Optional[str] = None,
    restaurant_id: Optional[str] = None,
    type: str = "general",
    payload: Optional[dict] = None,
    priority: str = "normal",
    scheduled_for: Optional[datetime] = None,
    idempotency_key: Optional[str] = None,
    source: str = "event",
) -> tuple[OutboxEntry, bool]:
    """
    Write one queued entry. Returns (entry, created); created is False when
    an entry with the same idempotency key already exists.
    """
    if idempotency_key:
        result = await db.execute(
            select(OutboxEntry).where(OutboxEntry.idempotency_key == idempotency_key)
        )
        existing = result.scalar_one_or_none()
        if existing:
            logger.info("outbox_duplicate_skipped", idempotency_key=idempotency_key)
            return existing, False

    entry = OutboxEntry(
        user_id=user_id,
        restaurant_id=restaurant_id,
        channel=channel,
        type=type,
        title=title,
        body=body,
        payload=payload or {},
        status="queued",
        priority=priority,
        scheduled_for=scheduled_for or utcnow(),
        idempotency_key=idempotency_key,
    )
    db.add(entry)
    await db.flush()
    outbox_entries_created.labels(source=source).inc()
    logger.info(
        "outbox_enqueued",
        outbox_entry_id=entry.id,
        channel=channel,
        type=type,
        user_id=user_id,
        restaurant_id=restaurant_id,
    )
    return entry, True


async def _page_all_users(db: AsyncSession, page_size: int) -> AsyncIterator[list[str]]:
    last_id = ""
    while True:
        result = await db.execute(
            select(User.id)
            .where(User.is_active.is_(True), User.id > last_id)
            .order_by(User.id.asc())
            .limit(page_size)
        )
        page = list(result.scalars().all())
        if not page:
            return
        yield page
        last_id = page[-1]


async def _page_restaurant_users(
    db: AsyncSession, restaurant_ids: list[str], page_size: int
) -> AsyncIterator[list[str]]:
    """Users who have booked at any of the restaurants."""
    last_id = ""
    while True:
        result = await db.execute(
            select(Booking.user_id)
            .where(
                Booking.restaurant_id.in_(restaurant_ids),
                Booking.user_id.is_not(None),
                Booking.user_id > last_id,
            )
            .distinct()
            .order_by(Booking.user_id.asc())
            .limit(page_size)
        )
        page = list(result.scalars().all())
        if not page:
            return
        yield page
        last_id = page[-1]


async def resolve_target_user_ids(
    db: AsyncSession, request: BroadcastRequest, page_size: int
) -> list[str]:
    target = request.target

    if target.type == TargetType.SPECIFIC_USERS:
        if not target.user_ids:
            raise ValidationError("User IDs are required for specific targeting")
        return list(dict.fromkeys(uid for uid in target.user_ids if uid))

    if target.type == TargetType.RESTAURANT_USERS:
        if not target.restaurant_ids:
            raise ValidationError("Restaurant IDs are required for restaurant targeting")
        pages = _page_restaurant_users(db, target.restaurant_ids, page_size)
    else:
        pages = _page_all_users(db, page_size)

    user_ids: list[str] = []
    async for page in pages:
        user_ids.extend(page)
    return user_ids


def resolve_send_time(request: BroadcastRequest) -> tuple[datetime, bool]:
    """A naive send_at is read in the request's timezone."""
    if not request.scheduling or not request.scheduling.send_at:
        return utcnow(), False
    send_at = request.scheduling.send_at
    if send_at.tzinfo is None:
        try:
            send_at = send_at.replace(tzinfo=ZoneInfo(request.scheduling.timezone or "UTC"))
        except ZoneInfoNotFoundError as e:
            raise ValidationError(f"Unknown timezone '{request.scheduling.timezone}'") from e
    return send_at, True


def _chunks(rows: Iterable[dict], size: int) -> Iterator[list[dict]]:
    chunk: list[dict] = []
    for row in rows:
        chunk.append(row)
        if len(chunk) == size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def _broadcast_rows(
    request: BroadcastRequest,
    user_ids: list[str],
    restaurant_id: Optional[str],
    scheduled_for: datetime,
) -> Iterator[dict]:
    payload = {
        "restaurant_id": restaurant_id,
        "title": request.title,
        "body": request.body,
        "type": "admin_message",
        "sent_by_admin": True,
    }
    for user_id in user_ids:
        for channel in request.channels:
            yield {
                "id": new_id(),
                "user_id": user_id,
                "restaurant_id": restaurant_id,
                "channel": channel,
                "type": "general",
                "title": request.title,
                "body": request.body,
                "payload": payload,
                "status": "queued",
                "priority": request.priority.value,
                "scheduled_for": scheduled_for,
                "attempts": 0,
                "retry_count": 0,
            }


async def broadcast(
    db: AsyncSession,
    request: BroadcastRequest,
    settings: Settings,
    supported_channels: Iterable[str],
) -> BroadcastResult:
    unsupported = sorted(set(request.channels) - set(supported_channels))
    if unsupported:
        raise ValidationError(f"Unsupported channel(s): {', '.join(unsupported)}")

    user_ids = await resolve_target_user_ids(db, request, settings.BROADCAST_PAGE_SIZE)
    if not user_ids:
        raise ValidationError("No target users found")

    scheduled_for, scheduled = resolve_send_time(request)
    restaurant_id = None
    if request.target.type == TargetType.RESTAURANT_USERS:
        restaurant_id = request.target.restaurant_ids[0]

    chunk_size = min(settings.OUTBOX_CHUNK_SIZE, 1000)
    result = BroadcastResult(recipients=len(user_ids), queue_items=0, scheduled=scheduled)
    rows = _broadcast_rows(request, user_ids, restaurant_id, scheduled_for)

    for index, chunk in enumerate(_chunks(rows, chunk_size)):
        try:
            await db.execute(insert(OutboxEntry), chunk)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            result.failed_chunks += 1
            logger.error("broadcast_chunk_failed", chunk=index, rows=len(chunk), error=str(e))
            continue
        result.queue_items += len(chunk)
        result.chunk_sizes.append(len(chunk))
        outbox_entries_created.labels(source="broadcast").inc(len(chunk))

    logger.info(
        "broadcast_queued",
        target=request.target.type.value,
        recipients=result.recipients,
        queue_items=result.queue_items,
        failed_chunks=result.failed_chunks,
        scheduled=scheduled,
    )
    return result
