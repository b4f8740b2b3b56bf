"""
Time-driven entry points, called by the scheduler with the cron secret.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bookingcore.api.deps import get_services
from bookingcore.core.security import require_cron_secret
from bookingcore.db.session import get_db
from bookingcore.schemas.booking import ExpiryResponse
from bookingcore.schemas.notification import DrainResponse, TaskRunResponse
from bookingcore.services.booking_service import expire_pending_requests
from bookingcore.services.channel_factory import CoreServices

router = APIRouter(prefix="/cron", tags=["Cron"], dependencies=[Depends(require_cron_secret)])


@router.post("/process-notifications", response_model=DrainResponse)
async def process_notifications(
    db: AsyncSession = Depends(get_db),
    services: CoreServices = Depends(get_services),
):
    """Drain one batch of due outbox entries."""
    report = await services.worker.drain(db)
    return DrainResponse(
        processed=report.processed,
        sent=report.sent,
        failed=report.failed,
        requeued=report.requeued,
        suppressed=report.suppressed,
    )


@router.post("/process-tasks", response_model=TaskRunResponse)
async def process_tasks(
    db: AsyncSession = Depends(get_db),
    services: CoreServices = Depends(get_services),
):
    report = await services.task_queue.run_due(db)
    return TaskRunResponse(
        processed=report.processed,
        done=report.done,
        retried=report.retried,
        failed=report.failed,
    )


@router.post("/expire-requests", response_model=ExpiryResponse)
async def expire_requests(db: AsyncSession = Depends(get_db)):
    report = await expire_pending_requests(db)
    return ExpiryResponse(expired=report.expired, skipped=report.skipped, booking_ids=report.booking_ids)
