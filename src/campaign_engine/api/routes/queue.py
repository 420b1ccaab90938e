"""Request queue endpoints."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict

from campaign_engine.api.deps import EngineDep
from campaign_engine.domain.enums import QueueStatus
from campaign_engine.logging import get_logger

router = APIRouter(prefix="/queue", tags=["Queue"])
logger = get_logger(__name__)


class QueueStatusResponse(BaseModel):
    """Per-credential usage and queue depth."""

    per_credential_usage: list[dict[str, Any]]
    queue_depth: int
    queue_counts: dict[str, int]
    pool: dict[str, Any]
    processor_running: bool


class QueuedRequestResponse(BaseModel):
    """One queued request."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    caller: str
    target_account: str
    action_type: str
    priority: int
    status: str
    process_after: datetime
    attempts: int
    max_attempts: int
    error: str | None = None
    result: dict[str, Any] | None = None
    job_id: int | None = None
    slot_id: int | None = None
    processed_at: datetime | None = None


class TickResponse(BaseModel):
    """Counts for one processing tick."""

    selected: int
    completed: int
    requeued: int
    failed: int
    skipped: int
    reclaimed: int = 0
    overlapped: bool


@router.get(
    "/status",
    response_model=QueueStatusResponse,
    summary="Queue status",
    description="Credential usage across the pool and the number of queued requests.",
)
async def get_queue_status(engine: EngineDep) -> QueueStatusResponse:
    """Get queue and pool status."""
    return QueueStatusResponse(**engine.get_queue_status())


@router.get(
    "/requests",
    response_model=list[QueuedRequestResponse],
    summary="List queued requests",
)
async def list_requests(
    caller: str,
    engine: EngineDep,
    status_filter: QueueStatus | None = None,
    limit: int = 50,
) -> list[QueuedRequestResponse]:
    """Queued requests for one caller, newest first."""
    rows = engine.queue.list_for_caller(caller, status_filter, min(limit, 200))
    return [QueuedRequestResponse.model_validate(row) for row in rows]


@router.post(
    "/{request_id}/cancel",
    response_model=QueuedRequestResponse,
    summary="Cancel queued request",
    description="Cancel a request that has not been picked up yet.",
)
async def cancel_request(request_id: int, engine: EngineDep) -> QueuedRequestResponse:
    """Cancel a queued request."""
    row = engine.queue.get(request_id)
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Queued request {request_id} not found",
        )
    if not engine.queue.cancel(request_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Queued request {request_id} is {row.status} and cannot be cancelled",
        )
    logger.info("queued_request_cancel_requested", queued_request_id=request_id)
    cancelled = engine.queue.get(request_id)
    if cancelled is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Queued request {request_id} not found",
        )
    return QueuedRequestResponse.model_validate(cancelled)


@router.post(
    "/process",
    response_model=TickResponse,
    summary="Process due requests",
    description="Run one queue tick now instead of waiting for the scheduler.",
)
async def process_due(engine: EngineDep) -> TickResponse:
    """Run one processing tick."""
    report = await engine.processor.process_due()
    return TickResponse(
        selected=report.selected,
        completed=report.completed,
        requeued=report.requeued,
        failed=report.failed,
        skipped=report.skipped,
        reclaimed=report.reclaimed,
        overlapped=report.overlapped,
    )
