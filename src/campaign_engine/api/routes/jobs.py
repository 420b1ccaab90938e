"""Creation job endpoints."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field

from campaign_engine.api.deps import EngineDep
from campaign_engine.domain.actions import ChildSpec, ParentSpec
from campaign_engine.domain.enums import JobStatus
from campaign_engine.domain.models import JobStatusView
from campaign_engine.jobs.tasks import drive_job_task
from campaign_engine.logging import get_logger

router = APIRouter(prefix="/creation-jobs", tags=["Creation Jobs"])
logger = get_logger(__name__)


class CreateJobRequest(BaseModel):
    """Request to create a campaign with its ad sets and ads."""

    owner: str = Field(..., min_length=1, max_length=255)
    target_account: str = Field(..., min_length=1, max_length=255, description="Ad account id")
    parent: ParentSpec
    children: list[ChildSpec] = Field(..., min_length=1, max_length=500)
    retry_budget: int | None = Field(None, ge=0, le=100)
    allow_inconclusive: bool | None = Field(
        None, description="Start even when some verification checks could not run"
    )
    drive_inline: bool = Field(
        default=False, description="Drive the job inside the request instead of on a worker"
    )


class SlotResponse(BaseModel):
    """One entity slot."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    slot_number: int
    entity_type: str
    status: str
    entity_name: str | None = None
    remote_entity_id: str | None = None
    queued_request_id: int | None = None
    retry_count: int
    error_message: str | None = None
    creation_started_at: datetime | None = None
    creation_completed_at: datetime | None = None


class FailureResponse(BaseModel):
    """One failure ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: int | None = None
    slot_id: int | None = None
    entity_type: str
    status: str
    failure_reason: str
    user_friendly_reason: str
    error_code: str | None = None
    error_category: str | None = None
    campaign_id: str | None = None
    adset_id: str | None = None
    adset_name: str | None = None
    ad_name: str | None = None
    retry_count: int
    recovered_at: datetime | None = None
    created_at: datetime | None = None


class JobResponse(BaseModel):
    """Job state, pollable while the job runs."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    owner: str
    target_account: str
    account_group: str
    parent_name: str
    status: str
    requested_children: int
    children_created: int
    retry_count: int
    retry_budget: int
    last_error: str | None = None
    error_history: list[dict[str, Any]] = Field(default_factory=list)
    rollback_triggered: bool
    rollback_reason: str | None = None
    parent_entity_id: str | None = None
    cancel_requested: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    rolled_back_at: datetime | None = None


class JobStatusResponse(BaseModel):
    """Job with slot detail and progress."""

    job: JobResponse
    slots: list[SlotResponse]
    slot_counts: dict[str, int]
    progress: float
    failures: list[FailureResponse] = Field(default_factory=list)


def _status_response(view: JobStatusView) -> JobStatusResponse:
    return JobStatusResponse(
        job=JobResponse.model_validate(view.job),
        slots=[SlotResponse.model_validate(slot) for slot in view.slots],
        slot_counts=view.slot_counts,
        progress=round(view.progress, 4),
        failures=[FailureResponse.model_validate(failure) for failure in view.failures],
    )


@router.post(
    "",
    response_model=JobStatusResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create job",
    description="Verify the target account, allocate slots and start driving the job.",
)
async def create_job(request: CreateJobRequest, engine: EngineDep) -> JobStatusResponse:
    """Start a bulk creation job."""
    logger.info(
        "creation_job_requested",
        owner=request.owner,
        target_account=request.target_account,
        children=len(request.children),
    )
    job_id = await engine.orchestrator.start_job(
        request.owner,
        request.target_account,
        request.parent,
        request.children,
        retry_budget=request.retry_budget,
        allow_inconclusive=request.allow_inconclusive,
    )

    if engine.jobs.get(job_id).status == JobStatus.IN_PROGRESS:
        if request.drive_inline:
            await engine.orchestrator.drive_job(job_id)
        else:
            task = drive_job_task.delay(job_id)
            logger.info("creation_job_drive_enqueued", job_id=job_id, task_id=task.id)

    return _status_response(engine.orchestrator.get_job_status(job_id))


@router.get(
    "/{job_id}",
    response_model=JobStatusResponse,
    summary="Get job status",
    description="Job state, per-slot status and failure entries.",
)
async def get_job(job_id: int, engine: EngineDep) -> JobStatusResponse:
    """Get the status of a creation job."""
    return _status_response(engine.orchestrator.get_job_status(job_id))


@router.post(
    "/{job_id}/drive",
    response_model=JobStatusResponse,
    summary="Drive job",
    description="Re-run the drive loop. Safe to repeat; created slots are never re-created.",
)
async def drive_job(job_id: int, engine: EngineDep) -> JobStatusResponse:
    """Drive a job inline."""
    await engine.orchestrator.drive_job(job_id)
    return _status_response(engine.orchestrator.get_job_status(job_id))


@router.post(
    "/{job_id}/cancel",
    response_model=JobResponse,
    summary="Cancel job",
    description="Stop the job between slots, optionally rolling back what it created.",
)
async def cancel_job(job_id: int, engine: EngineDep, rollback: bool = False) -> JobResponse:
    """Cancel a creation job."""
    job = await engine.orchestrator.cancel_job(job_id, rollback=rollback)
    logger.info("creation_job_cancel_requested", job_id=job_id, rollback=rollback)
    return JobResponse.model_validate(job)


@router.get(
    "/{job_id}/failures",
    response_model=list[FailureResponse],
    summary="List job failures",
    description="Failure ledger entries recorded for this job.",
)
async def list_job_failures(job_id: int, engine: EngineDep) -> list[FailureResponse]:
    """Failure ledger entries for a job."""
    engine.jobs.get(job_id)
    return [FailureResponse.model_validate(f) for f in engine.failures.list_for_job(job_id)]
