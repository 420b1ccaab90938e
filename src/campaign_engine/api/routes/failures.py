"""Failure ledger endpoints for manual recovery."""

from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel

from campaign_engine.api.deps import EngineDep
from campaign_engine.api.routes.jobs import FailureResponse

router = APIRouter(prefix="/failures", tags=["Failures"])


class RecoveredRequest(BaseModel):
    """Ids of the entities created by hand for a failed slot."""

    adset_id: str | None = None
    ad_id: str | None = None


@router.get(
    "",
    response_model=list[FailureResponse],
    summary="List pending failures",
    description="Entries still awaiting recovery, newest first.",
)
async def list_pending(
    owner: str, engine: EngineDep, campaign_id: str | None = None
) -> list[FailureResponse]:
    return [
        FailureResponse.model_validate(f) for f in engine.failures.list_pending(owner, campaign_id)
    ]


@router.get("/stats", summary="Failure statistics")
async def failure_stats(
    owner: str, engine: EngineDep, campaign_id: str | None = None
) -> dict[str, Any]:
    return engine.failures.stats(owner, campaign_id)


@router.post("/{failure_id}/retrying", response_model=FailureResponse)
async def mark_retrying(failure_id: int, engine: EngineDep) -> FailureResponse:
    return FailureResponse.model_validate(engine.failures.mark_retrying(failure_id))


@router.post("/{failure_id}/recovered", response_model=FailureResponse)
async def mark_recovered(
    failure_id: int, engine: EngineDep, request: RecoveredRequest | None = None
) -> FailureResponse:
    request = request or RecoveredRequest()
    view = engine.failures.mark_recovered(
        failure_id, adset_id=request.adset_id, ad_id=request.ad_id
    )
    return FailureResponse.model_validate(view)


@router.post("/{failure_id}/permanent", response_model=FailureResponse)
async def mark_permanent(failure_id: int, engine: EngineDep) -> FailureResponse:
    return FailureResponse.model_validate(engine.failures.mark_permanent_failure(failure_id))
