"""Credential pool endpoints. Tokens are write-only."""

from datetime import datetime

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from campaign_engine.api.deps import EngineDep
from campaign_engine.domain.enums import CredentialKind
from campaign_engine.logging import get_logger

router = APIRouter(prefix="/credentials", tags=["Credentials"])
logger = get_logger(__name__)


class CredentialResponse(BaseModel):
    """Usage of one pooled credential."""

    id: int
    name: str
    kind: str
    account_group: str
    active: bool
    calls_used: int
    calls_limit: int
    usage_percentage: float
    window_reset_at: datetime | None = None
    deactivated_reason: str | None = None


class AddCredentialRequest(BaseModel):
    """Request to add a credential to the pool."""

    name: str = Field(..., min_length=1, max_length=255)
    token: str = Field(..., min_length=1)
    account_group: str | None = Field(None, max_length=255)
    kind: CredentialKind = CredentialKind.SYSTEM_USER
    calls_limit: int | None = Field(None, gt=0)
    external_id: str | None = None


class RegisterAccountRequest(BaseModel):
    """Request to route an ad account to a credential group."""

    target_account: str = Field(..., min_length=1)
    account_group: str = Field(..., min_length=1)
    name: str | None = None


@router.get(
    "",
    response_model=list[CredentialResponse],
    summary="List credentials",
    description="Per-credential usage for the whole pool or one account group.",
)
async def list_credentials(
    engine: EngineDep, account_group: str | None = None
) -> list[CredentialResponse]:
    """List pooled credentials and their usage."""
    return [CredentialResponse(**row) for row in engine.pool.usage_snapshot(account_group)]


@router.post(
    "",
    response_model=CredentialResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add credential",
)
async def add_credential(request: AddCredentialRequest, engine: EngineDep) -> CredentialResponse:
    """Add a credential. The token is encrypted before it is stored."""
    credential_id = engine.pool.add_credential(
        request.name,
        request.token,
        account_group=request.account_group,
        kind=request.kind,
        calls_limit=request.calls_limit,
        external_id=request.external_id,
    )
    rows = engine.pool.usage_snapshot()
    return CredentialResponse(**next(row for row in rows if row["id"] == credential_id))


@router.post(
    "/{credential_id}/activate",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Activate credential",
)
async def activate_credential(credential_id: int, engine: EngineDep) -> None:
    """Put a deactivated credential back into rotation."""
    engine.pool.activate(credential_id)


@router.post(
    "/{credential_id}/deactivate",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Deactivate credential",
)
async def deactivate_credential(
    credential_id: int, engine: EngineDep, reason: str = "deactivated by operator"
) -> None:
    """Take a credential out of rotation."""
    engine.pool.deactivate(credential_id, reason)


@router.delete(
    "/{credential_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete credential",
    description="Refused while the credential's group serves in-flight jobs.",
)
async def delete_credential(credential_id: int, engine: EngineDep) -> None:
    """Delete a credential."""
    engine.pool.delete_credential(credential_id)


@router.post(
    "/accounts",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Register ad account",
    description="Route an ad account to a credential group.",
)
async def register_account(request: RegisterAccountRequest, engine: EngineDep) -> None:
    """Map an ad account to the credential group that serves it."""
    engine.pool.register_account(request.target_account, request.account_group, request.name)
    logger.info(
        "account_registered",
        target_account=request.target_account,
        account_group=request.account_group,
    )
