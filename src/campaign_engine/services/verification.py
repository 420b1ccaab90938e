"""Pre-creation verification gate.

Runs once per job before any entity is created. Each check yields True, False
or None, where None means the check itself could not run. A False result
blocks the job; a None result is reported as a warning and the caller decides.
Every run is persisted as an audit record before the result is returned.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from campaign_engine.adapters.ad_platform.base import AccountInfo, AdPlatformClient
from campaign_engine.config import settings
from campaign_engine.db.models import PreCreationVerificationModel
from campaign_engine.db.session import SessionFactory, get_session_context
from campaign_engine.logging import get_logger
from campaign_engine.services.credential_pool import CredentialPool
from campaign_engine.services.encryption import EncryptionError

logger = get_logger(__name__)

# Ad account status codes
ACCOUNT_ACTIVE = 1
BLOCKING_ACCOUNT_STATUSES = {
    2: "Ad account is disabled",
    3: "Ad account has unsettled payments",
    100: "Ad account is pending closure",
    101: "Ad account is closed",
}
WARNING_ACCOUNT_STATUSES = {
    7: "Ad account is pending risk review, creation may be restricted",
    8: "Ad account is pending settlement",
    9: "Ad account is in a grace period",
}

VERIFICATION_CALLS = 4


@dataclass
class VerificationResult:
    """Outcome of one verification run."""

    caller: str
    target_account: str
    proposed_name: str
    account_accessible: bool | None = None
    account_suspended: bool | None = None
    duplicate_name_exists: bool | None = None
    at_account_limit: bool | None = None
    token_valid: bool | None = None
    account_status: int | None = None
    current_entity_count: int | None = None
    entity_limit: int = 0
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    verification_time_ms: int = 0
    id: int | None = None

    @property
    def checks(self) -> dict[str, bool | None]:
        return {
            "account_accessible": self.account_accessible,
            "account_suspended": self.account_suspended,
            "duplicate_name_exists": self.duplicate_name_exists,
            "at_account_limit": self.at_account_limit,
            "token_valid": self.token_valid,
        }

    @property
    def can_proceed(self) -> bool:
        """True only when every check ran and passed."""
        return (
            self.account_accessible is True
            and self.account_suspended is False
            and self.duplicate_name_exists is False
            and self.at_account_limit is False
            and self.token_valid is True
        )

    @property
    def is_inconclusive(self) -> bool:
        """No check failed, but at least one could not run."""
        return not self.errors and any(value is None for value in self.checks.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "target_account": self.target_account,
            "proposed_name": self.proposed_name,
            "checks": self.checks,
            "account_status": self.account_status,
            "current_entity_count": self.current_entity_count,
            "entity_limit": self.entity_limit,
            "can_proceed": self.can_proceed,
            "is_inconclusive": self.is_inconclusive,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "verification_time_ms": self.verification_time_ms,
        }


class PreCreationVerifier:
    """Checks that a target account can take a new bulk creation."""

    def __init__(
        self,
        pool: CredentialPool,
        client: AdPlatformClient,
        session_factory: SessionFactory = get_session_context,
        entity_limit: int | None = None,
        warning_ratio: float | None = None,
    ) -> None:
        self.pool = pool
        self.client = client
        self._session_factory = session_factory
        self.entity_limit = entity_limit or settings.account_entity_limit
        self.warning_ratio = warning_ratio or settings.account_limit_warning_ratio

    async def verify(
        self,
        caller: str,
        target_account: str,
        proposed_name: str,
        *,
        job_id: int | None = None,
        account_group: str | None = None,
    ) -> VerificationResult:
        """Run all checks and persist the result."""
        started = time.monotonic()
        result = VerificationResult(
            caller=caller,
            target_account=target_account,
            proposed_name=proposed_name,
            entity_limit=self.entity_limit,
        )
        group = account_group or self.pool.resolve_account_group(target_account)
        lease = self.pool.acquire(group, VERIFICATION_CALLS)
        token = None
        if lease is not None:
            try:
                token = self.pool.get_token(lease.id)
            except EncryptionError as e:
                logger.warning("verification_token_unreadable", credential_id=lease.id, error=str(e))
                self.pool.release(lease.id, 0, lease.reserved)

        if lease is None or token is None:
            result.warnings.append("No credential available to run verification checks")
        else:
            account, duplicates, count, token_ok = await asyncio.gather(
                self.client.get_account(token, target_account),
                self.client.find_entities_by_name(token, target_account, proposed_name),
                self.client.count_entities(token, target_account),
                self.client.validate_token(token),
                return_exceptions=True,
            )
            self._apply_account(result, account)
            self._apply_duplicates(result, duplicates)
            self._apply_count(result, count)
            self._apply_token(result, token_ok)

        result.verification_time_ms = int((time.monotonic() - started) * 1000)
        result.id = self._persist(result, job_id)

        logger.info(
            "verification_completed",
            verification_id=result.id,
            job_id=job_id,
            target_account=target_account,
            can_proceed=result.can_proceed,
            errors=len(result.errors),
            warnings=len(result.warnings),
            duration_ms=result.verification_time_ms,
        )
        return result

    def _apply_account(self, result: VerificationResult, account: Any) -> None:
        if isinstance(account, BaseException):
            result.warnings.append(f"Could not verify ad account access: {account}")
            return
        if account is None:
            result.account_accessible = False
            result.errors.append(
                f"Ad account {result.target_account} is not accessible with the pooled credentials"
            )
            result.warnings.append("Suspension state unknown because the account is not accessible")
            return

        if not isinstance(account, AccountInfo):
            result.warnings.append(f"Unexpected account lookup result: {account!r}")
            return
        result.account_accessible = True
        status = account.account_status
        result.account_status = status
        if status == ACCOUNT_ACTIVE:
            result.account_suspended = False
        elif status in BLOCKING_ACCOUNT_STATUSES:
            result.account_suspended = True
            result.errors.append(BLOCKING_ACCOUNT_STATUSES[status])
        elif status in WARNING_ACCOUNT_STATUSES:
            result.account_suspended = False
            result.warnings.append(WARNING_ACCOUNT_STATUSES[status])
        else:
            result.warnings.append(f"Ad account has unknown status: {status}")

    def _apply_duplicates(self, result: VerificationResult, duplicates: Any) -> None:
        if isinstance(duplicates, BaseException):
            result.warnings.append(f"Could not check for duplicate names: {duplicates}")
            return
        result.duplicate_name_exists = bool(duplicates)
        if duplicates:
            result.errors.append(
                f'An active campaign named "{result.proposed_name}" already exists '
                f"({len(duplicates)} found)"
            )

    def _apply_count(self, result: VerificationResult, count: Any) -> None:
        if isinstance(count, BaseException):
            result.warnings.append(f"Could not verify account limits: {count}")
            return
        result.current_entity_count = count
        result.at_account_limit = count >= self.entity_limit
        if result.at_account_limit:
            result.errors.append(f"Account is at its campaign limit ({count}/{self.entity_limit})")
        elif count >= self.entity_limit * self.warning_ratio:
            result.warnings.append(f"Approaching campaign limit ({count}/{self.entity_limit})")

    def _apply_token(self, result: VerificationResult, token_ok: Any) -> None:
        if isinstance(token_ok, BaseException):
            result.warnings.append(f"Could not validate access token: {token_ok}")
            return
        result.token_valid = bool(token_ok)
        if not token_ok:
            result.errors.append("Access token is invalid or expired")

    def _persist(self, result: VerificationResult, job_id: int | None) -> int:
        with self._session_factory() as session:
            row = PreCreationVerificationModel(
                job_id=job_id,
                caller=result.caller,
                target_account=result.target_account,
                proposed_name=result.proposed_name[:400],
                account_accessible=result.account_accessible,
                account_suspended=result.account_suspended,
                duplicate_name_exists=result.duplicate_name_exists,
                at_account_limit=result.at_account_limit,
                token_valid=result.token_valid,
                account_status=result.account_status,
                can_proceed=result.can_proceed,
                warnings=list(result.warnings),
                errors=list(result.errors),
                current_entity_count=result.current_entity_count,
                entity_limit=result.entity_limit,
                verification_time_ms=result.verification_time_ms,
            )
            session.add(row)
            session.flush()
            return row.id
