"""Single choke point for every remote ad platform call.

The dispatcher reserves one call on the quota window and one on a pooled
credential, performs the call without holding any database session, and
classifies the outcome. Reservations for calls the platform never ran are
handed back.

- success: the entity id is returned
- rate limited: the credential is marked exhausted and the call queued
- invalid credential: the credential is deactivated and the call retried once
  with the next-best credential, then queued
- entity error: raised as ``EntityError``, never queued
"""

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from campaign_engine.adapters.ad_platform.base import AdPlatformClient, PlatformResponse
from campaign_engine.config import settings
from campaign_engine.domain.actions import Action, parse_action
from campaign_engine.domain.enums import DispatchStatus, EntityType, ResponseKind
from campaign_engine.domain.models import CredentialLease, DispatchRequest, DispatchResult
from campaign_engine.logging import get_logger
from campaign_engine.services.credential_pool import CredentialPool
from campaign_engine.services.encryption import EncryptionError
from campaign_engine.services.errors import (
    AllCredentialsExhaustedError,
    EntityError,
    PayloadValidationError,
    PlatformUnavailableError,
)
from campaign_engine.services.quota import QuotaTracker
from campaign_engine.services.request_queue import RequestQueue
from campaign_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)


def validate_action(action: Any) -> Action:
    """Validate a payload against the action union before any remote call."""
    try:
        return parse_action(action)
    except ValidationError as e:
        raise PayloadValidationError(
            f"Invalid action payload: {e.error_count()} error(s)",
            errors=[
                {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                for err in e.errors(include_url=False)
            ],
        ) from e


class Dispatcher:
    """Routes calls through the credential pool and quota tracker."""

    def __init__(
        self,
        pool: CredentialPool,
        quota: QuotaTracker,
        queue: RequestQueue,
        client: AdPlatformClient,
        clock: Clock = utc_now,
        window: timedelta | None = None,
    ) -> None:
        self.pool = pool
        self.quota = quota
        self.queue = queue
        self.client = client
        self._clock = clock
        self._window = window or timedelta(seconds=settings.quota_window_seconds)

    @property
    def window(self) -> timedelta:
        return self._window

    async def dispatch(
        self, request: DispatchRequest, *, queued_request_id: int | None = None
    ) -> DispatchResult:
        """Execute one call, or queue it when quota is not available.

        Args:
            request: The call to make
            queued_request_id: Set when re-dispatching a queued row; a deferral
                then reports the new retry time instead of enqueueing again

        Raises:
            PayloadValidationError: The action payload is malformed
            AllCredentialsExhaustedError: No credential can take the call
            EntityError: The platform rejected the entity itself
            PlatformUnavailableError: Transport failure
        """
        action = validate_action(request.action)
        group = request.account_group or self.pool.resolve_account_group(request.target_account)
        request = replace(request, action=action, account_group=group)
        log = logger.bind(
            action_type=action.action_type,
            caller=request.caller,
            target_account=request.target_account,
            job_id=request.job_id,
            slot_id=request.slot_id,
            queued_request_id=queued_request_id,
        )

        if not self.quota.reserve(request.caller, request.target_account):
            retry_at = self.quota.window_reset_at(request.caller, request.target_account)
            log.info("dispatch_deferred_local_quota", retry_at=retry_at.isoformat())
            return self._defer(request, retry_at, queued_request_id)

        lease = self.pool.acquire(group)
        if lease is None:
            self.quota.refund(request.caller, request.target_account)
            error = AllCredentialsExhaustedError(
                group, self.pool.soonest_reset(group), self._clock()
            )
            log.warning(
                "dispatch_all_credentials_exhausted",
                account_group=group,
                estimated_wait_minutes=error.estimated_wait_minutes,
            )
            raise error

        # A transport error propagates with both reservations standing; the call
        # may have reached the platform.
        response = await self._call(lease, request)

        if response.kind == ResponseKind.INVALID_CREDENTIAL:
            self.pool.deactivate(lease.id, response.message or "invalid credential")
            self.pool.release(lease.id, 0, lease.reserved)
            log.warning("dispatch_credential_invalid", credential_id=lease.id)
            fallback = self.pool.acquire(group)
            if fallback is None:
                return self._defer_unconsumed(
                    request, self._next_attempt_at(group), queued_request_id
                )
            lease = fallback
            response = await self._call(lease, request)
            if response.kind == ResponseKind.INVALID_CREDENTIAL:
                self.pool.deactivate(lease.id, response.message or "invalid credential")
                self.pool.release(lease.id, 0, lease.reserved)
                log.warning("dispatch_fallback_credential_invalid", credential_id=lease.id)
                return self._defer_unconsumed(
                    request, self._next_attempt_at(group), queued_request_id
                )

        if response.kind == ResponseKind.QUOTA_EXCEEDED:
            self.pool.mark_exhausted(lease.id)
            retry_at = self._next_attempt_at(group)
            log.warning(
                "dispatch_platform_rate_limited",
                credential_id=lease.id,
                code=response.code,
                retry_at=retry_at.isoformat(),
            )
            return self._defer_unconsumed(request, retry_at, queued_request_id)

        # The call reached the platform; both reservations are now consumed
        if response.headers:
            self.quota.sync_from_headers(request.caller, request.target_account, response.headers)

        if response.kind == ResponseKind.ENTITY_ERROR:
            log.warning(
                "dispatch_entity_error",
                credential_id=lease.id,
                code=response.code,
                message=response.message,
            )
            raise EntityError(
                response.code,
                response.message or "Entity rejected by the platform",
                raw=response.raw,
                subcode=response.subcode,
            )

        log.info("dispatch_succeeded", credential_id=lease.id, entity_id=response.entity_id)
        return DispatchResult(
            status=DispatchStatus.SUCCESS,
            entity_id=response.entity_id,
            credential_id=lease.id,
            raw=response.raw,
        )

    async def find_existing(
        self,
        target_account: str,
        account_group: str | None,
        name: str,
        entity_type: EntityType,
        parent_id: str | None = None,
    ) -> list[str]:
        """Ids of entities named ``name``, under ``parent_id`` when given.

        A read, so it is charged to a pooled credential but not to the quota
        window.

        Raises:
            AllCredentialsExhaustedError: No credential can take the lookup
            PlatformUnavailableError: The lookup did not complete
        """
        group = account_group or self.pool.resolve_account_group(target_account)
        lease = self.pool.acquire(group)
        if lease is None:
            raise AllCredentialsExhaustedError(group, self.pool.soonest_reset(group), self._clock())
        try:
            token = self.pool.get_token(lease.id)
        except EncryptionError as e:
            self.pool.release(lease.id, 0, lease.reserved)
            raise PlatformUnavailableError(f"Stored token unreadable: {e}") from e
        return await self.client.find_entities_by_name(
            token, target_account, name, entity_type, parent_id
        )

    async def _call(self, lease: CredentialLease, request: DispatchRequest) -> PlatformResponse:
        try:
            token = self.pool.get_token(lease.id)
        except EncryptionError as e:
            return PlatformResponse.invalid_credential(f"Stored token unreadable: {e}")
        return await self.client.perform_call(token, request.target_account, request.action)

    def _next_attempt_at(self, account_group: str) -> datetime:
        """Now if another credential is free, else the soonest window reset."""
        now = self._clock()
        if self.pool.has_capacity(account_group):
            return now
        return self.pool.soonest_reset(account_group) or now + self._window

    def _defer_unconsumed(
        self,
        request: DispatchRequest,
        retry_at: datetime,
        queued_request_id: int | None,
    ) -> DispatchResult:
        self.quota.refund(request.caller, request.target_account)
        return self._defer(request, retry_at, queued_request_id)

    def _defer(
        self,
        request: DispatchRequest,
        retry_at: datetime,
        queued_request_id: int | None,
    ) -> DispatchResult:
        if queued_request_id is None:
            queued_request_id = self.queue.enqueue(request, request.priority, retry_at)
        return DispatchResult(
            status=DispatchStatus.QUEUED,
            queued_request_id=queued_request_id,
            retry_at=retry_at,
        )
