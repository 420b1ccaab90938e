"""Job orchestrator: drives a bulk creation from verification to completion.

A job moves ``pending -> in_progress -> completed | failed | rolled_back``.
Slots are driven in dependency order. The parent campaign must be created
before any child starts, and an ad waits for its own ad set. Sibling slots run
concurrently up to the configured fan-out.

``drive_job`` is safe to call any number of times: every attempt consults the
slot ledger first and a slot that already has a remote id is never created
again. Quota deferrals park a slot in ``creating`` with the id of the queued
request that will create it; the next drive reconciles the slot from that row.
A slot that failed on a transient platform error waits before its next attempt,
doubling from the configured base up to a cap.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from pydantic import ValidationError

from campaign_engine.config import settings
from campaign_engine.db.session import SessionFactory, get_session_context
from campaign_engine.domain.actions import ChildSpec, ParentSpec
from campaign_engine.domain.enums import (
    ActionType,
    EntityType,
    JobStatus,
    QueueStatus,
    SlotStatus,
)
from campaign_engine.domain.models import (
    DispatchRequest,
    JobStatusView,
    JobView,
    QueuedRequestView,
    RollbackReport,
    SlotView,
)
from campaign_engine.logging import get_logger
from campaign_engine.services.dispatcher import Dispatcher
from campaign_engine.services.error_translator import translate_error
from campaign_engine.services.errors import (
    AllCredentialsExhaustedError,
    EntityError,
    InvalidJobTransitionError,
    InvalidSlotTransitionError,
    PayloadValidationError,
    PlatformUnavailableError,
)
from campaign_engine.services.failure_ledger import FailureLedger
from campaign_engine.services.job_store import JobStore
from campaign_engine.services.request_queue import RequestQueue
from campaign_engine.services.rollback import RollbackManager
from campaign_engine.services.slot_ledger import SlotLedger
from campaign_engine.services.verification import PreCreationVerifier
from campaign_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)

_CREATE_ACTIONS = {
    EntityType.CAMPAIGN: ActionType.CREATE_CAMPAIGN,
    EntityType.AD_SET: ActionType.CREATE_ADSET,
    EntityType.AD: ActionType.CREATE_AD,
}

CANCELLED_MESSAGE = "Cancelled by operator"


class JobOrchestrator:
    """Creates and drives bulk creation jobs."""

    def __init__(
        self,
        jobs: JobStore,
        slots: SlotLedger,
        verifier: PreCreationVerifier,
        dispatcher: Dispatcher,
        queue: RequestQueue,
        failures: FailureLedger,
        rollback: RollbackManager,
        session_factory: SessionFactory = get_session_context,
        clock: Clock = utc_now,
        fan_out: int | None = None,
        slot_retry_cap: int | None = None,
        stale_after: timedelta | None = None,
        retry_base: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.jobs = jobs
        self.slots = slots
        self.verifier = verifier
        self.dispatcher = dispatcher
        self.queue = queue
        self.failures = failures
        self.rollback = rollback
        self._session_factory = session_factory
        self._clock = clock
        self.fan_out = fan_out or settings.slot_fan_out
        self.slot_retry_cap = slot_retry_cap or settings.slot_retry_cap
        self.stale_after = stale_after or timedelta(seconds=settings.stale_slot_seconds)
        self.retry_base = (
            settings.network_retry_base_seconds if retry_base is None else retry_base
        )
        self.retry_max = settings.network_retry_max_seconds
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_job(
        self,
        owner: str,
        target_account: str,
        parent_spec: dict[str, Any] | ParentSpec,
        child_specs: list[dict[str, Any] | ChildSpec],
        *,
        retry_budget: int | None = None,
        allow_inconclusive: bool | None = None,
    ) -> int:
        """Verify the target account, then create the job and its slots.

        Returns the job id. A job that fails verification is returned in the
        ``failed`` state with no slots.

        Raises:
            PayloadValidationError: The parent or child specs are malformed
        """
        try:
            parent = ParentSpec.model_validate(parent_spec)
            children = [ChildSpec.model_validate(child) for child in child_specs]
        except ValidationError as e:
            raise PayloadValidationError(
                f"Invalid job request: {e.error_count()} error(s)",
                errors=[
                    {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                    for err in e.errors(include_url=False)
                ],
            ) from e
        if allow_inconclusive is None:
            allow_inconclusive = settings.allow_inconclusive_verification

        group = self.dispatcher.pool.resolve_account_group(target_account)
        with self._session_factory() as session:
            row = self.jobs.new_job(
                owner,
                target_account,
                group,
                parent.model_dump(mode="json"),
                [child.model_dump(mode="json") for child in children],
                retry_budget,
            )
            session.add(row)
            session.flush()
            job_id = row.id
        log = logger.bind(job_id=job_id, owner=owner, target_account=target_account)
        log.info("job_created", child_specs=len(children))

        result = await self.verifier.verify(
            owner, target_account, parent.name, job_id=job_id, account_group=group
        )
        blocked = bool(result.errors) or (result.is_inconclusive and not allow_inconclusive)
        if not result.can_proceed and blocked:
            reasons = result.errors or result.warnings
            message = "Verification failed: " + "; ".join(reasons)
            self.jobs.record_error(
                job_id, message, count=False, verification_id=result.id, checks=result.checks
            )
            self.jobs.transition(job_id, JobStatus.FAILED, completed_at=self._clock())
            log.warning("job_verification_blocked", verification_id=result.id, errors=reasons)
            return job_id

        if result.warnings:
            log.info("job_verification_warnings", warnings=result.warnings)

        with self._session_factory() as session:
            self.slots.allocate(session, job_id, parent.name, children)
        self.jobs.transition(job_id, JobStatus.IN_PROGRESS, started_at=self._clock())
        log.info("job_started", verification_id=result.id)
        return job_id

    async def run_job(
        self,
        owner: str,
        target_account: str,
        parent_spec: dict[str, Any] | ParentSpec,
        child_specs: list[dict[str, Any] | ChildSpec],
        **kwargs: Any,
    ) -> JobStatusView:
        """Start a job and drive it as far as it can go now."""
        job_id = await self.start_job(owner, target_account, parent_spec, child_specs, **kwargs)
        await self.drive_job(job_id)
        return self.get_job_status(job_id)

    # ------------------------------------------------------------------
    # Drive
    # ------------------------------------------------------------------

    async def drive_job(self, job_id: int) -> JobStatus:
        """Advance every slot that can make progress, then settle the job.

        Returns the job status afterwards. A job waiting on queued requests
        stays ``in_progress`` and is driven again when they settle.
        """
        job = self.jobs.get(job_id)
        if job.status != JobStatus.IN_PROGRESS:
            await self._sweep_late_creations(job)
            return job.status
        log = logger.bind(job_id=job_id)
        log.info("job_drive_started", retry_count=job.retry_count)

        while True:
            await self._reconcile(job_id)
            job = self.jobs.get(job_id)
            if job.status != JobStatus.IN_PROGRESS:
                break
            if job.cancel_requested:
                await self._cancel_in_progress(job_id)
                break
            if job.budget_exhausted:
                break

            terminal = self.failures.failed_slot_ids(job_id)
            slots = self.slots.get_slots(job_id)
            orphaned = await self._fail_orphans(job, slots, terminal)
            batch = self._runnable(slots, terminal)
            if not batch:
                if orphaned:
                    continue
                break
            progressed = await self._run_batch(job_id, batch)
            if not progressed and not orphaned:
                break

        return await self._finalize(job_id)

    def _runnable(self, slots: list[SlotView], terminal: set[int]) -> list[SlotView]:
        """Slots that may be attempted now, respecting dependency order."""

        def ready(slot: SlotView) -> bool:
            if slot.status == SlotStatus.PENDING:
                return True
            return (
                slot.status == SlotStatus.FAILED
                and slot.id not in terminal
                and slot.retry_count < self.slot_retry_cap
            )

        parent = next(slot for slot in slots if slot.entity_type == EntityType.CAMPAIGN)
        if parent.status != SlotStatus.CREATED:
            return [parent] if ready(parent) else []

        adsets = {slot.slot_number: slot for slot in slots if slot.entity_type == EntityType.AD_SET}
        batch = [slot for slot in adsets.values() if ready(slot)]
        for slot in slots:
            if slot.entity_type != EntityType.AD or not ready(slot):
                continue
            adset = adsets.get(slot.slot_number)
            if adset is not None and adset.status == SlotStatus.CREATED:
                batch.append(slot)
        return batch

    async def _run_batch(self, job_id: int, batch: list[SlotView]) -> bool:
        semaphore = asyncio.Semaphore(self.fan_out)

        async def attempt(slot: SlotView) -> bool:
            async with semaphore:
                return await self._attempt_slot(job_id, slot)

        outcomes = await asyncio.gather(*(attempt(slot) for slot in batch))
        return any(outcomes)

    async def _attempt_slot(self, job_id: int, slot: SlotView) -> bool:
        """One creation attempt. Returns False when the slot was not touched."""
        log = logger.bind(job_id=job_id, slot_id=slot.id, entity_type=slot.entity_type)
        current = self.slots.get(slot.id)
        if current.remote_entity_id:
            # Created by an earlier drive; never create it twice
            log.info("slot_already_created", remote_entity_id=current.remote_entity_id)
            if current.status != SlotStatus.CREATED:
                self._slot_created(job_id, current, current.remote_entity_id)
            return True

        job = self.jobs.get(job_id)
        if job.status != JobStatus.IN_PROGRESS or job.cancel_requested:
            return False

        try:
            self.slots.begin(slot.id)
        except InvalidSlotTransitionError as e:
            log.info("slot_attempt_skipped", reason=str(e))
            return False

        try:
            request = self._build_request(job, current)
        except LookupError as e:
            self._slot_failed(job, current, str(e), terminal=True)
            return True

        try:
            result = await self.dispatcher.dispatch(request)
        except AllCredentialsExhaustedError as e:
            retry_at = e.retry_at or self._clock() + self.dispatcher.window
            queued_request_id = self.queue.enqueue(request, request.priority, retry_at)
            self.slots.mark_deferred(slot.id, queued_request_id)
            self.jobs.record_error(job_id, str(e), count=False, slot_id=slot.id)
            log.warning("slot_deferred_pool_exhausted", queued_request_id=queued_request_id)
            return True
        except EntityError as e:
            self._slot_failed(
                job, current, str(e), terminal=True, code=e.code, message=e.message, raw=e.raw
            )
            return True
        except PayloadValidationError as e:
            self._slot_failed(
                job, current, str(e), terminal=True, raw={"errors": e.errors}
            )
            return True
        except PlatformUnavailableError as e:
            self._slot_failed(job, current, str(e), terminal=False, network=True)
            await self._back_off(job_id, slot.id)
            return True
        except Exception as e:
            log.exception("slot_attempt_error")
            self._slot_failed(job, current, str(e), terminal=False)
            await self._back_off(job_id, slot.id)
            return True

        if result.succeeded and result.entity_id:
            self._slot_created(job_id, current, result.entity_id)
        elif result.queued_request_id is not None:
            self.slots.mark_deferred(slot.id, result.queued_request_id)
        return True

    def retry_delay(self, retry_count: int) -> float:
        """Pause before attempt ``retry_count + 1``: doubling from the base, capped."""
        return min(self.retry_base * 2 ** max(retry_count - 1, 0), self.retry_max)

    async def _back_off(self, job_id: int, slot_id: int) -> None:
        """Wait before a slot that failed transiently is attempted again."""
        slot = self.slots.get(slot_id)
        if slot.status != SlotStatus.FAILED or slot.retry_count >= self.slot_retry_cap:
            return
        if self.jobs.get(job_id).budget_exhausted:
            return
        delay = self.retry_delay(slot.retry_count)
        logger.info(
            "slot_retry_backoff",
            job_id=job_id,
            slot_id=slot_id,
            retry_count=slot.retry_count,
            delay_seconds=delay,
        )
        await self.sleep(delay)

    def _build_request(self, job: JobView, slot: SlotView) -> DispatchRequest:
        """Creation request for a slot. Raises LookupError if a dependency has no id."""
        action: dict[str, Any] = {
            "action_type": _CREATE_ACTIONS[slot.entity_type].value,
        }
        if slot.entity_type == EntityType.CAMPAIGN:
            action.update(job.parent_spec)
            priority = settings.parent_priority
        else:
            action.update(slot.spec)
            action["name"] = slot.entity_name
            priority = settings.default_priority
            if slot.entity_type == EntityType.AD_SET:
                if not job.parent_entity_id:
                    raise LookupError("Parent campaign has no remote id")
                action["campaign_id"] = job.parent_entity_id
            else:
                adset = self.slots.find(job.id, slot.slot_number, EntityType.AD_SET)
                if adset is None or not adset.remote_entity_id:
                    raise LookupError(f"Ad set for slot {slot.slot_number} has no remote id")
                action["adset_id"] = adset.remote_entity_id
        return DispatchRequest(
            caller=job.owner,
            target_account=job.target_account,
            action=action,
            priority=priority,
            account_group=job.account_group,
            job_id=job.id,
            slot_id=slot.id,
        )

    def _slot_created(self, job_id: int, slot: SlotView, entity_id: str) -> None:
        try:
            self.slots.mark_created(slot.id, entity_id)
        except InvalidSlotTransitionError as e:
            logger.info("slot_created_skipped", job_id=job_id, slot_id=slot.id, reason=str(e))
            return
        if slot.entity_type == EntityType.CAMPAIGN:
            self.jobs.set_parent_entity(job_id, entity_id)
        else:
            self.jobs.increment_children(job_id)
        logger.info(
            "slot_created",
            job_id=job_id,
            slot_id=slot.id,
            entity_type=slot.entity_type,
            remote_entity_id=entity_id,
        )

    def _slot_failed(
        self,
        job: JobView,
        slot: SlotView,
        error: str,
        *,
        terminal: bool,
        count_attempt: bool = True,
        code: int | str | None = None,
        message: str | None = None,
        raw: dict[str, Any] | None = None,
        network: bool = False,
    ) -> None:
        """Record a failed attempt, and the failure ledger entry once terminal."""
        try:
            failed = self.slots.mark_failed(slot.id, error, count_attempt=count_attempt)
        except InvalidSlotTransitionError as e:
            logger.warning("slot_fail_skipped", job_id=job.id, slot_id=slot.id, reason=str(e))
            return
        job = self.jobs.record_error(
            job.id,
            error,
            count=count_attempt,
            slot_id=slot.id,
            entity_type=slot.entity_type.value,
        )
        is_terminal = terminal or failed.retry_count >= self.slot_retry_cap
        logger.warning(
            "slot_failed",
            job_id=job.id,
            slot_id=slot.id,
            entity_type=slot.entity_type,
            retry_count=failed.retry_count,
            terminal=is_terminal,
            error=error,
        )
        if not is_terminal:
            return

        translated = translate_error(code, message or error, network=network)
        adset_id = adset_name = None
        if slot.entity_type == EntityType.AD:
            adset = self.slots.find(job.id, slot.slot_number, EntityType.AD_SET)
            if adset is not None:
                adset_id, adset_name = adset.remote_entity_id, adset.entity_name
        self.failures.record(
            job,
            failed,
            error,
            translated.user_friendly_message,
            error_code=code,
            category=translated.category.value,
            raw_payload=raw,
            adset_id=adset_id,
            adset_name=adset_name,
        )

    async def _fail_orphans(
        self, job: JobView, slots: list[SlotView], terminal: set[int]
    ) -> int:
        """Fail ads whose ad set can no longer be created."""
        adsets = {slot.slot_number: slot for slot in slots if slot.entity_type == EntityType.AD_SET}
        orphaned = 0
        for slot in slots:
            if slot.entity_type != EntityType.AD or slot.id in terminal:
                continue
            if slot.status not in (SlotStatus.PENDING, SlotStatus.FAILED):
                continue
            adset = adsets.get(slot.slot_number)
            if adset is None or adset.id not in terminal:
                continue
            try:
                slot = self.slots.begin(slot.id)
            except InvalidSlotTransitionError:
                continue
            message = f"Ad set '{adset.entity_name}' failed, ad was not created"
            self._slot_failed(job, slot, message, terminal=True, count_attempt=False)
            orphaned += 1
        return orphaned

    async def _reconcile(self, job_id: int) -> None:
        """Settle slots parked on queued requests and recover abandoned ones."""
        stale_before = self._clock() - self.stale_after
        for slot in self.slots.get_slots(job_id):
            if slot.status != SlotStatus.CREATING:
                continue
            if slot.queued_request_id is None:
                if self.slots.is_stale(slot, stale_before):
                    await self._recover_stale(self.jobs.get(job_id), slot)
                continue

            row = self.queue.get(slot.queued_request_id)
            if row is None or row.status == QueueStatus.CANCELLED:
                self._settle_failed(job_id, slot, row, "Queued request was cancelled")
            elif row.status == QueueStatus.COMPLETED:
                entity_id = (row.result or {}).get("entity_id")
                if entity_id:
                    self._slot_created(job_id, slot, entity_id)
                else:
                    self._settle_failed(job_id, slot, row, "Queued request returned no entity id")
            elif row.status == QueueStatus.FAILED:
                self._settle_failed(job_id, slot, row, row.error or "Queued request failed")

    async def _recover_stale(self, job: JobView, slot: SlotView) -> None:
        """Adopt the entity of an abandoned attempt if it reached the platform.

        A worker may have died after the platform created the entity but before
        the id was recorded. Only when a lookup by name under the same parent
        finds nothing is the slot reset for another attempt.
        """
        log = logger.bind(job_id=job.id, slot_id=slot.id, entity_type=slot.entity_type)
        matches: list[str] = []
        parent_id = self._parent_entity_id(job, slot)
        if slot.entity_type == EntityType.CAMPAIGN or parent_id is not None:
            try:
                matches = await self.dispatcher.find_existing(
                    job.target_account,
                    job.account_group,
                    slot.entity_name,
                    slot.entity_type,
                    parent_id,
                )
            except (AllCredentialsExhaustedError, PlatformUnavailableError) as e:
                # Left in creating; the next drive looks again
                log.warning("slot_stale_lookup_failed", error=str(e))
                return

        if matches:
            log.warning("slot_stale_adopted", remote_entity_id=matches[0], matches=len(matches))
            self._slot_created(job.id, slot, matches[0])
            return
        log.warning("slot_reset_stale")
        try:
            self.slots.reset_stale(slot.id)
        except InvalidSlotTransitionError:
            log.info("slot_reset_stale_skipped")

    def _parent_entity_id(self, job: JobView, slot: SlotView) -> str | None:
        if slot.entity_type == EntityType.CAMPAIGN:
            return None
        if slot.entity_type == EntityType.AD_SET:
            return job.parent_entity_id
        adset = self.slots.find(job.id, slot.slot_number, EntityType.AD_SET)
        return adset.remote_entity_id if adset is not None else None

    def _settle_failed(
        self, job_id: int, slot: SlotView, row: QueuedRequestView | None, error: str
    ) -> None:
        result = (row.result if row is not None else None) or {}
        terminal = "error_code" in result or "errors" in result
        self._slot_failed(
            self.jobs.get(job_id),
            slot,
            error,
            terminal=terminal,
            code=result.get("error_code"),
            message=result.get("error_message"),
            raw=result or None,
        )

    # ------------------------------------------------------------------
    # Settle
    # ------------------------------------------------------------------

    async def _finalize(self, job_id: int) -> JobStatus:
        job = self.jobs.get(job_id)
        if job.status != JobStatus.IN_PROGRESS:
            return job.status
        slots = self.slots.get_slots(job_id)
        terminal = self.failures.failed_slot_ids(job_id)
        log = logger.bind(job_id=job_id)

        if all(slot.status == SlotStatus.CREATED for slot in slots):
            self.jobs.transition(job_id, JobStatus.COMPLETED, completed_at=self._clock())
            log.info("job_completed", children_created=job.children_created)
            return JobStatus.COMPLETED

        parent = next(slot for slot in slots if slot.entity_type == EntityType.CAMPAIGN)
        if parent.id in terminal:
            return await self._fail_and_roll_back(
                job_id, f"Parent campaign could not be created: {parent.error_message}"
            )
        if job.budget_exhausted:
            return await self._fail_and_roll_back(
                job_id,
                f"Retry budget exhausted ({job.retry_count}/{job.retry_budget}): {job.last_error}",
            )

        waiting = [
            slot
            for slot in slots
            if slot.status in (SlotStatus.PENDING, SlotStatus.CREATING)
            or (slot.status == SlotStatus.FAILED and slot.id not in terminal)
        ]
        if waiting:
            log.info("job_waiting", waiting_slots=len(waiting))
            return JobStatus.IN_PROGRESS

        self.jobs.transition(job_id, JobStatus.COMPLETED, completed_at=self._clock())
        log.warning(
            "job_completed_partially",
            children_created=job.children_created,
            failed_slots=len(terminal),
        )
        return JobStatus.COMPLETED

    async def _fail_and_roll_back(self, job_id: int, reason: str) -> JobStatus:
        try:
            self.jobs.transition(
                job_id, JobStatus.FAILED, last_error=reason, completed_at=self._clock()
            )
        except InvalidJobTransitionError as e:
            logger.warning("job_fail_skipped", job_id=job_id, reason=str(e))
        logger.error("job_failed", job_id=job_id, reason=reason)
        self.queue.cancel_for_job(job_id, exclude_action_types=(ActionType.DELETE_ENTITY.value,))
        await self.rollback.rollback(job_id, reason)
        return self.jobs.get(job_id).status

    async def _cancel_in_progress(self, job_id: int) -> None:
        try:
            self.jobs.transition(
                job_id,
                JobStatus.FAILED,
                last_error=CANCELLED_MESSAGE,
                completed_at=self._clock(),
            )
        except InvalidJobTransitionError:
            return
        self.queue.cancel_for_job(job_id, exclude_action_types=(ActionType.DELETE_ENTITY.value,))
        logger.warning("job_cancelled", job_id=job_id)

    async def _sweep_late_creations(self, job: JobView) -> None:
        """Delete entities that landed after their job was rolled back."""
        if not job.rollback_triggered:
            return
        for slot in self.slots.get_slots(job.id):
            if slot.status == SlotStatus.CREATING and slot.queued_request_id is not None:
                row = self.queue.get(slot.queued_request_id)
                entity_id = (row.result or {}).get("entity_id") if row is not None else None
                if row is not None and row.status == QueueStatus.COMPLETED and entity_id:
                    self.slots.mark_created(slot.id, entity_id)
                    slot = self.slots.get(slot.id)
            if slot.status != SlotStatus.CREATED or not slot.remote_entity_id:
                continue
            await self._compensate_late(job, slot)

    async def _compensate_late(self, job: JobView, slot: SlotView) -> None:
        report = RollbackReport(job_id=job.id, triggered=False, reason=job.rollback_reason)
        if await self.rollback.compensate(job, slot, report):
            logger.warning(
                "late_entity_compensated",
                job_id=job.id,
                slot_id=slot.id,
                entity_id=slot.remote_entity_id,
            )
        else:
            logger.error(
                "late_entity_left_in_place",
                job_id=job.id,
                slot_id=slot.id,
                entity_id=slot.remote_entity_id,
                errors=report.errors,
            )
