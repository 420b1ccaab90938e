"""Best-effort compensation for jobs that ultimately failed.

Rollback walks the slot ledger, children before parents, and issues one
delete per created entity through the dispatcher. Individual deletions may
fail; they are logged and reported but never raised, and the slot of an entity
that could not be deleted stays ``created``. A job is rolled back at most once.
"""

from campaign_engine.config import settings
from campaign_engine.domain.actions import DeleteEntityAction
from campaign_engine.domain.enums import ActionType, JobStatus
from campaign_engine.domain.models import DispatchRequest, JobView, RollbackReport, SlotView
from campaign_engine.logging import get_logger
from campaign_engine.services.dispatcher import Dispatcher
from campaign_engine.services.errors import (
    AllCredentialsExhaustedError,
    EntityError,
    InvalidSlotTransitionError,
)
from campaign_engine.services.job_store import JobStore
from campaign_engine.services.request_queue import RequestQueue
from campaign_engine.services.slot_ledger import SlotLedger
from campaign_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)

# Error code and subcode the platform returns for an id that no longer exists
_MISSING_OBJECT = (100, 33)


def _already_gone(error: EntityError) -> bool:
    message = error.message.lower()
    if "does not exist" in message or "not found" in message:
        return True
    try:
        code = int(error.code) if error.code is not None else None
    except (TypeError, ValueError):
        code = None
    return (code, error.subcode) == _MISSING_OBJECT


class RollbackManager:
    """Deletes what a failed job created."""

    def __init__(
        self,
        jobs: JobStore,
        slots: SlotLedger,
        queue: RequestQueue,
        dispatcher: Dispatcher,
        clock: Clock = utc_now,
    ) -> None:
        self.jobs = jobs
        self.slots = slots
        self.queue = queue
        self.dispatcher = dispatcher
        self._clock = clock

    def preview(self, job_id: int) -> list[SlotView]:
        """Slots a rollback of this job would delete, in deletion order."""
        return self.slots.created_manifest(job_id)

    async def rollback(self, job_id: int, reason: str) -> RollbackReport:
        """Roll back a job. Never raises."""
        try:
            return await self._rollback(job_id, reason)
        except Exception as e:
            logger.exception("rollback_failed", job_id=job_id, error=str(e))
            return RollbackReport(
                job_id=job_id,
                triggered=False,
                reason=reason,
                errors=[{"error": str(e)}],
            )

    async def _rollback(self, job_id: int, reason: str) -> RollbackReport:
        log = logger.bind(job_id=job_id)
        job = self.jobs.get(job_id)
        if job.rollback_triggered:
            log.info("rollback_already_triggered")
            return RollbackReport(
                job_id=job_id, triggered=False, reason=job.rollback_reason, already_rolled_back=True
            )

        manifest = self.slots.created_manifest(job_id)
        if not manifest:
            log.info("rollback_nothing_to_undo", reason=reason)
            return RollbackReport(job_id=job_id, triggered=False, reason=reason)

        if not self.jobs.trigger_rollback(job_id, reason):
            log.info("rollback_claimed_elsewhere")
            return RollbackReport(
                job_id=job_id, triggered=False, reason=reason, already_rolled_back=True
            )

        log.warning("rollback_started", reason=reason, entities=len(manifest))
        # Pending creations for this job must not land after the deletes
        self.queue.cancel_for_job(job_id, exclude_action_types=(ActionType.DELETE_ENTITY.value,))

        report = RollbackReport(job_id=job_id, triggered=True, reason=reason)
        for slot in manifest:
            await self.compensate(job, slot, report)

        self.jobs.transition(job_id, JobStatus.ROLLED_BACK, rolled_back_at=self._clock())

        log.warning(
            "rollback_finished",
            deleted=len(report.deleted),
            queued=len(report.queued),
            errors=len(report.errors),
        )
        return report

    async def compensate(self, job: JobView, slot: SlotView, report: RollbackReport) -> bool:
        """Undo one created entity and mark its slot rolled back.

        Returns False when the delete failed. The entity still exists then, so
        its slot stays ``created``.
        """
        if not await self._delete(job, slot, report):
            return False
        try:
            self.slots.mark_rolled_back(slot.id)
        except InvalidSlotTransitionError as e:
            logger.warning(
                "rollback_slot_transition_failed", job_id=job.id, slot_id=slot.id, error=str(e)
            )
        return True

    async def _delete(self, job: JobView, slot: SlotView, report: RollbackReport) -> bool:
        entity_id = slot.remote_entity_id
        if entity_id is None:
            return True
        request = DispatchRequest(
            caller=job.owner,
            target_account=job.target_account,
            action=DeleteEntityAction(entity_id=entity_id, entity_type=slot.entity_type),
            priority=settings.rollback_priority,
            account_group=job.account_group,
            job_id=job.id,
            slot_id=slot.id,
        )
        log = logger.bind(job_id=job.id, slot_id=slot.id, entity_id=entity_id)
        try:
            result = await self.dispatcher.dispatch(request)
        except AllCredentialsExhaustedError as e:
            self.queue.enqueue(request, settings.rollback_priority, e.retry_at)
            report.queued.append(entity_id)
            log.info("rollback_delete_queued", retry_at=e.retry_at)
            return True
        except EntityError as e:
            if _already_gone(e):
                report.deleted.append(entity_id)
                log.info("rollback_entity_already_gone")
                return True
            report.errors.append({"entity_id": entity_id, "slot_id": slot.id, "error": str(e)})
            log.error("rollback_delete_failed", error=str(e))
            return False
        except Exception as e:
            report.errors.append({"entity_id": entity_id, "slot_id": slot.id, "error": str(e)})
            log.exception("rollback_delete_failed", error=str(e))
            return False

        if result.succeeded:
            report.deleted.append(entity_id)
            log.info("rollback_entity_deleted")
        else:
            report.queued.append(entity_id)
            log.info("rollback_delete_queued", queued_request_id=result.queued_request_id)
        return True
