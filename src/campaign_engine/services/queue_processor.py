"""Background processor that drains the request queue on a fixed tick."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from campaign_engine.config import settings
from campaign_engine.domain.enums import QUEUE_TERMINAL_STATUSES, QueueStatus
from campaign_engine.domain.models import DispatchRequest, QueuedRequestView
from campaign_engine.logging import get_logger
from campaign_engine.services.dispatcher import Dispatcher
from campaign_engine.services.errors import (
    AllCredentialsExhaustedError,
    EntityError,
    PayloadValidationError,
)
from campaign_engine.services.request_queue import RequestQueue

logger = get_logger(__name__)

SettledHook = Callable[[QueuedRequestView], Awaitable[None]]


@dataclass
class TickReport:
    """Counts for one processing tick."""

    selected: int = 0
    completed: int = 0
    requeued: int = 0
    failed: int = 0
    skipped: int = 0
    reclaimed: int = 0
    overlapped: bool = False


def request_from_row(row: QueuedRequestView) -> DispatchRequest:
    return DispatchRequest(
        caller=row.caller,
        target_account=row.target_account,
        action=row.payload,
        priority=row.priority,
        account_group=row.account_group,
        job_id=row.job_id,
        slot_id=row.slot_id,
    )


class QueueProcessor:
    """Re-dispatches due queued requests.

    Owns its asyncio task: ``start()`` begins ticking, ``stop()`` ends it. A
    tick that is still running when the next one is due is skipped.
    """

    def __init__(
        self,
        queue: RequestQueue,
        dispatcher: Dispatcher,
        on_settled: SettledHook | None = None,
        tick_seconds: float | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.queue = queue
        self.dispatcher = dispatcher
        self.on_settled = on_settled
        self.tick_seconds = tick_seconds or settings.queue_tick_seconds
        self.batch_size = batch_size or settings.queue_batch_size
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._is_processing = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    def start(self) -> None:
        """Start ticking on the running event loop."""
        if self.is_running:
            logger.warning("queue_processor_already_running")
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="queue-processor")
        logger.info("queue_processor_started", tick_seconds=self.tick_seconds)

    async def stop(self) -> None:
        """Stop after the current tick finishes."""
        if self._task is None or self._stop_event is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("queue_processor_stopped")

    async def _run(self) -> None:
        stop_event = self._stop_event
        if stop_event is None:
            return
        while not stop_event.is_set():
            try:
                await self.process_due()
            except Exception:
                logger.exception("queue_tick_failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.tick_seconds)
            except TimeoutError:
                pass

    async def process_due(self) -> TickReport:
        """Run one tick: dispatch every due request in priority order."""
        if self._is_processing:
            logger.info("queue_tick_skipped_overlap")
            return TickReport(overlapped=True)

        self._is_processing = True
        report = TickReport()
        try:
            for lost in self.queue.reclaim_stale():
                report.reclaimed += 1
                report.failed += 1
                await self._settle(lost.id)
            rows = self.queue.due(self.batch_size)
            report.selected = len(rows)
            if rows:
                logger.info("queue_tick_started", due=len(rows))
            for row in rows:
                status = await self._process_one(row)
                if status is None:
                    report.skipped += 1
                elif status == QueueStatus.COMPLETED:
                    report.completed += 1
                elif status == QueueStatus.QUEUED:
                    report.requeued += 1
                else:
                    report.failed += 1
        finally:
            self._is_processing = False

        if report.selected or report.reclaimed:
            logger.info(
                "queue_tick_finished",
                reclaimed=report.reclaimed,
                completed=report.completed,
                requeued=report.requeued,
                failed=report.failed,
                skipped=report.skipped,
            )
        return report

    async def _process_one(self, row: QueuedRequestView) -> QueueStatus | None:
        if not self.queue.claim(row.id):
            # Cancelled or picked up elsewhere since selection
            return None

        log = logger.bind(queued_request_id=row.id, action_type=row.action_type, job_id=row.job_id)
        try:
            result = await self.dispatcher.dispatch(request_from_row(row), queued_request_id=row.id)
        except AllCredentialsExhaustedError as e:
            status = self.queue.fail(row.id, str(e), retry_at=e.retry_at)
        except EntityError as e:
            status = self.queue.fail(
                row.id,
                str(e),
                terminal=True,
                result={"error_code": e.code, "error_message": e.message, "raw": e.raw},
            )
        except PayloadValidationError as e:
            status = self.queue.fail(row.id, str(e), terminal=True, result={"errors": e.errors})
        except Exception as e:
            log.exception("queued_request_dispatch_error")
            status = self.queue.fail(row.id, str(e))
        else:
            if result.succeeded:
                self.queue.complete(
                    row.id,
                    {"entity_id": result.entity_id, "credential_id": result.credential_id},
                )
                status = QueueStatus.COMPLETED
            else:
                status = self.queue.fail(row.id, "quota still exhausted", retry_at=result.retry_at)

        if status in QUEUE_TERMINAL_STATUSES:
            await self._settle(row.id)
        return status

    async def _settle(self, request_id: int) -> None:
        """Hand a finished row to the settle hook, if one is registered."""
        if self.on_settled is None:
            return
        settled = self.queue.get(request_id)
        if settled is None:
            return
        try:
            await self.on_settled(settled)
        except Exception:
            logger.exception("queued_request_settle_hook_failed", queued_request_id=request_id)
