"""Wiring for the creation engine.

Every component takes its collaborators explicitly. ``build_engine`` assembles
one consistent set for a process; API routes, Celery tasks and the CLI each
build their own and tests pass an in-memory session factory and a fake clock.
"""

from dataclasses import dataclass
from typing import Any

from campaign_engine.adapters.ad_platform import AdPlatformClient, get_ad_platform_client
from campaign_engine.db.session import SessionFactory, get_session_context
from campaign_engine.logging import get_logger
from campaign_engine.services.credential_pool import CredentialPool
from campaign_engine.services.dispatcher import Dispatcher
from campaign_engine.services.failure_ledger import FailureLedger
from campaign_engine.services.job_store import JobStore
from campaign_engine.services.orchestrator import JobOrchestrator
from campaign_engine.services.quota import QuotaTracker
from campaign_engine.services.queue_processor import QueueProcessor
from campaign_engine.services.request_queue import RequestQueue
from campaign_engine.services.rollback import RollbackManager
from campaign_engine.services.slot_ledger import SlotLedger
from campaign_engine.services.verification import PreCreationVerifier
from campaign_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)


@dataclass
class Engine:
    """One wired set of engine components."""

    client: AdPlatformClient
    pool: CredentialPool
    quota: QuotaTracker
    queue: RequestQueue
    dispatcher: Dispatcher
    verifier: PreCreationVerifier
    jobs: JobStore
    slots: SlotLedger
    failures: FailureLedger
    rollback: RollbackManager
    orchestrator: JobOrchestrator
    processor: QueueProcessor

    def get_queue_status(self) -> dict[str, Any]:
        """Per-credential usage and queue depth."""
        return {
            "per_credential_usage": self.pool.usage_snapshot(),
            "queue_depth": self.queue.depth(),
            "queue_counts": self.queue.counts_by_status(),
            "pool": self.pool.summary(),
            "processor_running": self.processor.is_running,
        }

    async def close(self) -> None:
        if self.processor.is_running:
            await self.processor.stop()
        await self.client.close()


def build_engine(
    session_factory: SessionFactory = get_session_context,
    clock: Clock = utc_now,
    client: AdPlatformClient | None = None,
) -> Engine:
    """Assemble the engine around one session factory, clock and platform client."""
    client = client or get_ad_platform_client()
    pool = CredentialPool(session_factory, clock)
    quota = QuotaTracker(session_factory, clock)
    queue = RequestQueue(session_factory, clock)
    dispatcher = Dispatcher(pool, quota, queue, client, clock)
    verifier = PreCreationVerifier(pool, client, session_factory)
    jobs = JobStore(session_factory, clock)
    slots = SlotLedger(session_factory, clock)
    failures = FailureLedger(session_factory, clock)
    rollback = RollbackManager(jobs, slots, queue, dispatcher, clock)
    orchestrator = JobOrchestrator(
        jobs,
        slots,
        verifier,
        dispatcher,
        queue,
        failures,
        rollback,
        session_factory=session_factory,
        clock=clock,
    )
    processor = QueueProcessor(queue, dispatcher, on_settled=orchestrator.resume_from_queue)
    logger.debug("engine_built", provider=client.name)
    return Engine(
        client=client,
        pool=pool,
        quota=quota,
        queue=queue,
        dispatcher=dispatcher,
        verifier=verifier,
        jobs=jobs,
        slots=slots,
        failures=failures,
        rollback=rollback,
        orchestrator=orchestrator,
        processor=processor,
    )
