"""Celery tasks that drive creation jobs and drain the request queue."""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from campaign_engine.logging import get_logger
from campaign_engine.services.engine import Engine, build_engine
from campaign_engine.services.failure_ledger import FailureLedger
from campaign_engine.utils.async_utils import run_async
from campaign_engine.worker import celery_app

logger = get_logger(__name__)

T = TypeVar("T")


def _with_engine(work: Callable[[Engine], Awaitable[T]]) -> T:
    """Build an engine, run ``work`` on it and close it on the same loop."""

    async def runner() -> T:
        engine = build_engine()
        try:
            return await work(engine)
        finally:
            await engine.close()

    return run_async(runner())


@celery_app.task(bind=True, name="creation.start_job")
def start_job_task(
    self: Any,
    owner: str,
    target_account: str,
    parent_spec: dict[str, Any],
    child_specs: list[dict[str, Any]],
    retry_budget: int | None = None,
) -> dict[str, Any]:
    """Verify, allocate and drive a new creation job."""
    task_id = self.request.id
    logger.info("start_job_task_started", task_id=task_id, owner=owner, target_account=target_account)

    async def work(engine: Engine) -> dict[str, Any]:
        job_id = await engine.orchestrator.start_job(
            owner, target_account, parent_spec, child_specs, retry_budget=retry_budget
        )
        status = await engine.orchestrator.drive_job(job_id)
        return {"job_id": job_id, "status": status.value}

    try:
        outcome = _with_engine(work)
    except Exception as e:
        logger.exception("start_job_task_failed", task_id=task_id, error=str(e))
        return {"success": False, "task_id": task_id, "error": str(e)}

    logger.info("start_job_task_completed", task_id=task_id, **outcome)
    return {"success": True, "task_id": task_id, **outcome}


@celery_app.task(bind=True, name="creation.drive_job")
def drive_job_task(self: Any, job_id: int) -> dict[str, Any]:
    """Drive an existing job as far as it can go. Safe to repeat."""
    task_id = self.request.id
    logger.info("drive_job_task_started", task_id=task_id, job_id=job_id)

    async def work(engine: Engine) -> dict[str, Any]:
        status = await engine.orchestrator.drive_job(job_id)
        return engine.orchestrator.get_progress(job_id) | {"status": status.value}

    try:
        progress = _with_engine(work)
    except Exception as e:
        logger.exception("drive_job_task_failed", task_id=task_id, job_id=job_id, error=str(e))
        return {"success": False, "task_id": task_id, "job_id": job_id, "error": str(e)}

    logger.info("drive_job_task_completed", task_id=task_id, job_id=job_id, status=progress["status"])
    return {"success": True, "task_id": task_id, **progress}


@celery_app.task(bind=True, name="creation.cancel_job")
def cancel_job_task(self: Any, job_id: int, rollback: bool = False) -> dict[str, Any]:
    """Cancel a job between slots, optionally rolling back what it created."""
    task_id = self.request.id

    async def work(engine: Engine) -> dict[str, Any]:
        job = await engine.orchestrator.cancel_job(job_id, rollback=rollback)
        return {"job_id": job.id, "status": job.status.value}

    try:
        outcome = _with_engine(work)
    except Exception as e:
        logger.exception("cancel_job_task_failed", task_id=task_id, job_id=job_id, error=str(e))
        return {"success": False, "task_id": task_id, "job_id": job_id, "error": str(e)}
    return {"success": True, "task_id": task_id, **outcome}


@celery_app.task(bind=True, name="creation.resume_jobs")
def resume_jobs_task(self: Any) -> dict[str, Any]:
    """Drive every in-progress job once, picking up interrupted drives."""
    task_id = self.request.id

    async def work(engine: Engine) -> dict[str, str]:
        statuses = await engine.orchestrator.resume_in_progress()
        return {str(job_id): status.value for job_id, status in statuses.items()}

    try:
        statuses = _with_engine(work)
    except Exception as e:
        logger.exception("resume_jobs_task_failed", task_id=task_id, error=str(e))
        return {"success": False, "task_id": task_id, "error": str(e)}

    if statuses:
        logger.info("resume_jobs_task_completed", task_id=task_id, jobs=len(statuses))
    return {"success": True, "task_id": task_id, "jobs": statuses}


@celery_app.task(bind=True, name="queue.process_due_requests")
def process_due_requests_task(self: Any) -> dict[str, Any]:
    """One queue tick: re-dispatch every due request in priority order."""
    task_id = self.request.id

    async def work(engine: Engine) -> dict[str, Any]:
        report = await engine.processor.process_due()
        return {
            "selected": report.selected,
            "completed": report.completed,
            "requeued": report.requeued,
            "failed": report.failed,
            "skipped": report.skipped,
            "reclaimed": report.reclaimed,
        }

    try:
        counts = _with_engine(work)
    except Exception as e:
        logger.exception("process_due_requests_failed", task_id=task_id, error=str(e))
        return {"success": False, "task_id": task_id, "error": str(e)}

    return {
        "success": True,
        "task_id": task_id,
        "processed_at": datetime.now(UTC).isoformat(),
        **counts,
    }


@celery_app.task(bind=True, name="maintenance.cleanup_recovered_failures")
def cleanup_recovered_failures_task(self: Any, older_than_days: int = 30) -> dict[str, Any]:
    """Delete recovered failure ledger entries older than the cutoff."""
    deleted = FailureLedger().cleanup_recovered(older_than_days)
    return {"success": True, "task_id": self.request.id, "deleted": deleted}
