"""Persistence for creation jobs.

Status changes are conditional UPDATEs validated against ``JOB_TRANSITIONS``,
so a job can only move forward and two workers cannot both apply the same
transition.
"""

from typing import Any

from sqlalchemy import select, update

from campaign_engine.config import settings
from campaign_engine.db.models import CreationJobModel
from campaign_engine.db.session import SessionFactory, get_session_context
from campaign_engine.domain.enums import JOB_TRANSITIONS, JobStatus
from campaign_engine.domain.models import JobView
from campaign_engine.logging import get_logger
from campaign_engine.services.errors import InvalidJobTransitionError, JobNotFoundError
from campaign_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)

MAX_ERROR_HISTORY = 100


def job_view(row: CreationJobModel) -> JobView:
    return JobView(
        id=row.id,
        owner=row.owner,
        target_account=row.target_account,
        account_group=row.account_group,
        parent_name=row.parent_name,
        parent_spec=dict(row.parent_spec or {}),
        child_specs=list(row.child_specs or []),
        status=JobStatus(row.status),
        requested_children=row.requested_children,
        children_created=row.children_created,
        retry_count=row.retry_count,
        retry_budget=row.retry_budget,
        last_error=row.last_error,
        error_history=list(row.error_history or []),
        rollback_triggered=row.rollback_triggered,
        rollback_reason=row.rollback_reason,
        parent_entity_id=row.parent_entity_id,
        cancel_requested=row.cancel_requested,
        started_at=row.started_at,
        completed_at=row.completed_at,
        rolled_back_at=row.rolled_back_at,
    )


class JobStore:
    """Creates, reads and transitions creation jobs."""

    def __init__(
        self,
        session_factory: SessionFactory = get_session_context,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def new_job(
        self,
        owner: str,
        target_account: str,
        account_group: str,
        parent_spec: dict[str, Any],
        child_specs: list[dict[str, Any]],
        retry_budget: int | None = None,
    ) -> CreationJobModel:
        """Unsaved job row in the pending state."""
        return CreationJobModel(
            owner=owner,
            target_account=target_account,
            account_group=account_group,
            parent_name=parent_spec["name"],
            parent_spec=parent_spec,
            child_specs=child_specs,
            requested_children=sum(1 + (child.get("ad") is not None) for child in child_specs),
            status=JobStatus.PENDING.value,
            children_created=0,
            retry_count=0,
            retry_budget=settings.job_retry_budget if retry_budget is None else retry_budget,
            error_history=[],
            rollback_triggered=False,
            cancel_requested=False,
        )

    def get(self, job_id: int) -> JobView:
        with self._session_factory() as session:
            row = session.get(CreationJobModel, job_id)
            if row is None:
                raise JobNotFoundError(f"Creation job {job_id} not found")
            return job_view(row)

    def list_ids(self, status: JobStatus | None = None, owner: str | None = None) -> list[int]:
        stmt = select(CreationJobModel.id).order_by(CreationJobModel.id)
        if status is not None:
            stmt = stmt.where(CreationJobModel.status == status.value)
        if owner is not None:
            stmt = stmt.where(CreationJobModel.owner == owner)
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def transition(
        self,
        job_id: int,
        to_status: JobStatus,
        allowed_from: set[JobStatus] | None = None,
        **values: Any,
    ) -> JobView:
        """Move a job forward, or raise ``InvalidJobTransitionError``."""
        with self._session_factory() as session:
            row = session.get(CreationJobModel, job_id)
            if row is None:
                raise JobNotFoundError(f"Creation job {job_id} not found")
            current = JobStatus(row.status)
            permitted = to_status in JOB_TRANSITIONS[current]
            if allowed_from is not None:
                permitted = permitted and current in allowed_from
            if not permitted:
                raise InvalidJobTransitionError(
                    f"Job {job_id} cannot move from {current} to {to_status}"
                )
            result = session.execute(
                update(CreationJobModel)
                .where(CreationJobModel.id == job_id, CreationJobModel.status == current.value)
                .values(status=to_status.value, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidJobTransitionError(f"Job {job_id} changed concurrently")
            session.refresh(row)
            view = job_view(row)
        logger.info("job_transitioned", job_id=job_id, from_status=current, to_status=to_status)
        return view

    def record_error(self, job_id: int, message: str, *, count: bool = True, **context: Any) -> JobView:
        """Set ``last_error`` and append to the error history.

        With ``count`` the job's retry counter is incremented in the same
        UPDATE, so concurrent slot failures are never lost.
        """
        entry = {"at": self._clock().isoformat(), "error": message, **context}
        with self._session_factory() as session:
            row = session.get(CreationJobModel, job_id, with_for_update=True)
            if row is None:
                raise JobNotFoundError(f"Creation job {job_id} not found")
            history = list(row.error_history or [])
            history.append(entry)
            values: dict[str, Any] = {
                "last_error": message,
                "error_history": history[-MAX_ERROR_HISTORY:],
            }
            if count:
                values["retry_count"] = CreationJobModel.retry_count + 1
            session.execute(
                update(CreationJobModel)
                .where(CreationJobModel.id == job_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.refresh(row)
            return job_view(row)

    def set_parent_entity(self, job_id: int, entity_id: str) -> None:
        self._update(job_id, parent_entity_id=entity_id)

    def increment_children(self, job_id: int) -> None:
        self._update(job_id, children_created=CreationJobModel.children_created + 1)

    def request_cancel(self, job_id: int) -> None:
        self._update(job_id, cancel_requested=True)

    def trigger_rollback(self, job_id: int, reason: str) -> bool:
        """Claim the job's single rollback. False when already claimed."""
        with self._session_factory() as session:
            result = session.execute(
                update(CreationJobModel)
                .where(
                    CreationJobModel.id == job_id,
                    CreationJobModel.rollback_triggered.is_(False),
                    CreationJobModel.status.in_(
                        [JobStatus.IN_PROGRESS.value, JobStatus.FAILED.value]
                    ),
                )
                .values(rollback_triggered=True, rollback_reason=reason)
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    def _update(self, job_id: int, **values: Any) -> None:
        with self._session_factory() as session:
            result = session.execute(
                update(CreationJobModel)
                .where(CreationJobModel.id == job_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise JobNotFoundError(f"Creation job {job_id} not found")
