"""Durable, priority-ordered queue of deferred remote calls.

Rows move ``queued -> processing -> {completed, failed}`` or ``queued ->
cancelled``. A row left in ``processing`` past its lease is handed back
to ``queued``, or failed when its attempts are spent. Every transition is a
conditional UPDATE on the current status, so a row can never skip
``processing`` and two processors can never claim the same row.
"""

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select, update

from campaign_engine.config import settings
from campaign_engine.db.models import QueuedRequestModel
from campaign_engine.db.session import SessionFactory, get_session_context
from campaign_engine.domain.enums import QueueStatus
from campaign_engine.domain.models import DispatchRequest, QueuedRequestView
from campaign_engine.logging import get_logger
from campaign_engine.services.errors import QueuedRequestNotFoundError
from campaign_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)


def _view(row: QueuedRequestModel) -> QueuedRequestView:
    return QueuedRequestView(
        id=row.id,
        caller=row.caller,
        target_account=row.target_account,
        account_group=row.account_group,
        action_type=row.action_type,
        payload=dict(row.payload),
        priority=row.priority,
        status=QueueStatus(row.status),
        process_after=row.process_after,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        result=row.result,
        error=row.error,
        job_id=row.job_id,
        slot_id=row.slot_id,
        processed_at=row.processed_at,
        claimed_at=row.claimed_at,
    )


class RequestQueue:
    """Store of calls waiting for quota, drained by the queue processor."""

    def __init__(
        self,
        session_factory: SessionFactory = get_session_context,
        clock: Clock = utc_now,
        max_attempts: int | None = None,
        backoff_base: timedelta | None = None,
        processing_lease: timedelta | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._max_attempts = max_attempts or settings.queue_max_attempts
        self._backoff_base = backoff_base or timedelta(
            minutes=settings.queue_backoff_base_minutes
        )
        self._processing_lease = processing_lease or timedelta(
            seconds=settings.queue_processing_lease_seconds
        )

    def enqueue(
        self,
        request: DispatchRequest,
        priority: int | None = None,
        process_after: datetime | None = None,
    ) -> int:
        """Store a call for later dispatch. Returns the queued request id."""
        priority = request.priority if priority is None else priority
        if not 1 <= priority <= 10:
            raise ValueError(f"Priority must be between 1 and 10, got {priority}")
        payload = request.action.model_dump(mode="json")
        with self._session_factory() as session:
            row = QueuedRequestModel(
                caller=request.caller,
                target_account=request.target_account,
                account_group=request.account_group,
                action_type=payload["action_type"],
                payload=payload,
                priority=priority,
                status=QueueStatus.QUEUED.value,
                process_after=process_after or self._clock(),
                attempts=0,
                max_attempts=self._max_attempts,
                job_id=request.job_id,
                slot_id=request.slot_id,
            )
            session.add(row)
            session.flush()
            request_id = row.id
        logger.info(
            "request_enqueued",
            queued_request_id=request_id,
            action_type=payload["action_type"],
            priority=priority,
            process_after=(process_after or self._clock()).isoformat(),
            job_id=request.job_id,
            slot_id=request.slot_id,
        )
        return request_id

    def due(self, limit: int | None = None) -> list[QueuedRequestView]:
        """Eligible rows, highest priority first, FIFO within a priority."""
        now = self._clock()
        with self._session_factory() as session:
            rows = session.scalars(
                select(QueuedRequestModel)
                .where(
                    QueuedRequestModel.status == QueueStatus.QUEUED.value,
                    QueuedRequestModel.process_after <= now,
                    QueuedRequestModel.attempts < QueuedRequestModel.max_attempts,
                )
                .order_by(QueuedRequestModel.priority.asc(), QueuedRequestModel.id.asc())
                .limit(limit or settings.queue_batch_size)
            ).all()
            return [_view(row) for row in rows]

    def claim(self, request_id: int) -> bool:
        """Move a queued row to processing and count the attempt.

        Returns False when the row was cancelled or claimed by someone else.
        """
        with self._session_factory() as session:
            result = session.execute(
                update(QueuedRequestModel)
                .where(
                    QueuedRequestModel.id == request_id,
                    QueuedRequestModel.status == QueueStatus.QUEUED.value,
                    QueuedRequestModel.attempts < QueuedRequestModel.max_attempts,
                )
                .values(
                    status=QueueStatus.PROCESSING.value,
                    attempts=QueuedRequestModel.attempts + 1,
                    claimed_at=self._clock(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def reclaim_stale(self) -> list[QueuedRequestView]:
        """Release rows whose processor died while holding them.

        A row still in ``processing`` after the lease has expired goes back to
        ``queued`` if it has attempts left, and to ``failed`` otherwise. Returns
        the rows that were failed so their owners can settle them.
        """
        now = self._clock()
        expired = now - self._processing_lease
        with self._session_factory() as session:
            stale = session.scalars(
                select(QueuedRequestModel).where(
                    QueuedRequestModel.status == QueueStatus.PROCESSING.value,
                    or_(
                        QueuedRequestModel.claimed_at.is_(None),
                        QueuedRequestModel.claimed_at <= expired,
                    ),
                )
            ).all()
            candidates = [(row.id, row.attempts >= row.max_attempts) for row in stale]

        failed_ids: list[int] = []
        for request_id, spent in candidates:
            if spent:
                values: dict[str, Any] = {
                    "status": QueueStatus.FAILED.value,
                    "error": "Processor lost while dispatching",
                    "processed_at": now,
                }
            else:
                values = {"status": QueueStatus.QUEUED.value, "process_after": now}
            with self._session_factory() as session:
                result = session.execute(
                    update(QueuedRequestModel)
                    .where(
                        QueuedRequestModel.id == request_id,
                        QueuedRequestModel.status == QueueStatus.PROCESSING.value,
                        or_(
                            QueuedRequestModel.claimed_at.is_(None),
                            QueuedRequestModel.claimed_at <= expired,
                        ),
                    )
                    .values(claimed_at=None, **values)
                    .execution_options(synchronize_session=False)
                )
                reclaimed = result.rowcount == 1
            if not reclaimed:
                continue
            logger.warning(
                "queued_request_reclaimed",
                queued_request_id=request_id,
                status=values["status"],
            )
            if spent:
                failed_ids.append(request_id)

        if not failed_ids:
            return []
        with self._session_factory() as session:
            rows = session.scalars(
                select(QueuedRequestModel).where(QueuedRequestModel.id.in_(failed_ids))
            ).all()
            return [_view(row) for row in rows]

    def complete(self, request_id: int, result: dict[str, Any]) -> bool:
        now = self._clock()
        with self._session_factory() as session:
            updated = session.execute(
                update(QueuedRequestModel)
                .where(
                    QueuedRequestModel.id == request_id,
                    QueuedRequestModel.status == QueueStatus.PROCESSING.value,
                )
                .values(
                    status=QueueStatus.COMPLETED.value,
                    result=result,
                    error=None,
                    processed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            completed = bool(updated.rowcount)
        if completed:
            logger.info("queued_request_completed", queued_request_id=request_id)
        return completed

    def fail(
        self,
        request_id: int,
        error: str,
        retry_at: datetime | None = None,
        terminal: bool = False,
        result: dict[str, Any] | None = None,
    ) -> QueueStatus:
        """Record a failed attempt and either re-queue or fail the row.

        Without ``retry_at`` the next attempt is scheduled with exponential
        backoff from the configured base delay.
        """
        now = self._clock()
        with self._session_factory() as session:
            row = session.get(QueuedRequestModel, request_id)
            if row is None:
                raise QueuedRequestNotFoundError(f"Queued request {request_id} not found")
            if row.status != QueueStatus.PROCESSING.value:
                logger.warning(
                    "queued_request_fail_ignored",
                    queued_request_id=request_id,
                    status=row.status,
                )
                return QueueStatus(row.status)

            attempts = row.attempts
            if terminal or row.attempts >= row.max_attempts:
                values: dict[str, Any] = {
                    "status": QueueStatus.FAILED.value,
                    "error": error,
                    "processed_at": now,
                }
                new_status = QueueStatus.FAILED
            else:
                if retry_at is None or retry_at <= now:
                    retry_at = now + self._backoff_base * (2**row.attempts)
                values = {
                    "status": QueueStatus.QUEUED.value,
                    "error": error,
                    "process_after": retry_at,
                }
                new_status = QueueStatus.QUEUED
            if result is not None:
                values["result"] = result

            session.execute(
                update(QueuedRequestModel)
                .where(
                    QueuedRequestModel.id == request_id,
                    QueuedRequestModel.status == QueueStatus.PROCESSING.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        logger.info(
            "queued_request_failed" if new_status == QueueStatus.FAILED else "queued_request_requeued",
            queued_request_id=request_id,
            attempts=attempts,
            error=error,
            retry_at=retry_at.isoformat() if new_status == QueueStatus.QUEUED and retry_at else None,
        )
        return new_status

    def cancel(self, request_id: int) -> bool:
        """Cancel a row that has not been picked up yet."""
        with self._session_factory() as session:
            result = session.execute(
                update(QueuedRequestModel)
                .where(
                    QueuedRequestModel.id == request_id,
                    QueuedRequestModel.status == QueueStatus.QUEUED.value,
                )
                .values(status=QueueStatus.CANCELLED.value, processed_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            cancelled = bool(result.rowcount)
        if cancelled:
            logger.info("queued_request_cancelled", queued_request_id=request_id)
        return cancelled

    def cancel_for_job(self, job_id: int, exclude_action_types: tuple[str, ...] = ()) -> int:
        """Cancel every still-queued row belonging to a job."""
        stmt = (
            update(QueuedRequestModel)
            .where(
                QueuedRequestModel.job_id == job_id,
                QueuedRequestModel.status == QueueStatus.QUEUED.value,
            )
            .values(status=QueueStatus.CANCELLED.value, processed_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        if exclude_action_types:
            stmt = stmt.where(QueuedRequestModel.action_type.not_in(exclude_action_types))
        with self._session_factory() as session:
            cancelled = session.execute(stmt).rowcount
        if cancelled:
            logger.info("job_requests_cancelled", job_id=job_id, count=cancelled)
        return cancelled

    def get(self, request_id: int) -> QueuedRequestView | None:
        with self._session_factory() as session:
            row = session.get(QueuedRequestModel, request_id)
            return _view(row) if row is not None else None

    def depth(self) -> int:
        """Number of rows waiting to be dispatched."""
        with self._session_factory() as session:
            return session.scalar(
                select(func.count(QueuedRequestModel.id)).where(
                    QueuedRequestModel.status == QueueStatus.QUEUED.value
                )
            ) or 0

    def counts_by_status(self) -> dict[str, int]:
        with self._session_factory() as session:
            rows = session.execute(
                select(QueuedRequestModel.status, func.count(QueuedRequestModel.id)).group_by(
                    QueuedRequestModel.status
                )
            ).all()
        counts = {status.value: 0 for status in QueueStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def list_for_caller(
        self, caller: str, status: QueueStatus | None = None, limit: int = 50
    ) -> list[QueuedRequestView]:
        stmt = (
            select(QueuedRequestModel)
            .where(QueuedRequestModel.caller == caller)
            .order_by(QueuedRequestModel.id.desc())
            .limit(limit)
        )
        if status is not None:
            stmt = stmt.where(QueuedRequestModel.status == status.value)
        with self._session_factory() as session:
            return [_view(row) for row in session.scalars(stmt)]
