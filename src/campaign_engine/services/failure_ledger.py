"""Failure ledger: entities that ended in permanent failure.

Entries are written once by the orchestrator. The manual recovery path only
moves ``status`` between failed, retrying, recovered and permanent_failure.
"""

from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from campaign_engine.db.models import FailureRecordModel
from campaign_engine.db.session import SessionFactory, get_session_context
from campaign_engine.domain.enums import EntityType, FailureStatus
from campaign_engine.domain.models import FailureRecordView, JobView, SlotView
from campaign_engine.logging import get_logger
from campaign_engine.services.errors import EngineError, FailureRecordNotFoundError
from campaign_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)

_RECOVERY_TRANSITIONS: dict[FailureStatus, frozenset[FailureStatus]] = {
    FailureStatus.FAILED: frozenset(
        {FailureStatus.RETRYING, FailureStatus.RECOVERED, FailureStatus.PERMANENT_FAILURE}
    ),
    FailureStatus.RETRYING: frozenset(
        {FailureStatus.FAILED, FailureStatus.RECOVERED, FailureStatus.PERMANENT_FAILURE}
    ),
    FailureStatus.RECOVERED: frozenset(),
    FailureStatus.PERMANENT_FAILURE: frozenset(),
}


class InvalidFailureTransitionError(EngineError):
    """A failure record cannot move to the requested status."""

    pass


def _view(row: FailureRecordModel) -> FailureRecordView:
    return FailureRecordView(
        id=row.id,
        job_id=row.job_id,
        slot_id=row.slot_id,
        owner=row.owner,
        entity_type=EntityType(row.entity_type),
        failure_reason=row.failure_reason,
        user_friendly_reason=row.user_friendly_reason,
        status=FailureStatus(row.status),
        retry_count=row.retry_count,
        error_code=row.error_code,
        error_category=row.error_category,
        campaign_id=row.campaign_id,
        campaign_name=row.campaign_name,
        adset_id=row.adset_id,
        adset_name=row.adset_name,
        ad_id=row.ad_id,
        ad_name=row.ad_name,
        raw_error=row.raw_error,
        recovered_at=row.recovered_at,
        created_at=row.created_at,
    )


class FailureLedger:
    """Durable record of terminally failed entities."""

    def __init__(
        self,
        session_factory: SessionFactory = get_session_context,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def record(
        self,
        job: JobView,
        slot: SlotView,
        raw_error: str,
        user_friendly_error: str,
        *,
        error_code: int | str | None = None,
        category: str | None = None,
        raw_payload: dict[str, Any] | None = None,
        adset_id: str | None = None,
        adset_name: str | None = None,
    ) -> FailureRecordView:
        """Record a terminally failed slot. A slot is recorded at most once.

        ``slot_id`` is unique, so when two writers race the loser gets the
        winner's entry back.
        """
        existing = self._for_slot(slot.id)
        if existing is not None:
            return existing

        try:
            view = self._insert(
                job,
                slot,
                raw_error,
                user_friendly_error,
                error_code=error_code,
                category=category,
                raw_payload=raw_payload,
                adset_id=adset_id,
                adset_name=adset_name,
            )
        except IntegrityError:
            existing = self._for_slot(slot.id)
            if existing is None:
                raise
            logger.info("failure_record_raced", job_id=job.id, slot_id=slot.id)
            return existing

        logger.warning(
            "failure_recorded",
            failure_id=view.id,
            job_id=job.id,
            slot_id=slot.id,
            entity_type=slot.entity_type,
            error_code=view.error_code,
        )
        return view

    def _for_slot(self, slot_id: int) -> FailureRecordView | None:
        with self._session_factory() as session:
            row = session.scalars(
                select(FailureRecordModel).where(FailureRecordModel.slot_id == slot_id)
            ).first()
            return _view(row) if row is not None else None

    def _insert(
        self,
        job: JobView,
        slot: SlotView,
        raw_error: str,
        user_friendly_error: str,
        *,
        error_code: int | str | None,
        category: str | None,
        raw_payload: dict[str, Any] | None,
        adset_id: str | None,
        adset_name: str | None,
    ) -> FailureRecordView:
        with self._session_factory() as session:
            row = FailureRecordModel(
                job_id=job.id,
                slot_id=slot.id,
                owner=job.owner,
                campaign_id=job.parent_entity_id,
                campaign_name=job.parent_name,
                entity_type=slot.entity_type.value,
                failure_reason=raw_error,
                user_friendly_reason=user_friendly_error,
                error_code=str(error_code) if error_code is not None else None,
                error_category=category,
                raw_error=raw_payload,
                retry_count=slot.retry_count,
                status=FailureStatus.FAILED.value,
                created_at=self._clock(),
            )
            if slot.entity_type == EntityType.AD_SET:
                row.adset_name = slot.entity_name
            elif slot.entity_type == EntityType.AD:
                row.ad_name = slot.entity_name
                row.adset_id = adset_id
                row.adset_name = adset_name
            session.add(row)
            session.flush()
            return _view(row)

    # ------------------------------------------------------------------
    # Manual recovery
    # ------------------------------------------------------------------

    def _move(self, failure_id: int, to_status: FailureStatus, **values: Any) -> FailureRecordView:
        """Conditional UPDATE from any status that may move to ``to_status``."""
        allowed_from = [
            status.value for status, targets in _RECOVERY_TRANSITIONS.items() if to_status in targets
        ]
        with self._session_factory() as session:
            result = session.execute(
                update(FailureRecordModel)
                .where(
                    FailureRecordModel.id == failure_id,
                    FailureRecordModel.status.in_(allowed_from),
                )
                .values(status=to_status.value, **values)
                .execution_options(synchronize_session=False)
            )
            moved = result.rowcount == 1
            row = session.get(FailureRecordModel, failure_id, populate_existing=True)
            if row is None:
                raise FailureRecordNotFoundError(f"Failure record {failure_id} not found")
            if not moved:
                raise InvalidFailureTransitionError(
                    f"Failure record {failure_id} cannot move from {row.status} to {to_status}"
                )
            view = _view(row)
        logger.info("failure_record_updated", failure_id=failure_id, status=to_status)
        return view

    def mark_retrying(self, failure_id: int) -> FailureRecordView:
        return self._move(
            failure_id,
            FailureStatus.RETRYING,
            retry_count=FailureRecordModel.retry_count + 1,
        )

    def mark_recovered(
        self,
        failure_id: int,
        *,
        adset_id: str | None = None,
        ad_id: str | None = None,
    ) -> FailureRecordView:
        values: dict[str, Any] = {"recovered_at": self._clock()}
        if adset_id is not None:
            values["adset_id"] = adset_id
        if ad_id is not None:
            values["ad_id"] = ad_id
        return self._move(failure_id, FailureStatus.RECOVERED, **values)

    def mark_permanent_failure(self, failure_id: int) -> FailureRecordView:
        return self._move(failure_id, FailureStatus.PERMANENT_FAILURE)

    # ------------------------------------------------------------------
    # Reads and maintenance
    # ------------------------------------------------------------------

    def get(self, failure_id: int) -> FailureRecordView:
        with self._session_factory() as session:
            row = session.get(FailureRecordModel, failure_id)
            if row is None:
                raise FailureRecordNotFoundError(f"Failure record {failure_id} not found")
            return _view(row)

    def list_for_job(self, job_id: int) -> list[FailureRecordView]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(FailureRecordModel)
                .where(FailureRecordModel.job_id == job_id)
                .order_by(FailureRecordModel.id)
            )
            return [_view(row) for row in rows]

    def failed_slot_ids(self, job_id: int) -> set[int]:
        """Slots of a job that were judged terminally failed."""
        with self._session_factory() as session:
            return {
                slot_id
                for slot_id in session.scalars(
                    select(FailureRecordModel.slot_id).where(
                        FailureRecordModel.job_id == job_id,
                        FailureRecordModel.slot_id.is_not(None),
                    )
                )
            }

    def list_pending(
        self, owner: str, campaign_id: str | None = None
    ) -> list[FailureRecordView]:
        """Entries still awaiting recovery, newest first."""
        stmt = (
            select(FailureRecordModel)
            .where(
                FailureRecordModel.owner == owner,
                FailureRecordModel.status.in_(
                    [FailureStatus.FAILED.value, FailureStatus.RETRYING.value]
                ),
            )
            .order_by(FailureRecordModel.id.desc())
        )
        if campaign_id is not None:
            stmt = stmt.where(FailureRecordModel.campaign_id == campaign_id)
        with self._session_factory() as session:
            return [_view(row) for row in session.scalars(stmt)]

    def stats(self, owner: str, campaign_id: str | None = None) -> dict[str, Any]:
        """Counts by entity type and status, plus the recovery rate."""
        stmt = select(
            FailureRecordModel.entity_type,
            FailureRecordModel.status,
            func.count(FailureRecordModel.id),
        ).where(FailureRecordModel.owner == owner)
        if campaign_id is not None:
            stmt = stmt.where(FailureRecordModel.campaign_id == campaign_id)
        stmt = stmt.group_by(FailureRecordModel.entity_type, FailureRecordModel.status)

        by_type = {entity_type.value: 0 for entity_type in EntityType}
        by_status = {status.value: 0 for status in FailureStatus}
        with self._session_factory() as session:
            for entity_type, status, count in session.execute(stmt):
                by_type[entity_type] = by_type.get(entity_type, 0) + count
                by_status[status] = by_status.get(status, 0) + count

        total = sum(by_status.values())
        recovered = by_status[FailureStatus.RECOVERED.value]
        return {
            "total": total,
            "by_entity_type": by_type,
            "by_status": by_status,
            "recovery_rate": round(recovered / total * 100, 1) if total else 0.0,
        }

    def cleanup_recovered(self, older_than_days: int = 30) -> int:
        """Delete recovered entries older than the cutoff. Returns the count."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        with self._session_factory() as session:
            deleted = session.execute(
                delete(FailureRecordModel)
                .where(
                    FailureRecordModel.status == FailureStatus.RECOVERED.value,
                    FailureRecordModel.recovered_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
        logger.info("failure_records_cleaned_up", deleted=deleted, older_than_days=older_than_days)
        return deleted
