"""Slot ledger: one row per entity a job intends to create.

The ledger is the only record of what exists remotely for a job. The
orchestrator consults it before every creation attempt and rollback uses it as
the manifest of what to undo.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from campaign_engine.db.models import EntitySlotModel
from campaign_engine.db.session import SessionFactory, get_session_context
from campaign_engine.domain.actions import ChildSpec
from campaign_engine.domain.enums import ENTITY_ORDER, SLOT_TRANSITIONS, EntityType, SlotStatus
from campaign_engine.domain.models import SlotView
from campaign_engine.logging import get_logger
from campaign_engine.services.errors import InvalidSlotTransitionError
from campaign_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)

PARENT_SLOT_NUMBER = 1


def _view(row: EntitySlotModel) -> SlotView:
    return SlotView(
        id=row.id,
        job_id=row.job_id,
        slot_number=row.slot_number,
        entity_type=EntityType(row.entity_type),
        status=SlotStatus(row.status),
        entity_name=row.entity_name,
        remote_entity_id=row.remote_entity_id,
        spec=dict(row.spec or {}),
        queued_request_id=row.queued_request_id,
        retry_count=row.retry_count,
        error_message=row.error_message,
        creation_started_at=row.creation_started_at,
        creation_completed_at=row.creation_completed_at,
    )


def _sort_key(slot: SlotView) -> tuple[int, int]:
    return ENTITY_ORDER[slot.entity_type], slot.slot_number


def plan_slots(
    parent_name: str, child_specs: list[ChildSpec]
) -> list[tuple[int, EntityType, str, dict[str, Any]]]:
    """Slots for a job: the parent first, then an ad set (and ad) per child."""
    planned: list[tuple[int, EntityType, str, dict[str, Any]]] = [
        (PARENT_SLOT_NUMBER, EntityType.CAMPAIGN, parent_name, {})
    ]
    for number, child in enumerate(child_specs, start=1):
        adset_name = child.adset.get("name") or f"{parent_name} - Ad Set {number}"
        planned.append((number, EntityType.AD_SET, adset_name, dict(child.adset)))
        if child.ad is not None:
            ad_name = child.ad.get("name") or f"{parent_name} - Ad {number}"
            planned.append((number, EntityType.AD, ad_name, dict(child.ad)))
    return planned


class SlotLedger:
    """Reads and transitions entity slots."""

    def __init__(
        self,
        session_factory: SessionFactory = get_session_context,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def allocate(
        self, session: Session, job_id: int, parent_name: str, child_specs: list[ChildSpec]
    ) -> int:
        """Insert every slot for a job inside the caller's transaction.

        The unique (job_id, slot_number, entity_type) constraint rejects a
        second allocation for the same job.
        """
        planned = plan_slots(parent_name, child_specs)
        for number, entity_type, name, spec in planned:
            session.add(
                EntitySlotModel(
                    job_id=job_id,
                    slot_number=number,
                    entity_type=entity_type.value,
                    entity_name=name[:400],
                    spec=spec,
                    status=SlotStatus.PENDING.value,
                    retry_count=0,
                )
            )
        session.flush()
        logger.info("slots_allocated", job_id=job_id, count=len(planned))
        return len(planned)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_slots(self, job_id: int) -> list[SlotView]:
        """All slots of a job in dependency order (campaign, ad sets, ads)."""
        with self._session_factory() as session:
            rows = session.scalars(
                select(EntitySlotModel).where(EntitySlotModel.job_id == job_id)
            ).all()
            return sorted((_view(row) for row in rows), key=_sort_key)

    def get(self, slot_id: int) -> SlotView:
        with self._session_factory() as session:
            row = session.get(EntitySlotModel, slot_id)
            if row is None:
                raise InvalidSlotTransitionError(f"Slot {slot_id} not found")
            return _view(row)

    def find(self, job_id: int, slot_number: int, entity_type: EntityType) -> SlotView | None:
        with self._session_factory() as session:
            row = session.scalars(
                select(EntitySlotModel).where(
                    EntitySlotModel.job_id == job_id,
                    EntitySlotModel.slot_number == slot_number,
                    EntitySlotModel.entity_type == entity_type.value,
                )
            ).first()
            return _view(row) if row is not None else None

    def parent(self, job_id: int) -> SlotView | None:
        return self.find(job_id, PARENT_SLOT_NUMBER, EntityType.CAMPAIGN)

    def created_manifest(self, job_id: int) -> list[SlotView]:
        """Created slots with a remote id, children before parents (undo order)."""
        slots = [
            slot
            for slot in self.get_slots(job_id)
            if slot.status == SlotStatus.CREATED and slot.remote_entity_id
        ]
        return sorted(slots, key=_sort_key, reverse=True)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(
        self,
        slot_id: int,
        to_status: SlotStatus,
        allowed_from: set[SlotStatus] | None = None,
        **values: Any,
    ) -> SlotView:
        """Move a slot to ``to_status`` if its current status allows it.

        The UPDATE is conditional on the status that was read, so a concurrent
        change makes this raise instead of overwriting it.
        """
        with self._session_factory() as session:
            row = session.get(EntitySlotModel, slot_id)
            if row is None:
                raise InvalidSlotTransitionError(f"Slot {slot_id} not found")
            current = SlotStatus(row.status)
            permitted = current != to_status and to_status in SLOT_TRANSITIONS[current]
            if allowed_from is not None:
                permitted = permitted and current in allowed_from
            if not permitted:
                raise InvalidSlotTransitionError(
                    f"Slot {slot_id} cannot move from {current} to {to_status}"
                )
            result = session.execute(
                update(EntitySlotModel)
                .where(EntitySlotModel.id == slot_id, EntitySlotModel.status == current.value)
                .values(status=to_status.value, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidSlotTransitionError(f"Slot {slot_id} changed concurrently")
            session.refresh(row)
            view = _view(row)
        logger.debug(
            "slot_transitioned",
            slot_id=slot_id,
            job_id=view.job_id,
            from_status=current,
            to_status=to_status,
        )
        return view

    def begin(self, slot_id: int) -> SlotView:
        """pending/failed -> creating."""
        return self._transition(
            slot_id,
            SlotStatus.CREATING,
            allowed_from={SlotStatus.PENDING, SlotStatus.FAILED},
            creation_started_at=self._clock(),
            queued_request_id=None,
            error_message=None,
        )

    def mark_created(self, slot_id: int, remote_entity_id: str) -> SlotView:
        return self._transition(
            slot_id,
            SlotStatus.CREATED,
            remote_entity_id=remote_entity_id,
            creation_completed_at=self._clock(),
            error_message=None,
        )

    def mark_failed(self, slot_id: int, error_message: str, count_attempt: bool = True) -> SlotView:
        values: dict[str, Any] = {"error_message": error_message[:2000]}
        if count_attempt:
            values["retry_count"] = EntitySlotModel.retry_count + 1
        return self._transition(slot_id, SlotStatus.FAILED, **values)

    def mark_deferred(self, slot_id: int, queued_request_id: int) -> SlotView:
        """Attach the queued request that will create this slot. Slot stays creating."""
        with self._session_factory() as session:
            result = session.execute(
                update(EntitySlotModel)
                .where(
                    EntitySlotModel.id == slot_id,
                    EntitySlotModel.status == SlotStatus.CREATING.value,
                )
                .values(queued_request_id=queued_request_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidSlotTransitionError(f"Slot {slot_id} is not creating")
        logger.info("slot_deferred", slot_id=slot_id, queued_request_id=queued_request_id)
        return self.get(slot_id)

    def reset_stale(self, slot_id: int) -> SlotView:
        """creating -> pending for a slot abandoned mid-call with no remote id."""
        return self._transition(
            slot_id,
            SlotStatus.PENDING,
            allowed_from={SlotStatus.CREATING},
            creation_started_at=None,
            queued_request_id=None,
        )

    def mark_rolled_back(self, slot_id: int) -> SlotView:
        return self._transition(
            slot_id,
            SlotStatus.ROLLED_BACK,
            allowed_from={SlotStatus.CREATED, SlotStatus.FAILED},
        )

    def is_stale(self, slot: SlotView, older_than: datetime) -> bool:
        return (
            slot.status == SlotStatus.CREATING
            and slot.queued_request_id is None
            and not slot.remote_entity_id
            and (slot.creation_started_at is None or slot.creation_started_at <= older_than)
        )
