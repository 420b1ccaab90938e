"""Domain models - plain snapshots handed out by services, independent of sessions."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from campaign_engine.domain.enums import (
    DispatchStatus,
    EntityType,
    FailureStatus,
    JobStatus,
    QueueStatus,
    SlotStatus,
)


@dataclass(frozen=True)
class CredentialLease:
    """A credential selected from the pool, with the calls reserved on it."""

    id: int
    name: str
    account_group: str
    calls_used: int
    calls_limit: int
    window_reset_at: datetime | None = None
    reserved: int = 0

    @property
    def usage_percentage(self) -> float:
        return self.calls_used / self.calls_limit if self.calls_limit else 1.0


@dataclass(frozen=True)
class QuotaSnapshot:
    """Current state of a (caller, target account) quota window."""

    caller: str
    target_account: str
    calls_used: int
    calls_limit: int
    window_reset_at: datetime

    @property
    def usage_percentage(self) -> float:
        return self.calls_used / self.calls_limit if self.calls_limit else 1.0

    @property
    def remaining(self) -> int:
        return max(self.calls_limit - self.calls_used, 0)


@dataclass
class DispatchRequest:
    """A single remote call routed through the dispatcher."""

    caller: str
    target_account: str
    action: Any
    priority: int = 5
    account_group: str | None = None
    job_id: int | None = None
    slot_id: int | None = None


@dataclass
class DispatchResult:
    """Outcome of a dispatch that was not an error."""

    status: DispatchStatus
    entity_id: str | None = None
    credential_id: int | None = None
    queued_request_id: int | None = None
    retry_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == DispatchStatus.SUCCESS


@dataclass(frozen=True)
class QueuedRequestView:
    """Snapshot of a request queue row."""

    id: int
    caller: str
    target_account: str
    account_group: str | None
    action_type: str
    payload: dict[str, Any]
    priority: int
    status: QueueStatus
    process_after: datetime
    attempts: int
    max_attempts: int
    result: dict[str, Any] | None = None
    error: str | None = None
    job_id: int | None = None
    slot_id: int | None = None
    processed_at: datetime | None = None
    claimed_at: datetime | None = None


@dataclass(frozen=True)
class SlotView:
    """Snapshot of one entity slot."""

    id: int
    job_id: int
    slot_number: int
    entity_type: EntityType
    status: SlotStatus
    entity_name: str | None = None
    remote_entity_id: str | None = None
    spec: dict[str, Any] = field(default_factory=dict)
    queued_request_id: int | None = None
    retry_count: int = 0
    error_message: str | None = None
    creation_started_at: datetime | None = None
    creation_completed_at: datetime | None = None


@dataclass(frozen=True)
class JobView:
    """Snapshot of a creation job."""

    id: int
    owner: str
    target_account: str
    account_group: str
    parent_name: str
    parent_spec: dict[str, Any]
    child_specs: list[dict[str, Any]]
    status: JobStatus
    requested_children: int
    children_created: int
    retry_count: int
    retry_budget: int
    last_error: str | None = None
    error_history: list[dict[str, Any]] = field(default_factory=list)
    rollback_triggered: bool = False
    rollback_reason: str | None = None
    parent_entity_id: str | None = None
    cancel_requested: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    rolled_back_at: datetime | None = None

    @property
    def budget_exhausted(self) -> bool:
        return self.retry_count >= self.retry_budget


@dataclass(frozen=True)
class FailureRecordView:
    """Snapshot of a failure ledger entry."""

    id: int
    job_id: int | None
    slot_id: int | None
    owner: str
    entity_type: EntityType
    failure_reason: str
    user_friendly_reason: str
    status: FailureStatus
    retry_count: int = 0
    error_code: str | None = None
    error_category: str | None = None
    campaign_id: str | None = None
    campaign_name: str | None = None
    adset_id: str | None = None
    adset_name: str | None = None
    ad_id: str | None = None
    ad_name: str | None = None
    raw_error: dict[str, Any] | None = None
    recovered_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class JobStatusView:
    """Everything a caller can poll about a job while it runs."""

    job: JobView
    slots: list[SlotView]
    failures: list[FailureRecordView] = field(default_factory=list)

    @property
    def slot_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {status.value: 0 for status in SlotStatus}
        for slot in self.slots:
            counts[slot.status.value] += 1
        return counts

    @property
    def progress(self) -> float:
        """Fraction of slots created, between 0 and 1."""
        if not self.slots:
            return 0.0
        created = sum(1 for slot in self.slots if slot.status == SlotStatus.CREATED)
        return created / len(self.slots)


@dataclass
class RollbackReport:
    """What a rollback attempted and how each compensation ended."""

    job_id: int
    triggered: bool
    reason: str | None = None
    deleted: list[str] = field(default_factory=list)
    queued: list[str] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    already_rolled_back: bool = False
