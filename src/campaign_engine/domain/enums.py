"""Domain enumerations."""

from enum import StrEnum


class CredentialKind(StrEnum):
    """Where a pooled credential comes from."""

    DEFAULT = "default"
    SYSTEM_USER = "system_user"
    BACKUP_APP = "backup_app"


class EntityType(StrEnum):
    """Remote entity kinds created by a job, in dependency order."""

    CAMPAIGN = "campaign"
    AD_SET = "ad_set"
    AD = "ad"


class ActionType(StrEnum):
    """Remote actions the dispatcher can issue."""

    CREATE_CAMPAIGN = "create_campaign"
    CREATE_ADSET = "create_adset"
    CREATE_AD = "create_ad"
    UPDATE_CAMPAIGN = "update_campaign"
    UPDATE_ADSET = "update_adset"
    UPDATE_AD = "update_ad"
    DUPLICATE = "duplicate"
    BATCH = "batch"
    DELETE_ENTITY = "delete_entity"


class QueueStatus(StrEnum):
    """Lifecycle of a queued request."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobStatus(StrEnum):
    """Lifecycle of a bulk creation job."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class SlotStatus(StrEnum):
    """Lifecycle of a single entity slot."""

    PENDING = "pending"
    CREATING = "creating"
    CREATED = "created"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class FailureStatus(StrEnum):
    """Recovery state of a failure record."""

    FAILED = "failed"
    RETRYING = "retrying"
    RECOVERED = "recovered"
    PERMANENT_FAILURE = "permanent_failure"


class ResponseKind(StrEnum):
    """Classification of a remote platform response."""

    SUCCESS = "success"
    QUOTA_EXCEEDED = "quota_exceeded"
    INVALID_CREDENTIAL = "invalid_credential"
    ENTITY_ERROR = "entity_error"


class DispatchStatus(StrEnum):
    """Outcome of a dispatch that did not raise."""

    SUCCESS = "success"
    QUEUED = "queued"


class ErrorCategory(StrEnum):
    """User-facing grouping of platform errors."""

    RATE_LIMIT = "rate_limit"
    BUDGET = "budget"
    TARGETING = "targeting"
    PERMISSIONS = "permissions"
    ACCOUNT = "account"
    MEDIA = "media"
    POLICY = "policy"
    PIXEL = "pixel"
    PLACEMENT = "placement"
    INVALID_PARAM = "invalid_param"
    NETWORK = "network"
    UNKNOWN = "unknown"


# Allowed status transitions. Anything not listed is rejected.
JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.IN_PROGRESS, JobStatus.FAILED}),
    JobStatus.IN_PROGRESS: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ROLLED_BACK}
    ),
    JobStatus.FAILED: frozenset({JobStatus.ROLLED_BACK}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.ROLLED_BACK: frozenset(),
}

SLOT_TRANSITIONS: dict[SlotStatus, frozenset[SlotStatus]] = {
    SlotStatus.PENDING: frozenset({SlotStatus.CREATING}),
    SlotStatus.CREATING: frozenset({SlotStatus.CREATED, SlotStatus.FAILED, SlotStatus.PENDING}),
    SlotStatus.FAILED: frozenset({SlotStatus.CREATING, SlotStatus.ROLLED_BACK}),
    SlotStatus.CREATED: frozenset({SlotStatus.ROLLED_BACK}),
    SlotStatus.ROLLED_BACK: frozenset(),
}

QUEUE_TERMINAL_STATUSES = frozenset(
    {QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.CANCELLED}
)

ENTITY_ORDER: dict[EntityType, int] = {
    EntityType.CAMPAIGN: 0,
    EntityType.AD_SET: 1,
    EntityType.AD: 2,
}
