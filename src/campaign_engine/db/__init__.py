"""Database layer."""

from campaign_engine.db.models import (
    Base,
    CreationJobModel,
    CredentialModel,
    EntitySlotModel,
    FailureRecordModel,
    InternalAccountModel,
    PreCreationVerificationModel,
    QueuedRequestModel,
    QuotaWindowModel,
)
from campaign_engine.db.session import (
    SessionFactory,
    create_tables,
    get_session,
    get_session_context,
    init_db,
    session_scope_factory,
)

__all__ = [
    "Base",
    "SessionFactory",
    "create_tables",
    "get_session",
    "get_session_context",
    "init_db",
    "session_scope_factory",
    # Models
    "CreationJobModel",
    "CredentialModel",
    "EntitySlotModel",
    "FailureRecordModel",
    "InternalAccountModel",
    "PreCreationVerificationModel",
    "QueuedRequestModel",
    "QuotaWindowModel",
]
