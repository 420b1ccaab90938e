"""SQLAlchemy ORM models."""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import expression, func
from sqlalchemy.types import TypeDecorator

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware UTC datetime on every backend.

    SQLite has no timezone support, so values are stored as naive UTC there and
    re-tagged with UTC on the way out.
    """

    impl = DateTime
    cache_ok = True

    def __init__(self) -> None:
        super().__init__(timezone=True)

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# =============================================================================
# Credentials and quotas
# =============================================================================


class CredentialModel(Base):
    """A rotatable platform credential (default app, system user or backup app)."""

    __tablename__ = "credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), server_default="default", default="default")
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    encrypted_token: Mapped[str] = mapped_column(Text, nullable=False)
    account_group: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    calls_used: Mapped[int] = mapped_column(Integer, server_default="0", default=0)
    calls_limit: Mapped[int] = mapped_column(Integer, server_default="200", default=200)
    window_reset_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    active: Mapped[bool] = mapped_column(
        Boolean, server_default=expression.true(), default=True, index=True
    )
    deactivated_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    @property
    def usage_percentage(self) -> float:
        return self.calls_used / self.calls_limit if self.calls_limit else 1.0


class InternalAccountModel(Base):
    """Maps a target ad account to the credential group allowed to manage it."""

    __tablename__ = "internal_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target_account: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    account_group: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, server_default=expression.true(), default=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class QuotaWindowModel(Base):
    """Per (caller, target account) call counter for the current window."""

    __tablename__ = "quota_windows"
    __table_args__ = (
        UniqueConstraint("caller", "target_account", name="uq_quota_window_caller_account"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    caller: Mapped[str] = mapped_column(String(255), nullable=False)
    target_account: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    calls_used: Mapped[int] = mapped_column(Integer, server_default="0", default=0)
    calls_limit: Mapped[int] = mapped_column(Integer, server_default="200", default=200)
    window_reset_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )


# =============================================================================
# Request queue
# =============================================================================


class QueuedRequestModel(Base):
    """A remote call waiting for quota to become available."""

    __tablename__ = "request_queue"
    __table_args__ = (
        Index("ix_request_queue_dispatch", "status", "priority", "id"),
        Index("ix_request_queue_processing_lease", "status", "claimed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    caller: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    target_account: Mapped[str] = mapped_column(String(255), nullable=False)
    account_group: Mapped[str | None] = mapped_column(String(255), nullable=True)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, server_default="5", default=5)
    status: Mapped[str] = mapped_column(
        String(50), server_default="queued", default="queued", index=True
    )
    process_after: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, server_default="0", default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, server_default="3", default=3)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("creation_jobs.id", ondelete="SET NULL"), nullable=True, index=True
    )
    slot_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("entity_slots.id", ondelete="SET NULL"), nullable=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )


# =============================================================================
# Creation jobs and slots
# =============================================================================


class CreationJobModel(Base):
    """One bulk creation request: a parent entity and its children."""

    __tablename__ = "creation_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    target_account: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    account_group: Mapped[str] = mapped_column(String(255), nullable=False)
    parent_name: Mapped[str] = mapped_column(String(400), nullable=False)
    parent_spec: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    child_specs: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    requested_children: Mapped[int] = mapped_column(Integer, server_default="0", default=0)
    status: Mapped[str] = mapped_column(
        String(50), server_default="pending", default="pending", index=True
    )
    children_created: Mapped[int] = mapped_column(Integer, server_default="0", default=0)
    retry_count: Mapped[int] = mapped_column(Integer, server_default="0", default=0)
    retry_budget: Mapped[int] = mapped_column(Integer, server_default="5", default=5)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_history: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    rollback_triggered: Mapped[bool] = mapped_column(
        Boolean, server_default=expression.false(), default=False
    )
    rollback_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rolled_back_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    parent_entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, server_default=expression.false(), default=False
    )
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    # Relationships
    slots: Mapped[list["EntitySlotModel"]] = relationship(
        "EntitySlotModel", back_populates="job", cascade="all, delete-orphan"
    )


class EntitySlotModel(Base):
    """One entity a job intends to create. Unit of idempotency and rollback."""

    __tablename__ = "entity_slots"
    __table_args__ = (
        UniqueConstraint("job_id", "slot_number", "entity_type", name="uq_entity_slot"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("creation_jobs.id", ondelete="CASCADE"), index=True
    )
    slot_number: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_name: Mapped[str | None] = mapped_column(String(400), nullable=True)
    spec: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    remote_entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(50), server_default="pending", default="pending", index=True
    )
    # Deferred creation; not a foreign key to keep the two tables acyclic
    queued_request_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, server_default="0", default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    creation_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    creation_completed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    # Relationships
    job: Mapped["CreationJobModel"] = relationship("CreationJobModel", back_populates="slots")


class PreCreationVerificationModel(Base):
    """Audit record of one pre-creation verification run. Never updated."""

    __tablename__ = "pre_creation_verifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("creation_jobs.id", ondelete="SET NULL"), nullable=True, index=True
    )
    caller: Mapped[str] = mapped_column(String(255), nullable=False)
    target_account: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    proposed_name: Mapped[str] = mapped_column(String(400), nullable=False)
    account_accessible: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    account_suspended: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    duplicate_name_exists: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    at_account_limit: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    token_valid: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    account_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    can_proceed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    warnings: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    errors: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    current_entity_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    entity_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    verification_time_ms: Mapped[int] = mapped_column(Integer, server_default="0", default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class FailureRecordModel(Base):
    """An entity that ended in permanent failure, kept for manual recovery."""

    __tablename__ = "failure_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("creation_jobs.id", ondelete="SET NULL"), nullable=True, index=True
    )
    slot_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("entity_slots.id", ondelete="SET NULL"), nullable=True, unique=True
    )
    owner: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    campaign_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    campaign_name: Mapped[str | None] = mapped_column(String(400), nullable=True)
    adset_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    adset_name: Mapped[str | None] = mapped_column(String(400), nullable=True)
    ad_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ad_name: Mapped[str | None] = mapped_column(String(400), nullable=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    failure_reason: Mapped[str] = mapped_column(Text, nullable=False)
    user_friendly_reason: Mapped[str] = mapped_column(Text, nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    raw_error: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, server_default="0", default=0)
    status: Mapped[str] = mapped_column(
        String(50), server_default="failed", default="failed", index=True
    )
    recovered_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )
