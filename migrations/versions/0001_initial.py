"""Initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # Credentials table
    op.create_table(
        "credentials",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("kind", sa.String(50), nullable=False, server_default="default"),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("encrypted_token", sa.Text(), nullable=False),
        sa.Column("account_group", sa.String(255), nullable=False),
        sa.Column("calls_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("calls_limit", sa.Integer(), nullable=False, server_default="200"),
        sa.Column("window_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deactivated_reason", sa.Text(), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), onupdate=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_credentials_account_group", "credentials", ["account_group"])
    op.create_index("ix_credentials_active", "credentials", ["active"])

    # Internal accounts table
    op.create_table(
        "internal_accounts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("target_account", sa.String(255), nullable=False),
        sa.Column("account_group", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("target_account"),
    )
    op.create_index("ix_internal_accounts_account_group", "internal_accounts", ["account_group"])

    # Quota windows table
    op.create_table(
        "quota_windows",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("caller", sa.String(255), nullable=False),
        sa.Column("target_account", sa.String(255), nullable=False),
        sa.Column("calls_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("calls_limit", sa.Integer(), nullable=False, server_default="200"),
        sa.Column("window_reset_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), onupdate=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("caller", "target_account", name="uq_quota_window_caller_account"),
    )
    op.create_index("ix_quota_windows_target_account", "quota_windows", ["target_account"])

    # Creation jobs table
    op.create_table(
        "creation_jobs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("owner", sa.String(255), nullable=False),
        sa.Column("target_account", sa.String(255), nullable=False),
        sa.Column("account_group", sa.String(255), nullable=False),
        sa.Column("parent_name", sa.String(400), nullable=False),
        sa.Column("parent_spec", JSONType, nullable=False),
        sa.Column("child_specs", JSONType, nullable=False),
        sa.Column("requested_children", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(50), nullable=False, server_default="pending"),
        sa.Column("children_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_budget", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_history", JSONType, nullable=False),
        sa.Column("rollback_triggered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("rollback_reason", sa.Text(), nullable=True),
        sa.Column("rolled_back_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("parent_entity_id", sa.String(255), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), onupdate=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_creation_jobs_owner", "creation_jobs", ["owner"])
    op.create_index("ix_creation_jobs_target_account", "creation_jobs", ["target_account"])
    op.create_index("ix_creation_jobs_status", "creation_jobs", ["status"])

    # Entity slots table
    op.create_table(
        "entity_slots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.Integer(), nullable=False),
        sa.Column("slot_number", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_name", sa.String(400), nullable=True),
        sa.Column("spec", JSONType, nullable=False),
        sa.Column("remote_entity_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(50), nullable=False, server_default="pending"),
        sa.Column("queued_request_id", sa.Integer(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("creation_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("creation_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), onupdate=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["job_id"], ["creation_jobs.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("job_id", "slot_number", "entity_type", name="uq_entity_slot"),
    )
    op.create_index("ix_entity_slots_job_id", "entity_slots", ["job_id"])
    op.create_index("ix_entity_slots_status", "entity_slots", ["status"])

    # Request queue table
    op.create_table(
        "request_queue",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("caller", sa.String(255), nullable=False),
        sa.Column("target_account", sa.String(255), nullable=False),
        sa.Column("account_group", sa.String(255), nullable=True),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("payload", JSONType, nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("status", sa.String(50), nullable=False, server_default="queued"),
        sa.Column("process_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("result", JSONType, nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("job_id", sa.Integer(), nullable=True),
        sa.Column("slot_id", sa.Integer(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), onupdate=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["job_id"], ["creation_jobs.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["slot_id"], ["entity_slots.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_request_queue_caller", "request_queue", ["caller"])
    op.create_index("ix_request_queue_status", "request_queue", ["status"])
    op.create_index("ix_request_queue_process_after", "request_queue", ["process_after"])
    op.create_index("ix_request_queue_job_id", "request_queue", ["job_id"])
    op.create_index("ix_request_queue_dispatch", "request_queue", ["status", "priority", "id"])

    # Pre-creation verifications table
    op.create_table(
        "pre_creation_verifications",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.Integer(), nullable=True),
        sa.Column("caller", sa.String(255), nullable=False),
        sa.Column("target_account", sa.String(255), nullable=False),
        sa.Column("proposed_name", sa.String(400), nullable=False),
        sa.Column("account_accessible", sa.Boolean(), nullable=True),
        sa.Column("account_suspended", sa.Boolean(), nullable=True),
        sa.Column("duplicate_name_exists", sa.Boolean(), nullable=True),
        sa.Column("at_account_limit", sa.Boolean(), nullable=True),
        sa.Column("token_valid", sa.Boolean(), nullable=True),
        sa.Column("account_status", sa.Integer(), nullable=True),
        sa.Column("can_proceed", sa.Boolean(), nullable=False),
        sa.Column("warnings", JSONType, nullable=False),
        sa.Column("errors", JSONType, nullable=False),
        sa.Column("current_entity_count", sa.Integer(), nullable=True),
        sa.Column("entity_limit", sa.Integer(), nullable=False),
        sa.Column("verification_time_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["job_id"], ["creation_jobs.id"], ondelete="SET NULL"),
    )
    op.create_index(
        "ix_pre_creation_verifications_job_id", "pre_creation_verifications", ["job_id"]
    )
    op.create_index(
        "ix_pre_creation_verifications_target_account",
        "pre_creation_verifications",
        ["target_account"],
    )

    # Failure records table
    op.create_table(
        "failure_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.Integer(), nullable=True),
        sa.Column("slot_id", sa.Integer(), nullable=True),
        sa.Column("owner", sa.String(255), nullable=False),
        sa.Column("campaign_id", sa.String(255), nullable=True),
        sa.Column("campaign_name", sa.String(400), nullable=True),
        sa.Column("adset_id", sa.String(255), nullable=True),
        sa.Column("adset_name", sa.String(400), nullable=True),
        sa.Column("ad_id", sa.String(255), nullable=True),
        sa.Column("ad_name", sa.String(400), nullable=True),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=False),
        sa.Column("user_friendly_reason", sa.Text(), nullable=False),
        sa.Column("error_code", sa.String(50), nullable=True),
        sa.Column("error_category", sa.String(50), nullable=True),
        sa.Column("raw_error", JSONType, nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(50), nullable=False, server_default="failed"),
        sa.Column("recovered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), onupdate=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["job_id"], ["creation_jobs.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["slot_id"], ["entity_slots.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("slot_id"),
    )
    op.create_index("ix_failure_records_job_id", "failure_records", ["job_id"])
    op.create_index("ix_failure_records_owner", "failure_records", ["owner"])
    op.create_index("ix_failure_records_campaign_id", "failure_records", ["campaign_id"])
    op.create_index("ix_failure_records_status", "failure_records", ["status"])


def downgrade() -> None:
    op.drop_table("failure_records")
    op.drop_table("pre_creation_verifications")
    op.drop_table("request_queue")
    op.drop_table("entity_slots")
    op.drop_table("creation_jobs")
    op.drop_table("quota_windows")
    op.drop_table("internal_accounts")
    op.drop_table("credentials")
