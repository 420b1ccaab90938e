"""Add a processing lease to queued requests.

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-18

Adds:
- claimed_at to request_queue, set when a processor claims a row

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0002"
down_revision: Union[str, None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "request_queue",
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_request_queue_processing_lease", "request_queue", ["status", "claimed_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_request_queue_processing_lease", table_name="request_queue")
    op.drop_column("request_queue", "claimed_at")
