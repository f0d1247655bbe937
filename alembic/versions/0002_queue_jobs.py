"""Durable queue table

Revision ID: 0002_queue_jobs
Revises: 0001_initial_schema
Create Date: 2026-10-17

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_queue_jobs"
down_revision = "0001_initial_schema"
branch_labels = None
depends_on = None


def _has_table(insp: sa.Inspector, table: str) -> bool:
    return table in insp.get_table_names()


def upgrade() -> None:
    insp = sa.inspect(op.get_bind())
    if _has_table(insp, "queue_jobs"):
        return

    op.create_table(
        "queue_jobs",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("queue", sa.String(length=80), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="waiting"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("result_json", sa.JSON(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_queue_jobs_queue", "queue_jobs", ["queue"])
    op.create_index("ix_queue_jobs_status", "queue_jobs", ["status"])


def downgrade() -> None:
    insp = sa.inspect(op.get_bind())
    if _has_table(insp, "queue_jobs"):
        op.drop_index("ix_queue_jobs_status", table_name="queue_jobs")
        op.drop_index("ix_queue_jobs_queue", table_name="queue_jobs")
        op.drop_table("queue_jobs")
