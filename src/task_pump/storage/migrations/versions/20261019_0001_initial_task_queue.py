"""Initial task queue schema: queued/running task sets and queue settings."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "queued_tasks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("kind", sa.String(), server_default="direct", nullable=False),
        sa.Column("periodic_event", sa.String(), nullable=True),
        sa.Column("callback", sa.Text(), nullable=False),
        sa.Column("parameters", sa.Text(), server_default="[]", nullable=False),
        sa.Column("priority", sa.Integer(), server_default="3", nullable=False),
        sa.Column("description", sa.Text(), server_default="", nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("idx_queued_tasks_order", "queued_tasks", ["priority", "id"], unique=False)
    op.create_index("idx_queued_tasks_callback", "queued_tasks", ["callback"], unique=False)

    op.create_table(
        "running_tasks",
        sa.Column("id", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("kind", sa.String(), server_default="direct", nullable=False),
        sa.Column("periodic_event", sa.String(), nullable=True),
        sa.Column("callback", sa.Text(), nullable=False),
        sa.Column("parameters", sa.Text(), server_default="[]", nullable=False),
        sa.Column("priority", sa.Integer(), server_default="3", nullable=False),
        sa.Column("description", sa.Text(), server_default="", nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_running_tasks_started_at",
        "running_tasks",
        ["started_at"],
        unique=False,
    )
    op.create_index("idx_running_tasks_callback", "running_tasks", ["callback"], unique=False)

    op.create_table(
        "queue_settings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("last_task_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("max_concurrent_tasks", sa.Integer(), nullable=True),
        sa.Column(
            "task_execution_enabled",
            sa.Boolean(),
            server_default=sa.text("1"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("queue_settings")
    op.drop_index("idx_running_tasks_callback", table_name="running_tasks")
    op.drop_index("idx_running_tasks_started_at", table_name="running_tasks")
    op.drop_table("running_tasks")
    op.drop_index("idx_queued_tasks_callback", table_name="queued_tasks")
    op.drop_index("idx_queued_tasks_order", table_name="queued_tasks")
    op.drop_table("queued_tasks")
