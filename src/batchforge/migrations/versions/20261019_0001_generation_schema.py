"""Generation tasks, sub-task units and task event log."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "generation_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("style_ids_json", sa.Text(), nullable=False),
        sa.Column("model_ids_json", sa.Text(), nullable=False),
        sa.Column("batch_size", sa.Integer(), nullable=False),
        sa.Column(
            "include_base_style",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("1"),
        ),
        sa.Column("variant_count", sa.Integer(), nullable=False),
        sa.Column("aspect_ratio", sa.String(), nullable=False),
        sa.Column("seed", sa.Integer(), nullable=True),
        sa.Column("negative_prompt", sa.Text(), nullable=True),
        sa.Column("prompt_variants_json", sa.Text(), nullable=True),
        sa.Column("total_expected", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index(
        "ix_generation_tasks_status",
        "generation_tasks",
        ["status"],
        unique=False,
    )
    op.create_index(
        "idx_generation_tasks_status_time",
        "generation_tasks",
        ["status", "created_at"],
        unique=False,
    )

    op.create_table(
        "sub_tasks",
        sa.Column("sub_task_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("variant_id", sa.String(), nullable=False),
        sa.Column("variant_name", sa.String(), nullable=False),
        sa.Column("style_id", sa.String(), nullable=False),
        sa.Column("model_id", sa.String(), nullable=False),
        sa.Column("batch_index", sa.Integer(), nullable=False),
        sa.Column("final_prompt", sa.Text(), nullable=False),
        sa.Column("negative_prompt", sa.Text(), nullable=True),
        sa.Column("aspect_ratio", sa.String(), nullable=False),
        sa.Column("seed", sa.Integer(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("reclaim_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_category", sa.String(), nullable=True),
        sa.Column("error_log", sa.Text(), nullable=True),
        sa.Column("lease_owner", sa.String(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["task_id"],
            ["generation_tasks.task_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("sub_task_id"),
        sa.UniqueConstraint(
            "task_id",
            "variant_id",
            "style_id",
            "model_id",
            "batch_index",
            name="uq_sub_tasks_coordinate",
        ),
    )
    op.create_index("ix_sub_tasks_task_id", "sub_tasks", ["task_id"], unique=False)
    op.create_index("ix_sub_tasks_lease_owner", "sub_tasks", ["lease_owner"], unique=False)
    op.create_index(
        "idx_sub_tasks_claim",
        "sub_tasks",
        ["status", "created_at", "priority"],
        unique=False,
    )
    op.create_index(
        "idx_sub_tasks_task_status",
        "sub_tasks",
        ["task_id", "status"],
        unique=False,
    )
    op.create_index(
        "idx_sub_tasks_lease",
        "sub_tasks",
        ["status", "lease_expires_at"],
        unique=False,
    )

    op.create_table(
        "task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("sub_task_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["task_id"],
            ["generation_tasks.task_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_events_task_id", "task_events", ["task_id"], unique=False)
    op.create_index("ix_task_events_sub_task_id", "task_events", ["sub_task_id"], unique=False)
    op.create_index("ix_task_events_event_type", "task_events", ["event_type"], unique=False)
    op.create_index(
        "idx_task_events_task_time",
        "task_events",
        ["task_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_task_events_task_time", table_name="task_events")
    op.drop_index("ix_task_events_event_type", table_name="task_events")
    op.drop_index("ix_task_events_sub_task_id", table_name="task_events")
    op.drop_index("ix_task_events_task_id", table_name="task_events")
    op.drop_table("task_events")
    op.drop_index("idx_sub_tasks_lease", table_name="sub_tasks")
    op.drop_index("idx_sub_tasks_task_status", table_name="sub_tasks")
    op.drop_index("idx_sub_tasks_claim", table_name="sub_tasks")
    op.drop_index("ix_sub_tasks_lease_owner", table_name="sub_tasks")
    op.drop_index("ix_sub_tasks_task_id", table_name="sub_tasks")
    op.drop_table("sub_tasks")
    op.drop_index("idx_generation_tasks_status_time", table_name="generation_tasks")
    op.drop_index("ix_generation_tasks_status", table_name="generation_tasks")
    op.drop_table("generation_tasks")
