"""SQLModel table definitions for generation tasks, units and their events."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class GenerationTask(SQLModel, table=True):
    __tablename__ = "generation_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_tasks_status_time", "status", "created_at"),)

    task_id: str = Field(primary_key=True)
    subject: str = Field(sa_column=Column(Text, nullable=False))
    style_ids_json: str = Field(sa_column=Column(Text, nullable=False))
    model_ids_json: str = Field(sa_column=Column(Text, nullable=False))
    batch_size: int
    include_base_style: bool = Field(default=True)
    variant_count: int
    aspect_ratio: str
    seed: int | None = None
    negative_prompt: str | None = Field(default=None, sa_column=Column(Text))
    prompt_variants_json: str | None = Field(default=None, sa_column=Column(Text))
    total_expected: int
    status: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SubTask(SQLModel, table=True):
    __tablename__ = "sub_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "task_id",
            "variant_id",
            "style_id",
            "model_id",
            "batch_index",
            name="uq_sub_tasks_coordinate",
        ),
        Index("idx_sub_tasks_claim", "status", "created_at", "priority"),
        Index("idx_sub_tasks_task_status", "task_id", "status"),
        Index("idx_sub_tasks_lease", "status", "lease_expires_at"),
    )

    sub_task_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sequence: int
    variant_id: str
    variant_name: str
    style_id: str
    model_id: str
    batch_index: int
    final_prompt: str = Field(sa_column=Column(Text, nullable=False))
    negative_prompt: str | None = Field(default=None, sa_column=Column(Text))
    aspect_ratio: str
    seed: int | None = None
    priority: int = Field(default=0)
    status: str
    retry_count: int = Field(default=0)
    reclaim_count: int = Field(default=0)
    error_category: str | None = None
    error_log: str | None = Field(default=None, sa_column=Column(Text))
    lease_owner: str | None = Field(default=None, index=True)
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sub_task_id: str | None = Field(default=None, index=True)
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
