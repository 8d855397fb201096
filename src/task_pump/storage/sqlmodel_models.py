"""SQLModel ORM tables for task queue storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, Text
from sqlmodel import Field, SQLModel

SETTINGS_ROW_ID = 1
INITIAL_LAST_TASK_RUN_AT = datetime(2000, 1, 2, 3, 4, 5)


class QueuedTask(SQLModel, table=True):
    __tablename__ = "queued_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queued_tasks_order", "priority", "id"),
        Index("idx_queued_tasks_callback", "callback"),
        {"sqlite_autoincrement": True},
    )

    id: int | None = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True),
    )
    kind: str = Field(default="direct")
    periodic_event: str | None = None
    callback: str = Field(sa_column=Column(Text, nullable=False))
    parameters: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    priority: int = Field(default=3)
    description: str = Field(default="", sa_column=Column(Text, nullable=False))


class RunningTask(SQLModel, table=True):
    __tablename__ = "running_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_running_tasks_started_at", "started_at"),
        Index("idx_running_tasks_callback", "callback"),
    )

    id: int = Field(sa_column=Column(Integer, primary_key=True, autoincrement=False))
    kind: str = Field(default="direct")
    periodic_event: str | None = None
    callback: str = Field(sa_column=Column(Text, nullable=False))
    parameters: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    priority: int = Field(default=3)
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueSettingsRecord(SQLModel, table=True):
    __tablename__ = "queue_settings"  # type: ignore[bad-override]

    id: int = Field(default=SETTINGS_ROW_ID, primary_key=True)
    last_task_run_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    max_concurrent_tasks: int | None = None
    task_execution_enabled: bool = Field(default=True)
