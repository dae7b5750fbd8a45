"""SQLModel ORM tables for the work store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel


class Agent(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]

    agent_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    status: str = Field(default="idle", index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_agent_queue", "agent_id", "status", "priority", "created_at"),
        Index("idx_tasks_status_updated", "status", "updated_at"),
    )

    task_id: str = Field(primary_key=True)
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    agent_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("agents.agent_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    status: str = Field(index=True)
    priority: int = Field(default=3, index=True)
    delegation_mode: str = Field(default="auto")
    retry_count: int = Field(default=0)
    scheduled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    retry_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    work_dir: str | None = None
    progress_text: str | None = Field(default=None, sa_column=Column(Text))
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class Phase(SQLModel, table=True):
    __tablename__ = "phases"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("task_id", "sequence", name="uq_phases_task_sequence"),)

    phase_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sequence: int
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(default="pending", index=True)
    summary: str | None = Field(default=None, sa_column=Column(Text))
    artifacts_json: str | None = Field(default=None, sa_column=Column(Text))
    session_key: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Story(SQLModel, table=True):
    __tablename__ = "stories"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "sequence", name="uq_stories_task_sequence"),
        Index("idx_stories_dispatch_order", "task_id", "passes", "priority", "sequence"),
    )

    story_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sequence: int
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    priority: int = Field(default=3)
    passes: bool = Field(default=False)
    acceptance_criteria_json: str | None = Field(default=None, sa_column=Column(Text))
    iterations: int = Field(default=0)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    commit_sha: str | None = None
    session_key: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Event(SQLModel, table=True):
    __tablename__ = "events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    agent_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("agents.agent_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CapabilityToken(SQLModel, table=True):
    __tablename__ = "capability_tokens"  # type: ignore[bad-override]

    token_hash: str = Field(primary_key=True)
    subject_kind: str
    subject_id: str = Field(index=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    issued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    consumed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
