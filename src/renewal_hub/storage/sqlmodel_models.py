"""SQLModel ORM tables for the renewal hub."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel


class SystemRecord(SQLModel, table=True):
    __tablename__ = "systems"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("external_id", name="uq_systems_external_id"),)

    id: int | None = Field(default=None, primary_key=True)
    external_id: int
    username: str
    secret: str
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    capacity: int = Field(default=1)
    bound_count: int = Field(default=0)
    renewal_state: str = Field(default="idle", index=True)
    auto_renewal_enabled: bool = Field(default=True)
    last_renewed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_failed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    renewal_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PointRecord(SQLModel, table=True):
    __tablename__ = "points"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    system_id: int | None = Field(
        default=None,
        sa_column=Column(
            Integer,
            ForeignKey("systems.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    active: bool = Field(default=True)
    label: str | None = None
    directory_user_id: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRecord(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_queue", "status", "kind", "created_at"),
        Index(
            "uq_tasks_live_dedup_key",
            "dedup_key",
            unique=True,
            sqlite_where=text("status IN ('pending', 'leased')"),
        ),
    )

    id: str = Field(primary_key=True)
    kind: str = Field(index=True)
    status: str = Field(index=True)
    system_id: int | None = Field(
        default=None,
        sa_column=Column(
            Integer,
            ForeignKey("systems.id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    dedup_key: str = Field(sa_column=Column(String, nullable=False))
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    lease_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    leased_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRecord(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GeneratedCredentialRecord(SQLModel, table=True):
    __tablename__ = "generated_credentials"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True),
    )
    username: str
    secret: str
    source: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AutomationConfigRecord(SQLModel, table=True):
    __tablename__ = "automation_config"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    enabled: bool = Field(default=False)
    batch_size: int = Field(default=10)
    interval_minutes: int = Field(default=60)
    advance_minutes: int = Field(default=60)
    last_batch_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    total_generated: int = Field(default=0)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AutomationLogRecord(SQLModel, table=True):
    __tablename__ = "automation_log"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_kind: str
    status: str
    username: str | None = None
    message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
