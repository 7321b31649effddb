"""SQLModel ORM tables for backlog storage."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Column, Date, DateTime, ForeignKey, String, Text
from sqlmodel import Field, SQLModel

SETTINGS_ROW_ID = 1


class WorkItemRow(SQLModel, table=True):
    __tablename__ = "work_items"  # type: ignore[bad-override]

    item_id: str = Field(primary_key=True)
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    previous_status: str | None = Field(default=None)
    attempt_count: int = Field(default=0)
    last_worked_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    labels_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    external_url: str | None = Field(default=None)
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkItemDependencyRow(SQLModel, table=True):
    __tablename__ = "work_item_dependencies"  # type: ignore[bad-override]

    item_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("work_items.item_id", ondelete="CASCADE"),
            primary_key=True,
            index=True,
        ),
    )
    depends_on_id: str = Field(primary_key=True, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkSessionRow(SQLModel, table=True):
    __tablename__ = "work_sessions"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(unique=True, index=True)
    item_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("work_items.item_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    transformation: str
    outcome: str = Field(index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    tokens_used: int = Field(default=0)
    summary: str | None = Field(default=None, sa_column=Column(Text))
    modified_files_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    error_message: str | None = Field(default=None, sa_column=Column(Text))


class BlockedQuestionRow(SQLModel, table=True):
    __tablename__ = "blocked_questions"  # type: ignore[bad-override]

    question_id: str = Field(primary_key=True)
    item_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("work_items.item_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    question: str = Field(sa_column=Column(Text, nullable=False))
    context: str | None = Field(default=None, sa_column=Column(Text))
    answer: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    answered_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class OrchestratorSettingsRow(SQLModel, table=True):
    __tablename__ = "orchestrator_settings"  # type: ignore[bad-override]

    id: int = Field(default=SETTINGS_ROW_ID, primary_key=True)
    enabled: bool = Field(default=False)
    interval_minutes: int = Field(default=5)
    max_concurrent_items: int = Field(default=1)
    max_retry_attempts: int = Field(default=3)
    quiet_hours_enabled: bool = Field(default=False)
    quiet_hours_start: str = Field(default="22:00")
    quiet_hours_end: str = Field(default="07:00")
    token_budget_enabled: bool = Field(default=False)
    daily_token_cap: int = Field(default=100_000)
    tokens_used_today: int = Field(default=0)
    budget_reset_date: date | None = Field(default=None, sa_column=Column(Date, nullable=True))
    working_directory: str | None = Field(default=None)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
