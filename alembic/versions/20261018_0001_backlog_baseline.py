"""Backlog orchestration baseline schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "work_items",
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("previous_status", sa.String(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_worked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("labels_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("external_url", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index("ix_work_items_status", "work_items", ["status"])
    op.create_index("ix_work_items_created_at", "work_items", ["created_at"])

    op.create_table(
        "work_item_dependencies",
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("depends_on_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["item_id"], ["work_items.item_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("item_id", "depends_on_id"),
    )
    op.create_index(
        "ix_work_item_dependencies_item_id",
        "work_item_dependencies",
        ["item_id"],
    )
    op.create_index(
        "ix_work_item_dependencies_depends_on_id",
        "work_item_dependencies",
        ["depends_on_id"],
    )

    op.create_table(
        "work_sessions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("transformation", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("modified_files_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["item_id"], ["work_items.item_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_work_sessions_session_id", "work_sessions", ["session_id"], unique=True)
    op.create_index("ix_work_sessions_item_id", "work_sessions", ["item_id"])
    op.create_index("ix_work_sessions_outcome", "work_sessions", ["outcome"])

    op.create_table(
        "blocked_questions",
        sa.Column("question_id", sa.String(), nullable=False),
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("context", sa.Text(), nullable=True),
        sa.Column("answer", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("answered_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["item_id"], ["work_items.item_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("question_id"),
    )
    op.create_index("ix_blocked_questions_item_id", "blocked_questions", ["item_id"])

    op.create_table(
        "orchestrator_settings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("interval_minutes", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("max_concurrent_items", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_retry_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column(
            "quiet_hours_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("quiet_hours_start", sa.String(), nullable=False, server_default="22:00"),
        sa.Column("quiet_hours_end", sa.String(), nullable=False, server_default="07:00"),
        sa.Column(
            "token_budget_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("daily_token_cap", sa.Integer(), nullable=False, server_default="100000"),
        sa.Column("tokens_used_today", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("budget_reset_date", sa.Date(), nullable=True),
        sa.Column("working_directory", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("orchestrator_settings")
    op.drop_index("ix_blocked_questions_item_id", table_name="blocked_questions")
    op.drop_table("blocked_questions")
    op.drop_index("ix_work_sessions_outcome", table_name="work_sessions")
    op.drop_index("ix_work_sessions_item_id", table_name="work_sessions")
    op.drop_index("ix_work_sessions_session_id", table_name="work_sessions")
    op.drop_table("work_sessions")
    op.drop_index("ix_work_item_dependencies_depends_on_id", table_name="work_item_dependencies")
    op.drop_index("ix_work_item_dependencies_item_id", table_name="work_item_dependencies")
    op.drop_table("work_item_dependencies")
    op.drop_index("ix_work_items_created_at", table_name="work_items")
    op.drop_index("ix_work_items_status", table_name="work_items")
    op.drop_table("work_items")
