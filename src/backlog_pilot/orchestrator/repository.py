"""SQLite persistence for the backlog, backed by SQLModel."""

from __future__ import annotations

import json
from datetime import datetime, time
from pathlib import Path

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from backlog_pilot.orchestrator.models import (
    BlockedQuestion,
    DependencyGraph,
    OrchestratorSettings,
    QuietHours,
    SessionOutcome,
    TokenBudget,
    TransformationType,
    WorkItem,
    WorkItemStatus,
    WorkSession,
)
from backlog_pilot.storage.alembic_runner import upgrade_head
from backlog_pilot.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from backlog_pilot.storage.sqlmodel_models import (
    SETTINGS_ROW_ID,
    BlockedQuestionRow,
    OrchestratorSettingsRow,
    WorkItemDependencyRow,
    WorkItemRow,
    WorkSessionRow,
)


class BacklogDatabase:
    """Owns the SQLite engine and exposes one repository per aggregate."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)
        self.work_items = SqlWorkItemRepository(self.engine)
        self.graph = SqlGraphStore(self.engine)
        self.sessions = SqlSessionRepository(self.engine)
        self.questions = SqlQuestionRepository(self.engine)
        self.settings = SqlSettingsRepository(self.engine)

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()


class SqlWorkItemRepository:
    """Work item records; the orchestrator core only reads and updates them."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def add(self, item: WorkItem) -> WorkItem:
        with Session(self.engine) as session:
            row = WorkItemRow(
                item_id=item.item_id,
                title=item.title,
                description=item.description,
                status=item.status.value,
                previous_status=item.previous_status.value if item.previous_status else None,
                attempt_count=item.attempt_count,
                last_worked_at=_optional_db_datetime(item.last_worked_at),
                error_message=item.error_message,
                labels_json=json.dumps(list(item.labels)),
                external_url=item.external_url,
                created_at=to_db_datetime(item.created_at),
                updated_at=to_db_datetime(item.updated_at),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_work_item(row)

    def get_all(self) -> list[WorkItem]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkItemRow).order_by(
                    col(WorkItemRow.created_at).asc(),
                    col(WorkItemRow.item_id).asc(),
                ),
            ).all()
            return [_to_work_item(row) for row in rows]

    def get_by_id(self, item_id: str) -> WorkItem | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(WorkItemRow).where(WorkItemRow.item_id == item_id),
            ).one_or_none()
            return _to_work_item(row) if row is not None else None

    def list_by_status(self, status: WorkItemStatus | None = None) -> list[WorkItem]:
        items = self.get_all()
        if status is None:
            return items
        return [item for item in items if item.status == status]

    def update(self, item: WorkItem) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkItemRow)
                .where(col(WorkItemRow.item_id) == item.item_id)
                .values(
                    title=item.title,
                    description=item.description,
                    status=item.status.value,
                    previous_status=(
                        item.previous_status.value if item.previous_status is not None else None
                    ),
                    attempt_count=item.attempt_count,
                    last_worked_at=_optional_db_datetime(item.last_worked_at),
                    error_message=item.error_message,
                    labels_json=json.dumps(list(item.labels)),
                    external_url=item.external_url,
                    updated_at=to_db_datetime(item.updated_at),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(f"Work item not found: {item.item_id}")
            session.commit()


class SqlGraphStore:
    """Dependency graph built from the edge table.

    Every work item gets a node, so identities unknown to the backlog are the
    only ones absent from the graph.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def load_graph(self) -> DependencyGraph:
        with Session(self.engine) as session:
            items = session.exec(select(WorkItemRow.item_id, WorkItemRow.title)).all()
            edges = session.exec(
                select(WorkItemDependencyRow.item_id, WorkItemDependencyRow.depends_on_id),
            ).all()

        depends_on: dict[str, set[str]] = {item_id: set() for item_id, _ in items}
        for item_id, dependency_id in edges:
            depends_on.setdefault(item_id, set()).add(dependency_id)
        return DependencyGraph.from_edges(
            {item_id: frozenset(values) for item_id, values in depends_on.items()},
            titles={item_id: title for item_id, title in items},
        )

    def add_dependency(self, *, item_id: str, depends_on_id: str) -> bool:
        """Insert one edge; returns False if it already existed."""

        with Session(self.engine) as session:
            existing = session.exec(
                select(WorkItemDependencyRow).where(
                    WorkItemDependencyRow.item_id == item_id,
                    WorkItemDependencyRow.depends_on_id == depends_on_id,
                ),
            ).one_or_none()
            if existing is not None:
                return False
            session.add(
                WorkItemDependencyRow(
                    item_id=item_id,
                    depends_on_id=depends_on_id,
                    created_at=utc_now(),
                ),
            )
            session.commit()
            return True


class SqlSessionRepository:
    """Append-only execution history."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, work_session: WorkSession) -> None:
        with Session(self.engine) as session:
            session.add(
                WorkSessionRow(
                    session_id=work_session.session_id,
                    item_id=work_session.item_id,
                    transformation=work_session.transformation.value,
                    outcome=work_session.outcome.value,
                    started_at=to_db_datetime(work_session.started_at),
                    ended_at=_optional_db_datetime(work_session.ended_at),
                    tokens_used=work_session.tokens_used,
                    summary=work_session.summary,
                    modified_files_json=json.dumps(list(work_session.modified_files)),
                    error_message=work_session.error_message,
                ),
            )
            session.commit()

    def get_by_item_id(self, item_id: str) -> list[WorkSession]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkSessionRow)
                .where(WorkSessionRow.item_id == item_id)
                .order_by(col(WorkSessionRow.id).asc()),
            ).all()
            return [_to_work_session(row) for row in rows]


class SqlQuestionRepository:
    """Blocking questions and their answers."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, question: BlockedQuestion) -> None:
        with Session(self.engine) as session:
            session.add(
                BlockedQuestionRow(
                    question_id=question.question_id,
                    item_id=question.item_id,
                    question=question.question,
                    context=question.context,
                    answer=question.answer,
                    created_at=to_db_datetime(question.created_at),
                    answered_at=_optional_db_datetime(question.answered_at),
                ),
            )
            session.commit()

    def get_by_id(self, question_id: str) -> BlockedQuestion | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(BlockedQuestionRow).where(BlockedQuestionRow.question_id == question_id),
            ).one_or_none()
            return _to_question(row) if row is not None else None

    def get_by_item_id(self, item_id: str) -> list[BlockedQuestion]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BlockedQuestionRow)
                .where(BlockedQuestionRow.item_id == item_id)
                .order_by(col(BlockedQuestionRow.created_at).asc()),
            ).all()
            return [_to_question(row) for row in rows]

    def list_questions(self, *, include_answered: bool = False) -> list[BlockedQuestion]:
        with Session(self.engine) as session:
            statement = select(BlockedQuestionRow).order_by(
                col(BlockedQuestionRow.created_at).asc(),
            )
            if not include_answered:
                statement = statement.where(col(BlockedQuestionRow.answer).is_(None))
            return [_to_question(row) for row in session.exec(statement).all()]

    def answer(self, *, question_id: str, answer: str, answered_at: datetime) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BlockedQuestionRow)
                .where(col(BlockedQuestionRow.question_id) == question_id)
                .values(answer=answer, answered_at=to_db_datetime(answered_at)),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(f"Question not found: {question_id}")
            session.commit()


class SqlSettingsRepository:
    """Single-row orchestrator settings, created with defaults on first read."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self) -> OrchestratorSettings:
        with Session(self.engine) as session:
            row = session.get(OrchestratorSettingsRow, SETTINGS_ROW_ID)
            if row is None:
                row = OrchestratorSettingsRow(id=SETTINGS_ROW_ID, updated_at=utc_now())
                session.add(row)
                session.commit()
                session.refresh(row)
            return _to_settings(row)

    def save(self, settings: OrchestratorSettings) -> None:
        with Session(self.engine) as session:
            row = session.get(OrchestratorSettingsRow, SETTINGS_ROW_ID)
            if row is None:
                row = OrchestratorSettingsRow(id=SETTINGS_ROW_ID, updated_at=utc_now())
            row.enabled = settings.enabled
            row.interval_minutes = settings.interval_minutes
            row.max_concurrent_items = settings.max_concurrent_items
            row.max_retry_attempts = settings.max_retry_attempts
            row.quiet_hours_enabled = settings.quiet_hours.enabled
            row.quiet_hours_start = settings.quiet_hours.start.strftime("%H:%M")
            row.quiet_hours_end = settings.quiet_hours.end.strftime("%H:%M")
            row.token_budget_enabled = settings.token_budget.enabled
            row.daily_token_cap = settings.token_budget.daily_cap
            row.tokens_used_today = settings.token_budget.used_today
            row.budget_reset_date = settings.token_budget.last_reset_date
            row.working_directory = settings.working_directory
            row.updated_at = utc_now()
            session.add(row)
            session.commit()


def _optional_db_datetime(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _optional_aware_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_work_item(row: WorkItemRow) -> WorkItem:
    return WorkItem(
        item_id=row.item_id,
        title=row.title,
        description=row.description,
        status=WorkItemStatus(row.status),
        previous_status=(
            WorkItemStatus(row.previous_status) if row.previous_status is not None else None
        ),
        attempt_count=row.attempt_count,
        last_worked_at=_optional_aware_datetime(row.last_worked_at),
        error_message=row.error_message,
        labels=tuple(json.loads(row.labels_json or "[]")),
        external_url=row.external_url,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_work_session(row: WorkSessionRow) -> WorkSession:
    return WorkSession(
        session_id=row.session_id,
        item_id=row.item_id,
        transformation=TransformationType(row.transformation),
        outcome=SessionOutcome(row.outcome),
        started_at=to_utc_aware_datetime(row.started_at),
        ended_at=_optional_aware_datetime(row.ended_at),
        tokens_used=row.tokens_used,
        summary=row.summary,
        modified_files=tuple(json.loads(row.modified_files_json or "[]")),
        error_message=row.error_message,
    )


def _to_question(row: BlockedQuestionRow) -> BlockedQuestion:
    return BlockedQuestion(
        question_id=row.question_id,
        item_id=row.item_id,
        question=row.question,
        context=row.context,
        answer=row.answer,
        created_at=to_utc_aware_datetime(row.created_at),
        answered_at=_optional_aware_datetime(row.answered_at),
    )


def _to_settings(row: OrchestratorSettingsRow) -> OrchestratorSettings:
    return OrchestratorSettings(
        enabled=row.enabled,
        interval_minutes=row.interval_minutes,
        max_concurrent_items=row.max_concurrent_items,
        max_retry_attempts=row.max_retry_attempts,
        quiet_hours=QuietHours(
            enabled=row.quiet_hours_enabled,
            start=time.fromisoformat(row.quiet_hours_start),
            end=time.fromisoformat(row.quiet_hours_end),
        ),
        token_budget=TokenBudget(
            enabled=row.token_budget_enabled,
            daily_cap=row.daily_token_cap,
            used_today=row.tokens_used_today,
            last_reset_date=row.budget_reset_date,
        ),
        working_directory=row.working_directory,
    )
