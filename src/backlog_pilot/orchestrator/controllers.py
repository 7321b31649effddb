"""Controllers for backlog CLI commands."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import time as time_of_day
from pathlib import Path

from backlog_pilot.config import Settings
from backlog_pilot.orchestrator.backend import CliAgentBackend
from backlog_pilot.orchestrator.loop import OrchestratorLoop
from backlog_pilot.orchestrator.models import (
    CycleSummary,
    OrchestratorSettings,
    OrchestratorStats,
    WorkItem,
    WorkItemStatus,
)
from backlog_pilot.orchestrator.pipeline import TransformationPipeline
from backlog_pilot.orchestrator.repository import BacklogDatabase
from backlog_pilot.orchestrator.resolver import DependencyResolver
from backlog_pilot.orchestrator.services import BacklogService, NewWorkItem

logger = logging.getLogger(__name__)

_OFF_VALUES = frozenset({"off", "none", "disable", "disabled"})


@dataclass(slots=True)
class AddItemCommand:
    """CLI input for adding a work item."""

    db_path: Path | None
    title: str
    description: str
    labels: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()
    external_url: str | None = None


@dataclass(slots=True)
class ListItemsCommand:
    """CLI input for work item listing."""

    db_path: Path | None
    status: str | None = None


@dataclass(slots=True)
class AddDependencyCommand:
    """CLI input for adding one dependency edge."""

    db_path: Path | None
    item_id: str
    depends_on_id: str


@dataclass(slots=True)
class DependencyChainCommand:
    db_path: Path | None
    item_id: str


@dataclass(slots=True)
class ResolveCommand:
    db_path: Path | None


@dataclass(slots=True)
class ListQuestionsCommand:
    db_path: Path | None
    include_answered: bool = False


@dataclass(slots=True)
class AnswerQuestionCommand:
    db_path: Path | None
    question_id: str
    answer: str


@dataclass(slots=True)
class ShowSettingsCommand:
    db_path: Path | None


@dataclass(slots=True)
class UpdateSettingsCommand:
    """CLI input for settings changes; None leaves a field unchanged."""

    db_path: Path | None
    enabled: bool | None = None
    interval_minutes: int | None = None
    max_retry_attempts: int | None = None
    max_concurrent_items: int | None = None
    quiet_hours: str | None = None
    daily_budget: str | None = None
    working_directory: str | None = None


@dataclass(slots=True)
class RunCommand:
    """CLI input for orchestrator execution."""

    db_path: Path | None
    once: bool
    for_seconds: float | None = None


class BacklogCliController:
    """Translate CLI commands into service calls and printable lines."""

    def add_item(self, command: AddItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            item = BacklogService(database).add_item(
                NewWorkItem(
                    title=command.title,
                    description=command.description,
                    labels=command.labels,
                    depends_on=command.depends_on,
                    external_url=command.external_url,
                ),
            )
        lines = [f"Work item added: {item.item_id}", f"  title={item.title}"]
        if command.depends_on:
            lines.append(f"  depends_on={', '.join(command.depends_on)}")
        return lines

    def list_items(self, command: ListItemsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _database(settings) as database:
            items = database.work_items.list_by_status(status_filter)
            graph = database.graph.load_graph()

        lines = [f"Work items: {len(items)}"]
        for item in items:
            dependencies = sorted(graph.dependencies_of(item.item_id))
            lines.append(_format_item(item, dependencies))
        return lines

    def add_dependency(self, command: AddDependencyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            created = BacklogService(database).add_dependency(
                item_id=command.item_id,
                depends_on_id=command.depends_on_id,
            )
        if not created:
            return [f"Dependency already exists: {command.item_id} -> {command.depends_on_id}"]
        return [f"Dependency added: {command.item_id} -> {command.depends_on_id}"]

    def dependency_chain(self, command: DependencyChainCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            resolver = DependencyResolver(
                graph_store=database.graph,
                work_items=database.work_items,
            )
            chain = resolver.get_dependency_chain(command.item_id)
            items = {item.item_id: item for item in database.work_items.get_all()}

        lines = [f"Dependency chain of {command.item_id}: {len(chain)}"]
        for dependency_id in chain:
            item = items.get(dependency_id)
            if item is None:
                lines.append(f"  {dependency_id} (unknown)")
                continue
            lines.append(f"  {dependency_id} status={item.status.value} title={item.title}")
        return lines

    def resolve(self, command: ResolveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            result = DependencyResolver(
                graph_store=database.graph,
                work_items=database.work_items,
            ).resolve()

        lines = [
            "Resolution: "
            f"ready={len(result.ready)} blocked={len(result.blocked)} "
            f"cyclic={len(result.cyclic)} cycles={len(result.cycles)}",
        ]
        for label, items in (
            ("ready", result.ready),
            ("blocked", result.blocked),
            ("cyclic", result.cyclic),
        ):
            for item in items:
                lines.append(f"  [{label}] {item.item_id} {item.title}")
        for cycle in result.cycles:
            lines.append(f"  cycle: {' -> '.join(cycle)}")
        return lines

    def list_questions(self, command: ListQuestionsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            questions = database.questions.list_questions(
                include_answered=command.include_answered,
            )

        lines = [f"Questions: {len(questions)}"]
        for question in questions:
            lines.append(
                f"  {question.question_id} item={question.item_id} "
                f"answered={'yes' if question.is_answered else 'no'}",
            )
            lines.append(f"    Q: {question.question}")
            if question.is_answered:
                lines.append(f"    A: {question.answer}")
        return lines

    def answer_question(self, command: AnswerQuestionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            result = BacklogService(database).answer_question(
                question_id=command.question_id,
                answer=command.answer,
            )

        lines = [f"Question answered: {command.question_id}"]
        if result.unblocked and result.item is not None:
            lines.append(f"Work item unblocked: {result.item.item_id} -> {result.item.status.value}")
        return lines

    def show_settings(self, command: ShowSettingsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            orchestrator_settings = database.settings.get()
        return _settings_lines(orchestrator_settings)

    def update_settings(self, command: UpdateSettingsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            current = database.settings.get()
            _apply_settings_changes(current, command)
            database.settings.save(current)
        return ["Settings updated.", *_settings_lines(current)]

    def run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _database(settings) as database:
            loop = _build_loop(settings=settings, database=database)
            if command.once:
                summary = loop.run_cycle()
                return [*_cycle_lines(summary), *_stats_lines(loop.stats)]

            _run_until_stopped(loop, for_seconds=command.for_seconds)
            return _stats_lines(loop.stats)


def _build_loop(*, settings: Settings, database: BacklogDatabase) -> OrchestratorLoop:
    backend = CliAgentBackend(
        agent=settings.agent.agent,
        command_template=settings.agent.command_template,
        model=settings.agent.model,
        timeout_seconds=settings.agent.timeout_seconds,
        graceful_shutdown_seconds=settings.agent.graceful_shutdown_seconds,
    )
    pipeline = TransformationPipeline(
        work_items=database.work_items,
        sessions=database.sessions,
        questions=database.questions,
        settings=database.settings,
        backend=backend,
        default_working_directory=settings.working_directory,
    )
    return OrchestratorLoop(
        resolver=DependencyResolver(graph_store=database.graph, work_items=database.work_items),
        pipeline=pipeline,
        work_items=database.work_items,
        settings=database.settings,
        shutdown_timeout_seconds=settings.shutdown_timeout_seconds,
    )


def _run_until_stopped(loop: OrchestratorLoop, *, for_seconds: float | None) -> None:
    stop_requested = threading.Event()
    previous_handler = None
    if threading.current_thread() is threading.main_thread():
        previous_handler = signal.signal(signal.SIGTERM, lambda *_: stop_requested.set())
    deadline = time.monotonic() + for_seconds if for_seconds is not None else None

    loop.start()
    try:
        while not stop_requested.wait(timeout=0.5):
            if deadline is not None and time.monotonic() >= deadline:
                break
    except KeyboardInterrupt:
        logger.info("Interrupted; stopping orchestrator")
    finally:
        loop.stop()
        if previous_handler is not None:
            signal.signal(signal.SIGTERM, previous_handler)


def _apply_settings_changes(current: OrchestratorSettings, command: UpdateSettingsCommand) -> None:
    if command.enabled is not None:
        current.enabled = command.enabled
    if command.interval_minutes is not None:
        current.interval_minutes = command.interval_minutes
    if command.max_retry_attempts is not None:
        current.max_retry_attempts = command.max_retry_attempts
    if command.max_concurrent_items is not None:
        current.max_concurrent_items = command.max_concurrent_items
    if command.working_directory is not None:
        current.working_directory = command.working_directory.strip() or None

    if command.quiet_hours is not None:
        value = command.quiet_hours.strip().lower()
        if value in _OFF_VALUES:
            current.quiet_hours.enabled = False
        else:
            current.quiet_hours.start, current.quiet_hours.end = _parse_window(value)
            current.quiet_hours.enabled = True

    if command.daily_budget is not None:
        value = command.daily_budget.strip().lower()
        if value in _OFF_VALUES:
            current.token_budget.enabled = False
        else:
            try:
                cap = int(value.replace("_", "").replace(",", ""))
            except ValueError as error:
                raise ValueError(f"Invalid daily budget: {command.daily_budget!r}") from error
            if cap <= 0:
                raise ValueError("Daily budget must be a positive integer or 'off'.")
            current.token_budget.daily_cap = cap
            current.token_budget.enabled = True


def _parse_window(value: str) -> tuple[time_of_day, time_of_day]:
    start_raw, separator, end_raw = value.partition("-")
    if not separator:
        raise ValueError(f"Invalid quiet hours {value!r}. Expected HH:MM-HH:MM or 'off'.")
    try:
        return time_of_day.fromisoformat(start_raw.strip()), time_of_day.fromisoformat(
            end_raw.strip(),
        )
    except ValueError as error:
        raise ValueError(
            f"Invalid quiet hours {value!r}. Expected HH:MM-HH:MM or 'off'.",
        ) from error


def _parse_status(value: str | None) -> WorkItemStatus | None:
    if value is None:
        return None
    return WorkItemStatus(value.strip().lower())


def _format_item(item: WorkItem, dependencies: list[str]) -> str:
    line = (
        f"  {item.item_id} status={item.status.value} attempts={item.attempt_count} "
        f"created_at={item.created_at.isoformat()} title={item.title}"
    )
    if dependencies:
        line += f" depends_on={','.join(dependencies)}"
    if item.error_message:
        line += f" error={item.error_message}"
    return line


def _settings_lines(settings: OrchestratorSettings) -> list[str]:
    quiet = settings.quiet_hours
    budget = settings.token_budget
    return [
        f"Enabled: {'yes' if settings.enabled else 'no'}",
        f"Interval minutes: {settings.interval_minutes}",
        f"Max concurrent items: {settings.max_concurrent_items}",
        f"Max retry attempts: {settings.max_retry_attempts}",
        "Quiet hours: "
        + (f"{quiet.start:%H:%M}-{quiet.end:%H:%M}" if quiet.enabled else "off"),
        "Daily token budget: "
        + (f"{budget.used_today}/{budget.daily_cap}" if budget.enabled else "off")
        + f" (last reset {budget.last_reset_date.isoformat() if budget.last_reset_date else '-'})",
        f"Working directory: {settings.working_directory or '-'}",
    ]


def _cycle_lines(summary: CycleSummary) -> list[str]:
    if summary.skipped:
        return ["Cycle skipped: another cycle is in progress."]
    reason = summary.stop_reason.value if summary.stop_reason is not None else "-"
    lines = [f"Cycle summary: processed={summary.processed} stop_reason={reason}"]
    for item in summary.items:
        phase = item.phase.value if item.phase is not None else "-"
        line = f"  {item.item_id} phase={phase} status={item.status.value} tokens={item.tokens_used}"
        if item.error_message:
            line += f" error={item.error_message}"
        lines.append(line)
    return lines


def _stats_lines(stats: OrchestratorStats) -> list[str]:
    remaining = "-" if stats.remaining_budget is None else str(stats.remaining_budget)
    return [
        "Orchestrator stats: "
        f"completed={stats.items_completed} failed={stats.items_failed} "
        f"blocked={stats.items_blocked} tokens_session={stats.tokens_this_session} "
        f"tokens_today={stats.tokens_today} remaining_budget={remaining} "
        f"cycles={stats.cycles_run} skipped={stats.cycles_skipped}",
    ]


@contextmanager
def _database(settings: Settings) -> Iterator[BacklogDatabase]:
    database = BacklogDatabase(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    database.init_schema()
    try:
        yield database
    finally:
        database.close()
