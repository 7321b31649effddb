"""CLI entrypoint for backlog-pilot."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from backlog_pilot import __version__
from backlog_pilot.orchestrator.controllers import (
    AddDependencyCommand,
    AddItemCommand,
    AnswerQuestionCommand,
    BacklogCliController,
    DependencyChainCommand,
    ListItemsCommand,
    ListQuestionsCommand,
    ResolveCommand,
    RunCommand,
    ShowSettingsCommand,
    UpdateSettingsCommand,
)
from backlog_pilot.orchestrator.models import WorkItemStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = BacklogCliController()
_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="backlog-pilot")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level (defaults to BACKLOG_PILOT_LOG_LEVEL or INFO).",
)
def backlog_pilot(log_level: str | None) -> None:
    """Autonomous backlog orchestration CLI."""

    level = (log_level or os.getenv("BACKLOG_PILOT_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@backlog_pilot.group()
def items() -> None:
    """Work item commands."""


@items.command("add")
@_DB_PATH_OPTION
@click.option("--title", required=True, help="Short title of the work item.")
@click.option("--description", default="", help="What has to be done.")
@click.option("--label", "labels", multiple=True, help="Label. Can be repeated.")
@click.option(
    "--depends-on",
    "depends_on",
    multiple=True,
    help="Id of a work item this one depends on. Can be repeated.",
)
@click.option("--url", "external_url", default=None, help="External reference URL.")
def items_add(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    description: str,
    labels: tuple[str, ...],
    depends_on: tuple[str, ...],
    external_url: str | None,
) -> None:
    """Add a work item to the backlog."""

    _emit(
        lambda: CONTROLLER.add_item(
            AddItemCommand(
                db_path=db_path,
                title=title,
                description=description,
                labels=labels,
                depends_on=depends_on,
                external_url=external_url,
            ),
        ),
    )


@items.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in WorkItemStatus]),
    default=None,
    help="Only show items with this status.",
)
def items_list(db_path: Path | None, status: str | None) -> None:
    """List work items, oldest first."""

    _emit(lambda: CONTROLLER.list_items(ListItemsCommand(db_path=db_path, status=status)))


@backlog_pilot.group()
def deps() -> None:
    """Dependency graph commands."""


@deps.command("add")
@_DB_PATH_OPTION
@click.argument("item_id")
@click.argument("depends_on_id")
def deps_add(db_path: Path | None, item_id: str, depends_on_id: str) -> None:
    """Record that ITEM_ID depends on DEPENDS_ON_ID."""

    _emit(
        lambda: CONTROLLER.add_dependency(
            AddDependencyCommand(db_path=db_path, item_id=item_id, depends_on_id=depends_on_id),
        ),
    )


@deps.command("chain")
@_DB_PATH_OPTION
@click.argument("item_id")
def deps_chain(db_path: Path | None, item_id: str) -> None:
    """Show transitive dependencies of ITEM_ID, deepest first."""

    _emit(
        lambda: CONTROLLER.dependency_chain(
            DependencyChainCommand(db_path=db_path, item_id=item_id),
        ),
    )


@backlog_pilot.command("resolve")
@_DB_PATH_OPTION
def resolve(db_path: Path | None) -> None:
    """Show ready, blocked and cyclic items."""

    _emit(lambda: CONTROLLER.resolve(ResolveCommand(db_path=db_path)))


@backlog_pilot.group()
def questions() -> None:
    """Blocking question commands."""


@questions.command("list")
@_DB_PATH_OPTION
@click.option("--all", "include_answered", is_flag=True, help="Include answered questions.")
def questions_list(db_path: Path | None, include_answered: bool) -> None:
    """List questions raised by the agent."""

    _emit(
        lambda: CONTROLLER.list_questions(
            ListQuestionsCommand(db_path=db_path, include_answered=include_answered),
        ),
    )


@questions.command("answer")
@_DB_PATH_OPTION
@click.argument("question_id")
@click.argument("answer")
def questions_answer(db_path: Path | None, question_id: str, answer: str) -> None:
    """Answer a question; the item is unblocked once all its questions are answered."""

    _emit(
        lambda: CONTROLLER.answer_question(
            AnswerQuestionCommand(db_path=db_path, question_id=question_id, answer=answer),
        ),
    )


@backlog_pilot.group()
def settings() -> None:
    """Orchestrator settings commands."""


@settings.command("show")
@_DB_PATH_OPTION
def settings_show(db_path: Path | None) -> None:
    """Show persisted orchestrator settings."""

    _emit(lambda: CONTROLLER.show_settings(ShowSettingsCommand(db_path=db_path)))


@settings.command("set")
@_DB_PATH_OPTION
@click.option("--enabled/--disabled", default=None, help="Toggle the orchestrator.")
@click.option("--interval-minutes", type=click.IntRange(min=1), default=None)
@click.option("--max-retries", "max_retry_attempts", type=click.IntRange(min=1), default=None)
@click.option(
    "--max-concurrent",
    "max_concurrent_items",
    type=click.IntRange(min=1),
    default=None,
    help="Items processed per cycle, one after another.",
)
@click.option("--quiet-hours", default=None, help="Window as HH:MM-HH:MM, or 'off'.")
@click.option("--daily-budget", default=None, help="Daily token cap, or 'off'.")
@click.option("--working-directory", default=None, help="Directory the agent works in.")
def settings_set(  # noqa: PLR0913
    db_path: Path | None,
    enabled: bool | None,
    interval_minutes: int | None,
    max_retry_attempts: int | None,
    max_concurrent_items: int | None,
    quiet_hours: str | None,
    daily_budget: str | None,
    working_directory: str | None,
) -> None:
    """Change persisted orchestrator settings."""

    _emit(
        lambda: CONTROLLER.update_settings(
            UpdateSettingsCommand(
                db_path=db_path,
                enabled=enabled,
                interval_minutes=interval_minutes,
                max_retry_attempts=max_retry_attempts,
                max_concurrent_items=max_concurrent_items,
                quiet_hours=quiet_hours,
                daily_budget=daily_budget,
                working_directory=working_directory,
            ),
        ),
    )


@backlog_pilot.command("run")
@_DB_PATH_OPTION
@click.option("--once", is_flag=True, help="Run a single scheduling cycle and exit.")
@click.option(
    "--for-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop the timer loop after this many seconds.",
)
def run(db_path: Path | None, once: bool, for_seconds: float | None) -> None:
    """Run the orchestrator until interrupted, or for one cycle with --once."""

    _emit(
        lambda: CONTROLLER.run(RunCommand(db_path=db_path, once=once, for_seconds=for_seconds)),
    )


def _emit(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    backlog_pilot()
