"""Shared test fixtures: in-memory collaborators and a controllable clock."""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from itertools import count

import pytest

from backlog_pilot.orchestrator.backend.base import ReasoningRequest
from backlog_pilot.orchestrator.loop import OrchestratorLoop
from backlog_pilot.orchestrator.models import (
    BlockedQuestion,
    DependencyGraph,
    ExecutionOutcome,
    OrchestratorSettings,
    ReasoningResult,
    WorkItem,
    WorkItemStatus,
    WorkSession,
)
from backlog_pilot.orchestrator.pipeline import TransformationPipeline
from backlog_pilot.orchestrator.resolver import DependencyResolver

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m backlog_pilot.orchestrator.backend.echo_agent --prompt-file {{prompt_file}}"
)
BASE_TIME = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class FakeClock:
    """Clock whose UTC and local times are set by the test."""

    def __init__(self, now: datetime = BASE_TIME) -> None:
        self.now = now
        self.local: datetime | None = None

    def utc_now(self) -> datetime:
        return self.now

    def local_now(self) -> datetime:
        return self.local or self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class InMemoryWorkItems:
    def __init__(self) -> None:
        self.items: dict[str, WorkItem] = {}
        self.updates: list[WorkItem] = []

    def get_all(self) -> list[WorkItem]:
        return [replace(item) for item in self.items.values()]

    def get_by_id(self, item_id: str) -> WorkItem | None:
        item = self.items.get(item_id)
        return replace(item) if item is not None else None

    def update(self, item: WorkItem) -> None:
        if item.item_id not in self.items:
            raise RuntimeError(f"Work item not found: {item.item_id}")
        self.items[item.item_id] = replace(item)
        self.updates.append(replace(item))


class InMemoryGraph:
    def __init__(self) -> None:
        self.edges: dict[str, set[str]] = {}
        self.loads = 0

    def load_graph(self) -> DependencyGraph:
        self.loads += 1
        return DependencyGraph.from_edges(
            {item_id: frozenset(values) for item_id, values in self.edges.items()},
        )


class InMemorySessions:
    def __init__(self) -> None:
        self.sessions: list[WorkSession] = []

    def create(self, session: WorkSession) -> None:
        self.sessions.append(session)

    def get_by_item_id(self, item_id: str) -> list[WorkSession]:
        return [session for session in self.sessions if session.item_id == item_id]


class InMemoryQuestions:
    def __init__(self) -> None:
        self.questions: list[BlockedQuestion] = []

    def create(self, question: BlockedQuestion) -> None:
        self.questions.append(replace(question))

    def get_by_item_id(self, item_id: str) -> list[BlockedQuestion]:
        return [replace(question) for question in self.questions if question.item_id == item_id]


class InMemorySettings:
    def __init__(self, settings: OrchestratorSettings | None = None) -> None:
        self.settings = settings or OrchestratorSettings(enabled=True)
        self.saves = 0

    def get(self) -> OrchestratorSettings:
        return _copy_settings(self.settings)

    def save(self, settings: OrchestratorSettings) -> None:
        self.settings = _copy_settings(settings)
        self.saves += 1


def _copy_settings(settings: OrchestratorSettings) -> OrchestratorSettings:
    return replace(
        settings,
        quiet_hours=replace(settings.quiet_hours),
        token_budget=replace(settings.token_budget),
    )


BackendStep = ReasoningResult | Exception | Callable[[ReasoningRequest], ReasoningResult]


class ScriptedBackend:
    """Returns scripted results in order, then repeats the default."""

    def __init__(
        self,
        steps: list[BackendStep] | None = None,
        *,
        default: ReasoningResult | None = None,
    ) -> None:
        self.steps = list(steps or [])
        self.default = default or completed(tokens=10)
        self.requests: list[ReasoningRequest] = []

    def execute_prompt(self, request: ReasoningRequest) -> ReasoningResult:
        self.requests.append(request)
        step: BackendStep = self.steps.pop(0) if self.steps else self.default
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(request)
        return step


class BlockingBackend:
    """Backend that waits until released; used to hold a cycle in flight."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def execute_prompt(self, request: ReasoningRequest) -> ReasoningResult:
        self.calls += 1
        self.entered.set()
        while not self.release.wait(timeout=0.05):
            if request.cancellation is not None and request.cancellation.is_cancelled:
                return ReasoningResult(
                    success=False,
                    outcome=ExecutionOutcome.FAILED,
                    error_message="cancelled",
                )
        return completed(tokens=1)


def completed(*, tokens: int = 10, summary: str = "done") -> ReasoningResult:
    return ReasoningResult(
        success=True,
        outcome=ExecutionOutcome.COMPLETED,
        summary=summary,
        tokens_used=tokens,
    )


def failed(*, message: str = "agent failed", tokens: int = 0) -> ReasoningResult:
    return ReasoningResult(
        success=False,
        outcome=ExecutionOutcome.FAILED,
        error_message=message,
        tokens_used=tokens,
    )


def blocked(*questions: str, tokens: int = 5) -> ReasoningResult:
    return ReasoningResult(
        success=True,
        outcome=ExecutionOutcome.BLOCKED,
        summary="need input",
        questions=tuple(questions),
        tokens_used=tokens,
    )


@dataclass
class Backlog:
    """In-memory backlog wired to the orchestration core."""

    clock: FakeClock
    work_items: InMemoryWorkItems = field(default_factory=InMemoryWorkItems)
    graph: InMemoryGraph = field(default_factory=InMemoryGraph)
    sessions: InMemorySessions = field(default_factory=InMemorySessions)
    questions: InMemoryQuestions = field(default_factory=InMemoryQuestions)
    settings: InMemorySettings = field(default_factory=InMemorySettings)
    _ids: count = field(default_factory=lambda: count(1))

    def add_item(
        self,
        item_id: str,
        *,
        status: WorkItemStatus = WorkItemStatus.PENDING,
        depends_on: tuple[str, ...] = (),
        created_minutes_ago: int = 0,
        attempt_count: int = 0,
    ) -> WorkItem:
        created_at = self.clock.utc_now() - timedelta(minutes=created_minutes_ago)
        item = WorkItem(
            item_id=item_id,
            title=f"Item {item_id}",
            description=f"Do {item_id}",
            status=status,
            created_at=created_at,
            updated_at=created_at,
            attempt_count=attempt_count,
        )
        self.work_items.items[item_id] = item
        self.graph.edges[item_id] = set(depends_on)
        return item

    def item(self, item_id: str) -> WorkItem:
        item = self.work_items.get_by_id(item_id)
        assert item is not None
        return item

    def next_id(self) -> str:
        return f"id-{next(self._ids)}"

    def resolver(self) -> DependencyResolver:
        return DependencyResolver(graph_store=self.graph, work_items=self.work_items)

    def pipeline(self, backend, *, working_directory: str | None = "/work") -> TransformationPipeline:
        self.settings.settings.working_directory = working_directory
        return TransformationPipeline(
            work_items=self.work_items,
            sessions=self.sessions,
            questions=self.questions,
            settings=self.settings,
            backend=backend,
            clock=self.clock,
            id_factory=self.next_id,
        )

    def loop(self, backend, *, shutdown_timeout_seconds: float = 5.0) -> OrchestratorLoop:
        return OrchestratorLoop(
            resolver=self.resolver(),
            pipeline=self.pipeline(backend),
            work_items=self.work_items,
            settings=self.settings,
            clock=self.clock,
            shutdown_timeout_seconds=shutdown_timeout_seconds,
        )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def backlog(clock: FakeClock) -> Backlog:
    return Backlog(clock=clock)


@pytest.fixture()
def echo_agent_env(monkeypatch):
    """Point Settings.from_env at the local echo agent."""

    monkeypatch.setenv("BACKLOG_PILOT_AGENT", "echo")
    monkeypatch.setenv("BACKLOG_PILOT_AGENT_COMMAND_TEMPLATE", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("BACKLOG_PILOT_AGENT_TIMEOUT_SECONDS", "60")
