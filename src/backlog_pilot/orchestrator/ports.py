"""Collaborator contracts consumed by the orchestration core."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from backlog_pilot.orchestrator.models import (
    BlockedQuestion,
    DependencyGraph,
    OrchestratorSettings,
    WorkItem,
    WorkSession,
)


class GraphStore(Protocol):
    """Source of dependency graph snapshots."""

    def load_graph(self) -> DependencyGraph:
        """Return the current graph; never mutated by the caller."""


class WorkItemRepository(Protocol):
    """Owner of work item records."""

    def get_all(self) -> list[WorkItem]:
        """Return every work item."""

    def get_by_id(self, item_id: str) -> WorkItem | None:
        """Return one item or None when it does not exist."""

    def update(self, item: WorkItem) -> None:
        """Persist the mutable fields of an existing item."""


class SettingsRepository(Protocol):
    """Owner of the persisted orchestrator settings."""

    def get(self) -> OrchestratorSettings:
        """Return current settings."""

    def save(self, settings: OrchestratorSettings) -> None:
        """Persist settings."""


class SessionRepository(Protocol):
    """Append-only store of execution sessions."""

    def create(self, session: WorkSession) -> None:
        """Append one session."""

    def get_by_item_id(self, item_id: str) -> list[WorkSession]:
        """Return sessions of an item in any order; callers sort by start time."""


class QuestionRepository(Protocol):
    """Store of blocking questions raised during execution."""

    def create(self, question: BlockedQuestion) -> None:
        """Persist one question."""

    def get_by_item_id(self, item_id: str) -> list[BlockedQuestion]:
        """Return questions of an item in creation order."""


class Clock(Protocol):
    """Time source used by gates and the scheduler."""

    def utc_now(self) -> datetime:
        """Current aware UTC time."""

    def local_now(self) -> datetime:
        """Current local wall-clock time."""
