"""Backend interface for reasoning collaborators."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from backlog_pilot.orchestrator.cancellation import CancellationToken
from backlog_pilot.orchestrator.models import ReasoningResult


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class ReasoningRequest:
    """Inputs required to run one phase of one work item."""

    system_prompt: str
    user_prompt: str
    working_directory: Path
    item_id: str = ""
    phase: str = ""
    cancellation: CancellationToken | None = None


class ReasoningBackend(Protocol):
    """Protocol implemented by reasoning collaborators."""

    def execute_prompt(self, request: ReasoningRequest) -> ReasoningResult:
        """Run the prompts and return a structured result."""
