"""Reasoning backend implementations."""

from backlog_pilot.orchestrator.backend.base import (
    BackendRunError,
    ReasoningBackend,
    ReasoningRequest,
)
from backlog_pilot.orchestrator.backend.cli_backend import CliAgentBackend

__all__ = [
    "BackendRunError",
    "CliAgentBackend",
    "ReasoningBackend",
    "ReasoningRequest",
]
