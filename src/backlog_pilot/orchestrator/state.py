"""Orchestrator lifecycle state machine and published statistics."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime

from backlog_pilot.orchestrator.models import OrchestratorState, OrchestratorStats

logger = logging.getLogger(__name__)

_GATED_STATES = frozenset(
    {
        OrchestratorState.IDLE,
        OrchestratorState.QUIET_HOURS,
        OrchestratorState.BUDGET_EXHAUSTED,
    },
)

ALLOWED_TRANSITIONS: dict[OrchestratorState, frozenset[OrchestratorState]] = {
    OrchestratorState.STOPPED: frozenset({OrchestratorState.STARTING}),
    OrchestratorState.STARTING: frozenset(
        {OrchestratorState.IDLE, OrchestratorState.STOPPING, OrchestratorState.STOPPED},
    ),
    OrchestratorState.IDLE: _GATED_STATES | {OrchestratorState.WORKING, OrchestratorState.STOPPING},
    OrchestratorState.QUIET_HOURS: _GATED_STATES
    | {OrchestratorState.WORKING, OrchestratorState.STOPPING},
    OrchestratorState.BUDGET_EXHAUSTED: _GATED_STATES
    | {OrchestratorState.WORKING, OrchestratorState.STOPPING},
    OrchestratorState.WORKING: frozenset({OrchestratorState.IDLE, OrchestratorState.STOPPING}),
    OrchestratorState.STOPPING: frozenset({OrchestratorState.STOPPED}),
}


class InvalidStateTransitionError(RuntimeError):
    """Raised by strict transitions that the table does not allow."""

    def __init__(self, current: OrchestratorState, target: OrchestratorState) -> None:
        super().__init__(f"Invalid orchestrator transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


class OrchestratorStateMachine:
    """Thread-safe holder of the orchestrator state and its statistics.

    Readers always receive copies; all writes go through the same lock.
    """

    def __init__(self, initial: OrchestratorState = OrchestratorState.STOPPED) -> None:
        self._lock = threading.Lock()
        self._state = initial
        self._stats = OrchestratorStats()

    @property
    def state(self) -> OrchestratorState:
        with self._lock:
            return self._state

    def is_running(self) -> bool:
        return self.state not in (OrchestratorState.STOPPED, OrchestratorState.STOPPING)

    def transition(self, target: OrchestratorState, *, strict: bool = False) -> bool:
        """Move to ``target`` if allowed. Returns whether the state changed.

        Disallowed requests are logged and ignored unless ``strict`` is set.
        """

        with self._lock:
            current = self._state
            if current == target:
                return False
            if target not in ALLOWED_TRANSITIONS[current]:
                if strict:
                    raise InvalidStateTransitionError(current, target)
                logger.warning(
                    "Ignoring invalid orchestrator transition %s -> %s",
                    current.value,
                    target.value,
                )
                return False
            self._state = target
        logger.info("Orchestrator state %s -> %s", current.value, target.value)
        return True

    def force(self, target: OrchestratorState) -> None:
        """Set the state unconditionally; used to guarantee terminal states."""

        with self._lock:
            current = self._state
            self._state = target
        if current != target:
            logger.info("Orchestrator state %s -> %s (forced)", current.value, target.value)

    def stats(self) -> OrchestratorStats:
        with self._lock:
            return replace(self._stats)

    def reset_stats(self, started_at: datetime) -> None:
        with self._lock:
            self._stats = OrchestratorStats(session_started_at=started_at)

    def update_stats(self, mutate: Callable[[OrchestratorStats], None]) -> None:
        with self._lock:
            mutate(self._stats)
