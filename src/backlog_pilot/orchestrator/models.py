"""Domain models for backlog orchestration."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from types import MappingProxyType


class WorkItemStatus(str, Enum):
    """Lifecycle states of a backlog work item."""

    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETE = "complete"
    FAILED = "failed"


SCHEDULABLE_STATUSES = frozenset({WorkItemStatus.PENDING, WorkItemStatus.READY})


class TransformationType(str, Enum):
    """Ordered execution phases an item moves through."""

    INTERPRET = "interpret"
    PLAN = "plan"
    EXECUTE = "execute"
    REFINE = "refine"
    ASK_CLARIFICATION = "ask_clarification"
    FINALIZE = "finalize"


class SessionOutcome(str, Enum):
    """Recorded result of one execution session."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


class ExecutionOutcome(str, Enum):
    """Outcome reported by the reasoning collaborator for one execution."""

    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"
    NEEDS_MORE_CONTEXT = "needs_more_context"


class OrchestratorState(str, Enum):
    """Lifecycle states of the orchestrator loop."""

    STOPPED = "stopped"
    STARTING = "starting"
    IDLE = "idle"
    WORKING = "working"
    QUIET_HOURS = "quiet_hours"
    BUDGET_EXHAUSTED = "budget_exhausted"
    STOPPING = "stopping"


class FailureClass(str, Enum):
    """Normalized failure classes of reasoning agent runs."""

    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    OUTPUT_INVALID_JSON = "output_invalid_json"


class CycleStopReason(str, Enum):
    """Why a scheduling cycle ended before or after processing items."""

    DISABLED = "disabled"
    QUIET_HOURS = "quiet_hours"
    BUDGET_EXHAUSTED = "budget_exhausted"
    NO_READY_ITEMS = "no_ready_items"
    CANCELLED = "cancelled"
    FINISHED = "finished"


@dataclass(slots=True)
class WorkItem:
    """Unit of backlog work tracked by the orchestrator."""

    item_id: str
    title: str
    description: str
    status: WorkItemStatus
    created_at: datetime
    updated_at: datetime
    attempt_count: int = 0
    last_worked_at: datetime | None = None
    previous_status: WorkItemStatus | None = None
    error_message: str | None = None
    labels: tuple[str, ...] = ()
    external_url: str | None = None


@dataclass(frozen=True, slots=True)
class DependencyNode:
    """One graph node: an item and the identities it depends on."""

    item_id: str
    title: str = ""
    depends_on: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class DependencyGraph:
    """Immutable snapshot of the dependency graph keyed by item identity."""

    nodes: Mapping[str, DependencyNode] = field(
        default_factory=lambda: MappingProxyType({}),
    )

    @classmethod
    def from_edges(
        cls,
        edges: Mapping[str, frozenset[str] | set[str] | tuple[str, ...]],
        *,
        titles: Mapping[str, str] | None = None,
    ) -> DependencyGraph:
        """Build a graph from an ``item -> depends_on`` mapping."""

        titles = titles or {}
        nodes = {
            item_id: DependencyNode(
                item_id=item_id,
                title=titles.get(item_id, ""),
                depends_on=frozenset(depends_on),
            )
            for item_id, depends_on in edges.items()
        }
        return cls(nodes=MappingProxyType(nodes))

    def dependencies_of(self, item_id: str) -> frozenset[str]:
        node = self.nodes.get(item_id)
        if node is None:
            return frozenset()
        return node.depends_on


@dataclass(frozen=True, slots=True)
class WorkSession:
    """Immutable provenance record of one execution attempt."""

    session_id: str
    item_id: str
    transformation: TransformationType
    started_at: datetime
    outcome: SessionOutcome
    ended_at: datetime | None = None
    tokens_used: int = 0
    summary: str | None = None
    modified_files: tuple[str, ...] = ()
    error_message: str | None = None


@dataclass(slots=True)
class BlockedQuestion:
    """Question raised by the reasoning collaborator that blocks an item."""

    question_id: str
    item_id: str
    question: str
    created_at: datetime
    context: str | None = None
    answer: str | None = None
    answered_at: datetime | None = None

    @property
    def is_answered(self) -> bool:
        return self.answer is not None


@dataclass(slots=True)
class QuietHours:
    """Local wall-clock window during which no new work starts."""

    enabled: bool = False
    start: time = time(22, 0)
    end: time = time(7, 0)


@dataclass(slots=True)
class TokenBudget:
    """Daily token cap and its rolling counter."""

    enabled: bool = False
    daily_cap: int = 100_000
    used_today: int = 0
    last_reset_date: date | None = None

    @property
    def remaining(self) -> int:
        return max(0, self.daily_cap - self.used_today)


@dataclass(slots=True)
class OrchestratorSettings:
    """Persisted scheduling settings read fresh at every cycle."""

    enabled: bool = False
    interval_minutes: int = 5
    max_concurrent_items: int = 1
    max_retry_attempts: int = 3
    quiet_hours: QuietHours = field(default_factory=QuietHours)
    token_budget: TokenBudget = field(default_factory=TokenBudget)
    working_directory: str | None = None


@dataclass(slots=True)
class ExecutionContext:
    """Everything needed to render prompts for one execution."""

    item: WorkItem
    phase: TransformationType
    working_directory: str
    sessions: tuple[WorkSession, ...] = ()
    answered_questions: tuple[BlockedQuestion, ...] = ()
    additional_instructions: str | None = None


@dataclass(slots=True)
class ReasoningResult:
    """Structured result returned by a reasoning collaborator."""

    success: bool
    outcome: ExecutionOutcome
    summary: str | None = None
    modified_files: tuple[str, ...] = ()
    questions: tuple[str, ...] = ()
    tokens_used: int = 0
    error_message: str | None = None
    failure_class: FailureClass | None = None


@dataclass(slots=True)
class ExecutionResponse:
    """Pipeline result for one execution, with the persisted session."""

    phase: TransformationType
    success: bool
    outcome: ExecutionOutcome
    session: WorkSession
    summary: str | None = None
    modified_files: tuple[str, ...] = ()
    questions: tuple[str, ...] = ()
    tokens_used: int = 0
    error_message: str | None = None


@dataclass(slots=True)
class OrchestratorStats:
    """Session counters published by the orchestrator loop."""

    session_started_at: datetime | None = None
    items_completed: int = 0
    items_failed: int = 0
    items_blocked: int = 0
    tokens_this_session: int = 0
    tokens_today: int = 0
    remaining_budget: int | None = None
    current_item_id: str | None = None
    next_cycle_at: datetime | None = None
    cycles_run: int = 0
    cycles_skipped: int = 0


@dataclass(slots=True)
class ResolutionResult:
    """One consistent readiness snapshot of the backlog."""

    ready: list[WorkItem] = field(default_factory=list)
    blocked: list[WorkItem] = field(default_factory=list)
    cyclic: list[WorkItem] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)


@dataclass(slots=True)
class ItemRunSummary:
    """Resulting status of one item processed within a cycle."""

    item_id: str
    status: WorkItemStatus
    phase: TransformationType | None = None
    tokens_used: int = 0
    error_message: str | None = None


@dataclass(slots=True)
class CycleSummary:
    """Outcome of one scheduling cycle."""

    skipped: bool = False
    stop_reason: CycleStopReason | None = None
    items: list[ItemRunSummary] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.items)
