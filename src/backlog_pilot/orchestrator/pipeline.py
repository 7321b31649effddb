"""Transformation pipeline: phase selection and single-phase execution."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Sequence
from dataclasses import replace
from pathlib import Path
from uuid import uuid4

from backlog_pilot.orchestrator.backend.base import (
    BackendRunError,
    ReasoningBackend,
    ReasoningRequest,
)
from backlog_pilot.orchestrator.cancellation import CancellationToken
from backlog_pilot.orchestrator.gates import SystemClock
from backlog_pilot.orchestrator.models import (
    BlockedQuestion,
    ExecutionContext,
    ExecutionOutcome,
    ExecutionResponse,
    SessionOutcome,
    TransformationType,
    WorkSession,
)
from backlog_pilot.orchestrator.ports import (
    Clock,
    QuestionRepository,
    SessionRepository,
    SettingsRepository,
    WorkItemRepository,
)
from backlog_pilot.orchestrator.prompts import render_system_prompt, render_user_prompt

logger = logging.getLogger(__name__)

_PROGRESSION: dict[TransformationType, TransformationType] = {
    TransformationType.INTERPRET: TransformationType.PLAN,
    TransformationType.PLAN: TransformationType.EXECUTE,
    TransformationType.EXECUTE: TransformationType.FINALIZE,
    TransformationType.REFINE: TransformationType.FINALIZE,
    TransformationType.ASK_CLARIFICATION: TransformationType.FINALIZE,
    TransformationType.FINALIZE: TransformationType.FINALIZE,
}

_SESSION_OUTCOMES: dict[ExecutionOutcome, SessionOutcome] = {
    ExecutionOutcome.COMPLETED: SessionOutcome.COMPLETED,
    ExecutionOutcome.BLOCKED: SessionOutcome.BLOCKED,
    ExecutionOutcome.NEEDS_MORE_CONTEXT: SessionOutcome.BLOCKED,
    ExecutionOutcome.FAILED: SessionOutcome.FAILED,
}


def select_next_phase(
    sessions: Sequence[WorkSession],
    questions: Sequence[BlockedQuestion],
) -> TransformationType:
    """Pick the next phase from ordered session history and open questions."""

    if not sessions:
        return TransformationType.INTERPRET
    if any(not question.is_answered for question in questions):
        return TransformationType.ASK_CLARIFICATION

    last = sessions[-1]
    if last.outcome == SessionOutcome.COMPLETED:
        return _PROGRESSION[last.transformation]
    if last.outcome == SessionOutcome.BLOCKED:
        return TransformationType.ASK_CLARIFICATION
    if last.outcome == SessionOutcome.FAILED:
        return TransformationType.REFINE
    return last.transformation


def _error_text(error: Exception) -> str:
    message = str(error) or type(error).__name__
    if isinstance(error, BackendRunError):
        kind = "transient" if error.transient else "permanent"
        return f"{kind} backend error: {message}"
    return message


class TransformationPipeline:
    """Drive one work item through one phase per call."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        work_items: WorkItemRepository,
        sessions: SessionRepository,
        questions: QuestionRepository,
        settings: SettingsRepository,
        backend: ReasoningBackend,
        clock: Clock | None = None,
        default_working_directory: Path | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.work_items = work_items
        self.sessions = sessions
        self.questions = questions
        self.settings = settings
        self.backend = backend
        self.clock = clock or SystemClock()
        self.default_working_directory = default_working_directory
        self._new_id = id_factory or (lambda: str(uuid4()))

    def next_phase(self, item_id: str) -> TransformationType:
        return select_next_phase(
            self._history(item_id),
            self.questions.get_by_item_id(item_id),
        )

    def build_context(
        self,
        item_id: str,
        phase: TransformationType,
        *,
        additional_instructions: str | None = None,
    ) -> ExecutionContext | None:
        """Aggregate the item, its history and answered questions; None if missing."""

        item = self.work_items.get_by_id(item_id)
        if item is None:
            logger.warning("Cannot build execution context: work item %s not found", item_id)
            return None
        return ExecutionContext(
            item=item,
            phase=phase,
            working_directory=self._working_directory(),
            sessions=tuple(self._history(item_id)),
            answered_questions=tuple(
                question
                for question in self.questions.get_by_item_id(item_id)
                if question.is_answered
            ),
            additional_instructions=additional_instructions,
        )

    def execute(
        self,
        context: ExecutionContext,
        cancellation: CancellationToken | None = None,
    ) -> ExecutionResponse:
        """Run one phase and persist exactly one session for it.

        Exceptions raised by the backend are recorded as a failed session and
        returned as a failed response.
        """

        item = context.item
        phase = context.phase
        started_at = self.clock.utc_now()
        logger.info("Executing %s for work item %s (%s)", phase.value, item.item_id, item.title)

        try:
            request = ReasoningRequest(
                system_prompt=render_system_prompt(phase, context.working_directory),
                user_prompt=render_user_prompt(context),
                working_directory=Path(context.working_directory),
                item_id=item.item_id,
                phase=phase.value,
                cancellation=cancellation,
            )
            result = self.backend.execute_prompt(request)
        except Exception as error:
            logger.exception("Reasoning backend raised for work item %s", item.item_id)
            session = self._record_session(
                item_id=item.item_id,
                phase=phase,
                started_at=started_at,
                outcome=SessionOutcome.FAILED,
                error_message=_error_text(error),
            )
            self._touch_item(item.item_id)
            return ExecutionResponse(
                phase=phase,
                success=False,
                outcome=ExecutionOutcome.FAILED,
                session=session,
                error_message=session.error_message,
            )

        session = self._record_session(
            item_id=item.item_id,
            phase=phase,
            started_at=started_at,
            outcome=_SESSION_OUTCOMES[result.outcome],
            tokens_used=result.tokens_used,
            summary=result.summary,
            modified_files=result.modified_files,
            error_message=result.error_message,
        )
        if result.outcome == ExecutionOutcome.BLOCKED:
            for text in result.questions:
                self.questions.create(
                    BlockedQuestion(
                        question_id=self._new_id(),
                        item_id=item.item_id,
                        question=text,
                        context=result.summary,
                        created_at=self.clock.utc_now(),
                    ),
                )
        self._touch_item(item.item_id)

        logger.info(
            "Work item %s %s -> %s (tokens=%d)",
            item.item_id,
            phase.value,
            result.outcome.value,
            result.tokens_used,
        )
        return ExecutionResponse(
            phase=phase,
            success=result.success,
            outcome=result.outcome,
            session=session,
            summary=result.summary,
            modified_files=result.modified_files,
            questions=result.questions,
            tokens_used=result.tokens_used,
            error_message=result.error_message,
        )

    def _history(self, item_id: str) -> list[WorkSession]:
        sessions = self.sessions.get_by_item_id(item_id)
        return sorted(sessions, key=lambda session: session.started_at)

    def _record_session(  # noqa: PLR0913
        self,
        *,
        item_id: str,
        phase: TransformationType,
        started_at,
        outcome: SessionOutcome,
        tokens_used: int = 0,
        summary: str | None = None,
        modified_files: tuple[str, ...] = (),
        error_message: str | None = None,
    ) -> WorkSession:
        session = WorkSession(
            session_id=self._new_id(),
            item_id=item_id,
            transformation=phase,
            started_at=started_at,
            ended_at=self.clock.utc_now(),
            outcome=outcome,
            tokens_used=tokens_used,
            summary=summary,
            modified_files=modified_files,
            error_message=error_message,
        )
        self.sessions.create(session)
        return session

    def _touch_item(self, item_id: str) -> None:
        current = self.work_items.get_by_id(item_id)
        if current is None:
            return
        now = self.clock.utc_now()
        self.work_items.update(
            replace(
                current,
                attempt_count=current.attempt_count + 1,
                last_worked_at=now,
                updated_at=now,
            ),
        )

    def _working_directory(self) -> str:
        configured = self.settings.get().working_directory
        if configured:
            return configured
        if self.default_working_directory is not None:
            return str(self.default_working_directory)
        return os.getcwd()
