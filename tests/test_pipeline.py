from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import allure
import pytest
from conftest import BASE_TIME, ScriptedBackend, blocked, completed, failed

from backlog_pilot.orchestrator.backend import BackendRunError
from backlog_pilot.orchestrator.cancellation import CancellationToken
from backlog_pilot.orchestrator.models import (
    BlockedQuestion,
    ExecutionOutcome,
    ReasoningResult,
    SessionOutcome,
    TransformationType,
    WorkSession,
)
from backlog_pilot.orchestrator.pipeline import select_next_phase

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Transformation Pipeline"),
]


def _session(
    phase: TransformationType,
    outcome: SessionOutcome,
    *,
    minute: int = 0,
) -> WorkSession:
    return WorkSession(
        session_id=f"s-{phase.value}-{minute}",
        item_id="item",
        transformation=phase,
        started_at=BASE_TIME + timedelta(minutes=minute),
        outcome=outcome,
    )


def _question(*, answer: str | None = None) -> BlockedQuestion:
    return BlockedQuestion(
        question_id="q-1",
        item_id="item",
        question="Which database?",
        created_at=BASE_TIME,
        answer=answer,
    )


def test_first_phase_is_interpret() -> None:
    assert select_next_phase([], []) == TransformationType.INTERPRET


@pytest.mark.parametrize(
    ("last_phase", "expected"),
    [
        (TransformationType.INTERPRET, TransformationType.PLAN),
        (TransformationType.PLAN, TransformationType.EXECUTE),
        (TransformationType.EXECUTE, TransformationType.FINALIZE),
        (TransformationType.REFINE, TransformationType.FINALIZE),
        (TransformationType.ASK_CLARIFICATION, TransformationType.FINALIZE),
        (TransformationType.FINALIZE, TransformationType.FINALIZE),
    ],
)
def test_completed_phase_advances(
    last_phase: TransformationType,
    expected: TransformationType,
) -> None:
    sessions = [_session(last_phase, SessionOutcome.COMPLETED)]

    assert select_next_phase(sessions, []) == expected


def test_only_last_session_matters() -> None:
    sessions = [
        _session(TransformationType.INTERPRET, SessionOutcome.FAILED, minute=0),
        _session(TransformationType.REFINE, SessionOutcome.COMPLETED, minute=1),
        _session(TransformationType.PLAN, SessionOutcome.COMPLETED, minute=2),
    ]

    assert select_next_phase(sessions, []) == TransformationType.EXECUTE


def test_blocked_and_failed_sessions() -> None:
    blocked_history = [_session(TransformationType.PLAN, SessionOutcome.BLOCKED)]
    failed_history = [_session(TransformationType.EXECUTE, SessionOutcome.FAILED)]

    assert select_next_phase(blocked_history, []) == TransformationType.ASK_CLARIFICATION
    assert select_next_phase(failed_history, []) == TransformationType.REFINE


def test_in_progress_session_repeats_its_phase() -> None:
    sessions = [_session(TransformationType.PLAN, SessionOutcome.IN_PROGRESS)]

    assert select_next_phase(sessions, []) == TransformationType.PLAN


def test_unanswered_question_forces_clarification() -> None:
    sessions = [_session(TransformationType.PLAN, SessionOutcome.COMPLETED)]

    assert select_next_phase(sessions, [_question()]) == TransformationType.ASK_CLARIFICATION
    assert (
        select_next_phase(sessions, [_question(answer="Postgres")]) == TransformationType.EXECUTE
    )


def test_build_context_collects_history_and_answers(backlog) -> None:
    backlog.add_item("item")
    backlog.sessions.create(_session(TransformationType.INTERPRET, SessionOutcome.COMPLETED))
    backlog.questions.create(_question(answer="Postgres"))
    backlog.questions.create(
        BlockedQuestion(
            question_id="q-2",
            item_id="item",
            question="Open question",
            created_at=BASE_TIME,
        ),
    )
    pipeline = backlog.pipeline(ScriptedBackend())

    context = pipeline.build_context(
        "item",
        TransformationType.PLAN,
        additional_instructions="Keep it short.",
    )

    assert context is not None
    assert context.item.item_id == "item"
    assert context.phase == TransformationType.PLAN
    assert context.working_directory == "/work"
    assert len(context.sessions) == 1
    assert [question.question_id for question in context.answered_questions] == ["q-1"]
    assert context.additional_instructions == "Keep it short."


def test_build_context_for_missing_item(backlog) -> None:
    pipeline = backlog.pipeline(ScriptedBackend())

    assert pipeline.build_context("ghost", TransformationType.INTERPRET) is None


def test_working_directory_falls_back_to_default(backlog, tmp_path: Path) -> None:
    backlog.add_item("item")
    pipeline = backlog.pipeline(ScriptedBackend(), working_directory=None)
    pipeline.default_working_directory = tmp_path

    context = pipeline.build_context("item", TransformationType.INTERPRET)

    assert context is not None
    assert context.working_directory == str(tmp_path)


def test_execute_records_session_and_counts_attempt(backlog) -> None:
    backlog.add_item("item")
    backend = ScriptedBackend([completed(tokens=42, summary="understood")])
    pipeline = backlog.pipeline(backend)
    context = pipeline.build_context("item", TransformationType.INTERPRET)
    assert context is not None
    token = CancellationToken()

    response = pipeline.execute(context, token)

    assert response.success is True
    assert response.outcome == ExecutionOutcome.COMPLETED
    assert response.tokens_used == 42
    assert response.session.outcome == SessionOutcome.COMPLETED
    assert response.session.summary == "understood"
    assert backlog.sessions.sessions == [response.session]
    item = backlog.item("item")
    assert item.attempt_count == 1
    assert item.last_worked_at == BASE_TIME

    request = backend.requests[0]
    assert request.item_id == "item"
    assert request.phase == "interpret"
    assert request.cancellation is token
    assert request.working_directory == Path("/work")
    assert "PHASE: Interpret" in request.system_prompt
    assert "# Work item: Item item" in request.user_prompt


def test_execute_blocked_creates_questions(backlog) -> None:
    backlog.add_item("item")
    pipeline = backlog.pipeline(ScriptedBackend([blocked("Which API?", "Which region?")]))
    context = pipeline.build_context("item", TransformationType.PLAN)
    assert context is not None

    response = pipeline.execute(context)

    assert response.outcome == ExecutionOutcome.BLOCKED
    assert response.session.outcome == SessionOutcome.BLOCKED
    questions = backlog.questions.get_by_item_id("item")
    assert [question.question for question in questions] == ["Which API?", "Which region?"]
    assert all(question.context == "need input" for question in questions)
    assert not any(question.is_answered for question in questions)


def test_execute_needs_more_context_is_a_blocked_session(backlog) -> None:
    backlog.add_item("item")
    result = ReasoningResult(
        success=True,
        outcome=ExecutionOutcome.NEEDS_MORE_CONTEXT,
        summary="missing context",
    )
    pipeline = backlog.pipeline(ScriptedBackend([result]))
    context = pipeline.build_context("item", TransformationType.PLAN)
    assert context is not None

    response = pipeline.execute(context)

    assert response.outcome == ExecutionOutcome.NEEDS_MORE_CONTEXT
    assert response.session.outcome == SessionOutcome.BLOCKED
    assert backlog.questions.questions == []


def test_execute_failed_result(backlog) -> None:
    backlog.add_item("item")
    pipeline = backlog.pipeline(ScriptedBackend([failed(message="tests are red")]))
    context = pipeline.build_context("item", TransformationType.EXECUTE)
    assert context is not None

    response = pipeline.execute(context)

    assert response.success is False
    assert response.error_message == "tests are red"
    assert response.session.outcome == SessionOutcome.FAILED
    assert backlog.item("item").attempt_count == 1


def test_execute_backend_exception_becomes_failed_session(backlog) -> None:
    backlog.add_item("item")
    pipeline = backlog.pipeline(ScriptedBackend([RuntimeError("agent crashed")]))
    context = pipeline.build_context("item", TransformationType.INTERPRET)
    assert context is not None

    response = pipeline.execute(context)

    assert response.success is False
    assert response.outcome == ExecutionOutcome.FAILED
    assert response.error_message == "agent crashed"
    assert response.session.outcome == SessionOutcome.FAILED
    assert len(backlog.sessions.sessions) == 1
    assert backlog.item("item").attempt_count == 1


def test_next_phase_follows_persisted_history(backlog) -> None:
    backlog.add_item("item")
    pipeline = backlog.pipeline(ScriptedBackend())

    for expected in (
        TransformationType.INTERPRET,
        TransformationType.PLAN,
        TransformationType.EXECUTE,
        TransformationType.FINALIZE,
    ):
        phase = pipeline.next_phase("item")
        assert phase == expected
        context = pipeline.build_context("item", phase)
        assert context is not None
        pipeline.execute(context)


class _NewestFirstSessions:
    def __init__(self, sessions: list[WorkSession]) -> None:
        self.sessions = sessions

    def create(self, session: WorkSession) -> None:
        self.sessions.append(session)

    def get_by_item_id(self, item_id: str) -> list[WorkSession]:
        matching = [session for session in self.sessions if session.item_id == item_id]
        return sorted(matching, key=lambda session: session.started_at, reverse=True)


def test_history_is_ordered_by_start_time(backlog) -> None:
    backlog.add_item("item")
    backlog.sessions = _NewestFirstSessions(
        [
            _session(TransformationType.INTERPRET, SessionOutcome.COMPLETED, minute=1),
            _session(TransformationType.PLAN, SessionOutcome.COMPLETED, minute=2),
        ],
    )
    pipeline = backlog.pipeline(ScriptedBackend())

    assert pipeline.next_phase("item") == TransformationType.EXECUTE
    context = pipeline.build_context("item", TransformationType.EXECUTE)
    assert context is not None
    assert [session.transformation for session in context.sessions] == [
        TransformationType.INTERPRET,
        TransformationType.PLAN,
    ]


def test_execute_records_backend_error_kind(backlog) -> None:
    backlog.add_item("item")
    error = BackendRunError("agent exited with code 75", transient=True)
    pipeline = backlog.pipeline(ScriptedBackend([error]))
    context = pipeline.build_context("item", TransformationType.INTERPRET)
    assert context is not None

    response = pipeline.execute(context)

    assert response.error_message == "transient backend error: agent exited with code 75"
    assert response.session.error_message == response.error_message


def test_prompt_rendering_failure_still_records_session(backlog, monkeypatch) -> None:
    backlog.add_item("item")
    backend = ScriptedBackend()
    pipeline = backlog.pipeline(backend)
    context = pipeline.build_context("item", TransformationType.PLAN)
    assert context is not None

    def broken_render(_context):
        raise KeyError("template")

    monkeypatch.setattr(
        "backlog_pilot.orchestrator.pipeline.render_user_prompt",
        broken_render,
    )

    response = pipeline.execute(context)

    assert response.success is False
    assert response.session.outcome == SessionOutcome.FAILED
    assert len(backlog.sessions.sessions) == 1
    assert backend.requests == []
    assert backlog.item("item").attempt_count == 1
