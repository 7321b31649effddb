from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from backlog_pilot.orchestrator.models import (
    BlockedQuestion,
    ExecutionContext,
    SessionOutcome,
    TransformationType,
    WorkItem,
    WorkItemStatus,
    WorkSession,
)
from backlog_pilot.orchestrator.prompts import (
    PHASE_INSTRUCTIONS,
    RESPONSE_CONTRACT,
    render_system_prompt,
    render_user_prompt,
)

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Prompt Rendering"),
]

NOW = datetime(2026, 3, 2, 14, 5, tzinfo=UTC)


def _item(**kwargs) -> WorkItem:
    return WorkItem(
        item_id="item-1",
        title="Add login page",
        description="Users sign in with email.",
        status=WorkItemStatus.IN_PROGRESS,
        created_at=NOW,
        updated_at=NOW,
        **kwargs,
    )


def test_every_phase_has_instructions() -> None:
    assert set(PHASE_INSTRUCTIONS) == set(TransformationType)


@pytest.mark.parametrize("phase", list(TransformationType))
def test_system_prompt_contains_contract_and_phase(phase: TransformationType) -> None:
    prompt = render_system_prompt(phase, "/srv/app")

    assert "Working directory: /srv/app" in prompt
    assert RESPONSE_CONTRACT in prompt
    assert PHASE_INSTRUCTIONS[phase] in prompt


def test_user_prompt_for_fresh_item() -> None:
    context = ExecutionContext(
        item=_item(),
        phase=TransformationType.INTERPRET,
        working_directory="/srv/app",
    )

    prompt = render_user_prompt(context)

    assert prompt.startswith("# Work item: Add login page")
    assert "Users sign in with email." in prompt
    assert "## Previous sessions" not in prompt
    assert "## Answered questions" not in prompt


def test_user_prompt_includes_history_answers_and_instructions() -> None:
    context = ExecutionContext(
        item=_item(labels=("frontend",), external_url="https://tracker.example/42"),
        phase=TransformationType.EXECUTE,
        working_directory="/srv/app",
        sessions=(
            WorkSession(
                session_id="s-1",
                item_id="item-1",
                transformation=TransformationType.PLAN,
                started_at=NOW,
                outcome=SessionOutcome.COMPLETED,
                summary="Three steps planned",
                modified_files=("docs/plan.md",),
            ),
        ),
        answered_questions=(
            BlockedQuestion(
                question_id="q-1",
                item_id="item-1",
                question="OAuth too?",
                created_at=NOW,
                answer="No",
            ),
        ),
        additional_instructions="Do not touch the CSS.",
    )

    prompt = render_user_prompt(context)

    assert "## Labels: frontend" in prompt
    assert "## Reference: https://tracker.example/42" in prompt
    assert "- [2026-03-02 14:05] plan -> completed: Three steps planned" in prompt
    assert "  Modified: docs/plan.md" in prompt
    assert "Q: OAuth too?\nA: No" in prompt
    assert "## Additional instructions\nDo not touch the CSS." in prompt
