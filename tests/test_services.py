from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from backlog_pilot.orchestrator.models import BlockedQuestion, WorkItemStatus
from backlog_pilot.orchestrator.repository import BacklogDatabase
from backlog_pilot.orchestrator.services import BacklogService, NewWorkItem

pytestmark = [
    allure.epic("Backlog Management"),
    allure.feature("Items, Dependencies, Questions"),
]


@pytest.fixture()
def database(tmp_path: Path):
    database = BacklogDatabase(tmp_path / "backlog.db")
    database.init_schema()
    yield database
    database.close()


def _block(database: BacklogDatabase, item_id: str, *questions: str) -> list[str]:
    item = database.work_items.get_by_id(item_id)
    assert item is not None
    database.work_items.update(
        replace(item, status=WorkItemStatus.BLOCKED, previous_status=WorkItemStatus.PENDING),
    )
    question_ids = []
    for index, text in enumerate(questions):
        question_id = f"{item_id}-q{index}"
        database.questions.create(
            BlockedQuestion(
                question_id=question_id,
                item_id=item_id,
                question=text,
                created_at=datetime(2026, 3, 2, 10, index, tzinfo=UTC),
            ),
        )
        question_ids.append(question_id)
    return question_ids


def test_add_item_with_dependencies(database: BacklogDatabase) -> None:
    service = BacklogService(database)

    first = service.add_item(NewWorkItem(title="  Set up schema  "))
    second = service.add_item(
        NewWorkItem(
            title="Add API",
            description="REST endpoints",
            labels=("api", " "),
            depends_on=(first.item_id,),
        ),
    )

    assert first.title == "Set up schema"
    assert first.status == WorkItemStatus.PENDING
    assert second.labels == ("api",)
    graph = database.graph.load_graph()
    assert graph.dependencies_of(second.item_id) == frozenset({first.item_id})


def test_add_item_rejects_empty_title_and_unknown_dependency(database: BacklogDatabase) -> None:
    service = BacklogService(database)

    with pytest.raises(ValueError, match="title must not be empty"):
        service.add_item(NewWorkItem(title="   "))
    with pytest.raises(ValueError, match="Work item not found: ghost"):
        service.add_item(NewWorkItem(title="x", depends_on=("ghost",)))
    assert database.work_items.get_all() == []


def test_add_dependency_requires_both_items(database: BacklogDatabase) -> None:
    service = BacklogService(database)
    item = service.add_item(NewWorkItem(title="a"))
    other = service.add_item(NewWorkItem(title="b"))

    assert service.add_dependency(item_id=item.item_id, depends_on_id=other.item_id) is True
    assert service.add_dependency(item_id=item.item_id, depends_on_id=other.item_id) is False
    with pytest.raises(ValueError, match="Work item not found"):
        service.add_dependency(item_id=item.item_id, depends_on_id="ghost")


def test_answering_last_question_unblocks_item(database: BacklogDatabase) -> None:
    service = BacklogService(database)
    item = service.add_item(NewWorkItem(title="a"))
    first_id, second_id = _block(database, item.item_id, "Which API?", "Which region?")

    partial = service.answer_question(question_id=first_id, answer="REST")

    assert partial.unblocked is False
    assert partial.question.answer == "REST"
    assert database.work_items.get_by_id(item.item_id).status == WorkItemStatus.BLOCKED

    final = service.answer_question(question_id=second_id, answer="eu-west-1")

    assert final.unblocked is True
    stored = database.work_items.get_by_id(item.item_id)
    assert stored.status == WorkItemStatus.PENDING
    assert stored.previous_status is None


def test_unblock_falls_back_to_ready(database: BacklogDatabase) -> None:
    service = BacklogService(database)
    item = service.add_item(NewWorkItem(title="a"))
    (question_id,) = _block(database, item.item_id, "Why?")
    blocked = database.work_items.get_by_id(item.item_id)
    database.work_items.update(replace(blocked, previous_status=WorkItemStatus.IN_PROGRESS))

    result = service.answer_question(question_id=question_id, answer="Because")

    assert result.unblocked is True
    assert result.item.status == WorkItemStatus.READY


def test_answer_validation(database: BacklogDatabase) -> None:
    service = BacklogService(database)

    with pytest.raises(ValueError, match="Answer must not be empty"):
        service.answer_question(question_id="q", answer="  ")
    with pytest.raises(ValueError, match="Question not found: q"):
        service.answer_question(question_id="q", answer="yes")
