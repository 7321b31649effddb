"""Host-side use cases: editing the backlog and answering blocking questions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from uuid import uuid4

from backlog_pilot.orchestrator.models import BlockedQuestion, WorkItem, WorkItemStatus
from backlog_pilot.orchestrator.repository import BacklogDatabase
from backlog_pilot.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class NewWorkItem:
    """High-level command to add one backlog item."""

    title: str
    description: str = ""
    labels: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()
    external_url: str | None = None


@dataclass(slots=True)
class AnswerResult:
    """Outcome of answering a question."""

    question: BlockedQuestion
    item: WorkItem | None
    unblocked: bool


class BacklogService:
    """Coordinates backlog edits that span several repositories."""

    def __init__(self, database: BacklogDatabase) -> None:
        self.database = database

    def add_item(self, command: NewWorkItem) -> WorkItem:
        title = command.title.strip()
        if not title:
            raise ValueError("Work item title must not be empty.")
        for dependency_id in command.depends_on:
            self._require_item(dependency_id)

        now = utc_now()
        item = self.database.work_items.add(
            WorkItem(
                item_id=str(uuid4()),
                title=title,
                description=command.description.strip(),
                status=WorkItemStatus.PENDING,
                created_at=now,
                updated_at=now,
                labels=tuple(label.strip() for label in command.labels if label.strip()),
                external_url=command.external_url,
            ),
        )
        for dependency_id in command.depends_on:
            self.database.graph.add_dependency(item_id=item.item_id, depends_on_id=dependency_id)
        logger.info("Added work item %s (%s)", item.item_id, item.title)
        return item

    def add_dependency(self, *, item_id: str, depends_on_id: str) -> bool:
        """Record that ``item_id`` depends on ``depends_on_id``.

        Both items must exist. Edges that close a cycle are accepted and show up
        as cyclic in dependency resolution.
        """

        self._require_item(item_id)
        self._require_item(depends_on_id)
        return self.database.graph.add_dependency(item_id=item_id, depends_on_id=depends_on_id)

    def answer_question(self, *, question_id: str, answer: str) -> AnswerResult:
        """Store an answer and unblock the item once nothing is left unanswered.

        An unblocked item returns to the status it had before it was blocked,
        or to ready when that status is unknown or no longer schedulable.
        """

        text = answer.strip()
        if not text:
            raise ValueError("Answer must not be empty.")
        question = self.database.questions.get_by_id(question_id)
        if question is None:
            raise ValueError(f"Question not found: {question_id}")

        self.database.questions.answer(question_id=question_id, answer=text, answered_at=utc_now())
        answered = self.database.questions.get_by_id(question_id) or question

        item = self.database.work_items.get_by_id(question.item_id)
        if item is None or item.status != WorkItemStatus.BLOCKED:
            return AnswerResult(question=answered, item=item, unblocked=False)

        remaining = [
            pending
            for pending in self.database.questions.get_by_item_id(item.item_id)
            if not pending.is_answered
        ]
        if remaining:
            return AnswerResult(question=answered, item=item, unblocked=False)

        restored = item.previous_status
        if restored not in (WorkItemStatus.PENDING, WorkItemStatus.READY):
            restored = WorkItemStatus.READY
        unblocked = replace(item, status=restored, previous_status=None, updated_at=utc_now())
        self.database.work_items.update(unblocked)
        logger.info("Work item %s unblocked -> %s", item.item_id, restored.value)
        return AnswerResult(question=answered, item=unblocked, unblocked=True)

    def _require_item(self, item_id: str) -> WorkItem:
        item = self.database.work_items.get_by_id(item_id)
        if item is None:
            raise ValueError(f"Work item not found: {item_id}")
        return item
