"""Dependency resolution: readiness, cycle detection and dependency chains."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass

from backlog_pilot.orchestrator.models import (
    SCHEDULABLE_STATUSES,
    DependencyGraph,
    ResolutionResult,
    WorkItem,
    WorkItemStatus,
)
from backlog_pilot.orchestrator.ports import GraphStore, WorkItemRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Snapshot:
    graph: DependencyGraph
    items: list[WorkItem]
    statuses: dict[str, WorkItemStatus]
    cycles: list[list[str]]
    cyclic_ids: frozenset[str]


class DependencyResolver:
    """Partition the backlog into ready, blocked and cyclic items.

    An item is ready when its status is pending or ready, it is not part of a
    dependency cycle, and every identity it depends on refers to a complete
    item. Dependencies on unknown identities are never satisfied. Items that
    have no node in the graph have no dependencies.
    """

    def __init__(self, *, graph_store: GraphStore, work_items: WorkItemRepository) -> None:
        self.graph_store = graph_store
        self.work_items = work_items

    def get_ready_items(self) -> list[WorkItem]:
        """Ready items, oldest first."""

        return self._categorize(self._load()).ready

    def is_ready(self, item_id: str) -> bool:
        """Check one identity against the current graph.

        Absent from the graph means no dependencies and therefore ready. The
        item's own status is not consulted here.
        """

        graph = self.graph_store.load_graph()
        node = graph.nodes.get(item_id)
        if node is None:
            return True

        cycles = find_cycles(graph)
        if any(item_id in cycle for cycle in cycles):
            return False

        statuses = {item.item_id: item.status for item in self.work_items.get_all()}
        return all(
            statuses.get(dependency_id) == WorkItemStatus.COMPLETE
            for dependency_id in node.depends_on
        )

    def detect_cycles(self) -> list[list[str]]:
        return find_cycles(self.graph_store.load_graph())

    def get_dependency_chain(self, item_id: str) -> list[str]:
        """Transitive dependencies of ``item_id``, deepest first.

        If C depends on B and B depends on A, the chain of C is ``[A, B]``.
        """

        graph = self.graph_store.load_graph()
        return dependency_chain(graph, item_id)

    def resolve(self) -> ResolutionResult:
        """Full categorization computed from a single graph and item load."""

        snapshot = self._load()
        result = self._categorize(snapshot)
        result.cycles = [list(cycle) for cycle in snapshot.cycles]
        if result.cycles:
            logger.warning(
                "Dependency cycles detected: %s",
                "; ".join(" -> ".join(cycle) for cycle in result.cycles),
            )
        return result

    def _load(self) -> _Snapshot:
        graph = self.graph_store.load_graph()
        items = self.work_items.get_all()
        cycles = find_cycles(graph)
        return _Snapshot(
            graph=graph,
            items=items,
            statuses={item.item_id: item.status for item in items},
            cycles=cycles,
            cyclic_ids=frozenset(item_id for cycle in cycles for item_id in cycle),
        )

    @staticmethod
    def _categorize(snapshot: _Snapshot) -> ResolutionResult:
        result = ResolutionResult()
        for item in snapshot.items:
            if item.status not in SCHEDULABLE_STATUSES:
                continue
            if item.item_id in snapshot.cyclic_ids:
                result.cyclic.append(item)
                continue
            dependencies = snapshot.graph.dependencies_of(item.item_id)
            if all(
                snapshot.statuses.get(dependency_id) == WorkItemStatus.COMPLETE
                for dependency_id in dependencies
            ):
                result.ready.append(item)
            else:
                result.blocked.append(item)

        result.ready.sort(key=lambda item: item.created_at)
        return result


def find_cycles(graph: DependencyGraph) -> list[list[str]]:
    """Return every dependency cycle using Tarjan's strongly connected components.

    A component is a cycle when it has more than one member or its single member
    depends on itself. Edges to identities without a graph node are ignored.
    Runs in O(V + E) with an explicit stack, so graph depth is not bounded by
    the interpreter recursion limit.
    """

    index_of: dict[str, int] = {}
    low_link: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    cycles: list[list[str]] = []
    next_index = 0

    for root in graph.nodes:
        if root in index_of:
            continue

        index_of[root] = low_link[root] = next_index
        next_index += 1
        stack.append(root)
        on_stack.add(root)
        work: list[tuple[str, Iterator[str]]] = [(root, _successors(graph, root))]

        while work:
            node_id, successors = work[-1]
            descended = False
            for successor in successors:
                if successor not in index_of:
                    index_of[successor] = low_link[successor] = next_index
                    next_index += 1
                    stack.append(successor)
                    on_stack.add(successor)
                    work.append((successor, _successors(graph, successor)))
                    descended = True
                    break
                if successor in on_stack:
                    low_link[node_id] = min(low_link[node_id], index_of[successor])
            if descended:
                continue

            work.pop()
            if work:
                parent_id = work[-1][0]
                low_link[parent_id] = min(low_link[parent_id], low_link[node_id])

            if low_link[node_id] != index_of[node_id]:
                continue
            component: list[str] = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node_id:
                    break
            if len(component) > 1 or node_id in graph.dependencies_of(node_id):
                cycles.append(component)

    return cycles


def dependency_chain(graph: DependencyGraph, item_id: str) -> list[str]:
    """Depth-first transitive dependencies in reverse topological order."""

    chain: list[str] = []
    visited: set[str] = {item_id}
    work: list[tuple[str, Iterator[str]]] = [(item_id, iter(_sorted_dependencies(graph, item_id)))]

    while work:
        _, dependencies = work[-1]
        for dependency_id in dependencies:
            if dependency_id in visited:
                continue
            visited.add(dependency_id)
            work.append(
                (dependency_id, iter(_sorted_dependencies(graph, dependency_id))),
            )
            break
        else:
            finished_id, _ = work.pop()
            if work:
                chain.append(finished_id)

    return chain


def _successors(graph: DependencyGraph, node_id: str) -> Iterator[str]:
    return iter(
        dependency_id
        for dependency_id in _sorted_dependencies(graph, node_id)
        if dependency_id in graph.nodes
    )


def _sorted_dependencies(graph: DependencyGraph, node_id: str) -> list[str]:
    return sorted(graph.dependencies_of(node_id))
