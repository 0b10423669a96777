"""Dependency graph over a plan's tasks.

``build_dependency_graph`` is a pure function of its inputs: it takes a
flat task list (plus optional assignments) and returns a layered DAG
with depth, ready/blocked status and the critical path marked. Rebuild
it whenever the task store changes; nothing here is cached.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

log = logging.getLogger(__name__)

# Node statuses
NODE_PLANNED = "planned"
NODE_READY = "ready"
NODE_BLOCKED = "blocked"
NODE_PENDING = "pending"
NODE_SENT = "sent"
NODE_IN_PROGRESS = "in_progress"
NODE_COMPLETED = "completed"
NODE_FAILED = "failed"

NODE_STATUSES = (
    NODE_PLANNED,
    NODE_READY,
    NODE_BLOCKED,
    NODE_PENDING,
    NODE_SENT,
    NODE_IN_PROGRESS,
    NODE_COMPLETED,
    NODE_FAILED,
)


class DependencyCycleError(ValueError):
    """The task list contains a dependency cycle and has no layering."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__("Dependency cycle: " + " -> ".join(self.cycle))


class GraphTask(Protocol):
    """The task shape the builder reads. ``convoy.task_store.Task`` satisfies it."""

    id: str
    title: str
    status: str
    type: str
    blocked_by: list[str]


class GraphAssignment(Protocol):
    task_id: str
    status: str


@dataclass
class TaskNode:
    id: str
    title: str
    status: str
    blocked_by: list[str]
    blocks: list[str] = field(default_factory=list)
    depth: int = 0
    is_on_critical_path: bool = False
    assignment: Any = None

    def to_dict(self) -> dict[str, Any]:
        assignment = self.assignment
        if assignment is not None and hasattr(assignment, "to_dict"):
            assignment = assignment.to_dict()
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "blocked_by": list(self.blocked_by),
            "blocks": list(self.blocks),
            "depth": self.depth,
            "is_on_critical_path": self.is_on_critical_path,
            "assignment": assignment,
        }


@dataclass
class GraphEdge:
    source: str  # the blocker
    target: str  # the blocked task
    is_on_critical_path: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.source,
            "to": self.target,
            "is_on_critical_path": self.is_on_critical_path,
        }


@dataclass
class DependencyGraph:
    nodes: dict[str, TaskNode]
    edges: list[GraphEdge]
    roots: list[str]
    leaves: list[str]
    critical_path: list[str]
    max_depth: int
    # task id -> blocker ids not present in the graph
    dangling: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes.values()],
            "edges": [edge.to_dict() for edge in self.edges],
            "roots": list(self.roots),
            "leaves": list(self.leaves),
            "critical_path": list(self.critical_path),
            "max_depth": self.max_depth,
            "dangling": {k: list(v) for k, v in self.dangling.items()},
        }


@dataclass(frozen=True)
class GraphStats:
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    sent: int = 0
    blocked: int = 0
    ready: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "completed": self.completed,
            "in_progress": self.in_progress,
            "sent": self.sent,
            "blocked": self.blocked,
            "ready": self.ready,
            "failed": self.failed,
        }


def _dedupe(ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(ids))


def _node_status(
    task: GraphTask,
    assignment: GraphAssignment | None,
    tasks: Mapping[str, GraphTask],
    assignments: Mapping[str, GraphAssignment],
) -> str:
    if task.status == "closed":
        return NODE_COMPLETED
    if assignment is not None:
        return assignment.status

    def blocker_complete(blocker_id: str) -> bool:
        blocker = tasks[blocker_id]
        if blocker.status == "closed":
            return True
        blocker_assignment = assignments.get(blocker_id)
        return blocker_assignment is not None and blocker_assignment.status == NODE_COMPLETED

    present = [b for b in task.blocked_by if b in tasks]
    return NODE_READY if all(blocker_complete(b) for b in present) else NODE_BLOCKED


def _find_cycle(nodes: Mapping[str, TaskNode], candidates: Iterable[str]) -> list[str]:
    """Return one cycle among *candidates* as ``[a, b, ..., a]``.

    Every candidate has at least one blocker that is also a candidate, so
    walking blockers must eventually revisit a node.
    """
    remaining = set(candidates)
    start = next(iter(n for n in nodes if n in remaining))
    path: list[str] = []
    seen: dict[str, int] = {}
    current = start
    while current not in seen:
        seen[current] = len(path)
        path.append(current)
        current = next(b for b in nodes[current].blocked_by if b in remaining)
    cycle = path[seen[current] :]
    cycle.reverse()  # blocker -> blocked order
    return [*cycle, cycle[0]]


def _assign_depths(nodes: dict[str, TaskNode]) -> list[str]:
    """Set ``depth`` on every node and return ids in topological order.

    Longest-path layering over present edges (Kahn's algorithm). Raises
    :class:`DependencyCycleError` when some nodes can never be layered.
    """
    indegree = {
        node_id: sum(1 for b in node.blocked_by if b in nodes) for node_id, node in nodes.items()
    }
    queue = deque(node_id for node_id, count in indegree.items() if count == 0)
    order: list[str] = []
    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        node = nodes[node_id]
        for blocked_id in node.blocks:
            blocked = nodes[blocked_id]
            blocked.depth = max(blocked.depth, node.depth + 1)
            indegree[blocked_id] -= 1
            if indegree[blocked_id] == 0:
                queue.append(blocked_id)

    if len(order) != len(nodes):
        unresolved = [node_id for node_id in nodes if indegree[node_id] > 0]
        raise DependencyCycleError(_find_cycle(nodes, unresolved))
    return order


def _critical_path(nodes: Mapping[str, TaskNode], order: Sequence[str]) -> list[str]:
    """Longest chain of incomplete nodes, in blocker -> blocked order."""
    length: dict[str, int] = {}
    successor: dict[str, str | None] = {}
    for node_id in reversed(order):
        node = nodes[node_id]
        if node.status == NODE_COMPLETED:
            continue
        best, best_next = 0, None
        for blocked_id in node.blocks:
            if blocked_id in length and length[blocked_id] > best:
                best, best_next = length[blocked_id], blocked_id
        length[node_id] = best + 1
        successor[node_id] = best_next

    if not length:
        return []
    # First node in input order wins ties.
    head = max((n for n in nodes if n in length), key=lambda n: length[n])
    path: list[str] = []
    current: str | None = head
    while current is not None:
        path.append(current)
        current = successor[current]
    return path


def build_dependency_graph(
    tasks: Iterable[GraphTask],
    assignments: Iterable[GraphAssignment] = (),
) -> DependencyGraph:
    """Build the layered dependency graph for *tasks*.

    Epics are organisational and left out. Blocker ids that do not name a
    task in the input are kept in ``blocked_by`` but ignored for depth and
    readiness; they are reported in ``DependencyGraph.dangling``.
    """
    task_list = [t for t in tasks if t.type != "epic"]
    task_map: dict[str, GraphTask] = {t.id: t for t in task_list}
    assignment_map: dict[str, GraphAssignment] = {a.task_id: a for a in assignments}

    nodes: dict[str, TaskNode] = {}
    for task in task_map.values():
        assignment = assignment_map.get(task.id)
        nodes[task.id] = TaskNode(
            id=task.id,
            title=task.title,
            status=_node_status(task, assignment, task_map, assignment_map),
            blocked_by=_dedupe(task.blocked_by),
            assignment=assignment,
        )

    edges: list[GraphEdge] = []
    dangling: dict[str, list[str]] = {}
    for node in nodes.values():
        for blocker_id in node.blocked_by:
            blocker = nodes.get(blocker_id)
            if blocker is None:
                dangling.setdefault(node.id, []).append(blocker_id)
                continue
            blocker.blocks.append(node.id)
            edges.append(GraphEdge(source=blocker_id, target=node.id))

    if dangling:
        log.warning(
            "Ignoring %d blocker reference(s) to unknown tasks: %s",
            sum(len(v) for v in dangling.values()),
            ", ".join(f"{k}<-{','.join(v)}" for k, v in dangling.items()),
        )

    order = _assign_depths(nodes)
    critical_path = _critical_path(nodes, order)

    for node_id in critical_path:
        nodes[node_id].is_on_critical_path = True
    on_path = set(zip(critical_path, critical_path[1:], strict=False))
    for edge in edges:
        edge.is_on_critical_path = (edge.source, edge.target) in on_path

    roots = [n.id for n in nodes.values() if not any(b in nodes for b in n.blocked_by)]
    leaves = [n.id for n in nodes.values() if not n.blocks]
    max_depth = max((n.depth for n in nodes.values()), default=0)

    log.debug(
        "Built dependency graph: %d nodes, %d edges, max depth %d, critical path %s",
        len(nodes),
        len(edges),
        max_depth,
        critical_path,
    )
    return DependencyGraph(
        nodes=nodes,
        edges=edges,
        roots=roots,
        leaves=leaves,
        critical_path=critical_path,
        max_depth=max_depth,
        dangling=dangling,
    )


def calculate_graph_stats(graph: DependencyGraph) -> GraphStats:
    counts = dict.fromkeys(("completed", "in_progress", "sent", "blocked", "ready", "failed"), 0)
    for node in graph.nodes.values():
        if node.status in (NODE_SENT, NODE_PENDING):
            # Pending assignments are dispatched but not yet picked up.
            counts["sent"] += 1
        elif node.status in (NODE_READY, NODE_PLANNED):
            counts["ready"] += 1
        elif node.status in counts:
            counts[node.status] += 1
    return GraphStats(total=len(graph.nodes), **counts)


def is_task_ready(node_id: str, graph: DependencyGraph) -> bool:
    """True when every blocker of *node_id* is a completed node in *graph*."""
    node = graph.nodes.get(node_id)
    if node is None:
        return False
    return all(
        b in graph.nodes and graph.nodes[b].status == NODE_COMPLETED for b in node.blocked_by
    )


def ready_task_ids(graph: DependencyGraph) -> list[str]:
    """Ids of unassigned nodes whose status is ``ready``, ordered by depth."""
    ready = [n for n in graph.nodes.values() if n.status == NODE_READY and n.assignment is None]
    return [n.id for n in sorted(ready, key=lambda n: n.depth)]


def _walk(node_id: str, graph: DependencyGraph, attr: str) -> list[str]:
    """Depth-first preorder over *attr* links, each id listed once."""
    seen = {node_id}
    result: list[str] = []
    stack = [iter(_links(node_id, graph, attr))]
    while stack:
        neighbour = next(stack[-1], None)
        if neighbour is None:
            stack.pop()
            continue
        if neighbour in seen:
            continue
        seen.add(neighbour)
        result.append(neighbour)
        stack.append(iter(_links(neighbour, graph, attr)))
    return result


def _links(node_id: str, graph: DependencyGraph, attr: str) -> list[str]:
    node = graph.nodes.get(node_id)
    return getattr(node, attr) if node is not None else []


def get_upstream_chain(node_id: str, graph: DependencyGraph) -> list[str]:
    """Every task that blocks *node_id*, transitively."""
    return _walk(node_id, graph, "blocked_by")


def get_downstream_chain(node_id: str, graph: DependencyGraph) -> list[str]:
    """Every task blocked by *node_id*, transitively."""
    return _walk(node_id, graph, "blocks")
