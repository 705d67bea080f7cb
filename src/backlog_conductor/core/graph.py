"""Dependency graph: build, analyze and traverse blocking relationships.

Everything here is pure. The graph is rebuilt from a task snapshot for each
question asked of it, so readiness decisions never read stale edges.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from backlog_conductor.db.models import Epic, Task, TaskStatus


@dataclass
class TaskNode:
    id: str
    title: str = ""
    status: TaskStatus = TaskStatus.NOT_STARTED
    kind: str = "task"
    blocked_by: list[str] = field(default_factory=list)
    effort: str | None = None
    prd_id: str | None = None
    epic_id: str | None = None
    started_at: datetime | None = None
    done_at: datetime | None = None


@dataclass
class DependencyGraph:
    tasks: dict[str, TaskNode]
    blocks: dict[str, list[str]]


@dataclass
class Impact:
    id: str
    direct: int
    chain: int
    score: int
    path: list[str]


def build_graph(tasks: Iterable[Task], epics: Iterable[Epic] = ()) -> DependencyGraph:
    """Build the blocker/dependent indexes from a task snapshot.

    Blocker ids are matched exactly first, then case-insensitively. Ids that
    match nothing are kept as-is so that readiness checks see them as
    unresolved.
    """
    nodes: dict[str, TaskNode] = {}

    for epic in epics:
        if not epic.id:
            raise ValueError("Epic record without an id")
        nodes[epic.id] = TaskNode(
            id=epic.id, title=epic.title, status=epic.status, kind="epic", prd_id=epic.prd_id,
            epic_id=epic.id,
        )

    task_list = list(tasks)
    for task in task_list:
        if not task.id:
            raise ValueError(f"Task record without an id: {task.title!r}")
        nodes[task.id] = TaskNode(
            id=task.id,
            title=task.title,
            status=task.status,
            effort=task.effort,
            prd_id=task.prd_id,
            epic_id=task.epic_id,
            started_at=task.started_at,
            done_at=task.done_at,
        )

    by_lower = {}
    for node_id in nodes:
        by_lower.setdefault(node_id.lower(), node_id)

    def resolve(raw: str) -> str:
        raw = str(raw).strip()
        if raw in nodes:
            return raw
        return by_lower.get(raw.lower(), raw)

    for task in task_list:
        resolved = [resolve(b) for b in task.blocked_by]
        nodes[task.id].blocked_by = list(dict.fromkeys(resolved))

    blocks: dict[str, list[str]] = {}
    for node_id, node in nodes.items():
        for blocker_id in node.blocked_by:
            blocks.setdefault(blocker_id, []).append(node_id)

    return DependencyGraph(tasks=nodes, blocks=blocks)


def filter_graph(
    graph: DependencyGraph,
    prd_id: str | None = None,
    epic_id: str | None = None,
) -> DependencyGraph:
    """Restrict a graph to the tasks of one PRD and/or epic.

    Blocker lists are kept intact; edges to nodes outside the subset simply
    have no counterpart in the returned ``blocks``.
    """
    keep = {
        node_id: node
        for node_id, node in graph.tasks.items()
        if node.kind == "task"
        and (prd_id is None or node.prd_id == prd_id)
        and (epic_id is None or node.epic_id == epic_id)
    }
    blocks: dict[str, list[str]] = {}
    for node_id, node in keep.items():
        for blocker_id in node.blocked_by:
            if blocker_id in keep:
                blocks.setdefault(blocker_id, []).append(node_id)
    return DependencyGraph(tasks=keep, blocks=blocks)


def unresolved_blockers(node: TaskNode, tasks: dict[str, TaskNode]) -> list[str]:
    """Blocker ids that are missing or not in a terminal status."""
    pending = []
    for blocker_id in node.blocked_by:
        blocker = tasks.get(blocker_id)
        if blocker is None or not blocker.status.is_terminal:
            pending.append(blocker_id)
    return pending


def blockers_resolved(node: TaskNode, tasks: dict[str, TaskNode]) -> bool:
    """True iff every blocker exists and is Done/Cancelled. Missing ids fail closed."""
    return not unresolved_blockers(node, tasks)


def detect_cycles(tasks: dict[str, TaskNode]) -> list[list[str]]:
    """Find cycles with a DFS over ``blocked_by`` edges.

    Each cycle is returned as a closed path, e.g. ``["A", "B", "A"]``.
    """
    cycles: list[list[str]] = []
    visited: set[str] = set()
    on_stack: set[str] = set()
    stack: list[str] = []

    def dfs(node_id: str):
        if node_id in on_stack:
            start = stack.index(node_id)
            cycles.append(stack[start:] + [node_id])
            return
        if node_id in visited:
            return

        visited.add(node_id)
        on_stack.add(node_id)
        stack.append(node_id)

        node = tasks.get(node_id)
        if node:
            for blocker_id in node.blocked_by:
                dfs(blocker_id)

        stack.pop()
        on_stack.discard(node_id)

    for node_id in tasks:
        if node_id not in visited:
            dfs(node_id)

    return cycles


def find_roots(tasks: dict[str, TaskNode]) -> list[str]:
    """Tasks with no blockers at all."""
    return sorted(node_id for node_id, node in tasks.items() if not node.blocked_by)


def ready_tasks(graph: DependencyGraph) -> list[TaskNode]:
    """Not Started tasks whose blockers are all resolved."""
    return [
        node
        for node in graph.tasks.values()
        if node.kind == "task"
        and node.status == TaskStatus.NOT_STARTED
        and blockers_resolved(node, graph.tasks)
    ]


def longest_path(
    task_id: str,
    tasks: dict[str, TaskNode],
    blocks: dict[str, list[str]],
    memo: dict[str, tuple[int, list[str]]] | None = None,
) -> tuple[int, list[str]]:
    """Longest chain of dependents starting at ``task_id``.

    Returns ``(node_count, path)``. A dependent that is already on the
    current path (a cycle) ends the chain instead of recursing.
    """
    if memo is None:
        memo = {}

    def walk(node_id: str, on_path: frozenset[str]) -> tuple[int, list[str], bool]:
        if node_id in memo:
            return (*memo[node_id], False)

        best: tuple[int, list[str]] = (0, [])
        truncated = False
        for dep_id in blocks.get(node_id, []):
            if dep_id in on_path:
                truncated = True
                continue
            length, path, cut = walk(dep_id, on_path | {dep_id})
            truncated = truncated or cut
            if length > best[0]:
                best = (length, path)

        result = (best[0] + 1, [node_id] + best[1])
        # A chain cut short by a cycle anywhere below depends on the path
        # taken to get here, so it must not be reused from another entry point.
        if not truncated:
            memo[node_id] = result
        return (*result, truncated)

    length, path, _ = walk(task_id, frozenset({task_id}))
    return length, path


def count_total_unblocked(
    task_id: str,
    tasks: dict[str, TaskNode],
    blocks: dict[str, list[str]],
    visited: set[str] | None = None,
) -> int:
    """Count tasks that would become ready, transitively, if ``task_id`` finished."""
    if visited is None:
        visited = set()
    if task_id in visited:
        return 0
    visited.add(task_id)

    count = 0
    for dep_id in blocks.get(task_id, []):
        dep = tasks.get(dep_id)
        if dep is None or dep_id in visited:
            continue
        others = [b for b in dep.blocked_by if b != task_id and b not in visited]
        if all((b in tasks and tasks[b].status.is_terminal) for b in others):
            count += 1
            count += count_total_unblocked(dep_id, tasks, blocks, visited)
    return count


def get_ancestors(
    task_id: str,
    tasks: dict[str, TaskNode],
    max_depth: float = float("inf"),
) -> set[str]:
    """Everything ``task_id`` transitively waits on."""
    ancestors: set[str] = set()
    frontier = [(task_id, 1)]
    while frontier:
        node_id, depth = frontier.pop()
        node = tasks.get(node_id)
        if node is None or depth > max_depth:
            continue
        for blocker_id in node.blocked_by:
            if blocker_id not in ancestors and blocker_id != task_id:
                ancestors.add(blocker_id)
                frontier.append((blocker_id, depth + 1))
    return ancestors


def get_descendants(
    task_id: str,
    blocks: dict[str, list[str]],
    max_depth: float = float("inf"),
) -> set[str]:
    """Everything that transitively waits on ``task_id``."""
    descendants: set[str] = set()
    frontier = [(task_id, 1)]
    while frontier:
        node_id, depth = frontier.pop()
        if depth > max_depth:
            continue
        for dep_id in blocks.get(node_id, []):
            if dep_id not in descendants and dep_id != task_id:
                descendants.add(dep_id)
                frontier.append((dep_id, depth + 1))
    return descendants


def rank_bottlenecks(graph: DependencyGraph, include_done: bool = False) -> list[Impact]:
    """Rank tasks by impact = direct dependents x longest downstream chain.

    Only tasks that block something are ranked. Ties keep insertion order.
    """
    memo: dict[str, tuple[int, list[str]]] = {}
    ranked = []
    for node_id, node in graph.tasks.items():
        dependents = graph.blocks.get(node_id, [])
        if not dependents:
            continue
        if not include_done and node.status.is_terminal:
            continue
        chain, path = longest_path(node_id, graph.tasks, graph.blocks, memo)
        ranked.append(
            Impact(id=node_id, direct=len(dependents), chain=chain, score=len(dependents) * chain, path=path)
        )
    # sorted() is stable, so equal scores stay in insertion order.
    return sorted(ranked, key=lambda i: i.score, reverse=True)


def cycles_through(task_id: str, tasks: dict[str, TaskNode]) -> list[list[str]]:
    """Cycles that include ``task_id``."""
    return [c for c in detect_cycles(tasks) if task_id in c]
