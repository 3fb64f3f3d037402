"""Pure helpers over a task graph held as an arena of tasks indexed by identifier."""

from __future__ import annotations

from typing import TYPE_CHECKING, Mapping, Sequence

from .enums import FAILURE_TASK_STATUSES, GraphStatus, TaskStatus

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .state import Task, TaskGraph

_UNVISITED, _VISITING, _DONE = 0, 1, 2


def find_cycle(edges: Mapping[str, Sequence[str]]) -> list[str] | None:
    """Return one dependency cycle as a closed path of node ids, or ``None``.

    Depth-first search marking nodes as visiting while they are on the stack; reaching a
    visiting node again closes a cycle. Dependencies pointing outside ``edges`` are ignored.
    """
    marks: dict[str, int] = {node: _UNVISITED for node in edges}
    for root in edges:
        if marks[root] != _UNVISITED:
            continue
        path: list[str] = [root]
        stack: list[tuple[str, int]] = [(root, 0)]
        marks[root] = _VISITING
        while stack:
            node, position = stack[-1]
            neighbours = [dep for dep in edges[node] if dep in marks]
            if position >= len(neighbours):
                marks[node] = _DONE
                stack.pop()
                path.pop()
                continue
            stack[-1] = (node, position + 1)
            nxt = neighbours[position]
            if marks[nxt] == _VISITING:
                return path[path.index(nxt):] + [nxt]
            if marks[nxt] == _UNVISITED:
                marks[nxt] = _VISITING
                stack.append((nxt, 0))
                path.append(nxt)
    return None


def topological_order(graph: "TaskGraph") -> list[str]:
    """Kahn's algorithm, stable with respect to the graph's task order."""
    known = {task.task_id for task in graph.tasks}
    indegree: dict[str, int] = {task.task_id: 0 for task in graph.tasks}
    adjacency: dict[str, list[str]] = {task.task_id: [] for task in graph.tasks}
    for task in graph.tasks:
        for dep in task.dependencies:
            if dep in known:
                indegree[task.task_id] += 1
                adjacency[dep].append(task.task_id)

    queue = [task.task_id for task in graph.tasks if indegree[task.task_id] == 0]
    ordered: list[str] = []
    while queue:
        current = queue.pop(0)
        ordered.append(current)
        for neighbour in adjacency[current]:
            indegree[neighbour] -= 1
            if indegree[neighbour] == 0:
                queue.append(neighbour)
    if len(ordered) < len(graph.tasks):
        raise ValueError("task graph contains a dependency cycle")
    return ordered


def ready_tasks(graph: "TaskGraph") -> list["Task"]:
    """Pending tasks whose dependencies are all completed, highest priority first."""
    index = graph.index()
    position = {task_id: offset for offset, task_id in enumerate(topological_order(graph))}
    ready = [
        task
        for task in graph.tasks
        if task.status is TaskStatus.PENDING
        and all(index[dep].status is TaskStatus.COMPLETED for dep in task.dependencies)
    ]
    ready.sort(key=lambda task: (-task.priority, position[task.task_id]))
    return ready


def tasks_to_block(graph: "TaskGraph") -> list[tuple["Task", "Task"]]:
    """Pending tasks that can never run, each paired with the dependency that caused it.

    Walks in topological order so a task blocked here also blocks its own dependents.
    """
    index = graph.index()
    failed = {task.task_id for task in graph.tasks if task.status in FAILURE_TASK_STATUSES}
    blocked: list[tuple[Task, Task]] = []
    for task_id in topological_order(graph):
        task = index[task_id]
        if task.status is not TaskStatus.PENDING:
            continue
        culprit = next((dep for dep in task.dependencies if dep in failed), None)
        if culprit is not None:
            failed.add(task_id)
            blocked.append((task, index[culprit]))
    return blocked


def derive_graph_status(graph: "TaskGraph") -> GraphStatus:
    if graph.status is GraphStatus.CANCELLED:
        return GraphStatus.CANCELLED
    statuses = [task.status for task in graph.tasks]
    if all(status is TaskStatus.COMPLETED for status in statuses):
        return GraphStatus.COMPLETED
    if any(status in {TaskStatus.RUNNING, TaskStatus.PENDING} for status in statuses):
        started = (
            graph.status is GraphStatus.RUNNING
            or any(status is not TaskStatus.PENDING for status in statuses)
            or any(task.attempts for task in graph.tasks)
        )
        return GraphStatus.RUNNING if started else GraphStatus.PENDING
    if any(status in {TaskStatus.FAILED, TaskStatus.BLOCKED} for status in statuses):
        return GraphStatus.FAILED
    return GraphStatus.CANCELLED


__all__ = [
    "derive_graph_status",
    "find_cycle",
    "ready_tasks",
    "tasks_to_block",
    "topological_order",
]
