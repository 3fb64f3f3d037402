from __future__ import annotations

import pytest

from dagforge.orchestration.dag import (
    derive_graph_status,
    find_cycle,
    ready_tasks,
    tasks_to_block,
    topological_order,
)
from dagforge.orchestration.enums import GraphStatus, TaskStatus

from tests.helpers.stubs import make_graph


def _set(graph, **statuses: TaskStatus) -> None:
    for task_id, status in statuses.items():
        graph.task(task_id).status = status


def test_find_cycle_returns_closed_path() -> None:
    cycle = find_cycle({"a": ["c"], "b": ["a"], "c": ["b"], "d": []})
    assert cycle is not None
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}


def test_find_cycle_accepts_acyclic_and_ignores_unknown_nodes() -> None:
    assert find_cycle({"a": [], "b": ["a"], "c": ["a", "b", "zz"]}) is None
    assert find_cycle({}) is None


def test_topological_order_respects_dependencies() -> None:
    graph = make_graph({"C": ["A", "B"], "B": ["A"], "A": [], "D": []})
    order = topological_order(graph)
    assert order.index("A") < order.index("B") < order.index("C")
    assert sorted(order) == ["A", "B", "C", "D"]


def test_ready_tasks_need_all_dependencies_completed() -> None:
    graph = make_graph({"A": [], "B": [], "C": ["A", "B"]}, priorities={"B": 3})
    assert [task.task_id for task in ready_tasks(graph)] == ["B", "A"]

    _set(graph, A=TaskStatus.COMPLETED)
    assert [task.task_id for task in ready_tasks(graph)] == ["B"]

    _set(graph, B=TaskStatus.COMPLETED)
    assert [task.task_id for task in ready_tasks(graph)] == ["C"]


def test_ready_tasks_skip_running_and_terminal_tasks() -> None:
    graph = make_graph({"A": [], "B": [], "C": []})
    _set(graph, A=TaskStatus.RUNNING, B=TaskStatus.FAILED)
    assert [task.task_id for task in ready_tasks(graph)] == ["C"]


def test_tasks_to_block_cascades_in_dependency_order() -> None:
    graph = make_graph({"A": [], "B": ["A"], "C": ["B"], "D": ["C", "E"], "E": []})
    _set(graph, A=TaskStatus.FAILED)

    blocked = tasks_to_block(graph)

    assert [(task.task_id, culprit.task_id) for task, culprit in blocked] == [
        ("B", "A"),
        ("C", "B"),
        ("D", "C"),
    ]


def test_tasks_to_block_treats_cancelled_dependency_as_failure() -> None:
    graph = make_graph({"A": [], "B": ["A"]})
    _set(graph, A=TaskStatus.CANCELLED)
    assert [task.task_id for task, _ in tasks_to_block(graph)] == ["B"]


def test_tasks_to_block_ignores_running_dependents() -> None:
    graph = make_graph({"A": [], "B": ["A"]})
    _set(graph, A=TaskStatus.COMPLETED, B=TaskStatus.RUNNING)
    assert tasks_to_block(graph) == []


@pytest.mark.parametrize(
    ("statuses", "expected"),
    [
        ({}, GraphStatus.PENDING),
        ({"A": TaskStatus.RUNNING}, GraphStatus.RUNNING),
        ({"A": TaskStatus.COMPLETED}, GraphStatus.RUNNING),
        ({"A": TaskStatus.COMPLETED, "B": TaskStatus.COMPLETED}, GraphStatus.COMPLETED),
        ({"A": TaskStatus.FAILED, "B": TaskStatus.BLOCKED}, GraphStatus.FAILED),
        ({"A": TaskStatus.FAILED, "B": TaskStatus.RUNNING}, GraphStatus.RUNNING),
        ({"A": TaskStatus.CANCELLED, "B": TaskStatus.CANCELLED}, GraphStatus.CANCELLED),
    ],
)
def test_derive_graph_status(statuses, expected) -> None:
    graph = make_graph({"A": [], "B": []})
    _set(graph, **statuses)
    assert derive_graph_status(graph) is expected


def test_derive_graph_status_keeps_cancellation() -> None:
    graph = make_graph({"A": [], "B": []})
    _set(graph, A=TaskStatus.COMPLETED, B=TaskStatus.COMPLETED)
    graph.status = GraphStatus.CANCELLED
    assert derive_graph_status(graph) is GraphStatus.CANCELLED
