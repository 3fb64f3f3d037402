from __future__ import annotations

import asyncio
import json
import re

import pytest

from dagforge.core.config import Settings
from dagforge.orchestration.engine import TaskGraphEngine
from dagforge.orchestration.enums import GraphStatus, TaskStatus
from dagforge.orchestration.errors import DecompositionError, DecompositionErrorKind, GraphNotFoundError
from dagforge.orchestration.store import InMemoryGraphStore

from tests.helpers.stubs import ScriptedProvider, make_graph, reply, wait_until

_SUBTASK = re.compile(r"^Your subtask: (.+)$", re.MULTILINE)

PLAN = json.dumps(
    {
        "subtasks": [
            {"title": "Gather facts", "capability": "researcher"},
            {"title": "Write summary", "capability": "writer", "dependencies": ["Gather facts"]},
        ]
    }
)


def _route(request) -> str:
    if request.prompt.startswith("Decompose the objective"):
        return "plan"
    match = _SUBTASK.search(request.prompt)
    return match.group(1).strip() if match else ""


def _engine(provider: ScriptedProvider, store: InMemoryGraphStore | None = None) -> TaskGraphEngine:
    return TaskGraphEngine.from_settings(Settings(), provider=provider, store=store or InMemoryGraphStore())


@pytest.mark.asyncio
async def test_submit_objective_runs_graph_to_completion() -> None:
    provider = ScriptedProvider(
        {"plan": PLAN, "Gather facts": reply("three facts"), "Write summary": reply("one paragraph")},
        key=_route,
    )
    engine = _engine(provider)

    graph_id = await engine.submit_objective("Summarise the quarter", "Finance team audience")
    finished = await engine.wait_for(graph_id)
    report = await engine.get_graph_status(graph_id)

    assert finished.status is GraphStatus.COMPLETED
    assert report.status is GraphStatus.COMPLETED
    assert report.archived is True
    assert report.objective == "Summarise the quarter"
    by_title = {task.title: task for task in report.tasks}
    assert by_title["Gather facts"].result == {"output": "three facts"}
    assert by_title["Write summary"].result == {"output": "one paragraph"}
    assert by_title["Write summary"].dependencies == [by_title["Gather facts"].task_id]
    assert all(task.status is TaskStatus.COMPLETED for task in report.tasks)
    assert all(task.attempts == 1 for task in report.tasks)

    summary_prompt = provider.calls_for("Write summary")[0].prompt
    assert "three facts" in summary_prompt
    assert "acting as the writer" in summary_prompt
    assert engine.active_graphs() == []


@pytest.mark.asyncio
async def test_rejected_decomposition_stores_nothing() -> None:
    store = InMemoryGraphStore()
    provider = ScriptedProvider({"plan": json.dumps({"subtasks": [{"title": "A", "dependencies": ["A"]}]})}, key=_route)
    engine = _engine(provider, store)

    with pytest.raises(DecompositionError) as excinfo:
        await engine.submit_objective("Loop forever")

    assert excinfo.value.kind is DecompositionErrorKind.CYCLIC_DEPENDENCY
    assert await store.list_unterminated_graphs() == []
    assert engine.active_graphs() == []


@pytest.mark.asyncio
async def test_unknown_graph_is_not_found() -> None:
    engine = _engine(ScriptedProvider(key=_route))

    with pytest.raises(GraphNotFoundError):
        await engine.get_graph_status("nope")
    with pytest.raises(GraphNotFoundError):
        await engine.cancel_graph("nope")


@pytest.mark.asyncio
async def test_cancel_live_graph() -> None:
    gate = asyncio.Event()

    async def _hold(request):
        await gate.wait()
        return reply("too late")

    provider = ScriptedProvider({"plan": PLAN, "Gather facts": _hold}, key=_route)
    engine = _engine(provider)
    graph_id = await engine.submit_objective("Summarise the quarter")

    async def _gathering() -> bool:
        report = await engine.get_graph_status(graph_id)
        return any(task.status is TaskStatus.RUNNING for task in report.tasks)

    await wait_until(_gathering)
    report = await engine.cancel_graph(graph_id)

    assert report.status is GraphStatus.CANCELLED
    assert report.archived is True
    assert {task.status for task in report.tasks} == {TaskStatus.CANCELLED}
    assert provider.calls_for("Write summary") == []
    assert engine.active_graphs() == []

    again = await engine.cancel_graph(graph_id)
    assert again.status is GraphStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_graph_without_live_run() -> None:
    store = InMemoryGraphStore()
    graph = make_graph({"A": [], "B": ["A"], "C": []})
    graph.status = GraphStatus.RUNNING
    graph.task("A").transition(TaskStatus.RUNNING)
    graph.task("A").attempts = 1
    graph.task("C").transition(TaskStatus.RUNNING)
    graph.task("C").transition(TaskStatus.COMPLETED, result={"output": "kept"})
    await store.create_graph(graph)
    engine = _engine(ScriptedProvider(key=_route), store)

    report = await engine.cancel_graph(graph.graph_id)

    assert report.status is GraphStatus.CANCELLED
    assert report.archived is True
    statuses = {task.task_id: task.status for task in report.tasks}
    assert statuses == {"A": TaskStatus.CANCELLED, "B": TaskStatus.CANCELLED, "C": TaskStatus.COMPLETED}
    stored = await store.load_graph(graph.graph_id)
    assert stored.status is GraphStatus.CANCELLED
    assert stored.task("C").result == {"output": "kept"}
    assert await store.list_unterminated_graphs() == []


@pytest.mark.asyncio
async def test_cancel_finished_graph_is_a_no_op() -> None:
    store = InMemoryGraphStore()
    graph = make_graph({"A": []})
    graph.task("A").transition(TaskStatus.RUNNING)
    graph.task("A").transition(TaskStatus.COMPLETED, result="done")
    graph.status = GraphStatus.COMPLETED
    graph.archived = True
    await store.create_graph(graph)
    engine = _engine(ScriptedProvider(key=_route), store)

    report = await engine.cancel_graph(graph.graph_id)

    assert report.status is GraphStatus.COMPLETED
    assert report.tasks[0].status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_resume_unterminated_graphs_after_restart() -> None:
    store = InMemoryGraphStore()
    graph = make_graph({"A": [], "B": ["A"]}, capability="researcher")
    graph.status = GraphStatus.RUNNING
    graph.task("A").transition(TaskStatus.RUNNING)
    graph.task("A").attempts = 1
    await store.create_graph(graph)
    provider = ScriptedProvider(key=_route)
    engine = _engine(provider, store)

    resumed = await engine.resume_unterminated()
    finished = await engine.wait_for(graph.graph_id)

    assert resumed == [graph.graph_id]
    assert finished.status is GraphStatus.COMPLETED
    assert finished.task("A").attempts == 1
    assert finished.task("A").result == {"output": "A done"}
    assert await engine.resume_unterminated() == []


@pytest.mark.asyncio
async def test_shutdown_leaves_graphs_resumable() -> None:
    store = InMemoryGraphStore()
    gate = asyncio.Event()

    async def _hold(request):
        await gate.wait()
        return reply("never")

    engine = _engine(ScriptedProvider({"plan": PLAN, "Gather facts": _hold}, key=_route), store)
    graph_id = await engine.submit_objective("Summarise the quarter")

    async def _gathering() -> bool:
        report = await engine.get_graph_status(graph_id)
        return any(task.status is TaskStatus.RUNNING for task in report.tasks)

    await wait_until(_gathering)
    await engine.shutdown()

    assert engine.active_graphs() == []
    pending = await store.list_unterminated_graphs()
    assert [graph.graph_id for graph in pending] == [graph_id]
    assert pending[0].status is GraphStatus.RUNNING


class ClosableProvider(ScriptedProvider):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.closed = 0

    async def aclose(self) -> None:
        self.closed += 1


@pytest.mark.asyncio
async def test_shutdown_closes_the_provider_the_engine_built(monkeypatch: pytest.MonkeyPatch) -> None:
    built = ClosableProvider(key=_route)
    monkeypatch.setattr("dagforge.orchestration.engine.build_provider", lambda settings: built)
    engine = TaskGraphEngine.from_settings(Settings(), store=InMemoryGraphStore())

    await engine.shutdown()
    await engine.shutdown()

    assert built.closed == 1


@pytest.mark.asyncio
async def test_shutdown_leaves_a_supplied_provider_open() -> None:
    supplied = ClosableProvider(key=_route)
    engine = _engine(supplied)

    await engine.shutdown()

    assert supplied.closed == 0
