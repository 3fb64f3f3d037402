from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any

import asyncpg
import pytest

from dagforge.core.config import Settings
from dagforge.orchestration.enums import GraphStatus, TaskStatus
from dagforge.orchestration.errors import GraphExistsError, GraphNotStoredError
from dagforge.orchestration.store import InMemoryGraphStore, PostgresGraphStore, build_store

from tests.helpers.stubs import make_graph


class FakeConnection:
    def __init__(self) -> None:
        self.executed: list[tuple[str, tuple[Any, ...]]] = []
        self.batches: list[tuple[str, list[tuple[Any, ...]]]] = []
        self.transactions = 0
        self.fail_on_insert: Exception | None = None
        self.graph_row: dict[str, Any] | None = None
        self.task_rows: list[dict[str, Any]] = []
        self.unterminated: list[dict[str, Any]] = []
        self.updated_rows = 1

    async def execute(self, query: str, *args: Any) -> str:
        if self.fail_on_insert is not None and "INSERT INTO dagforge_graphs" in query:
            raise self.fail_on_insert
        self.executed.append((query, args))
        if query.lstrip().startswith("UPDATE"):
            return f"UPDATE {self.updated_rows}"
        return "OK"

    async def executemany(self, query: str, args: list[tuple[Any, ...]]) -> None:
        self.batches.append((query, list(args)))

    async def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        return self.graph_row

    async def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        if "FROM dagforge_tasks" in query:
            return self.task_rows
        return self.unterminated

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield self


class FakePool:
    def __init__(self, connection: FakeConnection) -> None:
        self.connection = connection
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        yield self.connection

    async def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_in_memory_store_isolates_copies() -> None:
    store = InMemoryGraphStore()
    graph = make_graph({"A": [], "B": ["A"]})
    await store.create_graph(graph)

    graph.task("A").status = TaskStatus.COMPLETED
    loaded = await store.load_graph(graph.graph_id)
    assert loaded.task("A").status is TaskStatus.PENDING

    loaded.task("B").status = TaskStatus.RUNNING
    again = await store.load_graph(graph.graph_id)
    assert again.task("B").status is TaskStatus.PENDING
    assert await store.load_graph("missing") is None


@pytest.mark.asyncio
async def test_in_memory_store_persists_task_and_graph_updates() -> None:
    store = InMemoryGraphStore()
    graph = make_graph({"A": []})
    await store.create_graph(graph)

    task = graph.task("A")
    task.transition(TaskStatus.RUNNING)
    task.attempts = 1
    await store.save_task(graph.graph_id, task)
    graph.status = GraphStatus.RUNNING
    await store.save_graph(graph)

    loaded = await store.load_graph(graph.graph_id)
    assert loaded.status is GraphStatus.RUNNING
    assert loaded.task("A").status is TaskStatus.RUNNING
    assert loaded.task("A").attempts == 1

    with pytest.raises(GraphExistsError):
        await store.create_graph(graph)
    with pytest.raises(GraphNotStoredError):
        await store.save_graph(make_graph({"Z": []}))
    with pytest.raises(GraphNotStoredError):
        await store.save_task("missing", task)


@pytest.mark.asyncio
async def test_in_memory_store_lists_unarchived_graphs_oldest_first() -> None:
    store = InMemoryGraphStore()
    first, second, done = make_graph({"A": []}), make_graph({"A": []}), make_graph({"A": []})
    for graph in (first, second, done):
        await store.create_graph(graph)
    done.archived = True
    done.status = GraphStatus.COMPLETED
    await store.save_graph(done)

    listed = await store.list_unterminated_graphs()

    assert [graph.graph_id for graph in listed] == [first.graph_id, second.graph_id]


@pytest.mark.asyncio
async def test_postgres_store_creates_graph_in_one_transaction() -> None:
    connection = FakeConnection()
    store = PostgresGraphStore(FakePool(connection))
    graph = make_graph({"A": [], "B": ["A"]})

    await store.create_graph(graph)

    assert connection.transactions == 1
    query, args = connection.executed[0]
    assert "INSERT INTO dagforge_graphs" in query
    assert args[0] == graph.graph_id
    assert args[3] == "pending"
    _, rows = connection.batches[0]
    assert [row[1] for row in rows] == ["A", "B"]
    assert [row[2] for row in rows] == [0, 1]
    assert json.loads(rows[1][4])["dependencies"] == ["A"]


@pytest.mark.asyncio
async def test_postgres_store_maps_unique_violation() -> None:
    connection = FakeConnection()
    connection.fail_on_insert = asyncpg.UniqueViolationError("duplicate key")
    store = PostgresGraphStore(FakePool(connection))

    with pytest.raises(GraphExistsError):
        await store.create_graph(make_graph({"A": []}))
    assert connection.batches == []


@pytest.mark.asyncio
async def test_postgres_store_loads_graph_from_rows() -> None:
    graph = make_graph({"A": [], "B": ["A"]}, objective="Write docs")
    graph.task("A").transition(TaskStatus.RUNNING)
    connection = FakeConnection()
    connection.graph_row = {
        "graph_id": graph.graph_id,
        "objective": graph.objective,
        "context": None,
        "status": "running",
        "archived": False,
        "created_at": graph.created_at,
        "updated_at": graph.updated_at,
    }
    connection.task_rows = [{"payload": task.model_dump_json()} for task in graph.tasks]
    store = PostgresGraphStore(FakePool(connection))

    loaded = await store.load_graph(graph.graph_id)

    assert loaded.status is GraphStatus.RUNNING
    assert loaded.objective == "Write docs"
    assert loaded.task("A").status is TaskStatus.RUNNING
    assert loaded.task("B").dependencies == ["A"]

    connection.unterminated = [{"graph_id": graph.graph_id}]
    assert [g.graph_id for g in await store.list_unterminated_graphs()] == [graph.graph_id]

    connection.graph_row = None
    assert await store.load_graph("missing") is None


@pytest.mark.asyncio
async def test_postgres_store_updates_rows() -> None:
    connection = FakeConnection()
    store = PostgresGraphStore(FakePool(connection))
    graph = make_graph({"A": []})
    task = graph.task("A")
    task.transition(TaskStatus.RUNNING)

    await store.save_task(graph.graph_id, task)
    graph.status = GraphStatus.RUNNING
    await store.save_graph(graph)

    task_query, task_args = connection.executed[0]
    assert "UPDATE dagforge_tasks" in task_query
    assert task_args[:3] == (graph.graph_id, "A", "running")
    assert json.loads(task_args[3])["status"] == "running"
    graph_query, graph_args = connection.executed[1]
    assert "UPDATE dagforge_graphs" in graph_query
    assert graph_args[:3] == (graph.graph_id, "running", False)


@pytest.mark.asyncio
async def test_postgres_store_rejects_updates_that_match_no_row() -> None:
    connection = FakeConnection()
    connection.updated_rows = 0
    store = PostgresGraphStore(FakePool(connection))
    graph = make_graph({"A": []})

    with pytest.raises(GraphNotStoredError):
        await store.save_task(graph.graph_id, graph.task("A"))
    with pytest.raises(GraphNotStoredError):
        await store.save_graph(graph)


@pytest.mark.asyncio
async def test_postgres_store_awaits_pool_once_and_closes() -> None:
    connection = FakeConnection()
    pool = FakePool(connection)
    created = 0

    async def _create_pool():
        nonlocal created
        created += 1
        return pool

    store = PostgresGraphStore(_create_pool())
    async with store.lifecycle() as active:
        await active.ensure_schema()
        await active.save_graph(make_graph({"A": []}))

    assert created == 1
    assert pool.closed is True
    statements = [query for query, _ in connection.executed[:3]]
    assert all("CREATE" in statement for statement in statements)


def test_build_store_defaults_to_memory() -> None:
    assert isinstance(build_store(Settings()), InMemoryGraphStore)
