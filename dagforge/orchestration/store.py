from __future__ import annotations

import asyncio
import inspect
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Protocol

import asyncpg

from ..core.config import Settings
from ..core.logging import get_logger
from .enums import GraphStatus
from .errors import GraphExistsError, GraphNotStoredError
from .state import Task, TaskGraph

TimestampFactory = Callable[[], datetime]

logger = get_logger(name=__name__)


class GraphStateStore(Protocol):
    async def create_graph(self, graph: TaskGraph) -> None:
        ...

    async def save_graph(self, graph: TaskGraph) -> None:
        ...

    async def save_task(self, graph_id: str, task: Task) -> None:
        ...

    async def load_graph(self, graph_id: str) -> TaskGraph | None:
        ...

    async def list_unterminated_graphs(self) -> list[TaskGraph]:
        ...


class InMemoryGraphStore:
    """Process-local store; every read and write copies so callers never share state."""

    def __init__(self) -> None:
        self._graphs: dict[str, TaskGraph] = {}
        self._lock = asyncio.Lock()

    async def create_graph(self, graph: TaskGraph) -> None:
        async with self._lock:
            if graph.graph_id in self._graphs:
                raise GraphExistsError(f"graph {graph.graph_id} already exists")
            self._graphs[graph.graph_id] = graph.model_copy(deep=True)

    async def save_graph(self, graph: TaskGraph) -> None:
        async with self._lock:
            stored = self._require(graph.graph_id)
            stored.status = graph.status
            stored.archived = graph.archived
            stored.updated_at = graph.updated_at

    async def save_task(self, graph_id: str, task: Task) -> None:
        async with self._lock:
            stored = self._require(graph_id)
            for position, existing in enumerate(stored.tasks):
                if existing.task_id == task.task_id:
                    stored.tasks[position] = task.model_copy(deep=True)
                    return
            raise GraphNotStoredError(f"task {task.task_id} is not part of graph {graph_id}")

    async def load_graph(self, graph_id: str) -> TaskGraph | None:
        async with self._lock:
            stored = self._graphs.get(graph_id)
            return stored.model_copy(deep=True) if stored is not None else None

    async def list_unterminated_graphs(self) -> list[TaskGraph]:
        async with self._lock:
            pending = [graph for graph in self._graphs.values() if not graph.archived]
            pending.sort(key=lambda graph: graph.created_at)
            return [graph.model_copy(deep=True) for graph in pending]

    def _require(self, graph_id: str) -> TaskGraph:
        try:
            return self._graphs[graph_id]
        except KeyError as exc:
            raise GraphNotStoredError(f"graph {graph_id} is not stored") from exc


class PostgresGraphStore:
    _SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS dagforge_graphs (
            graph_id TEXT PRIMARY KEY,
            objective TEXT NOT NULL,
            context TEXT,
            status TEXT NOT NULL,
            archived BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS dagforge_tasks (
            graph_id TEXT NOT NULL REFERENCES dagforge_graphs (graph_id),
            task_id TEXT NOT NULL,
            position INTEGER NOT NULL,
            status TEXT NOT NULL,
            payload JSONB NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL,
            PRIMARY KEY (graph_id, task_id)
        )
        """,
        "CREATE INDEX IF NOT EXISTS dagforge_graphs_unarchived ON dagforge_graphs (created_at) WHERE NOT archived",
    )

    _INSERT_GRAPH = """
        INSERT INTO dagforge_graphs (graph_id, objective, context, status, archived, created_at, updated_at)
        VALUES ($1, $2, $3, $4, $5, $6, $7)
    """

    _INSERT_TASK = """
        INSERT INTO dagforge_tasks (graph_id, task_id, position, status, payload, updated_at)
        VALUES ($1, $2, $3, $4, $5::jsonb, $6)
    """

    _UPDATE_GRAPH = """
        UPDATE dagforge_graphs
        SET status = $2, archived = $3, updated_at = $4
        WHERE graph_id = $1
    """

    _UPDATE_TASK = """
        UPDATE dagforge_tasks
        SET status = $3, payload = $4::jsonb, updated_at = $5
        WHERE graph_id = $1 AND task_id = $2
    """

    _FETCH_GRAPH = """
        SELECT graph_id, objective, context, status, archived, created_at, updated_at
        FROM dagforge_graphs
        WHERE graph_id = $1
    """

    _FETCH_TASKS = """
        SELECT payload
        FROM dagforge_tasks
        WHERE graph_id = $1
        ORDER BY position ASC
    """

    _FETCH_UNTERMINATED = """
        SELECT graph_id
        FROM dagforge_graphs
        WHERE NOT archived
        ORDER BY created_at ASC
    """

    def __init__(self, pool: Any, *, now: TimestampFactory | None = None) -> None:
        self._pool_or_coroutine = pool
        self._pool: Any | None = None
        self._now: TimestampFactory = now or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresGraphStore":
        pool = asyncpg.create_pool(
            dsn=str(settings.postgres.dsn),
            min_size=settings.postgres.pool_min_size,
            max_size=settings.postgres.pool_max_size,
        )
        return cls(pool)

    async def ensure_schema(self) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            for statement in self._SCHEMA:
                await connection.execute(statement)

    async def create_graph(self, graph: TaskGraph) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            async with connection.transaction():
                try:
                    await connection.execute(
                        self._INSERT_GRAPH,
                        graph.graph_id,
                        graph.objective,
                        graph.context,
                        graph.status.value,
                        graph.archived,
                        graph.created_at,
                        graph.updated_at,
                    )
                except asyncpg.UniqueViolationError as exc:
                    raise GraphExistsError(f"graph {graph.graph_id} already exists") from exc
                await connection.executemany(
                    self._INSERT_TASK,
                    [
                        (
                            graph.graph_id,
                            task.task_id,
                            position,
                            task.status.value,
                            _dump_task(task),
                            task.updated_at,
                        )
                        for position, task in enumerate(graph.tasks)
                    ],
                )
        logger.debug("graph_created", graph_id=graph.graph_id, tasks=len(graph.tasks))

    async def save_graph(self, graph: TaskGraph) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            status = await connection.execute(
                self._UPDATE_GRAPH,
                graph.graph_id,
                graph.status.value,
                graph.archived,
                graph.updated_at or self._now(),
            )
        if _affected_rows(status) == 0:
            raise GraphNotStoredError(f"graph {graph.graph_id} is not stored")

    async def save_task(self, graph_id: str, task: Task) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            status = await connection.execute(
                self._UPDATE_TASK,
                graph_id,
                task.task_id,
                task.status.value,
                _dump_task(task),
                task.updated_at or self._now(),
            )
        if _affected_rows(status) == 0:
            raise GraphNotStoredError(f"task {task.task_id} is not part of graph {graph_id}")

    async def load_graph(self, graph_id: str) -> TaskGraph | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            row = await connection.fetchrow(self._FETCH_GRAPH, graph_id)
            if row is None:
                return None
            task_rows = await connection.fetch(self._FETCH_TASKS, graph_id)
        return TaskGraph(
            graph_id=row["graph_id"],
            objective=row["objective"],
            context=row["context"],
            status=GraphStatus(row["status"]),
            archived=row["archived"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            tasks=[_load_task(task_row["payload"]) for task_row in task_rows],
        )

    async def list_unterminated_graphs(self) -> list[TaskGraph]:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            rows = await connection.fetch(self._FETCH_UNTERMINATED)
        graphs: list[TaskGraph] = []
        for row in rows:
            graph = await self.load_graph(row["graph_id"])
            if graph is not None:
                graphs.append(graph)
        return graphs

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["PostgresGraphStore"]:
        try:
            await self._ensure_pool()
            yield self
        finally:
            await self.close()

    async def _ensure_pool(self) -> Any:
        if self._pool is not None:
            return self._pool
        candidate = self._pool_or_coroutine
        if inspect.isawaitable(candidate):
            candidate = await candidate
        self._pool = candidate
        return self._pool


def _affected_rows(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return -1


def _dump_task(task: Task) -> str:
    return json.dumps(task.model_dump(mode="json"))


def _load_task(payload: Any) -> Task:
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Task.model_validate(payload)


def build_store(settings: Settings) -> GraphStateStore:
    if settings.store.backend == "postgres":
        return PostgresGraphStore.from_settings(settings)
    return InMemoryGraphStore()
