from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..agents.catalog import AgentCatalog
from ..core.config import Settings
from ..core.logging import get_logger
from ..services.llm import CompletionProvider, build_provider
from ..tools.catalog_store import ToolCatalogStore
from ..tools.gateway import ToolInvocationGateway
from .decomposer import ObjectiveDecomposer
from .dispatcher import AgentDispatcher
from .enums import GraphStatus, TaskStatus
from .errors import GraphNotFoundError
from .scheduler import DependencyScheduler, GraphRun
from .state import TaskError, TaskGraph, utcnow
from .store import GraphStateStore, build_store

logger = get_logger(name=__name__)


@dataclass(slots=True)
class TaskStatusReport:
    task_id: str
    title: str
    capability: str
    status: TaskStatus
    dependencies: list[str]
    attempts: int
    result: Any | None = None
    error: TaskError | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass(slots=True)
class GraphStatusReport:
    graph_id: str
    objective: str
    status: GraphStatus
    archived: bool
    tasks: list[TaskStatusReport] = field(default_factory=list)

    @classmethod
    def from_graph(cls, graph: TaskGraph) -> "GraphStatusReport":
        return cls(
            graph_id=graph.graph_id,
            objective=graph.objective,
            status=graph.status,
            archived=graph.archived,
            tasks=[
                TaskStatusReport(
                    task_id=task.task_id,
                    title=task.title,
                    capability=task.capability,
                    status=task.status,
                    dependencies=list(task.dependencies),
                    attempts=task.attempts,
                    result=task.result,
                    error=task.error,
                    started_at=task.started_at,
                    finished_at=task.finished_at,
                )
                for task in graph.tasks
            ],
        )


class TaskGraphEngine:
    """Caller-facing operations: submit, inspect and cancel objective graphs.

    Live runs are tracked only so they can be cancelled; everything a caller observes is
    read back from the state store, and :meth:`resume_unterminated` rebuilds the live set
    after a restart.
    """

    def __init__(
        self,
        *,
        decomposer: ObjectiveDecomposer,
        scheduler: DependencyScheduler,
        store: GraphStateStore,
        concurrency_limit: int | None = None,
        provider: CompletionProvider | None = None,
    ) -> None:
        self._decomposer = decomposer
        self._provider = provider
        self._scheduler = scheduler
        self._store = store
        self._concurrency_limit = concurrency_limit
        self._runs: dict[str, GraphRun] = {}
        self._tasks: dict[str, asyncio.Task[TaskGraph]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        provider: CompletionProvider | None = None,
        store: GraphStateStore | None = None,
        tools: ToolCatalogStore | None = None,
        agents: AgentCatalog | None = None,
    ) -> "TaskGraphEngine":
        if tools is None:
            tools = ToolCatalogStore()
            tools.load_directory(settings.catalog.tools_dir)
        if agents is None:
            agents = AgentCatalog()
            agents.load_file(settings.catalog.agents_path)
        owned = build_provider(settings) if provider is None else None
        gateway = ToolInvocationGateway(catalog=tools, provider=provider or owned)
        active_store = store or build_store(settings)
        return cls(
            decomposer=ObjectiveDecomposer(gateway, settings=settings.planning, agents=agents),
            scheduler=DependencyScheduler(
                dispatcher=AgentDispatcher(agents=agents, gateway=gateway),
                store=active_store,
                settings=settings.scheduling,
            ),
            store=active_store,
            provider=owned,
        )

    @property
    def store(self) -> GraphStateStore:
        return self._store

    async def submit_objective(self, objective: str, context: str | None = None) -> str:
        graph = await self._decomposer.decompose(objective, context)
        await self._store.create_graph(graph)
        logger.info("objective_submitted", graph_id=graph.graph_id, tasks=len(graph.tasks))
        self._start(graph)
        return graph.graph_id

    async def get_graph_status(self, graph_id: str) -> GraphStatusReport:
        graph = await self._store.load_graph(graph_id)
        if graph is None:
            raise GraphNotFoundError(graph_id)
        return GraphStatusReport.from_graph(graph)

    async def cancel_graph(self, graph_id: str) -> GraphStatusReport:
        run = self._runs.get(graph_id)
        if run is not None:
            await run.cancel()
            task = self._tasks.get(graph_id)
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
            return await self.get_graph_status(graph_id)

        graph = await self._store.load_graph(graph_id)
        if graph is None:
            raise GraphNotFoundError(graph_id)
        if graph.archived or graph.status in {GraphStatus.COMPLETED, GraphStatus.FAILED}:
            return GraphStatusReport.from_graph(graph)

        now = utcnow()
        graph.status = GraphStatus.CANCELLED
        graph.touch(now)
        await self._store.save_graph(graph)
        for task in graph.tasks:
            if not task.is_terminal:
                task.transition(TaskStatus.CANCELLED, now=now)
                await self._store.save_task(graph_id, task)
        graph.archived = True
        await self._store.save_graph(graph)
        logger.info("graph_cancelled_offline", graph_id=graph_id)
        return GraphStatusReport.from_graph(graph)

    async def resume_unterminated(self) -> list[str]:
        resumed: list[str] = []
        for graph in await self._store.list_unterminated_graphs():
            if graph.graph_id in self._runs:
                continue
            self._start(graph)
            resumed.append(graph.graph_id)
        if resumed:
            logger.info("graphs_resumed", graph_ids=resumed)
        return resumed

    async def wait_for(self, graph_id: str) -> TaskGraph:
        task = self._tasks.get(graph_id)
        if task is None:
            graph = await self._store.load_graph(graph_id)
            if graph is None:
                raise GraphNotFoundError(graph_id)
            return graph
        return await asyncio.shield(task)

    def active_graphs(self) -> list[str]:
        return list(self._runs)

    async def shutdown(self) -> None:
        """Stop background runs without cancelling their graphs; they resume on next start.

        A provider handed to the constructor belongs to the engine and is closed here.
        """
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()
        self._tasks.clear()
        aclose = getattr(self._provider, "aclose", None)
        if aclose is not None:
            await aclose()
            self._provider = None

    def _start(self, graph: TaskGraph) -> None:
        run = self._scheduler.run(graph, concurrency_limit=self._concurrency_limit)
        task = asyncio.create_task(run.wait(), name=f"dagforge-graph-{graph.graph_id}")
        self._runs[graph.graph_id] = run
        self._tasks[graph.graph_id] = task
        task.add_done_callback(lambda finished, graph_id=graph.graph_id: self._forget(graph_id, finished))

    def _forget(self, graph_id: str, finished: asyncio.Task[TaskGraph]) -> None:
        if self._tasks.get(graph_id) is finished:
            self._runs.pop(graph_id, None)
            self._tasks.pop(graph_id, None)
        if finished.cancelled():
            return
        error = finished.exception()
        if error is not None:
            logger.error("graph_run_aborted", graph_id=graph_id, error=str(error), exc_info=error)
