from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from ..core import metrics
from ..core.config import SchedulingSettings
from ..core.logging import get_logger
from ..tools.exceptions import InvocationError, InvocationErrorKind
from .dag import derive_graph_status, ready_tasks, tasks_to_block
from .dispatcher import AgentDispatcher
from .enums import GraphStatus, TaskStatus
from .errors import DispatcherError, GraphExistsError
from .state import Task, TaskError, TaskGraph, TaskRetryPolicy, utcnow
from .store import GraphStateStore

logger = get_logger(name=__name__)

Sleeper = Callable[[float], Awaitable[Any]]

DEPENDENCY_FAILED = "dependency_failed"
INTERRUPTED = "interrupted"
INTERNAL_ERROR = "internal_error"


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int
    base_backoff_seconds: float
    backoff_multiplier: float
    max_backoff_seconds: float

    @classmethod
    def from_settings(cls, settings: SchedulingSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_backoff_seconds=settings.base_backoff_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            max_backoff_seconds=settings.max_backoff_seconds,
        )

    def for_task(self, override: TaskRetryPolicy | None) -> "RetryPolicy":
        if override is None:
            return self
        policy = replace(self)
        if override.max_attempts is not None:
            policy.max_attempts = override.max_attempts
        if override.base_backoff_seconds is not None:
            policy.base_backoff_seconds = override.base_backoff_seconds
        if override.backoff == "fixed":
            policy.backoff_multiplier = 1.0
        return policy

    def backoff_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before the attempt after ``attempt``: ``base * multiplier**attempt``, capped."""
        delay = self.base_backoff_seconds * (self.backoff_multiplier ** max(0, attempt))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_backoff_seconds)


@dataclass(slots=True, frozen=True)
class TaskTransition:
    task_id: str
    previous: TaskStatus
    status: TaskStatus
    attempt: int
    at: datetime
    error_kind: str | None = None


@dataclass(slots=True, frozen=True)
class GraphSnapshot:
    graph_id: str
    status: GraphStatus
    tasks: dict[str, TaskStatus]
    transition: TaskTransition | None = None


class _RetryScheduled(Exception):
    def __init__(self, delay: float) -> None:
        super().__init__(f"retry in {delay:.3f}s")
        self.delay = delay


@dataclass(slots=True)
class _WorkerFailure:
    task_id: str
    error: BaseException


_CANCEL = object()

_MUTABLE_TASK_FIELDS = ("status", "result", "error", "attempts", "started_at", "finished_at", "updated_at")


def _retry_delay(retry_state: RetryCallState) -> float:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    return error.delay if isinstance(error, _RetryScheduled) else 0.0


class DependencyScheduler:
    """Executes task graphs; each call to :meth:`run` owns its own mutable run state."""

    def __init__(
        self,
        *,
        dispatcher: AgentDispatcher,
        store: GraphStateStore,
        settings: SchedulingSettings,
        sleep: Sleeper | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._store = store
        self._settings = settings
        self._policy = RetryPolicy.from_settings(settings)
        self._sleep: Sleeper = sleep or asyncio.sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def run(self, graph: TaskGraph, *, concurrency_limit: int | None = None) -> "GraphRun":
        limit = self._settings.max_concurrency if concurrency_limit is None else concurrency_limit
        if limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        return GraphRun(
            graph,
            dispatcher=self._dispatcher,
            store=self._store,
            policy=self._policy,
            timeout=self._settings.task_timeout_seconds,
            concurrency_limit=limit,
            sleep=self._sleep,
        )

    async def execute(self, graph: TaskGraph, *, concurrency_limit: int | None = None) -> TaskGraph:
        return await self.run(graph, concurrency_limit=concurrency_limit).wait()


class GraphRun:
    """Async iterator of :class:`GraphSnapshot` values for one execution of a graph.

    Iteration ends once the graph reaches a terminal status. Closing the iterator early
    stops the workers without touching stored state, leaving the graph resumable.
    """

    def __init__(
        self,
        graph: TaskGraph,
        *,
        dispatcher: AgentDispatcher,
        store: GraphStateStore,
        policy: RetryPolicy,
        timeout: float,
        concurrency_limit: int,
        sleep: Sleeper,
    ) -> None:
        self.graph = graph
        self._dispatcher = dispatcher
        self._store = store
        self._policy = policy
        self._timeout = timeout
        self._limit = concurrency_limit
        self._sleep = sleep
        self._events: asyncio.Queue[Any] = asyncio.Queue()
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._iterator: AsyncIterator[GraphSnapshot] | None = None
        self._cancel_requested = False
        self._cancelling = False
        self._logger = logger.bind(graph_id=graph.graph_id)

    @property
    def graph_id(self) -> str:
        return self.graph.graph_id

    def __aiter__(self) -> "GraphRun":
        return self

    async def __anext__(self) -> GraphSnapshot:
        if self._iterator is None:
            self._iterator = self._stream()
        return await self._iterator.__anext__()

    async def aclose(self) -> None:
        if self._iterator is not None:
            await self._iterator.aclose()  # type: ignore[attr-defined]

    async def wait(self) -> TaskGraph:
        async for _ in self:
            pass
        return self.graph

    async def cancel(self) -> None:
        """Abort the graph. The cancellation is persisted before any worker is interrupted."""
        if self._cancelling or self.graph.status.is_terminal:
            return
        self._cancelling = True
        staged = self.graph.model_copy(update={"status": GraphStatus.CANCELLED, "updated_at": utcnow()})
        await self._store.save_graph(staged)
        if self.graph.archived:
            # The run finished while the cancellation was being written.
            await self._store.save_graph(self.graph)
            return
        self.graph.status = GraphStatus.CANCELLED
        self.graph.updated_at = staged.updated_at
        self._cancel_requested = True
        self._logger.info("graph_cancel_requested")
        self._events.put_nowait(_CANCEL)

    async def _stream(self) -> AsyncIterator[GraphSnapshot]:
        graph = self.graph
        final: GraphStatus | None = None
        metrics.mark_graph_run_started()
        try:
            await self._accept()
            recovered = await self._recover()
            if graph.status is GraphStatus.PENDING:
                graph.status = GraphStatus.RUNNING
                graph.touch()
                await self._store.save_graph(graph)
            self._logger.info("graph_run_started", tasks=len(graph.tasks), concurrency=self._limit)
            yield self._snapshot()
            for transition in recovered:
                yield self._snapshot(transition)

            while True:
                if self._cancel_requested or graph.status is GraphStatus.CANCELLED:
                    for transition in await self._cancel_remaining():
                        yield self._snapshot(transition)
                    break
                for transition in await self._block_unreachable():
                    yield self._snapshot(transition)
                self._launch_ready()
                if not self._workers:
                    break
                item = await self._events.get()
                if item is _CANCEL:
                    continue
                if isinstance(item, _WorkerFailure):
                    raise item.error
                if item.status.is_terminal:
                    worker = self._workers.pop(item.task_id, None)
                    if worker is not None:
                        await worker
                yield self._snapshot(item)

            final = await self._finish()
            yield self._snapshot()
        finally:
            await self._stop_workers()
            metrics.mark_graph_run_finished(status=final.value if final is not None else "interrupted")

    async def _accept(self) -> None:
        if await self._store.load_graph(self.graph.graph_id) is not None:
            return
        try:
            await self._store.create_graph(self.graph)
        except GraphExistsError:
            return
        self._logger.info("graph_accepted", tasks=len(self.graph.tasks))

    async def _recover(self) -> list[TaskTransition]:
        transitions: list[TaskTransition] = []
        for task in self.graph.tasks:
            if task.status is TaskStatus.RUNNING:
                # The interrupted attempt never produced an outcome, so it is not charged.
                transition = await self._persist(
                    task,
                    TaskStatus.PENDING,
                    error=TaskError(kind=INTERRUPTED, message="attempt interrupted before completion"),
                    attempts=max(0, task.attempts - 1),
                )
                transitions.append(transition)
                self._logger.warning("task_recovered", task_id=task.task_id, attempts=task.attempts)
        return transitions

    def _launch_ready(self) -> None:
        for task in ready_tasks(self.graph):
            if len(self._workers) >= self._limit:
                return
            if task.task_id in self._workers:
                continue
            self._workers[task.task_id] = asyncio.create_task(
                self._work(task),
                name=f"dagforge-task-{task.task_id}",
            )

    async def _work(self, task: Task) -> None:
        policy = self._policy.for_task(task.retry_policy)
        budget = max(1, policy.max_attempts - task.attempts)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(budget),
                wait=_retry_delay,
                retry=retry_if_exception_type(_RetryScheduled),
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    await self._attempt(task, policy)
        except Exception as exc:
            self._logger.exception("task_worker_crashed", task_id=task.task_id)
            self._events.put_nowait(_WorkerFailure(task_id=task.task_id, error=exc))

    async def _attempt(self, task: Task, policy: RetryPolicy) -> None:
        self._events.put_nowait(await self._persist(task, TaskStatus.RUNNING, attempts=task.attempts + 1))
        started = time.perf_counter()
        retry_after: float | None = None
        try:
            handle = self._dispatcher.dispatch(task, self._inputs_for(task))
            invocation = await asyncio.wait_for(handle.result(), timeout=self._timeout)
        except asyncio.TimeoutError:
            error = TaskError(
                kind=InvocationErrorKind.TIMEOUT.value,
                message=f"attempt exceeded deadline of {self._timeout:g}s",
            )
            transient = True
        except DispatcherError as exc:
            error = TaskError(kind=exc.kind.value, message=exc.message)
            transient = False
        except InvocationError as exc:
            error = TaskError(kind=exc.kind.value, message=exc.message)
            transient = exc.transient
            retry_after = exc.retry_after
        except Exception as exc:
            self._logger.exception("task_attempt_crashed", task_id=task.task_id)
            error = TaskError(kind=INTERNAL_ERROR, message=str(exc) or type(exc).__name__)
            transient = False
        else:
            metrics.observe_task_attempt(outcome="success", latency=time.perf_counter() - started)
            self._events.put_nowait(await self._persist(task, TaskStatus.COMPLETED, result=invocation.result))
            self._logger.info("task_completed", task_id=task.task_id, attempts=task.attempts)
            return

        metrics.observe_task_attempt(outcome=error.kind, latency=time.perf_counter() - started)
        if transient and task.attempts < policy.max_attempts:
            delay = policy.backoff_for(task.attempts, retry_after)
            self._events.put_nowait(await self._persist(task, TaskStatus.PENDING, error=error))
            self._logger.info(
                "task_retry_scheduled",
                task_id=task.task_id,
                attempt=task.attempts,
                error_kind=error.kind,
                delay=delay,
            )
            raise _RetryScheduled(delay)

        self._events.put_nowait(await self._persist(task, TaskStatus.FAILED, error=error))
        self._logger.warning(
            "task_failed",
            task_id=task.task_id,
            attempts=task.attempts,
            error_kind=error.kind,
            error=error.message,
        )

    def _inputs_for(self, task: Task) -> dict[str, Any]:
        index = self.graph.index()
        return {
            "title": task.title,
            "description": task.description,
            "objective": self.graph.objective,
            "context": self.graph.context or "",
            "role": task.capability,
            "dependency_results": {index[dep].title: index[dep].result for dep in task.dependencies},
        }

    async def _block_unreachable(self) -> list[TaskTransition]:
        transitions: list[TaskTransition] = []
        for task, culprit in tasks_to_block(self.graph):
            error = TaskError(
                kind=DEPENDENCY_FAILED,
                message=f"dependency '{culprit.title}' ended {culprit.status.value}",
            )
            transitions.append(await self._persist(task, TaskStatus.BLOCKED, error=error))
            self._logger.info("task_blocked", task_id=task.task_id, dependency=culprit.task_id)
        return transitions

    async def _cancel_remaining(self) -> list[TaskTransition]:
        await self._stop_workers()
        transitions: list[TaskTransition] = []
        for task in self.graph.tasks:
            if not task.is_terminal:
                transitions.append(await self._persist(task, TaskStatus.CANCELLED))
        self._logger.info("graph_cancelled", cancelled=len(transitions))
        return transitions

    async def _finish(self) -> GraphStatus:
        graph = self.graph
        status = derive_graph_status(graph)
        graph.status = status
        graph.archived = status.is_terminal
        graph.touch()
        await self._store.save_graph(graph)
        counts: dict[str, int] = {}
        for task in graph.tasks:
            counts[task.status.value] = counts.get(task.status.value, 0) + 1
        self._logger.info("graph_run_finished", status=status.value, tasks=counts)
        return status

    async def _persist(
        self,
        task: Task,
        status: TaskStatus,
        *,
        result: Any | None = None,
        error: TaskError | None = None,
        attempts: int | None = None,
    ) -> TaskTransition:
        """Write the transition to the store, then apply it to the in-memory task.

        The run loop decides readiness from in-memory statuses, so nothing can act on a
        transition that has not been stored yet.
        """
        now = utcnow()
        staged = task.model_copy(deep=True)
        if attempts is not None:
            staged.attempts = attempts
        previous = staged.transition(status, result=result, error=error, now=now)
        await self._store.save_task(self.graph.graph_id, staged)
        for name in _MUTABLE_TASK_FIELDS:
            setattr(task, name, getattr(staged, name))
        self.graph.touch(now)
        metrics.record_task_transition(status=status.value)
        return TaskTransition(
            task_id=task.task_id,
            previous=previous,
            status=status,
            attempt=task.attempts,
            at=now,
            error_kind=error.kind if error is not None else None,
        )

    async def _stop_workers(self) -> None:
        workers = list(self._workers.values())
        self._workers.clear()
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    def _snapshot(self, transition: TaskTransition | None = None) -> GraphSnapshot:
        return GraphSnapshot(
            graph_id=self.graph.graph_id,
            status=derive_graph_status(self.graph),
            tasks={task.task_id: task.status for task in self.graph.tasks},
            transition=transition,
        )
