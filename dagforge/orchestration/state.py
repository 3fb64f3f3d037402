from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from .dag import find_cycle
from .enums import ALLOWED_TRANSITIONS, GraphStatus, TaskStatus
from .errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_identifier() -> str:
    return uuid4().hex


class TaskError(BaseModel):
    kind: str
    message: str


class TaskRetryPolicy(BaseModel):
    """Per-task override of the scheduler retry settings; unset fields fall back to them.

    ``fixed`` backoff waits ``base_backoff_seconds`` before every retry, ``exponential``
    multiplies it by the configured multiplier per attempt already made.
    """

    max_attempts: int | None = Field(default=None, ge=1)
    base_backoff_seconds: float | None = Field(default=None, ge=0.0)
    backoff: Literal["fixed", "exponential"] | None = None


class Task(BaseModel):
    task_id: str = Field(default_factory=new_identifier)
    title: str = Field(..., min_length=1)
    description: str = ""
    capability: str = Field(..., min_length=1)
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[str] = Field(default_factory=list)
    priority: int = 0
    model: str | None = None
    tool_id: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    retry_policy: TaskRetryPolicy | None = None
    result: Any | None = None
    error: TaskError | None = None
    attempts: int = Field(0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("dependencies")
    @classmethod
    def _dedupe_dependencies(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @model_validator(mode="after")
    def _reject_self_dependency(self) -> "Task":
        if self.task_id in self.dependencies:
            raise ValueError(f"task '{self.title}' depends on itself")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(
        self,
        status: TaskStatus,
        *,
        result: Any | None = None,
        error: TaskError | None = None,
        now: datetime | None = None,
    ) -> TaskStatus:
        """Move the task to ``status`` and return the previous status.

        Completing clears any error left by earlier attempts; failing, blocking and
        retrying record ``error``. Anything outside the lifecycle raises
        :class:`InvalidTransitionError`.
        """
        previous = self.status
        if status not in ALLOWED_TRANSITIONS[previous]:
            raise InvalidTransitionError(
                f"task {self.task_id} cannot move from {previous.value} to {status.value}"
            )
        timestamp = now or utcnow()
        self.status = status
        self.updated_at = timestamp
        if status is TaskStatus.RUNNING:
            self.started_at = timestamp
            self.finished_at = None
        elif status is TaskStatus.COMPLETED:
            self.result = result
            self.error = None
            self.finished_at = timestamp
        elif status is TaskStatus.PENDING:
            if error is not None:
                self.error = error
        else:
            if error is not None:
                self.error = error
            self.finished_at = timestamp
        return previous


class TaskGraph(BaseModel):
    graph_id: str = Field(default_factory=new_identifier)
    objective: str = Field(..., min_length=1)
    context: str | None = None
    tasks: list[Task] = Field(default_factory=list)
    status: GraphStatus = GraphStatus.PENDING
    archived: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _validate_edges(self) -> "TaskGraph":
        known: set[str] = set()
        for task in self.tasks:
            if task.task_id in known:
                raise ValueError(f"duplicate task id '{task.task_id}'")
            known.add(task.task_id)
        for task in self.tasks:
            missing = [dep for dep in task.dependencies if dep not in known]
            if missing:
                raise ValueError(f"task '{task.title}' references unknown tasks {missing}")
        cycle = find_cycle({task.task_id: task.dependencies for task in self.tasks})
        if cycle:
            raise ValueError(f"dependency cycle detected: {' -> '.join(cycle)}")
        return self

    def task(self, task_id: str) -> Task:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        raise KeyError(task_id)

    def index(self) -> dict[str, Task]:
        return {task.task_id: task for task in self.tasks}

    def touch(self, now: datetime | None = None) -> None:
        self.updated_at = now or utcnow()


__all__ = ["Task", "TaskError", "TaskGraph", "TaskRetryPolicy", "new_identifier", "utcnow"]
