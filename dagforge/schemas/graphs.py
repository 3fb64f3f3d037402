from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..orchestration.engine import GraphStatusReport


class ObjectiveRequest(BaseModel):
    objective: str = Field(..., min_length=1)
    context: str | None = Field(default=None)


class ObjectiveResponse(BaseModel):
    graph_id: str
    status: str


class TaskErrorModel(BaseModel):
    kind: str
    message: str


class TaskStatusModel(BaseModel):
    task_id: str
    title: str
    capability: str
    status: str
    dependencies: list[str] = Field(default_factory=list)
    attempts: int = 0
    result: Any | None = None
    error: TaskErrorModel | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class GraphStatusResponse(BaseModel):
    graph_id: str
    objective: str
    status: str
    archived: bool
    tasks: list[TaskStatusModel] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: GraphStatusReport) -> "GraphStatusResponse":
        return cls(
            graph_id=report.graph_id,
            objective=report.objective,
            status=report.status.value,
            archived=report.archived,
            tasks=[
                TaskStatusModel(
                    task_id=task.task_id,
                    title=task.title,
                    capability=task.capability,
                    status=task.status.value,
                    dependencies=task.dependencies,
                    attempts=task.attempts,
                    result=task.result,
                    error=TaskErrorModel(kind=task.error.kind, message=task.error.message) if task.error else None,
                    started_at=task.started_at,
                    finished_at=task.finished_at,
                )
                for task in report.tasks
            ],
        )


class DecompositionErrorResponse(BaseModel):
    kind: str
    message: str
