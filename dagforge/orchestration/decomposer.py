from __future__ import annotations

from collections import Counter
from typing import Any, Callable, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..agents.catalog import AgentCatalog
from ..core.config import PlanningSettings
from ..core.logging import get_logger
from ..core.metrics import record_decomposition
from ..tools.exceptions import InvocationError, InvocationErrorKind
from ..tools.gateway import ToolInvocationGateway
from .dag import find_cycle
from .errors import DecompositionError, DecompositionErrorKind
from .state import Task, TaskGraph, TaskRetryPolicy, new_identifier

__all__ = [
    "DecompositionPayload",
    "ObjectiveDecomposer",
    "SubtaskDescriptor",
    "build_graph",
]

logger = get_logger(name=__name__)


class SubtaskDescriptor(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str = Field(..., min_length=1)
    description: str = Field(default="")
    dependencies: list[str] = Field(default_factory=list)
    capability: str | None = Field(default=None)
    priority: int = Field(default=0)
    retry_policy: TaskRetryPolicy | None = Field(default=None)

    @field_validator("title")
    @classmethod
    def _reject_blank_title(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must not be blank")
        return value

    @field_validator("dependencies", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if not isinstance(value, (list, tuple)):
            raise ValueError("dependencies must be a list of titles")
        return list(value)

    @field_validator("dependencies")
    @classmethod
    def _check_dependencies(cls, value: list[str]) -> list[str]:
        for item in value:
            if not isinstance(item, str) or not item.strip():
                raise ValueError("dependency titles must be non-empty strings")
        return list(dict.fromkeys(value))

    @field_validator("capability", mode="before")
    @classmethod
    def _blank_capability(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class DecompositionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subtasks: list[SubtaskDescriptor] = Field(..., min_length=1)


def _reject(kind: DecompositionErrorKind, message: str, **details: Any) -> DecompositionError:
    record_decomposition(outcome=kind.value)
    logger.warning("objective_decomposition_rejected", kind=kind.value, reason=message, **details)
    return DecompositionError(kind, message, details=details)


def build_graph(
    objective: str,
    subtasks: Sequence[SubtaskDescriptor],
    *,
    context: str | None = None,
    default_capability: str,
    id_factory: Callable[[], str] = new_identifier,
) -> TaskGraph:
    """Resolve title references into an identifier-linked graph, or raise without building one."""
    counts = Counter(item.title for item in subtasks)
    duplicates = sorted(title for title, count in counts.items() if count > 1)
    if duplicates:
        raise _reject(
            DecompositionErrorKind.DUPLICATE_TITLE,
            f"Duplicate subtask titles: {', '.join(duplicates)}",
            titles=duplicates,
        )

    ids = {item.title: id_factory() for item in subtasks}
    for item in subtasks:
        if item.title in item.dependencies:
            raise _reject(
                DecompositionErrorKind.CYCLIC_DEPENDENCY,
                f"Subtask '{item.title}' depends on itself",
                cycle=[item.title, item.title],
            )
        unknown = [name for name in item.dependencies if name not in ids]
        if unknown:
            raise _reject(
                DecompositionErrorKind.UNKNOWN_DEPENDENCY,
                f"Subtask '{item.title}' depends on unknown subtasks: {', '.join(unknown)}",
                title=item.title,
                unknown=unknown,
            )

    edges = {ids[item.title]: [ids[name] for name in item.dependencies] for item in subtasks}
    cycle = find_cycle(edges)
    if cycle:
        titles_by_id = {task_id: title for title, task_id in ids.items()}
        named = [titles_by_id[task_id] for task_id in cycle]
        raise _reject(
            DecompositionErrorKind.CYCLIC_DEPENDENCY,
            f"Dependency cycle: {' -> '.join(named)}",
            cycle=named,
        )

    tasks = [
        Task(
            task_id=ids[item.title],
            title=item.title,
            description=item.description,
            capability=item.capability or default_capability,
            dependencies=edges[ids[item.title]],
            priority=item.priority,
            retry_policy=item.retry_policy,
        )
        for item in subtasks
    ]
    return TaskGraph(objective=objective, context=context, tasks=tasks)


class ObjectiveDecomposer:
    """Turns an objective into a validated task graph via the decomposition tool."""

    def __init__(
        self,
        gateway: ToolInvocationGateway,
        *,
        settings: PlanningSettings,
        agents: AgentCatalog | None = None,
        id_factory: Callable[[], str] = new_identifier,
    ) -> None:
        self._gateway = gateway
        self._settings = settings
        self._agents = agents
        self._id_factory = id_factory

    async def decompose(self, objective: str, context: str | None = None) -> TaskGraph:
        text = (objective or "").strip()
        if not text:
            raise _reject(DecompositionErrorKind.INVALID_OBJECTIVE, "Objective text must not be empty")

        parameters: dict[str, Any] = {
            "objective": text,
            "context": context or "",
            "max_subtasks": self._settings.max_subtasks,
        }
        if self._agents is not None:
            parameters["capabilities"] = self._agents.roles()

        try:
            invocation = await self._gateway.invoke(
                self._settings.decomposition_tool_id,
                parameters,
                self._settings.decomposition_model,
            )
        except InvocationError as exc:
            if exc.kind is InvocationErrorKind.SCHEMA_MISMATCH:
                raise _reject(DecompositionErrorKind.MALFORMED_RESPONSE, exc.message) from exc
            raise _reject(
                DecompositionErrorKind.INVOCATION_FAILED,
                exc.message,
                invocation_kind=exc.kind.value,
            ) from exc

        payload = self._coerce_payload(invocation.result)
        graph = build_graph(
            text,
            payload.subtasks,
            context=context,
            default_capability=self._settings.default_capability,
            id_factory=self._id_factory,
        )
        record_decomposition(outcome="accepted", subtasks=len(graph.tasks))
        logger.info("objective_decomposed", graph_id=graph.graph_id, subtasks=len(graph.tasks))
        return graph

    def _coerce_payload(self, result: Any) -> DecompositionPayload:
        candidate = {"subtasks": result} if isinstance(result, list) else result
        if not isinstance(candidate, Mapping):
            raise _reject(
                DecompositionErrorKind.MALFORMED_RESPONSE,
                "Decomposition result must be an object with a 'subtasks' list",
            )
        try:
            payload = DecompositionPayload.model_validate(candidate)
        except ValidationError as exc:
            raise _reject(
                DecompositionErrorKind.MALFORMED_RESPONSE,
                f"Decomposition result is malformed: {exc.error_count()} validation error(s)",
                errors=exc.errors(include_url=False),
            ) from exc
        if len(payload.subtasks) > self._settings.max_subtasks:
            raise _reject(
                DecompositionErrorKind.MALFORMED_RESPONSE,
                f"Decomposition produced {len(payload.subtasks)} subtasks; limit is {self._settings.max_subtasks}",
            )
        return payload
