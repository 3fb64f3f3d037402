from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generator, Mapping

from ..agents.catalog import AgentDefinition, AgentLookup
from ..core.logging import get_logger
from ..tools.catalog_store import ToolDefinition
from ..tools.gateway import ToolInvocation, ToolInvocationGateway
from .errors import DispatcherError, DispatcherErrorKind
from .state import Task

logger = get_logger(name=__name__)


@dataclass(slots=True)
class InvocationHandle:
    """Awaitable bound to the agent and tool definitions captured at dispatch time."""

    task_id: str
    agent: AgentDefinition
    tool: ToolDefinition
    model: str | None
    parameters: dict[str, Any]
    _gateway: ToolInvocationGateway = field(repr=False)

    async def result(self) -> ToolInvocation:
        return await self._gateway.invoke_definition(self.tool, self.parameters, self.model)

    def __await__(self) -> Generator[Any, None, ToolInvocation]:
        return self.result().__await__()


class AgentDispatcher:
    """Maps a task's capability onto an agent and prepares the gateway call."""

    def __init__(self, *, agents: AgentLookup, gateway: ToolInvocationGateway) -> None:
        self._agents = agents
        self._gateway = gateway

    def dispatch(self, task: Task, inputs: Mapping[str, Any] | None = None) -> InvocationHandle:
        agent = self._agents.get_agent(task.capability)
        if agent is None:
            logger.warning("dispatch_rejected", task_id=task.task_id, capability=task.capability)
            raise DispatcherError(
                DispatcherErrorKind.NO_CAPABLE_AGENT,
                f"No agent provides capability '{task.capability}'",
            )
        tool = self._gateway.resolve(task.tool_id or agent.tool_id)
        parameters: dict[str, Any] = {**agent.default_parameters, **(inputs or {}), **task.parameters}
        model = task.model or agent.default_model
        logger.debug(
            "task_dispatched",
            task_id=task.task_id,
            role=agent.role,
            tool=tool.tool_id,
            model=model,
        )
        return InvocationHandle(
            task_id=task.task_id,
            agent=agent,
            tool=tool,
            model=model,
            parameters=parameters,
            _gateway=self._gateway,
        )
