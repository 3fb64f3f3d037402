from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Protocol, Sequence

from ..core.logging import get_logger


@dataclass(slots=True, frozen=True)
class AgentDefinition:
    role: str
    default_model: str | None = None
    tool_id: str = "execute_subtask"
    default_parameters: Mapping[str, Any] = field(default_factory=dict)
    description: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AgentDefinition":
        return cls(
            role=str(payload.get("role") or "").strip(),
            default_model=payload.get("default_model") or None,
            tool_id=str(payload.get("tool_id") or "execute_subtask"),
            default_parameters=MappingProxyType(dict(payload.get("default_parameters") or {})),
            description=str(payload.get("description") or ""),
        )


class AgentLookup(Protocol):
    def get_agent(self, role: str) -> AgentDefinition | None:
        ...


class AgentCatalog:
    """Role-indexed agent definitions; roles match exactly, case included."""

    def __init__(self, agents: Sequence[AgentDefinition] | None = None, *, source: str = "static") -> None:
        self._logger = get_logger(name=__name__)
        self._agents: dict[str, AgentDefinition] = {}
        if agents:
            self.sync(agents, source=source)

    def sync(self, agents: Sequence[AgentDefinition], *, source: str) -> None:
        accepted: dict[str, AgentDefinition] = {}
        for agent in agents:
            if not agent.role:
                self._logger.warning("agent_definition_skipped", reason="empty_role", source=source)
                continue
            if agent.role in accepted:
                self._logger.warning("agent_definition_skipped", reason="duplicate_role", role=agent.role, source=source)
                continue
            accepted[agent.role] = agent
        self._agents = accepted
        self._logger.info("agent_catalog_synced", source=source, agents=len(accepted))

    def load_file(self, path: Path | str) -> None:
        location = Path(path)
        payload = json.loads(location.read_text(encoding="utf-8"))
        if isinstance(payload, Mapping):
            payload = payload.get("agents") or []
        if not isinstance(payload, list):
            raise ValueError(f"agent catalog {location} must contain a list of agents")
        definitions = [AgentDefinition.from_payload(item) for item in payload if isinstance(item, Mapping)]
        self.sync(definitions, source=str(location))

    def get_agent(self, role: str) -> AgentDefinition | None:
        return self._agents.get(role)

    def roles(self) -> list[str]:
        return sorted(self._agents)
