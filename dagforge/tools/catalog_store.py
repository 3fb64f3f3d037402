from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Protocol, Sequence

from ..core.logging import get_logger
from .exceptions import ToolNotFoundError

TOOL_FILE_PATTERN = "*.tool.json"


@dataclass(slots=True, frozen=True)
class ToolDefinition:
    tool_id: str
    template: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=dict)
    output_schema: Mapping[str, Any] = field(default_factory=dict)
    default_model: str | None = None
    default_parameters: Mapping[str, Any] = field(default_factory=dict)
    system_prompt: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ToolDefinition":
        tool_id = str(payload.get("id") or payload.get("tool_id") or "").strip()
        return cls(
            tool_id=tool_id,
            template=str(payload.get("template") or ""),
            description=str(payload.get("description") or ""),
            input_schema=MappingProxyType(dict(payload.get("input_schema") or {})),
            output_schema=MappingProxyType(dict(payload.get("output_schema") or {})),
            default_model=payload.get("default_model") or None,
            default_parameters=MappingProxyType(dict(payload.get("default_parameters") or {})),
            system_prompt=payload.get("system_prompt") or None,
        )


@dataclass(slots=True, frozen=True)
class ToolCatalogSnapshot:
    generated_at: datetime
    entries: tuple[ToolDefinition, ...]
    source: str


class ToolCatalog(Protocol):
    def get_tool(self, tool_id: str) -> ToolDefinition:
        ...


class ToolCatalogStore:
    """In-memory catalog of tool definitions, replaced wholesale on every sync."""

    def __init__(self, entries: Sequence[ToolDefinition] | None = None, *, source: str = "static") -> None:
        self._logger = get_logger(name=__name__)
        self._entries: dict[str, ToolDefinition] = {}
        self._snapshot: ToolCatalogSnapshot | None = None
        if entries:
            self.sync(entries, source=source)

    def sync(self, entries: Sequence[ToolDefinition], *, source: str) -> ToolCatalogSnapshot:
        """Replace the catalog with ``entries``; later duplicates and blank ids are skipped."""
        accepted: dict[str, ToolDefinition] = {}
        for entry in entries:
            if not entry.tool_id:
                self._logger.warning("tool_definition_skipped", reason="empty_id", source=source)
                continue
            if entry.tool_id in accepted:
                self._logger.warning(
                    "tool_definition_skipped",
                    reason="duplicate_id",
                    tool=entry.tool_id,
                    source=source,
                )
                continue
            accepted[entry.tool_id] = entry
        snapshot = ToolCatalogSnapshot(
            generated_at=datetime.now(timezone.utc),
            entries=tuple(sorted(accepted.values(), key=lambda entry: entry.tool_id)),
            source=source,
        )
        self._entries = accepted
        self._snapshot = snapshot
        self._logger.info("tool_catalog_synced", source=source, tools=len(accepted))
        return snapshot

    def load_directory(self, directory: Path | str) -> ToolCatalogSnapshot:
        root = Path(directory)
        definitions: list[ToolDefinition] = []
        for path in sorted(root.glob(TOOL_FILE_PATTERN)):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                self._logger.warning("tool_definition_unreadable", path=str(path), error=str(exc))
                continue
            if not isinstance(payload, Mapping):
                self._logger.warning("tool_definition_unreadable", path=str(path), error="not an object")
                continue
            definitions.append(ToolDefinition.from_payload(payload))
        return self.sync(definitions, source=str(root))

    def get_tool(self, tool_id: str) -> ToolDefinition:
        try:
            return self._entries[tool_id]
        except KeyError as exc:
            raise ToolNotFoundError(tool_id) from exc

    def entries(self) -> list[ToolDefinition]:
        return list(self._entries.values())

    def snapshot(self) -> ToolCatalogSnapshot | None:
        return self._snapshot
