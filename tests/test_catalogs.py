from __future__ import annotations

import json

import pytest

from dagforge.agents.catalog import AgentCatalog, AgentDefinition
from dagforge.core.config import Settings
from dagforge.tools.catalog_store import ToolCatalogStore, ToolDefinition
from dagforge.tools.exceptions import ToolNotFoundError


def test_tool_catalog_sync_skips_blank_and_duplicate_ids() -> None:
    store = ToolCatalogStore()
    snapshot = store.sync(
        [
            ToolDefinition(tool_id="beta", template="b"),
            ToolDefinition(tool_id="", template="blank"),
            ToolDefinition(tool_id="alpha", template="a1"),
            ToolDefinition(tool_id="alpha", template="a2"),
        ],
        source="test",
    )

    assert [entry.tool_id for entry in snapshot.entries] == ["alpha", "beta"]
    assert snapshot.source == "test"
    assert store.get_tool("alpha").template == "a1"
    assert store.snapshot() is snapshot
    with pytest.raises(ToolNotFoundError):
        store.get_tool("gamma")


def test_tool_catalog_loads_directory_and_ignores_bad_files(tmp_path) -> None:
    (tmp_path / "good.tool.json").write_text(
        json.dumps(
            {
                "id": "good",
                "template": "Do {{ thing }}",
                "input_schema": {"required": ["thing"]},
                "default_parameters": {"temperature": 0.1},
            }
        ),
        encoding="utf-8",
    )
    (tmp_path / "broken.tool.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "list.tool.json").write_text("[]", encoding="utf-8")
    (tmp_path / "ignored.json").write_text(json.dumps({"id": "ignored", "template": "x"}), encoding="utf-8")

    store = ToolCatalogStore()
    snapshot = store.load_directory(tmp_path)

    assert [entry.tool_id for entry in snapshot.entries] == ["good"]
    tool = store.get_tool("good")
    assert tool.input_schema["required"] == ["thing"]
    with pytest.raises(TypeError):
        tool.default_parameters["temperature"] = 0.9  # type: ignore[index]


def test_packaged_catalogs_load() -> None:
    settings = Settings()
    tools = ToolCatalogStore()
    tools.load_directory(settings.catalog.tools_dir)
    agents = AgentCatalog()
    agents.load_file(settings.catalog.agents_path)

    assert {entry.tool_id for entry in tools.entries()} >= {"decompose_objective", "execute_subtask"}
    assert settings.planning.default_capability in agents.roles()
    for role in agents.roles():
        assert tools.get_tool(agents.get_agent(role).tool_id)


def test_agent_catalog_matches_roles_exactly(tmp_path) -> None:
    path = tmp_path / "agents.json"
    path.write_text(
        json.dumps(
            [
                {"role": "writer", "default_model": "m-1", "default_parameters": {"temperature": 0.5}},
                {"role": "writer", "default_model": "m-2"},
                {"role": ""},
                {"role": "coder", "tool_id": "code_tool"},
            ]
        ),
        encoding="utf-8",
    )

    catalog = AgentCatalog()
    catalog.load_file(path)

    assert catalog.roles() == ["coder", "writer"]
    assert catalog.get_agent("writer").default_model == "m-1"
    assert catalog.get_agent("writer").tool_id == "execute_subtask"
    assert catalog.get_agent("coder").tool_id == "code_tool"
    assert catalog.get_agent("Writer") is None


def test_agent_catalog_accepts_wrapped_document(tmp_path) -> None:
    path = tmp_path / "agents.json"
    path.write_text(json.dumps({"agents": [{"role": "planner"}]}), encoding="utf-8")
    catalog = AgentCatalog()
    catalog.load_file(path)
    assert catalog.roles() == ["planner"]

    path.write_text(json.dumps("nope"), encoding="utf-8")
    with pytest.raises(ValueError):
        catalog.load_file(path)


def test_agent_definition_from_payload_defaults() -> None:
    agent = AgentDefinition.from_payload({"role": " researcher "})
    assert agent.role == "researcher"
    assert agent.default_model is None
    assert dict(agent.default_parameters) == {}
