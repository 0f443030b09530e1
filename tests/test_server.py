"""
Tests for the TeamCity MCP Server

Covers tool registration, the lifespan connection check, and the error
envelope returned by tools when TeamCity or argument validation fails.
"""

import os
from unittest.mock import patch

import pytest
from mcp.server.fastmcp import FastMCP

from teamcity_mcp import server
from teamcity_mcp.config import TeamCityConfig
from teamcity_mcp.errors import TeamCityNotFoundError
from teamcity_mcp.server import create_context, full_mode_tool, mcp, teamcity_lifespan
from tests.conftest import make_ctx

FULL_MODE_TOOLS = [
    "set_build_configs_paused",
    "manage_build_triggers",
    "manage_build_dependencies",
    "set_vcs_root_property",
    "delete_vcs_root_property",
    "update_vcs_root_properties",
    "cancel_queued_builds_for_build_type",
    "cancel_queued_builds_by_locator",
    "move_queued_build_to_top",
    "add_parameter",
    "update_parameter",
    "delete_parameter",
]


@pytest.fixture(autouse=True)
def mock_env_vars():
    with patch.dict(os.environ, {
        "TEAMCITY_URL": "https://tc.example.com",
        "TEAMCITY_TOKEN": "mock-token",
        "MCP_MODE": "dev",
    }):
        yield


@pytest.fixture
def ctx(client):
    config = TeamCityConfig(url="https://tc.example.com", token="mock-token")
    return make_ctx(create_context(config, client=client))


@pytest.mark.asyncio
async def test_server_initialization():
    assert mcp.name == "teamcity-mcp"
    tools = await mcp.list_tools()
    tool_names = [tool.name for tool in tools]

    key_tools = [
        "ping",
        "check_teamcity_connection",
        "list_projects",
        "navigate_projects",
        "list_builds",
        "get_build_status",
        "get_build_results",
        "fetch_build_log",
        "trigger_build",
        "list_build_configs",
        "list_parameters",
        "list_build_triggers",
        "check_dependency_cycle",
        "list_artifacts",
        "download_artifact",
        "get_test_summary",
        "list_build_problems",
        "list_vcs_roots",
        "list_changes",
        "list_branches",
    ]
    for tool in key_tools:
        assert tool in tool_names

    for tool in FULL_MODE_TOOLS:
        assert (tool in tool_names) == (server.MCP_MODE == "full")


@pytest.mark.asyncio
async def test_full_mode_tool_registration():
    def sample_tool() -> str:
        """Sample"""
        return "ok"

    dev_server = FastMCP("dev-test")
    with patch("teamcity_mcp.server.MCP_MODE", "dev"):
        assert full_mode_tool(dev_server)(sample_tool) is sample_tool
    assert [t.name for t in await dev_server.list_tools()] == []

    full_server = FastMCP("full-test")
    with patch("teamcity_mcp.server.MCP_MODE", "full"):
        full_mode_tool(full_server)(sample_tool)
    assert [t.name for t in await full_server.list_tools()] == ["sample_tool"]


@pytest.mark.asyncio
async def test_lifespan_fails_when_teamcity_is_unreachable(client):
    client.test_connection.return_value = False
    with patch("teamcity_mcp.server.TeamCityClient", return_value=client):
        with pytest.raises(ValueError, match="Failed to connect to TeamCity at https://tc.example.com"):
            async with teamcity_lifespan(mcp):
                pass
    client.close.assert_called_once()


@pytest.mark.asyncio
async def test_lifespan_yields_context(client):
    client.test_connection.return_value = True
    with patch("teamcity_mcp.server.TeamCityClient", return_value=client):
        async with teamcity_lifespan(mcp) as context:
            assert context.client is client
            assert context.config.url == "https://tc.example.com"
            assert context.config.mode == "dev"
    client.close.assert_called_once()


@pytest.mark.asyncio
async def test_lifespan_requires_credentials():
    with patch.dict(os.environ, {"TEAMCITY_URL": "", "TEAMCITY_TOKEN": ""}):
        with patch("teamcity_mcp.config.dotenv.load_dotenv"):
            with pytest.raises(ValueError, match="TEAMCITY_URL, TEAMCITY_TOKEN"):
                async with teamcity_lifespan(mcp):
                    pass


def test_ping(ctx):
    result = server.ping(ctx, message="hello")
    assert result["status"] == "pong"
    assert result["message"] == "hello"
    assert result["version"] == "1.0.0"


def test_check_connection(ctx, client):
    client.test_connection.return_value = False
    assert server.check_teamcity_connection(ctx) == {"status": "error", "url": "https://tc.example.com", "mode": "dev"}


def test_teamcity_errors_become_envelopes(ctx, client):
    client.get_project.side_effect = TeamCityNotFoundError("Nope")
    result = server.get_project(ctx, project_id="Nope")
    assert result["success"] is False
    assert result["error"]["code"] == "NOT_FOUND"
    assert result["error"]["message"] == "Project with identifier 'Nope' not found"


def test_value_errors_become_validation_envelopes(ctx):
    result = server.list_projects(ctx, page_size=5000)
    assert result["success"] is False
    assert result["error"]["code"] == "VALIDATION_ERROR"
    assert "page_size" in result["error"]["message"]


def test_list_build_dependencies(ctx, client):
    client.list_dependencies.return_value = {"artifact-dependency": [{"id": "a1", "source-buildType": {"id": "Lib"}}]}
    result = server.list_build_dependencies(ctx, build_type_id="App", dependency_type="artifact")
    assert result["build_type_id"] == "App"
    assert result["dependencies"][0]["depends_on"] == "Lib"


def test_check_dependency_cycle_follows_snapshot_dependencies(ctx, client):
    client.list_triggers.return_value = {"trigger": []}
    client.list_dependencies.side_effect = lambda build_type_id, kind: {
        "Lib": {"snapshot-dependency": [{"id": "s1", "source-buildType": {"id": "App"}}]},
    }.get(build_type_id, {})

    result = server.check_dependency_cycle(ctx, source_build_type_id="App", target_build_type_id="Lib")
    assert result["snapshot_cycle"] is True
    assert result["has_circular_dependency"] is True
    assert result["chain"] == ["App", "Lib"]


def test_manage_build_triggers_actions(ctx, client):
    result = server.manage_build_triggers(ctx, build_type_id="App", action="rename")
    assert result["error"]["code"] == "VALIDATION_ERROR"
    assert result["error"]["message"] == "action must be one of: add, update, delete"

    result = server.manage_build_triggers(ctx, build_type_id="App", action="add")
    assert result["error"]["message"] == "trigger_type is required to add a trigger"

    result = server.manage_build_triggers(ctx, build_type_id="App", action="delete", trigger_id="T1")
    assert result == {"success": True, "message": "Trigger deleted successfully"}
    client.delete_trigger.assert_called_once_with("App", "T1")


def test_manage_build_dependencies_delete(ctx, client):
    result = server.manage_build_dependencies(
        ctx, build_type_id="App", action="delete", dependency_type="snapshot", dependency_id="s1"
    )
    assert result == {
        "id": "s1",
        "success": True,
        "action": "delete",
        "build_type_id": "App",
        "dependency_type": "snapshot",
    }

    missing = server.manage_build_dependencies(ctx, build_type_id="App", action="update", dependency_type="artifact")
    assert missing["error"]["message"] == "dependency_id is required to update a dependency"


def test_unexpected_errors_become_internal_error_envelopes(ctx, client):
    client.get_build.side_effect = KeyError("testOccurrences")
    result = server.get_test_summary(ctx, build_id="5")
    assert result == {"success": False, "error": {"code": "INTERNAL_ERROR", "message": "'testOccurrences'"}}


def test_vcs_root_property_tools_accept_a_name_argument(ctx, client):
    result = server.set_vcs_root_property(ctx, vcs_root_id="Repo", name="branch", value="refs/heads/main")
    assert result == {"success": True, "action": "set_vcs_root_property", "id": "Repo", "name": "branch"}
    client.set_vcs_root_property.assert_called_once_with("Repo", "branch", "refs/heads/main")

    result = server.delete_vcs_root_property(ctx, vcs_root_id="Repo", name="branchSpec")
    assert result["success"] is True
    client.delete_vcs_root_property.assert_called_once_with("Repo", "branchSpec")


def test_parameter_tools(ctx, client):
    client.list_build_parameters.return_value = {"property": [{"name": "env.TARGET", "value": "staging"}]}
    listed = server.list_parameters(ctx, build_type_id="App")
    assert listed["parameters"] == [{"name": "env.TARGET", "value": "staging", "kind": "env"}]

    duplicate = server.add_parameter(ctx, build_type_id="App", name="env.TARGET", value="prod")
    assert duplicate["error"]["code"] == "VALIDATION_ERROR"

    updated = server.update_parameter(ctx, build_type_id="App", name="env.TARGET", value="prod")
    assert updated["success"] is True
    client.set_build_parameter.assert_called_once_with("App", "env.TARGET", "prod")


def test_list_branches_requires_a_scope(ctx):
    result = server.list_branches(ctx)
    assert result["error"]["code"] == "VALIDATION_ERROR"
    assert result["error"]["message"] == "Either project_id or build_type_id is required"


def test_get_build_results_for_missing_build(ctx, client):
    client.get_build.side_effect = TeamCityNotFoundError("42")
    result = server.get_build_results(ctx, build_id="42", include_changes=True)
    assert result["error"]["code"] == "NOT_FOUND"
