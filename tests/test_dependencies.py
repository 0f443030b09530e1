import xml.etree.ElementTree as ET

import pytest

from teamcity_mcp.dependencies import BuildDependencyManager, dependency_to_xml, parse_dependency
from teamcity_mcp.errors import (
    BuildConfigurationNotFoundError,
    CircularDependencyError,
    DependencyNotFoundError,
    TeamCityNotFoundError,
    TeamCityResponseError,
    ValidationError,
)


def _snapshot(source_id):
    return {"id": f"dep_{source_id}", "type": "snapshot_dependency", "source-buildType": {"id": source_id}}


@pytest.fixture
def dependencies(client):
    return BuildDependencyManager(client)


def test_artifact_dependency_xml():
    body = dependency_to_xml("artifact", {
        "type": "artifactDependency",
        "depends_on": "Lib_Build",
        "disabled": False,
        "properties": {"pathRules": "lib.jar => libs", "revisionName": "lastSuccessful"},
    })
    root = ET.fromstring(body)
    assert root.tag == "artifact-dependency"
    assert root.get("type") == "artifact_dependency"
    assert root.get("disabled") == "false"
    assert root.find("source-buildType").get("id") == "Lib_Build"
    assert {p.get("name"): p.get("value") for p in root.iter("property")} == {
        "pathRules": "lib.jar => libs",
        "revisionName": "lastSuccessful",
    }
    assert root.find("options") is None


def test_snapshot_dependency_xml_carries_options():
    body = dependency_to_xml("snapshot", {
        "id": "dep_1",
        "type": "snapshot_dependency",
        "depends_on": "Lib_Build",
        "options": {"run-build-on-the-same-agent": "true"},
    })
    root = ET.fromstring(body)
    assert root.get("id") == "dep_1"
    assert root.find("options/option").get("name") == "run-build-on-the-same-agent"


def test_parse_dependency():
    parsed = parse_dependency("snapshot", {
        "id": "dep_1",
        "type": "snapshot_dependency",
        "disabled": "true",
        "source-buildType": {"id": "Lib_Build", "name": "Build"},
        "options": {"option": [{"name": "sync-revisions", "value": "true"}]},
    })
    assert parsed["depends_on"] == "Lib_Build"
    assert parsed["depends_on_name"] == "Build"
    assert parsed["disabled"] is True
    assert parsed["options"] == {"sync-revisions": "true"}


def test_list_dependencies_both_kinds(dependencies, client):
    client.list_dependencies.side_effect = [
        {"artifact-dependency": {"id": "a1", "source-buildType": {"id": "Lib"}}},
        {"snapshot-dependency": [_snapshot("Core")]},
    ]
    result = dependencies.list_dependencies("App_Build")
    assert [(d["dependency_type"], d["depends_on"]) for d in result] == [("artifact", "Lib"), ("snapshot", "Core")]


def test_list_dependencies_errors(dependencies, client):
    with pytest.raises(ValidationError, match="dependency_type must be one of"):
        dependencies.list_dependencies("App_Build", "source")
    client.list_dependencies.side_effect = TeamCityNotFoundError("App_Build")
    with pytest.raises(BuildConfigurationNotFoundError):
        dependencies.list_dependencies("App_Build")


def test_add_snapshot_dependency_moves_options_out_of_properties(dependencies, client):
    client.list_dependencies.return_value = {}
    client.add_dependency.return_value = {"id": "dep_Lib"}
    result = dependencies.add_dependency(
        "App_Build", "snapshot", "Lib_Build", properties={"run-build-on-the-same-agent": True, "custom": "x"}
    )
    assert result == {"id": "dep_Lib"}

    build_type_id, dependency_type, body = client.add_dependency.call_args[0]
    assert (build_type_id, dependency_type) == ("App_Build", "snapshot")
    root = ET.fromstring(body)
    assert root.get("type") == "snapshot_dependency"
    assert {o.get("name"): o.get("value") for o in root.iter("option")} == {"run-build-on-the-same-agent": "true"}
    assert {p.get("name"): p.get("value") for p in root.iter("property")} == {"custom": "x"}


def test_add_dependency_validation(dependencies, client):
    with pytest.raises(ValidationError, match="depends_on is required"):
        dependencies.add_dependency("App_Build", "artifact", "  ")
    with pytest.raises(CircularDependencyError, match="cannot depend on itself"):
        dependencies.add_dependency("App_Build", "artifact", "App_Build")
    client.add_dependency.assert_not_called()


def test_add_snapshot_dependency_detects_cycle(dependencies, client):
    graph = {"Lib_Build": [_snapshot("Core_Build")], "Core_Build": [_snapshot("App_Build")]}
    client.list_dependencies.side_effect = lambda build_type_id, kind: {"snapshot-dependency": graph.get(build_type_id, [])}
    with pytest.raises(CircularDependencyError, match="would create a cycle"):
        dependencies.add_dependency("App_Build", "snapshot", "Lib_Build")
    client.add_dependency.assert_not_called()


def test_add_dependency_requires_an_id_back(dependencies, client):
    client.add_dependency.return_value = {}
    with pytest.raises(TeamCityResponseError, match="did not return a dependency identifier"):
        dependencies.add_dependency("App_Build", "artifact", "Lib_Build")


def test_update_dependency_merges_existing(dependencies, client):
    client.get_dependency.return_value = {
        "id": "a1",
        "type": "artifact_dependency",
        "source-buildType": {"id": "Lib_Build"},
        "properties": {"property": [{"name": "pathRules", "value": "*.jar"}, {"name": "cleanDestinationDirectory", "value": "false"}]},
    }
    assert dependencies.update_dependency("App_Build", "artifact", "a1", properties={"pathRules": "lib/*.jar"}, disabled=True) == {"id": "a1"}

    args = client.replace_dependency.call_args[0]
    assert args[:3] == ("App_Build", "artifact", "a1")
    root = ET.fromstring(args[3])
    assert root.get("disabled") == "true"
    assert root.find("source-buildType").get("id") == "Lib_Build"
    assert {p.get("name"): p.get("value") for p in root.iter("property")} == {
        "pathRules": "lib/*.jar",
        "cleanDestinationDirectory": "false",
    }


def test_update_missing_dependency(dependencies, client):
    client.get_dependency.side_effect = TeamCityNotFoundError("a9")
    with pytest.raises(DependencyNotFoundError, match="Dependency a9 was not found on App_Build"):
        dependencies.update_dependency("App_Build", "artifact", "a9")


def test_delete_dependency(dependencies, client):
    dependencies.delete_dependency("App_Build", "snapshot", "dep_Lib")
    client.delete_dependency.assert_called_once_with("App_Build", "snapshot", "dep_Lib")

    with pytest.raises(ValidationError, match="dependency_id is required"):
        dependencies.delete_dependency("App_Build", "snapshot", "")

    client.delete_dependency.side_effect = TeamCityNotFoundError("dep_X")
    with pytest.raises(DependencyNotFoundError):
        dependencies.delete_dependency("App_Build", "snapshot", "dep_X")


def test_depends_on_walks_transitively(dependencies, client):
    graph = {"A": [_snapshot("B")], "B": [_snapshot("C")], "C": []}
    client.list_dependencies.side_effect = lambda build_type_id, kind: {"snapshot-dependency": graph.get(build_type_id, [])}
    assert dependencies.depends_on("A", "C") is True
    assert dependencies.depends_on("C", "A") is False
    assert dependencies.depends_on("A", "C", max_depth=0) is False
