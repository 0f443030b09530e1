import pytest

from teamcity_mcp.build_configs import BuildConfigNavigator
from teamcity_mcp.cache import TTLCache
from teamcity_mcp.errors import (
    BuildConfigurationNotFoundError,
    PermissionDeniedError,
    ProjectNotFoundError,
    TeamCityAuthorizationError,
    TeamCityNotFoundError,
    ValidationError,
)


def _build_type(build_type_id, name, project_id="Web", project_name="Web", **extra):
    build_type = {"id": build_type_id, "name": name, "projectId": project_id, "projectName": project_name}
    build_type.update(extra)
    return build_type


def _vcs_entry(url, branch="refs/heads/main", vcs_name="jetbrains.git"):
    return {
        "vcs-root-entry": [{
            "vcs-root": {
                "id": "Root1",
                "name": "origin",
                "vcsName": vcs_name,
                "properties": {"property": [{"name": "url", "value": url}, {"name": "branch", "value": branch}]},
            }
        }]
    }


def _last_build(status, finish_date):
    return {"build": [{"number": "1", "status": status, "finishDate": finish_date}]}


@pytest.fixture
def navigator(client, clock):
    return BuildConfigNavigator(client, cache=TTLCache(120, clock=clock))


def test_list_build_configs_basic(navigator, client):
    client.list_build_types.return_value = {"count": 2, "buildType": [_build_type("Web_Build", "Build"), _build_type("Web_Test", "Test")]}
    result = navigator.list_build_configs(project_id="Web")

    locator = client.list_build_types.call_args[0][0]
    assert locator == "affectedProject:(id:Web)"
    assert [c["id"] for c in result["build_configs"]] == ["Web_Build", "Web_Test"]
    assert result["total_count"] == 2
    assert result["has_more"] is False
    assert result["view_mode"] == "list"
    assert "vcs_roots" not in result["build_configs"][0]


def test_results_are_cached(navigator, client):
    client.list_build_types.return_value = {"count": 0}
    navigator.list_build_configs()
    navigator.list_build_configs()
    assert client.list_build_types.call_count == 1


def test_project_ids_and_name_pattern(navigator, client):
    client.list_build_types.return_value = {
        "buildType": [
            _build_type("Web_Build", "Build"),
            _build_type("Api_Build", "Build", project_id="Api", project_name="Api"),
            _build_type("Web_Deploy", "Deploy Production"),
        ]
    }
    assert [c["id"] for c in navigator.list_build_configs(project_ids=["Api"])["build_configs"]] == ["Api_Build"]
    assert [c["id"] for c in navigator.list_build_configs(name_pattern="deploy")["build_configs"]] == ["Web_Deploy"]
    assert [c["id"] for c in navigator.list_build_configs(name_pattern="B*")["build_configs"]] == ["Web_Build", "Api_Build"]


def test_vcs_roots_and_filter(navigator, client):
    client.list_build_types.return_value = {
        "buildType": [
            _build_type("Web_Build", "Build", **{"vcs-root-entries": _vcs_entry("https://github.com/acme/web.git")}),
            _build_type("Web_Docs", "Docs", **{"vcs-root-entries": _vcs_entry("https://gitlab.com/acme/docs.git")}),
        ]
    }
    result = navigator.list_build_configs(include_vcs_roots=True)
    assert result["build_configs"][0]["vcs_roots"] == [{
        "id": "Root1",
        "name": "origin",
        "vcs_name": "jetbrains.git",
        "url": "https://github.com/acme/web.git",
        "branch": "refs/heads/main",
    }]
    assert "vcs-root-entries" in client.list_build_types.call_args[1]["fields"]

    filtered = navigator.list_build_configs(vcs_root_filter={"url": "github.com"})
    assert [c["id"] for c in filtered["build_configs"]] == ["Web_Build"]


def test_parameters(navigator, client):
    client.list_build_types.return_value = {
        "buildType": [_build_type("Web_Build", "Build", parameters={"property": [{"name": "env.JDK", "value": "17"}]})]
    }
    result = navigator.list_build_configs(include_parameters=True)
    assert result["build_configs"][0]["parameters"] == {"env.JDK": "17"}


def test_status_filter(navigator, client):
    client.list_build_types.return_value = {
        "buildType": [
            _build_type("Web_Build", "Build", builds=_last_build("FAILURE", "20240301T100000+0000")),
            _build_type("Web_Test", "Test", paused=True, builds=_last_build("SUCCESS", "20230101T100000+0000")),
            _build_type("Web_Docs", "Docs"),
        ]
    }
    failing = navigator.list_build_configs(status_filter={"last_build_status": "FAILURE"})
    assert [c["id"] for c in failing["build_configs"]] == ["Web_Build"]

    paused = navigator.list_build_configs(status_filter={"paused": True})
    assert [c["id"] for c in paused["build_configs"]] == ["Web_Test"]

    idle = navigator.list_build_configs(status_filter={"has_recent_activity": False})
    assert [c["id"] for c in idle["build_configs"]] == ["Web_Docs"]

    recent = navigator.list_build_configs(status_filter={"active_since": "2024-01-01T00:00:00Z"})
    assert [c["id"] for c in recent["build_configs"]] == ["Web_Build", "Web_Docs"]


def test_sorting(navigator, client):
    client.list_build_types.return_value = {
        "buildType": [
            _build_type("B", "beta", project_name="Zeta", builds=_last_build("SUCCESS", "20240101T000000+0000")),
            _build_type("A", "Alpha", project_name="Alpha"),
            _build_type("C", "gamma", project_name="Alpha", builds=_last_build("SUCCESS", "20240301T000000+0000")),
        ]
    }
    assert [c["id"] for c in navigator.list_build_configs(sort_by="name")["build_configs"]] == ["A", "B", "C"]
    assert [c["id"] for c in navigator.list_build_configs(sort_by="name", sort_order="desc")["build_configs"]] == ["C", "B", "A"]
    assert [c["id"] for c in navigator.list_build_configs(sort_by="project")["build_configs"]] == ["A", "C", "B"]
    assert [c["id"] for c in navigator.list_build_configs(sort_by="last_modified")["build_configs"]] == ["C", "B", "A"]


def test_project_grouped_view(navigator, client):
    client.list_build_types.return_value = {
        "buildType": [
            _build_type("Web_Build", "Build"),
            _build_type("Api_Build", "Build", project_id="Api", project_name="Api"),
        ]
    }
    result = navigator.list_build_configs(view_mode="project-grouped")
    assert set(result["grouped_by_project"]) == {"Web", "Api"}
    assert result["grouped_by_project"]["Api"]["build_configs"][0]["id"] == "Api_Build"


def test_has_more_with_limit(navigator, client):
    client.list_build_types.return_value = {"count": 5, "buildType": [_build_type("A", "a"), _build_type("B", "b")]}
    result = navigator.list_build_configs(limit=2, offset=0)
    assert result["has_more"] is True
    assert client.list_build_types.call_args[0][0] == "count:2,start:0"


def test_project_hierarchy(navigator, client):
    client.list_build_types.return_value = {"buildType": [_build_type("Web_Build", "Build")]}
    client.get_project.return_value = {
        "id": "Web",
        "name": "Web",
        "parentProject": {"id": "Products", "name": "Products", "parentProject": {"id": "_Root", "name": "<Root project>"}},
    }
    result = navigator.list_build_configs(include_project_hierarchy=True)
    assert [p["id"] for p in result["build_configs"][0]["project_hierarchy"]] == ["_Root", "Products", "Web"]


def test_validation(navigator, client):
    with pytest.raises(ValidationError, match="view_mode"):
        navigator.list_build_configs(view_mode="tree")
    with pytest.raises(ValidationError, match="sort_by"):
        navigator.list_build_configs(sort_by="size")
    with pytest.raises(ValidationError, match="Invalid status value"):
        navigator.list_build_configs(status_filter={"last_build_status": "GREEN"})
    client.list_build_types.assert_not_called()


def test_friendly_errors(navigator, client):
    client.list_build_types.side_effect = TeamCityAuthorizationError()
    with pytest.raises(PermissionDeniedError, match="Permission denied"):
        navigator.list_build_configs()

    client.list_build_types.side_effect = TeamCityNotFoundError("x")
    with pytest.raises(ProjectNotFoundError, match="Project Missing not found"):
        navigator.list_build_configs(project_id="Missing")


def test_get_build_config_not_found(navigator, client):
    client.get_build_type.side_effect = TeamCityNotFoundError("Nope")
    with pytest.raises(BuildConfigurationNotFoundError):
        navigator.get_build_config("Nope")


def test_set_paused_cancels_queued_builds(navigator, client):
    client.list_queued_builds.return_value = {"build": [{"id": 1, "buildTypeId": "A"}, {"id": 2, "buildTypeId": "Z"}]}
    result = navigator.set_paused(["A", "B"], paused=True, cancel_queued=True)
    assert client.set_build_type_field.call_count == 2
    client.set_build_type_field.assert_any_call("A", "paused", "true")
    client.cancel_queued_build.assert_called_once_with(1)
    assert result["updated"] == 2
    assert result["canceled"] == 1

    with pytest.raises(ValidationError):
        navigator.set_paused([], paused=False)
