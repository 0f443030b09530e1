import pytest

from teamcity_mcp.changes import ChangeManager
from teamcity_mcp.errors import ValidationError

CHANGE = {
    "id": 311,
    "version": "a1b2c3d",
    "username": "jdoe",
    "date": "20240301T101500+0000",
    "comment": "Fix flaky login test\n",
    "webUrl": "https://tc.example.com/viewModification.html?modId=311",
    "files": {"file": [
        {"file": "src/login.py", "relative-file": "src/login.py", "changeType": "edited"},
        {"file": "tests/test_login.py"},
    ]},
}


@pytest.fixture
def changes(client):
    return ChangeManager(client)


def test_list_changes_for_a_build(changes, client):
    client.list_changes.return_value = {"count": 1, "change": [CHANGE]}
    result = changes.list_changes(build_id="42", page_size=20)
    assert result["items"] == [{
        "id": 311,
        "revision": "a1b2c3d",
        "author": "jdoe",
        "date": "20240301T101500+0000",
        "comment": "Fix flaky login test",
        "web_url": "https://tc.example.com/viewModification.html?modId=311",
        "files": [
            {"path": "src/login.py", "change_type": "edited"},
            {"path": "tests/test_login.py", "change_type": "edited"},
        ],
    }]
    assert client.list_changes.call_args[0][0] == "build:(id:42),count:20"


def test_list_changes_combines_filters_and_pages(changes, client):
    client.list_changes.side_effect = [{"change": [CHANGE, CHANGE]}, {"change": []}]
    result = changes.list_changes(locator="username:jdoe", project_id="Web", page_size=2, fetch_all=True)
    assert len(result["items"]) == 2
    assert result["pagination"]["fetched"] == 2
    assert client.list_changes.call_args_list[1][0][0] == "username:jdoe,project:(id:Web),count:2,start:2"


def test_list_branches_for_build_type(changes, client):
    client.list_builds.return_value = {"build": [
        {"id": 5, "branchName": "feature/login"},
        {"id": 4, "branchName": "main", "defaultBranch": True},
        {"id": 3, "branchName": "feature/login"},
        {"id": 2},
    ]}
    result = changes.list_branches(build_type_id="App_Build", project_id="Web")
    assert result == {"branches": ["feature/login", "main"], "count": 2, "default_branch": "main"}
    assert client.list_builds.call_args[0][0] == "buildType:(id:App_Build),branch:default:any,count:100"


def test_list_branches_for_project(changes, client):
    client.list_builds.return_value = {}
    assert changes.list_branches(project_id="Web") == {"branches": [], "count": 0}
    assert client.list_builds.call_args[0][0] == "affectedProject:(id:Web),branch:default:any,count:100"


def test_list_branches_needs_a_scope(changes, client):
    with pytest.raises(ValidationError, match="Either project_id or build_type_id is required"):
        changes.list_branches()
    client.list_builds.assert_not_called()
