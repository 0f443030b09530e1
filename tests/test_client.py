from unittest.mock import MagicMock

import pytest
import requests

from teamcity_mcp.client import TeamCityClient
from teamcity_mcp.errors import (
    TeamCityAuthenticationError,
    TeamCityNetworkError,
    TeamCityNotFoundError,
    TeamCityResponseError,
    TeamCityTimeoutError,
)
from tests.conftest import make_response


@pytest.fixture
def session():
    session = requests.Session()
    session.request = MagicMock(return_value=make_response(200, body={}))
    return session


@pytest.fixture
def tc(session):
    return TeamCityClient("https://tc.example.com/", "secret-token", timeout=5, session=session)


def test_session_headers(tc, session):
    assert tc.rest_url == "https://tc.example.com/app/rest"
    assert session.headers["Authorization"] == "Bearer secret-token"
    assert session.headers["Accept"] == "application/json"


def test_get_json_passes_locator_and_fields(tc, session):
    session.request.return_value = make_response(200, body={"count": 1, "project": [{"id": "P"}]})
    payload = tc.list_projects("archived:false", fields="count,project(id)")
    assert payload["count"] == 1
    session.request.assert_called_once_with(
        "GET",
        "https://tc.example.com/app/rest/projects",
        params={"locator": "archived:false", "fields": "count,project(id)"},
        timeout=5,
    )


def test_empty_body_returns_empty_dict(tc, session):
    session.request.return_value = make_response(200, text="")
    assert tc.get_server_info() == {}


def test_idempotent_requests_are_retried_with_backoff():
    retry = TeamCityClient("https://tc.example.com", "t").session.get_adapter("https://tc.example.com/app/rest").max_retries
    assert retry.total == 3
    assert retry.backoff_factor == 1
    assert set(retry.status_forcelist) == {408, 429, 500, 502, 503, 504}
    assert retry.respect_retry_after_header is True
    assert "POST" not in retry.allowed_methods
    assert "GET" in retry.allowed_methods

    plain = TeamCityClient("http://tc.local", "t", max_retries=0).session.get_adapter("http://tc.local/app/rest")
    assert plain.max_retries.total == 0


def test_non_json_body_is_invalid_response(tc, session):
    session.request.return_value = make_response(200, text="<html>login</html>")
    with pytest.raises(TeamCityResponseError) as excinfo:
        tc.get_server_info()
    assert excinfo.value.code == "INVALID_RESPONSE"


def test_http_errors_become_typed_errors(tc, session):
    session.request.return_value = make_response(401, text="Unauthorized")
    with pytest.raises(TeamCityAuthenticationError):
        tc.get_server_info()

    session.request.return_value = make_response(404, text="No build found")
    with pytest.raises(TeamCityNotFoundError):
        tc.get_build("123")


def test_transport_failures(tc, session):
    session.request.side_effect = requests.exceptions.Timeout()
    with pytest.raises(TeamCityTimeoutError, match="5000ms"):
        tc.get_server_info()

    session.request.side_effect = requests.exceptions.ConnectionError("refused")
    with pytest.raises(TeamCityNetworkError):
        tc.get_server_info()


def test_test_connection_reports_failure(tc, session):
    assert tc.test_connection() is True
    session.request.side_effect = requests.exceptions.ConnectionError("refused")
    assert tc.test_connection() is False


def test_build_log_uses_server_root(tc, session):
    session.request.return_value = make_response(200, text="line 1\nline 2")
    assert tc.get_build_log(77) == "line 1\nline 2"
    args, kwargs = session.request.call_args
    assert args == ("GET", "https://tc.example.com/downloadBuildLog.html")
    assert kwargs["params"] == {"buildId": 77, "plain": "true"}


def test_artifact_path_segments_are_encoded(tc, session):
    session.request.return_value = make_response(200, text="data")
    tc.get_artifact_content("9", "reports/test results.xml")
    args, _ = session.request.call_args
    assert args[1] == "https://tc.example.com/app/rest/builds/id:9/artifacts/content/reports/test%20results.xml"


def test_ids_are_quoted(tc, session):
    tc.get_vcs_root("My Root")
    args, _ = session.request.call_args
    assert args[1] == "https://tc.example.com/app/rest/vcs-roots/id:My%20Root"


def test_vcs_root_property_is_sent_as_text(tc, session):
    session.request.return_value = make_response(200, text="refs/heads/main")
    tc.set_vcs_root_property("Root", "branch", "refs/heads/main")
    args, kwargs = session.request.call_args
    assert args == ("PUT", "https://tc.example.com/app/rest/vcs-roots/id:Root/properties/branch")
    assert kwargs["data"] == b"refs/heads/main"
    assert kwargs["headers"]["Content-Type"] == "text/plain"


def test_dependency_xml_is_posted(tc, session):
    session.request.return_value = make_response(200, body={"id": "ARTIFACT_1"})
    assert tc.add_dependency("Cfg", "artifact", "<artifact-dependency/>") == {"id": "ARTIFACT_1"}
    args, kwargs = session.request.call_args
    assert args[1] == "https://tc.example.com/app/rest/buildTypes/id:Cfg/artifact-dependencies"
    assert kwargs["headers"] == {"Content-Type": "application/xml"}


def test_unknown_dependency_type(tc):
    with pytest.raises(ValueError, match="Unknown dependency type"):
        tc.list_dependencies("Cfg", "source")


def test_build_parameter_endpoints(tc, session):
    tc.set_build_parameter("Cfg", "env.DEPLOY", "prod")
    args, kwargs = session.request.call_args
    assert args == ("PUT", "https://tc.example.com/app/rest/buildTypes/id:Cfg/parameters/env.DEPLOY")
    assert kwargs["json"] == {"name": "env.DEPLOY", "value": "prod"}

    tc.delete_build_parameter("Cfg", "env.DEPLOY")
    args, _ = session.request.call_args
    assert args == ("DELETE", "https://tc.example.com/app/rest/buildTypes/id:Cfg/parameters/env.DEPLOY")


def test_queue_order_is_sent_as_numeric_ids(tc, session):
    tc.set_queue_order(["17"])
    args, kwargs = session.request.call_args
    assert args == ("PUT", "https://tc.example.com/app/rest/buildQueue/order")
    assert kwargs["json"] == {"build": [{"id": 17}]}
