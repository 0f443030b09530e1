"""
TeamCity REST client

A thin wrapper over requests.Session. Each method maps to one REST endpoint
and returns the decoded JSON (or text/bytes for log and artifact content).
Transport and HTTP failures surface as TeamCityError subclasses.
"""

from typing import Any, Dict, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from teamcity_mcp.errors import (
    TeamCityError,
    TeamCityNetworkError,
    TeamCityResponseError,
    TeamCityTimeoutError,
    error_from_response,
)
from teamcity_mcp.log import debug_log

RETRY_STATUSES = (408, 429, 500, 502, 503, 504)

DEPENDENCY_ENDPOINTS = {
    "artifact": "artifact-dependencies",
    "snapshot": "snapshot-dependencies",
}


def _id(value) -> str:
    """Quote a locator id for use inside a URL path."""
    return quote(str(value), safe="")


def artifact_content_path(build_id, artifact_path: str) -> str:
    """REST path of an artifact file, each path segment percent-encoded."""
    encoded = "/".join(quote(segment, safe="") for segment in artifact_path.split("/"))
    return f"/builds/id:{_id(build_id)}/artifacts/content/{encoded}"


class TeamCityClient:
    """Synchronous client for the TeamCity REST API."""

    def __init__(
        self,
        url: str,
        token: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = url.rstrip("/")
        self.rest_url = f"{self.base_url}/app/rest"
        self.timeout = timeout
        self.session = session or requests.Session()
        # Idempotent methods only; exhausted retries hand back the last response
        retry = Retry(
            total=max_retries,
            backoff_factor=1,
            status_forcelist=RETRY_STATUSES,
            respect_retry_after_header=True,
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        })

    def close(self):
        self.session.close()

    # Transport

    def request(self, method: str, path: str, raw: bool = False, **kwargs) -> requests.Response:
        """Send a request relative to the REST root (or the server root when raw=True)."""
        url = f"{self.base_url if raw else self.rest_url}{path}"
        kwargs.setdefault("timeout", self.timeout)
        debug_log(f"{method} {url}")
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.exceptions.Timeout:
            raise TeamCityTimeoutError(kwargs["timeout"])
        except requests.exceptions.ConnectionError as e:
            raise TeamCityNetworkError(f"Unable to reach TeamCity at {self.base_url}: {str(e)}")
        except requests.exceptions.RequestException as e:
            raise TeamCityError(f"Request failed: {str(e)}", code="REQUEST_ERROR")
        if response.status_code >= 400:
            raise error_from_response(response)
        return response

    def get_json(self, path: str, locator: Optional[str] = None, fields: Optional[str] = None, **params) -> Any:
        if locator:
            params["locator"] = locator
        if fields:
            params["fields"] = fields
        response = self.request("GET", path, params=params or None)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise TeamCityResponseError(f"TeamCity returned non-JSON content for {path}")

    def send_json(self, method: str, path: str, body: Any) -> Any:
        response = self.request(method, path, json=body)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"text": response.text}

    def send_xml(self, method: str, path: str, body: str) -> Any:
        response = self.request(
            method,
            path,
            data=body.encode("utf-8"),
            headers={"Content-Type": "application/xml"},
        )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"text": response.text}

    def send_text(self, method: str, path: str, text: str) -> str:
        response = self.request(
            method,
            path,
            data=text.encode("utf-8"),
            headers={"Content-Type": "text/plain", "Accept": "text/plain"},
        )
        return response.text

    def delete(self, path: str):
        self.request("DELETE", path)

    # Server

    def get_server_info(self) -> Dict[str, Any]:
        return self.get_json("/server")

    def test_connection(self) -> bool:
        try:
            self.get_server_info()
            return True
        except TeamCityError as e:
            debug_log(f"TeamCity connection test failed: {str(e)}")
            return False

    # Projects

    def list_projects(self, locator: Optional[str] = None, fields: Optional[str] = None) -> Dict[str, Any]:
        return self.get_json("/projects", locator=locator, fields=fields)

    def get_project(self, project_id: str, fields: Optional[str] = None) -> Dict[str, Any]:
        return self.get_json(f"/projects/id:{_id(project_id)}", fields=fields)

    # Build configurations

    def list_build_types(self, locator: Optional[str] = None, fields: Optional[str] = None) -> Dict[str, Any]:
        return self.get_json("/buildTypes", locator=locator, fields=fields)

    def get_build_type(self, build_type_id: str, fields: Optional[str] = None) -> Dict[str, Any]:
        return self.get_json(f"/buildTypes/id:{_id(build_type_id)}", fields=fields)

    def set_build_type_field(self, build_type_id: str, field: str, value: str) -> str:
        return self.send_text("PUT", f"/buildTypes/id:{_id(build_type_id)}/{field}", value)

    def list_vcs_root_entries(self, build_type_id: str) -> Dict[str, Any]:
        return self.get_json(f"/buildTypes/id:{_id(build_type_id)}/vcs-root-entries")

    def list_build_parameters(self, build_type_id: str) -> Dict[str, Any]:
        return self.get_json(f"/buildTypes/id:{_id(build_type_id)}/parameters")

    def add_build_parameter(self, build_type_id: str, name: str, value: str) -> Dict[str, Any]:
        return self.send_json("POST", f"/buildTypes/id:{_id(build_type_id)}/parameters", {"name": name, "value": value})

    def set_build_parameter(self, build_type_id: str, name: str, value: str) -> Dict[str, Any]:
        return self.send_json(
            "PUT",
            f"/buildTypes/id:{_id(build_type_id)}/parameters/{_id(name)}",
            {"name": name, "value": value},
        )

    def delete_build_parameter(self, build_type_id: str, name: str):
        self.delete(f"/buildTypes/id:{_id(build_type_id)}/parameters/{_id(name)}")

    # Builds

    def list_builds(self, locator: Optional[str] = None, fields: Optional[str] = None) -> Dict[str, Any]:
        return self.get_json("/builds", locator=locator, fields=fields)

    def get_build(self, build_id, fields: Optional[str] = None) -> Dict[str, Any]:
        return self.get_json(f"/builds/id:{_id(build_id)}", fields=fields)

    def get_build_statistics(self, build_id) -> Dict[str, Any]:
        return self.get_json(f"/builds/id:{_id(build_id)}/statistics")

    def get_build_log(self, build_id) -> str:
        response = self.request(
            "GET",
            "/downloadBuildLog.html",
            raw=True,
            params={"buildId": build_id, "plain": "true"},
            headers={"Accept": "text/plain"},
        )
        return response.text

    # Build queue

    def list_queued_builds(self, locator: Optional[str] = None, fields: Optional[str] = None) -> Dict[str, Any]:
        return self.get_json("/buildQueue", locator=locator, fields=fields)

    def get_queued_build(self, build_id, fields: Optional[str] = None) -> Dict[str, Any]:
        return self.get_json(f"/buildQueue/id:{_id(build_id)}", fields=fields)

    def queue_build(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self.send_json("POST", "/buildQueue", body)

    def cancel_queued_build(self, build_id):
        self.delete(f"/buildQueue/id:{_id(build_id)}")

    def set_queue_order(self, build_ids) -> Dict[str, Any]:
        """Put the given queued builds at the head of the queue, in order."""
        return self.send_json("PUT", "/buildQueue/order", {"build": [{"id": int(b)} for b in build_ids]})

    # Changes

    def list_changes(self, locator: Optional[str] = None, fields: Optional[str] = None) -> Dict[str, Any]:
        return self.get_json("/changes", locator=locator, fields=fields)

    # Artifacts

    def list_artifacts(self, build_id, recursive: bool = False) -> Dict[str, Any]:
        fields = "file(name,fullName,size,modificationTime,children)"
        return self.get_json(
            f"/builds/id:{_id(build_id)}/artifacts/children",
            locator="recursive:true" if recursive else None,
            fields=fields,
        )

    def get_artifact_content(self, build_id, artifact_path: str) -> requests.Response:
        return self.request(
            "GET",
            artifact_content_path(build_id, artifact_path),
            headers={"Accept": "*/*"},
        )

    # Tests and problems

    def list_test_occurrences(self, locator: str, fields: Optional[str] = None) -> Dict[str, Any]:
        return self.get_json("/testOccurrences", locator=locator, fields=fields)

    def list_problem_occurrences(self, locator: str, fields: Optional[str] = None) -> Dict[str, Any]:
        return self.get_json("/problemOccurrences", locator=locator, fields=fields)

    # VCS roots

    def list_vcs_roots(self, locator: Optional[str] = None, fields: Optional[str] = None) -> Dict[str, Any]:
        return self.get_json("/vcs-roots", locator=locator, fields=fields)

    def get_vcs_root(self, vcs_root_id: str) -> Dict[str, Any]:
        return self.get_json(f"/vcs-roots/id:{_id(vcs_root_id)}")

    def get_vcs_root_properties(self, vcs_root_id: str) -> Dict[str, Any]:
        return self.get_json(f"/vcs-roots/id:{_id(vcs_root_id)}/properties")

    def set_vcs_root_property(self, vcs_root_id: str, name: str, value: str) -> str:
        return self.send_text("PUT", f"/vcs-roots/id:{_id(vcs_root_id)}/properties/{_id(name)}", value)

    def delete_vcs_root_property(self, vcs_root_id: str, name: str):
        self.delete(f"/vcs-roots/id:{_id(vcs_root_id)}/properties/{_id(name)}")

    def set_vcs_root_properties(self, vcs_root_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        return self.send_json("PUT", f"/vcs-roots/id:{_id(vcs_root_id)}/properties", properties)

    # Triggers

    def list_triggers(self, build_type_id: str) -> Dict[str, Any]:
        return self.get_json(f"/buildTypes/id:{_id(build_type_id)}/triggers")

    def get_trigger(self, build_type_id: str, trigger_id: str) -> Dict[str, Any]:
        return self.get_json(f"/buildTypes/id:{_id(build_type_id)}/triggers/{_id(trigger_id)}")

    def add_trigger(self, build_type_id: str, trigger: Dict[str, Any]) -> Dict[str, Any]:
        return self.send_json("POST", f"/buildTypes/id:{_id(build_type_id)}/triggers", trigger)

    def replace_trigger(self, build_type_id: str, trigger_id: str, trigger: Dict[str, Any]) -> Dict[str, Any]:
        return self.send_json("PUT", f"/buildTypes/id:{_id(build_type_id)}/triggers/{_id(trigger_id)}", trigger)

    def delete_trigger(self, build_type_id: str, trigger_id: str):
        self.delete(f"/buildTypes/id:{_id(build_type_id)}/triggers/{_id(trigger_id)}")

    # Dependencies

    def _dependency_path(self, build_type_id: str, dependency_type: str) -> str:
        try:
            endpoint = DEPENDENCY_ENDPOINTS[dependency_type]
        except KeyError:
            raise ValueError(f"Unknown dependency type '{dependency_type}'")
        return f"/buildTypes/id:{_id(build_type_id)}/{endpoint}"

    def list_dependencies(self, build_type_id: str, dependency_type: str) -> Dict[str, Any]:
        return self.get_json(self._dependency_path(build_type_id, dependency_type))

    def get_dependency(self, build_type_id: str, dependency_type: str, dependency_id: str) -> Dict[str, Any]:
        return self.get_json(f"{self._dependency_path(build_type_id, dependency_type)}/{_id(dependency_id)}")

    def add_dependency(self, build_type_id: str, dependency_type: str, xml_body: str) -> Dict[str, Any]:
        return self.send_xml("POST", self._dependency_path(build_type_id, dependency_type), xml_body)

    def replace_dependency(self, build_type_id: str, dependency_type: str, dependency_id: str, xml_body: str) -> Dict[str, Any]:
        return self.send_xml(
            "PUT", f"{self._dependency_path(build_type_id, dependency_type)}/{_id(dependency_id)}", xml_body
        )

    def delete_dependency(self, build_type_id: str, dependency_type: str, dependency_id: str):
        self.delete(f"{self._dependency_path(build_type_id, dependency_type)}/{_id(dependency_id)}")
