"""Build configuration parameters."""

import re
from typing import Any, Dict, List

from teamcity_mcp.client import TeamCityClient
from teamcity_mcp.errors import (
    BuildConfigurationNotFoundError,
    ParameterNotFoundError,
    TeamCityNotFoundError,
    ValidationError,
)
from teamcity_mcp.log import debug_log
from teamcity_mcp.normalize import as_list, stringify_value

_PARAMETER_NAME = re.compile(r"^[A-Za-z0-9._-]+$")
PARAMETER_KINDS = (
    ("env.", "env"),
    ("system.", "system"),
    ("teamcity.", "system"),
    ("build.", "build"),
)


def parameter_kind(name: str) -> str:
    """env, system, build or config, judged by the name prefix."""
    for prefix, kind in PARAMETER_KINDS:
        if name.startswith(prefix):
            return kind
    return "config"


def validate_parameter_name(name: str):
    if not isinstance(name, str) or not _PARAMETER_NAME.match(name):
        raise ValidationError(f"Invalid parameter name: {name}", field="name")


class BuildParameterManager:
    def __init__(self, client: TeamCityClient):
        self.client = client

    def list_parameters(self, build_type_id: str) -> Dict[str, Any]:
        debug_log(f"Listing parameters of {build_type_id}")
        try:
            payload = self.client.list_build_parameters(build_type_id)
        except TeamCityNotFoundError:
            raise BuildConfigurationNotFoundError(build_type_id)
        parameters = [self._parameter(p) for p in as_list(payload.get("property"))]
        return {"build_type_id": build_type_id, "parameters": parameters, "count": len(parameters)}

    @staticmethod
    def _parameter(raw: Dict[str, Any]) -> Dict[str, Any]:
        name = raw.get("name") or ""
        parameter = {"name": name, "value": raw.get("value", ""), "kind": parameter_kind(name)}
        spec = (raw.get("type") or {}).get("rawValue")
        if spec:
            parameter["spec"] = spec
        if raw.get("inherited"):
            parameter["inherited"] = True
        return parameter

    def _existing_names(self, build_type_id: str) -> List[str]:
        return [p["name"] for p in self.list_parameters(build_type_id)["parameters"]]

    def add_parameter(self, build_type_id: str, name: str, value: Any) -> Dict[str, Any]:
        """Add a parameter; fails if the configuration already defines it.

        Raises:
            ValidationError: On a malformed or duplicate name
            BuildConfigurationNotFoundError: If the configuration does not exist
        """
        validate_parameter_name(name)
        if name in self._existing_names(build_type_id):
            raise ValidationError(f"Parameter '{name}' already exists in {build_type_id}", field="name")
        self.client.add_build_parameter(build_type_id, name, stringify_value(value))
        return {"success": True, "action": "add_parameter", "build_type_id": build_type_id, "name": name}

    def update_parameter(self, build_type_id: str, name: str, value: Any) -> Dict[str, Any]:
        validate_parameter_name(name)
        if name not in self._existing_names(build_type_id):
            raise ParameterNotFoundError(name, message=f"Parameter '{name}' not found in {build_type_id}")
        self.client.set_build_parameter(build_type_id, name, stringify_value(value))
        return {"success": True, "action": "update_parameter", "build_type_id": build_type_id, "name": name}

    def delete_parameter(self, build_type_id: str, name: str) -> Dict[str, Any]:
        validate_parameter_name(name)
        try:
            self.client.delete_build_parameter(build_type_id, name)
        except TeamCityNotFoundError:
            raise ParameterNotFoundError(name, message=f"Parameter '{name}' not found in {build_type_id}")
        return {"success": True, "action": "delete_parameter", "build_type_id": build_type_id, "name": name}
