"""
Artifact and snapshot dependencies between build configurations

TeamCity accepts dependency writes reliably only as XML, so request bodies are
rendered with ElementTree while reads stay on JSON.
"""

import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional

from teamcity_mcp.client import TeamCityClient
from teamcity_mcp.errors import (
    BuildConfigurationNotFoundError,
    CircularDependencyError,
    DependencyNotFoundError,
    TeamCityNotFoundError,
    TeamCityResponseError,
    ValidationError,
)
from teamcity_mcp.log import debug_log
from teamcity_mcp.normalize import as_list, options_to_dict, properties_to_dict, stringify_values, to_bool

DEPENDENCY_TYPES = ("artifact", "snapshot")
SNAPSHOT_OPTION_KEYS = {
    "run-build-on-the-same-agent",
    "sync-revisions",
    "take-successful-builds-only",
    "take-started-build-with-same-revisions",
    "do-not-run-new-build-if-there-is-a-suitable-one",
}
DEFAULT_TYPE = {"artifact": "artifact_dependency", "snapshot": "snapshot_dependency"}
CAMEL_CASE_TYPES = {"artifactDependency": "artifact_dependency", "snapshotDependency": "snapshot_dependency"}
COLLECTION_KEYS = {"artifact": "artifact-dependency", "snapshot": "snapshot-dependency"}


def _bool_attr(value: Optional[bool]) -> Optional[str]:
    if value is None:
        return None
    return "true" if value else "false"


def dependency_to_xml(dependency_type: str, dependency: Dict[str, Any]) -> str:
    """Render a normalized dependency as the XML body TeamCity expects."""
    root_tag = COLLECTION_KEYS[dependency_type]
    dep_kind = dependency.get("type")
    attributes = {
        "id": dependency.get("id") or None,
        "name": dependency.get("name") or None,
        "type": CAMEL_CASE_TYPES.get(dep_kind, dep_kind) if dep_kind else None,
        "disabled": _bool_attr(dependency.get("disabled")),
        "inherited": _bool_attr(dependency.get("inherited")),
    }
    root = ET.Element(root_tag, {k: v for k, v in attributes.items() if v is not None})

    if dependency.get("depends_on"):
        ET.SubElement(root, "source-buildType", {"id": dependency["depends_on"]})

    properties = dependency.get("properties") or {}
    if properties:
        node = ET.SubElement(root, "properties")
        for name, value in properties.items():
            ET.SubElement(node, "property", {"name": name, "value": value})

    options = dependency.get("options") or {}
    if dependency_type == "snapshot" and options:
        node = ET.SubElement(root, "options")
        for name, value in options.items():
            ET.SubElement(node, "option", {"name": name, "value": value})

    return ET.tostring(root, encoding="unicode")


def parse_dependency(dependency_type: str, raw: Dict[str, Any]) -> Dict[str, Any]:
    source = raw.get("source-buildType") or {}
    parsed = {
        "id": raw.get("id"),
        "dependency_type": dependency_type,
        "type": raw.get("type"),
        "depends_on": source.get("id"),
        "depends_on_name": source.get("name"),
        "disabled": to_bool(raw.get("disabled", False)),
        "inherited": to_bool(raw.get("inherited", False)),
        "properties": properties_to_dict(raw.get("properties")),
    }
    if dependency_type == "snapshot":
        parsed["options"] = options_to_dict(raw.get("options"))
    return parsed


class BuildDependencyManager:
    def __init__(self, client: TeamCityClient):
        self.client = client

    @staticmethod
    def _check_type(dependency_type: str):
        if dependency_type not in DEPENDENCY_TYPES:
            raise ValidationError(
                f"dependency_type must be one of: {', '.join(DEPENDENCY_TYPES)}", field="dependency_type"
            )

    def list_dependencies(self, build_type_id: str, dependency_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """List a configuration's dependencies, optionally of one kind."""
        kinds = DEPENDENCY_TYPES
        if dependency_type:
            self._check_type(dependency_type)
            kinds = (dependency_type,)

        dependencies = []
        for kind in kinds:
            try:
                payload = self.client.list_dependencies(build_type_id, kind)
            except TeamCityNotFoundError:
                raise BuildConfigurationNotFoundError(build_type_id)
            dependencies.extend(parse_dependency(kind, raw) for raw in as_list(payload.get(COLLECTION_KEYS[kind])))
        return dependencies

    def _fetch(self, build_type_id: str, dependency_type: str, dependency_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self.client.get_dependency(build_type_id, dependency_type, dependency_id)
        except TeamCityNotFoundError:
            return None
        return parse_dependency(dependency_type, raw)

    def _merge(
        self,
        dependency_type: str,
        existing: Optional[Dict[str, Any]],
        depends_on: Optional[str],
        properties: Optional[Dict[str, Any]],
        options: Optional[Dict[str, Any]],
        dep_kind: Optional[str],
        disabled: Optional[bool],
    ) -> Dict[str, Any]:
        existing = existing or {}
        property_overrides = stringify_values(properties)
        option_overrides = stringify_values(options)
        base_options = dict(existing.get("options") or {})

        if dependency_type == "snapshot":
            option_keys = SNAPSHOT_OPTION_KEYS | set(base_options) | set(option_overrides)
            for key in [k for k in property_overrides if k in option_keys]:
                option_overrides[key] = property_overrides.pop(key)

        merged = {
            "id": existing.get("id"),
            "type": dep_kind or existing.get("type") or DEFAULT_TYPE[dependency_type],
            "depends_on": depends_on or existing.get("depends_on"),
            "disabled": disabled if disabled is not None else existing.get("disabled"),
            "properties": {**(existing.get("properties") or {}), **property_overrides},
        }
        if dependency_type == "snapshot":
            merged["options"] = {**base_options, **option_overrides}
        return merged

    def add_dependency(
        self,
        build_type_id: str,
        dependency_type: str,
        depends_on: Optional[str],
        properties: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
        dep_kind: Optional[str] = None,
        disabled: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Add a dependency on another build configuration.

        Raises:
            ValidationError: If depends_on is missing
            CircularDependencyError: If the dependency points back at build_type_id
        """
        self._check_type(dependency_type)
        if not depends_on or not depends_on.strip():
            raise ValidationError(
                "depends_on is required when adding a dependency; specify the upstream build configuration ID.",
                field="depends_on",
            )
        if depends_on == build_type_id:
            raise CircularDependencyError(f"Build configuration {build_type_id} cannot depend on itself")
        if dependency_type == "snapshot" and self.depends_on(depends_on, build_type_id):
            raise CircularDependencyError(
                f"Adding a snapshot dependency from {build_type_id} on {depends_on} would create a cycle",
                details={"source": build_type_id, "target": depends_on},
            )

        body = dependency_to_xml(
            dependency_type,
            self._merge(dependency_type, None, depends_on, properties, options, dep_kind, disabled),
        )
        debug_log(f"Adding {dependency_type} dependency {build_type_id} -> {depends_on}")
        try:
            response = self.client.add_dependency(build_type_id, dependency_type, body)
        except TeamCityNotFoundError:
            raise BuildConfigurationNotFoundError(build_type_id)
        if not response.get("id"):
            raise TeamCityResponseError("TeamCity did not return a dependency identifier. Verify server response.")
        return {"id": response["id"]}

    def update_dependency(
        self,
        build_type_id: str,
        dependency_type: str,
        dependency_id: str,
        depends_on: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
        dep_kind: Optional[str] = None,
        disabled: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Merge changes over an existing dependency and write it back."""
        self._check_type(dependency_type)
        existing = self._fetch(build_type_id, dependency_type, dependency_id)
        if existing is None:
            raise DependencyNotFoundError(
                dependency_id,
                message=f"Dependency {dependency_id} was not found on {build_type_id}",
            )
        body = dependency_to_xml(
            dependency_type,
            self._merge(dependency_type, existing, depends_on, properties, options, dep_kind, disabled),
        )
        self.client.replace_dependency(build_type_id, dependency_type, dependency_id, body)
        return {"id": dependency_id}

    def delete_dependency(self, build_type_id: str, dependency_type: str, dependency_id: str):
        self._check_type(dependency_type)
        if not dependency_id:
            raise ValidationError("dependency_id is required to delete a dependency.", field="dependency_id")
        try:
            self.client.delete_dependency(build_type_id, dependency_type, dependency_id)
        except TeamCityNotFoundError:
            raise DependencyNotFoundError(dependency_id)

    def depends_on(self, source_id: str, target_id: str, max_depth: int = 10) -> bool:
        """True if source_id reaches target_id through snapshot dependencies."""
        visited = set()
        frontier = [(source_id, 0)]
        while frontier:
            current, depth = frontier.pop()
            if current in visited or depth > max_depth:
                continue
            visited.add(current)
            try:
                payload = self.client.list_dependencies(current, "snapshot")
            except TeamCityNotFoundError:
                continue
            for raw in as_list(payload.get("snapshot-dependency")):
                upstream = (raw.get("source-buildType") or {}).get("id")
                if upstream == target_id:
                    return True
                if upstream:
                    frontier.append((upstream, depth + 1))
        return False
