"""
Build configuration navigation

Lists build configurations with optional VCS root, parameter and project
hierarchy details, and filters, sorts and groups them on the client where the
REST API has no matching locator dimension.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from teamcity_mcp.cache import TTLCache, make_key
from teamcity_mcp.client import TeamCityClient
from teamcity_mcp.errors import (
    BuildConfigurationNotFoundError,
    PermissionDeniedError,
    ProjectNotFoundError,
    TeamCityAuthenticationError,
    TeamCityAuthorizationError,
    TeamCityError,
    TeamCityNotFoundError,
    TeamCityResponseError,
    TeamCityServerError,
    TeamCityTimeoutError,
    ValidationError,
)
from teamcity_mcp.locators import BUILD_STATUSES, join_locator, matches_name_pattern
from teamcity_mcp.log import debug_log, error_log
from teamcity_mcp.normalize import as_list, parse_teamcity_date, properties_to_dict, to_bool

VIEW_MODES = ("list", "project-grouped")
SORT_FIELDS = ("name", "project", "last_modified")
VCS_ROOT_FIELDS = "vcs-root-entries(vcs-root-entry(vcs-root(id,name,vcsName,properties(property(name,value)))))"
PARAMETER_FIELDS = "parameters(property(name,value,type))"
LAST_BUILD_FIELDS = "paused,builds($locator(running:false,count:1),build(number,status,finishDate))"


class BuildConfigNavigator:
    CACHE_TTL = 120
    MAX_CACHE_ENTRIES = 100

    def __init__(self, client: TeamCityClient, cache: Optional[TTLCache] = None):
        self.client = client
        self.cache = cache if cache is not None else TTLCache(self.CACHE_TTL, max_entries=self.MAX_CACHE_ENTRIES)

    def list_build_configs(
        self,
        project_id: Optional[str] = None,
        project_ids: Optional[List[str]] = None,
        name_pattern: Optional[str] = None,
        include_vcs_roots: bool = False,
        include_parameters: bool = False,
        include_project_hierarchy: bool = False,
        view_mode: str = "list",
        vcs_root_filter: Optional[Dict[str, Any]] = None,
        status_filter: Optional[Dict[str, Any]] = None,
        sort_by: Optional[str] = None,
        sort_order: str = "asc",
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> Dict[str, Any]:
        """List build configurations.

        Args:
            project_id: Limit to configurations in this project and its subprojects
            project_ids: Limit to configurations directly in any of these projects
            name_pattern: Substring, or a glob when it contains *
            include_vcs_roots: Attach VCS roots (id, name, vcs_name, url, branch)
            include_parameters: Attach build parameters as a dict
            include_project_hierarchy: Attach the project path from the root
            view_mode: "list" or "project-grouped"
            vcs_root_filter: Keys url (substring), branch, vcs_name (exact)
            status_filter: Keys last_build_status, paused, has_recent_activity, active_since
            sort_by: "name", "project" or "last_modified"
            sort_order: "asc" or "desc"
            limit: Page size passed to TeamCity
            offset: Start offset passed to TeamCity

        Returns:
            Dictionary with build_configs, total_count, has_more, view_mode and,
            for the grouped view, grouped_by_project
        """
        self._validate(view_mode, sort_by, sort_order, status_filter)
        params = dict(
            project_id=project_id,
            project_ids=sorted(project_ids) if project_ids else None,
            name_pattern=name_pattern,
            include_vcs_roots=include_vcs_roots,
            include_parameters=include_parameters,
            include_project_hierarchy=include_project_hierarchy,
            view_mode=view_mode,
            vcs_root_filter=vcs_root_filter,
            status_filter=status_filter,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            offset=offset,
        )
        cache_key = make_key("build_configs", **params)
        cached = self.cache.get(cache_key)
        if cached is not None:
            debug_log("Cache hit for build configurations")
            return cached

        locator = join_locator(
            f"affectedProject:(id:{project_id})" if project_id else None,
            f"count:{limit}" if limit is not None else None,
            f"start:{offset}" if offset is not None else None,
        )
        fields = self._fields(include_vcs_roots, include_parameters, vcs_root_filter, status_filter, sort_by)
        try:
            payload = self.client.list_build_types(locator or None, fields=fields)
        except TeamCityError as e:
            error_log(f"Failed to fetch build configurations ({locator}): {e.message}")
            raise self._friendly_error(e, project_id)
        if not isinstance(payload, dict):
            raise TeamCityResponseError("Invalid API response from TeamCity")

        configs = []
        for build_type in as_list(payload.get("buildType")):
            config = self._to_config(build_type, include_vcs_roots or bool(vcs_root_filter), include_parameters)
            if project_ids and config["project_id"] not in project_ids:
                continue
            if name_pattern and not matches_name_pattern(config["name"], name_pattern):
                continue
            if vcs_root_filter and not self._matches_vcs_root(config.get("vcs_roots"), vcs_root_filter):
                continue
            if status_filter and not self._matches_status(config, status_filter):
                continue
            if include_project_hierarchy:
                config["project_hierarchy"] = self.project_hierarchy(config["project_id"])
            configs.append(config)

        if sort_by:
            configs = self._sort(configs, sort_by, sort_order)

        total = payload.get("count", len(configs))
        result = {
            "build_configs": configs,
            "total_count": total,
            "has_more": bool(limit) and len(configs) == limit and total > (offset or 0) + len(configs),
            "view_mode": view_mode,
        }
        if view_mode == "project-grouped":
            result["grouped_by_project"] = self._group_by_project(configs)
        self.cache.set(cache_key, result)
        return result

    @staticmethod
    def _validate(view_mode, sort_by, sort_order, status_filter):
        if view_mode not in VIEW_MODES:
            raise ValidationError(f"view_mode must be one of: {', '.join(VIEW_MODES)}", field="view_mode")
        if sort_by is not None and sort_by not in SORT_FIELDS:
            raise ValidationError(f"sort_by must be one of: {', '.join(SORT_FIELDS)}", field="sort_by")
        if sort_order not in ("asc", "desc"):
            raise ValidationError("sort_order must be 'asc' or 'desc'", field="sort_order")
        status = (status_filter or {}).get("last_build_status")
        if status is not None and status not in BUILD_STATUSES:
            raise ValidationError(f"Invalid status value: {status}", field="status_filter.last_build_status")

    @staticmethod
    def _fields(include_vcs_roots, include_parameters, vcs_root_filter, status_filter, sort_by) -> str:
        fields = ["$long"]
        if include_vcs_roots or vcs_root_filter:
            fields.append(VCS_ROOT_FIELDS)
        if include_parameters:
            fields.append(PARAMETER_FIELDS)
        if status_filter or sort_by == "last_modified":
            fields.append(LAST_BUILD_FIELDS)
        return ",".join(fields)

    @staticmethod
    def _to_config(build_type: Dict[str, Any], with_vcs_roots: bool, with_parameters: bool) -> Dict[str, Any]:
        project = build_type.get("project") or {}
        last_build = next(iter(as_list((build_type.get("builds") or {}).get("build"))), {})
        config = {
            "id": build_type.get("id", ""),
            "name": build_type.get("name", ""),
            "project_id": build_type.get("projectId") or project.get("id", ""),
            "project_name": build_type.get("projectName") or project.get("name", ""),
            "description": build_type.get("description"),
            "href": build_type.get("href"),
            "web_url": build_type.get("webUrl"),
            "paused": to_bool(build_type.get("paused", False)),
            "last_build_status": last_build.get("status"),
            "last_build_date": last_build.get("finishDate"),
        }
        if with_vcs_roots:
            config["vcs_roots"] = []
            entries = (build_type.get("vcs-root-entries") or {}).get("vcs-root-entry")
            for entry in as_list(entries):
                root = entry.get("vcs-root")
                if not root:
                    continue
                props = properties_to_dict(root.get("properties"))
                config["vcs_roots"].append({
                    "id": root.get("id", ""),
                    "name": root.get("name", ""),
                    "vcs_name": root.get("vcsName", ""),
                    "url": props.get("url"),
                    "branch": props.get("branch"),
                })
        if with_parameters:
            config["parameters"] = properties_to_dict(build_type.get("parameters"))
        return config

    @staticmethod
    def _matches_vcs_root(vcs_roots: Optional[List[Dict[str, Any]]], vcs_filter: Dict[str, Any]) -> bool:
        for root in vcs_roots or []:
            if vcs_filter.get("url") and vcs_filter["url"] not in (root.get("url") or ""):
                continue
            if vcs_filter.get("branch") and root.get("branch") != vcs_filter["branch"]:
                continue
            if vcs_filter.get("vcs_name") and root.get("vcs_name") != vcs_filter["vcs_name"]:
                continue
            return True
        return False

    @staticmethod
    def _matches_status(config: Dict[str, Any], status_filter: Dict[str, Any]) -> bool:
        wanted_status = status_filter.get("last_build_status")
        if wanted_status and config["last_build_status"] != wanted_status:
            return False
        if status_filter.get("paused") is not None and config["paused"] != status_filter["paused"]:
            return False
        if status_filter.get("has_recent_activity") is not None:
            if bool(config["last_build_date"]) != status_filter["has_recent_activity"]:
                return False
        active_since = status_filter.get("active_since")
        if active_since and config["last_build_date"]:
            threshold = active_since if isinstance(active_since, datetime) else parse_teamcity_date(str(active_since))
            last_build = parse_teamcity_date(config["last_build_date"])
            if threshold is not None and last_build is not None:
                if threshold.tzinfo is None:
                    threshold = threshold.replace(tzinfo=timezone.utc)
                if last_build < threshold:
                    return False
        return True

    @staticmethod
    def _sort(configs: List[Dict[str, Any]], sort_by: str, sort_order: str) -> List[Dict[str, Any]]:
        reverse = sort_order == "desc"
        if sort_by == "name":
            return sorted(configs, key=lambda c: c["name"].lower(), reverse=reverse)
        if sort_by == "project":
            return sorted(configs, key=lambda c: (c["project_name"].lower(), c["name"].lower()), reverse=reverse)

        # last_modified: most recent first in ascending order, never-built configs last
        dated = [c for c in configs if parse_teamcity_date(c["last_build_date"])]
        undated = [c for c in configs if not parse_teamcity_date(c["last_build_date"])]
        dated.sort(key=lambda c: parse_teamcity_date(c["last_build_date"]), reverse=not reverse)
        return undated + dated if reverse else dated + undated

    def project_hierarchy(self, project_id: str) -> List[Dict[str, str]]:
        """Project path from the root down to project_id."""
        try:
            project = self.client.get_project(project_id, fields="id,name,parentProject(id,name,parentProject(id,name))")
        except TeamCityError as e:
            debug_log(f"Failed to load project hierarchy for {project_id}: {e.message}")
            return [{"id": project_id, "name": project_id}]

        chain = []
        current = project
        while current and current.get("id") and current.get("name"):
            chain.insert(0, {"id": current["id"], "name": current["name"]})
            parent = current.get("parentProject")
            if parent and not parent.get("name") and parent.get("id"):
                try:
                    parent = self.client.get_project(parent["id"], fields="id,name,parentProject(id,name)")
                except TeamCityError:
                    break
            current = parent
        return chain

    @staticmethod
    def _group_by_project(configs: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        grouped = {}
        for config in configs:
            group = grouped.setdefault(config["project_id"], {
                "project_id": config["project_id"],
                "project_name": config["project_name"],
                "build_configs": [],
            })
            group["build_configs"].append(config)
        return grouped

    @staticmethod
    def _friendly_error(error: TeamCityError, project_id: Optional[str]) -> TeamCityError:
        if isinstance(error, TeamCityAuthenticationError):
            return TeamCityAuthenticationError("Authentication failed - please check your TeamCity token")
        if isinstance(error, TeamCityAuthorizationError):
            return PermissionDeniedError(
                "Permission denied - you do not have access to build configurations", operation="list_build_configs"
            )
        if isinstance(error, TeamCityNotFoundError):
            if project_id:
                return ProjectNotFoundError(project_id, message=f"Project {project_id} not found")
            return TeamCityNotFoundError("buildTypes", message="Build configurations not found")
        if isinstance(error, TeamCityTimeoutError):
            return TeamCityTimeoutError(error.timeout)
        if isinstance(error, TeamCityServerError):
            return TeamCityServerError(f"TeamCity API error: {error.message}", status_code=error.status_code)
        return error

    def get_build_config(self, build_type_id: str) -> Dict[str, Any]:
        try:
            return self.client.get_build_type(build_type_id)
        except TeamCityNotFoundError:
            raise BuildConfigurationNotFoundError(build_type_id)

    def set_paused(self, build_type_ids: List[str], paused: bool, cancel_queued: bool = False) -> Dict[str, Any]:
        """Pause or resume configurations, optionally cancelling their queued builds."""
        if not build_type_ids:
            raise ValidationError("At least one build configuration id is required", field="build_type_ids")

        updated = 0
        for build_type_id in build_type_ids:
            try:
                self.client.set_build_type_field(build_type_id, "paused", "true" if paused else "false")
            except TeamCityNotFoundError:
                raise BuildConfigurationNotFoundError(build_type_id)
            updated += 1

        canceled = 0
        if cancel_queued:
            wanted = set(build_type_ids)
            for queued in as_list(self.client.list_queued_builds().get("build")):
                if queued.get("buildTypeId") in wanted and queued.get("id") is not None:
                    self.client.cancel_queued_build(queued["id"])
                    canceled += 1

        self.cache.clear()
        return {
            "success": True,
            "action": "set_build_configs_paused",
            "updated": updated,
            "canceled": canceled,
            "paused": paused,
            "ids": build_type_ids,
        }
