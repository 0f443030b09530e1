"""
Project navigation: flat lists, the project tree, ancestors and descendants
"""

import time
from typing import Any, Dict, List, Optional, Set

from teamcity_mcp.cache import TTLCache, make_key
from teamcity_mcp.client import TeamCityClient
from teamcity_mcp.errors import ProjectNotFoundError, TeamCityError, TeamCityNotFoundError, ValidationError
from teamcity_mcp.locators import format_dimension, join_locator, normalize_locator
from teamcity_mcp.log import warn_log
from teamcity_mcp.normalize import as_list, to_bool
from teamcity_mcp.pagination import fetch_pages, paged_locator

ROOT_PROJECT_ID = "_Root"
MODES = ("list", "hierarchy", "ancestors", "descendants")
SORT_FIELDS = ("name", "id", "level")
DEFAULT_MAX_DEPTH = 5


class ProjectNavigator:
    CACHE_TTL = 120
    MAX_CACHE_ENTRIES = 100

    def __init__(self, client: TeamCityClient, cache: Optional[TTLCache] = None):
        self.client = client
        self.cache = cache if cache is not None else TTLCache(self.CACHE_TTL, max_entries=self.MAX_CACHE_ENTRIES + 1)

    def navigate(
        self,
        mode: str = "list",
        project_id: Optional[str] = None,
        root_project_id: Optional[str] = None,
        name_pattern: Optional[str] = None,
        archived: Optional[bool] = None,
        parent_project_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 100,
        sort_by: Optional[str] = None,
        sort_order: str = "asc",
        include_statistics: bool = False,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> Dict[str, Any]:
        """Explore projects in one of four modes.

        Args:
            mode: "list", "hierarchy", "ancestors" or "descendants"
            project_id: Target project, required for ancestors and descendants
            root_project_id: Tree root for hierarchy mode (default _Root)
            name_pattern: Project name filter for list mode
            archived: Archived filter for list mode
            parent_project_id: Direct parent filter for list mode
            page: 1-based page for list mode
            page_size: Projects per page, 1 to 1000
            sort_by: "name", "id" or "level" for list mode
            sort_order: "asc" or "desc"
            include_statistics: Attach build configuration and subproject counts
            max_depth: Depth limit for hierarchy and descendants

        Returns:
            Mode-specific result with "mode", "cached" and "execution_time_ms"
        """
        started = time.monotonic()
        self._validate(mode, project_id, page, page_size, sort_by, sort_order, max_depth)

        cache_key = make_key(
            mode,
            project_id=project_id,
            root_project_id=root_project_id,
            name_pattern=name_pattern,
            archived=archived,
            parent_project_id=parent_project_id,
            page=page,
            page_size=page_size,
            sort_by=sort_by,
            sort_order=sort_order,
            include_statistics=include_statistics,
            max_depth=max_depth,
        )
        cached = self.cache.get(cache_key)
        if cached is not None:
            return dict(cached, cached=True, execution_time_ms=self._elapsed_ms(started))

        if mode == "hierarchy":
            result = self._hierarchy(root_project_id or ROOT_PROJECT_ID, max_depth)
        elif mode == "ancestors":
            result = self._ancestors(project_id)
        elif mode == "descendants":
            result = self._descendants(project_id, max_depth)
        else:
            result = self._list(
                name_pattern, archived, parent_project_id, page, page_size, sort_by, sort_order, include_statistics
            )

        result["mode"] = mode
        self.cache.set(cache_key, result)
        if len(self.cache) > self.MAX_CACHE_ENTRIES:
            self.cache.evict_oldest(self.MAX_CACHE_ENTRIES // 2)
        return dict(result, cached=False, execution_time_ms=self._elapsed_ms(started))

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    @staticmethod
    def _validate(mode, project_id, page, page_size, sort_by, sort_order, max_depth):
        if mode not in MODES:
            raise ValidationError(f"mode must be one of: {', '.join(MODES)}", field="mode")
        if page < 1:
            raise ValidationError("Invalid pagination: page must be >= 1", field="page")
        if not 1 <= page_size <= 1000:
            raise ValidationError("Invalid pagination: page_size must be between 1 and 1000", field="page_size")
        if mode in ("ancestors", "descendants") and not project_id:
            raise ValidationError(f"project_id is required for {mode} mode", field="project_id")
        if sort_by is not None and sort_by not in SORT_FIELDS:
            raise ValidationError(f"sort_by must be one of: {', '.join(SORT_FIELDS)}", field="sort_by")
        if sort_order not in ("asc", "desc"):
            raise ValidationError("sort_order must be 'asc' or 'desc'", field="sort_order")
        if max_depth < 1:
            raise ValidationError("max_depth must be at least 1", field="max_depth")

    def _list(self, name_pattern, archived, parent_project_id, page, page_size, sort_by, sort_order, include_statistics):
        start = (page - 1) * page_size
        locator = join_locator(
            format_dimension("name", name_pattern) if name_pattern else None,
            format_dimension("archived", archived) if archived is not None else None,
            f"parentProject:(id:{parent_project_id})" if parent_project_id else None,
            f"count:{page_size}",
            f"start:{start}" if start > 0 else None,
        )
        fields = "count,project($long,buildTypes(count),projects(count),vcsRoots(count))" if include_statistics else None
        payload = self.client.list_projects(locator, fields=fields)
        raw_projects = as_list(payload.get("project"))

        projects = []
        for project in raw_projects:
            entry = {
                "id": project.get("id", ""),
                "name": project.get("name", ""),
                "description": project.get("description"),
                "parent_project_id": project.get("parentProjectId"),
                "archived": to_bool(project.get("archived", False)),
                "level": 0,
                "href": project.get("href"),
                "web_url": project.get("webUrl"),
            }
            if include_statistics:
                entry["statistics"] = {
                    "build_configuration_count": (project.get("buildTypes") or {}).get("count"),
                    "subproject_count": (project.get("projects") or {}).get("count"),
                    "vcs_root_count": (project.get("vcsRoots") or {}).get("count"),
                }
            projects.append(entry)

        if sort_by == "level":
            projects.sort(key=lambda p: p["level"], reverse=sort_order == "desc")
        elif sort_by:
            projects.sort(key=lambda p: (p[sort_by] or "").lower(), reverse=sort_order == "desc")

        return {
            "projects": projects,
            "total_count": payload.get("count", len(projects)),
            "page": page,
            "page_size": page_size,
            "has_more": len(projects) == page_size,
        }

    def _hierarchy(self, root_id: str, max_depth: int) -> Dict[str, Any]:
        tree = self._build_node(root_id, 0, max_depth, set())
        return {"hierarchy": tree, "max_depth_reached": self._depth_reached(tree, max_depth)}

    def _build_node(self, project_id: str, depth: int, max_depth: int, visited: Set[str]) -> Dict[str, Any]:
        if project_id in visited:
            return self._placeholder(project_id, f"[Circular Reference: {project_id}]", "Circular reference detected")
        visited = visited | {project_id}
        try:
            project = self.client.get_project(project_id)
        except TeamCityError as e:
            warn_log(f"Could not access project {project_id}: {e.message}")
            return self._placeholder(project_id, f"[Error: {project_id}]", "Project not accessible or does not exist")

        subprojects = as_list((project.get("projects") or {}).get("project"))
        node = {
            "id": project.get("id", project_id),
            "name": project.get("name", f"Unknown Project {project_id}"),
            "description": project.get("description"),
            "archived": to_bool(project.get("archived", False)),
            "children": [],
        }
        build_type_count = (project.get("buildTypes") or {}).get("count", 0)
        subproject_count = (project.get("projects") or {}).get("count", len(subprojects))
        if build_type_count or subproject_count:
            node["statistics"] = {
                "build_configuration_count": build_type_count,
                "subproject_count": subproject_count,
            }
        if depth < max_depth:
            for child in subprojects:
                if child.get("id") and child["id"] not in visited:
                    node["children"].append(self._build_node(child["id"], depth + 1, max_depth, visited))
        return node

    @staticmethod
    def _placeholder(project_id: str, name: str, description: str) -> Dict[str, Any]:
        return {"id": project_id, "name": name, "description": description, "archived": False, "children": []}

    def _depth_reached(self, node: Dict[str, Any], max_depth: int, depth: int = 0) -> bool:
        if depth >= max_depth:
            return True
        return any(self._depth_reached(child, max_depth, depth + 1) for child in node["children"])

    def _get_target(self, project_id: str) -> Dict[str, Any]:
        try:
            return self.client.get_project(project_id)
        except TeamCityNotFoundError:
            raise ProjectNotFoundError(project_id, message=f"Project not found: {project_id}")

    @staticmethod
    def _info(project: Dict[str, Any], fallback_id: str, level: int, parent_id: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": project.get("id", fallback_id),
            "name": project.get("name", f"Unknown Project {fallback_id}"),
            "description": project.get("description"),
            "archived": to_bool(project.get("archived", False)),
            "level": level,
            "parent_project_id": parent_id or project.get("parentProjectId"),
        }

    def _ancestors(self, project_id: str) -> Dict[str, Any]:
        target = self._get_target(project_id)

        # Walk upwards, then reverse so the chain reads root first
        chain = []
        visited = set()
        current_id = target.get("parentProjectId") or ROOT_PROJECT_ID
        while current_id != ROOT_PROJECT_ID and current_id not in visited:
            visited.add(current_id)
            try:
                project = self.client.get_project(current_id)
            except TeamCityError as e:
                warn_log(f"Stopped ancestor walk at {current_id}: {e.message}")
                break
            chain.append(project)
            current_id = project.get("parentProjectId") or ROOT_PROJECT_ID

        ancestors = [{
            "id": ROOT_PROJECT_ID,
            "name": "<Root project>",
            "description": "Root project",
            "archived": False,
            "level": 0,
            "parent_project_id": None,
        }]
        for project in reversed(chain):
            ancestors.append(self._info(project, project.get("id", ""), len(ancestors)))
        if target.get("id", project_id) != ROOT_PROJECT_ID:
            ancestors.append(self._info(target, project_id, len(ancestors)))
        return {"ancestors": ancestors}

    def _descendants(self, project_id: str, max_depth: int) -> Dict[str, Any]:
        root = self._get_target(project_id)
        descendants = []
        visited = {project_id}

        def collect(project: Dict[str, Any], parent_id: str, level: int):
            if level > max_depth:
                return
            for child in as_list((project.get("projects") or {}).get("project")):
                child_id = child.get("id")
                if not child_id or child_id in visited:
                    continue
                visited.add(child_id)
                try:
                    child_project = self.client.get_project(child_id)
                except TeamCityError as e:
                    warn_log(f"Could not access child project {child_id}: {e.message}")
                    continue
                descendants.append(self._info(child_project, child_id, level, parent_id))
                collect(child_project, child_id, level + 1)

        collect(root, project_id, 1)
        return {
            "descendants": descendants,
            "max_depth_reached": any(p["level"] == max_depth for p in descendants),
        }

    def get_project(self, project_id: str) -> Dict[str, Any]:
        try:
            return self.client.get_project(project_id)
        except TeamCityNotFoundError:
            raise ProjectNotFoundError(project_id)

    def list_projects(
        self,
        locator: Optional[str] = None,
        parent_project_id: Optional[str] = None,
        page_size: int = 100,
        fetch_all: bool = False,
        max_pages: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Raw project listing with count/start paging."""
        parent = f"parentProject:(id:{parent_project_id})" if parent_project_id else None
        base = join_locator(*normalize_locator(locator), parent)

        def fetch_page(count: int, start: int) -> List[Dict[str, Any]]:
            return as_list(self.client.list_projects(paged_locator(base, count, start)).get("project"))

        return fetch_pages(fetch_page, page_size=page_size, fetch_all=fetch_all, max_pages=max_pages)
