"""
VCS changes and the branches builds ran on
"""

from typing import Any, Dict, List, Optional

from teamcity_mcp.client import TeamCityClient
from teamcity_mcp.errors import ValidationError
from teamcity_mcp.locators import format_dimension, join_locator, normalize_locator
from teamcity_mcp.log import debug_log
from teamcity_mcp.normalize import as_list
from teamcity_mcp.pagination import fetch_pages, paged_locator

CHANGE_FIELDS = "change(id,version,username,date,comment,webUrl,files(file(file,relative-file,changeType)))"
BRANCH_SCAN_LIMIT = 100


def parse_change(raw: Dict[str, Any]) -> Dict[str, Any]:
    files = as_list((raw.get("files") or {}).get("file"))
    return {
        "id": raw.get("id"),
        "revision": raw.get("version"),
        "author": raw.get("username"),
        "date": raw.get("date"),
        "comment": (raw.get("comment") or "").strip(),
        "web_url": raw.get("webUrl"),
        "files": [
            {
                "path": f.get("relative-file") or f.get("file") or f.get("name"),
                "change_type": f.get("changeType") or "edited",
            }
            for f in files
        ],
    }


class ChangeManager:
    def __init__(self, client: TeamCityClient):
        self.client = client

    def list_changes(
        self,
        locator: Optional[str] = None,
        project_id: Optional[str] = None,
        build_id: Optional[str] = None,
        page_size: int = 100,
        fetch_all: bool = False,
        max_pages: Optional[int] = None,
    ) -> Dict[str, Any]:
        """List VCS changes, optionally narrowed to a project or a build.

        Args:
            locator: Raw change locator, combined with the other filters
            project_id: Changes in this project
            build_id: Changes included in this build
            page_size: Changes per request
            fetch_all: Follow pages until exhausted
            max_pages: Upper bound on pages when fetch_all is set

        Returns:
            Dictionary with the changes under "items" and a pagination summary
        """
        base = join_locator(
            *normalize_locator(locator),
            format_dimension("project", f"id:{project_id}") if project_id else None,
            format_dimension("build", f"id:{build_id}") if build_id else None,
        )

        def fetch_page(count: int, start: int) -> List[Dict[str, Any]]:
            payload = self.client.list_changes(paged_locator(base, count, start), fields=f"count,{CHANGE_FIELDS}")
            return [parse_change(c) for c in as_list(payload.get("change"))]

        debug_log(f"Listing changes ({base or 'all'})")
        return fetch_pages(fetch_page, page_size=page_size, fetch_all=fetch_all, max_pages=max_pages)

    def list_branches(self, project_id: Optional[str] = None, build_type_id: Optional[str] = None) -> Dict[str, Any]:
        """Distinct branch names among the recent builds of a configuration or project."""
        if not project_id and not build_type_id:
            raise ValidationError("Either project_id or build_type_id is required", field="project_id")
        scope = (
            format_dimension("buildType", f"id:{build_type_id}")
            if build_type_id
            else format_dimension("affectedProject", f"id:{project_id}")
        )
        locator = join_locator(scope, "branch:default:any", f"count:{BRANCH_SCAN_LIMIT}")
        payload = self.client.list_builds(locator, fields="build(id,branchName,defaultBranch)")

        branches = []
        default_branch = None
        for build in as_list(payload.get("build")):
            name = build.get("branchName")
            if not isinstance(name, str) or not name:
                continue
            if name not in branches:
                branches.append(name)
            if build.get("defaultBranch") and default_branch is None:
                default_branch = name
        result = {"branches": branches, "count": len(branches)}
        if default_branch:
            result["default_branch"] = default_branch
        return result
