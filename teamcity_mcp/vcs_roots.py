"""VCS root lookup and property edits."""

from typing import Any, Dict, List, Optional, Union

from teamcity_mcp.client import TeamCityClient
from teamcity_mcp.errors import TeamCityNotFoundError, ValidationError, VcsRootNotFoundError
from teamcity_mcp.locators import join_locator
from teamcity_mcp.log import debug_log
from teamcity_mcp.normalize import as_list, dict_to_properties, properties_to_dict
from teamcity_mcp.pagination import fetch_pages, paged_locator

VCS_ROOT_FIELDS = "id,name,vcsName,href,project(id,name)"


class VcsRootManager:
    def __init__(self, client: TeamCityClient):
        self.client = client

    def list_vcs_roots(
        self,
        project_id: Optional[str] = None,
        page_size: int = 100,
        fetch_all: bool = False,
        max_pages: Optional[int] = None,
    ) -> Dict[str, Any]:
        base = join_locator(f"affectedProject:(id:{project_id})" if project_id else None)

        def fetch_page(count: int, start: int) -> List[Dict[str, Any]]:
            payload = self.client.list_vcs_roots(
                paged_locator(base, count, start), fields=f"count,vcs-root({VCS_ROOT_FIELDS})"
            )
            return [self._summary(root) for root in as_list(payload.get("vcs-root"))]

        return fetch_pages(fetch_page, page_size=page_size, fetch_all=fetch_all, max_pages=max_pages)

    @staticmethod
    def _summary(root: Dict[str, Any]) -> Dict[str, Any]:
        project = root.get("project") or {}
        return {
            "id": root.get("id"),
            "name": root.get("name"),
            "vcs_name": root.get("vcsName"),
            "project_id": project.get("id"),
            "href": root.get("href"),
        }

    def get_vcs_root(self, vcs_root_id: str) -> Dict[str, Any]:
        """Fetch a VCS root with its properties flattened to a dict.

        Raises:
            VcsRootNotFoundError: If the root does not exist
        """
        try:
            root = self.client.get_vcs_root(vcs_root_id)
        except TeamCityNotFoundError:
            raise VcsRootNotFoundError(vcs_root_id)
        properties = root.get("properties")
        if properties is None:
            properties = self.client.get_vcs_root_properties(vcs_root_id)
        return dict(self._summary(root), properties=properties_to_dict(properties))

    def set_property(self, vcs_root_id: str, name: str, value: str) -> Dict[str, Any]:
        if not name:
            raise ValidationError("Property name is required", field="name")
        try:
            self.client.set_vcs_root_property(vcs_root_id, name, value)
        except TeamCityNotFoundError:
            raise VcsRootNotFoundError(vcs_root_id)
        return {"success": True, "action": "set_vcs_root_property", "id": vcs_root_id, "name": name}

    def delete_property(self, vcs_root_id: str, name: str) -> Dict[str, Any]:
        if not name:
            raise ValidationError("Property name is required", field="name")
        try:
            self.client.delete_vcs_root_property(vcs_root_id, name)
        except TeamCityNotFoundError:
            raise VcsRootNotFoundError(vcs_root_id)
        return {"success": True, "action": "delete_vcs_root_property", "id": vcs_root_id, "name": name}

    def update_properties(
        self,
        vcs_root_id: str,
        url: Optional[str] = None,
        branch: Optional[str] = None,
        branch_spec: Optional[Union[str, List[str]]] = None,
        checkout_rules: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Update the common VCS root properties in one request.

        The properties collection is replaced wholesale by TeamCity, so changes
        are merged over the root's current properties before sending.

        Args:
            vcs_root_id: VCS root ID
            url: Repository URL
            branch: Default branch, e.g. refs/heads/main
            branch_spec: Branch specification, newline-delimited or one rule per item
            checkout_rules: Checkout rules

        Returns:
            Dictionary with the number of properties changed
        """
        changes = {}
        if url is not None:
            changes["url"] = url
        if branch is not None:
            changes["branch"] = branch
        if checkout_rules is not None:
            changes["checkout-rules"] = checkout_rules
        if branch_spec is not None:
            changes["branchSpec"] = "\n".join(branch_spec) if isinstance(branch_spec, (list, tuple)) else branch_spec

        result = {"success": True, "action": "update_vcs_root_properties", "id": vcs_root_id, "updated": len(changes)}
        if not changes:
            return result

        try:
            current = properties_to_dict(self.client.get_vcs_root_properties(vcs_root_id))
            debug_log(f"Updating {sorted(changes)} on VCS root {vcs_root_id}")
            self.client.set_vcs_root_properties(vcs_root_id, dict_to_properties({**current, **changes}))
        except TeamCityNotFoundError:
            raise VcsRootNotFoundError(vcs_root_id)
        return result
