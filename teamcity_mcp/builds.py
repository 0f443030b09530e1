"""
Builds, build logs and the build queue
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from teamcity_mcp.cache import TTLCache, make_key
from teamcity_mcp.client import TeamCityClient
from teamcity_mcp.errors import (
    BuildNotFoundError,
    TeamCityError,
    TeamCityNotFoundError,
    TeamCityResponseError,
    ValidationError,
)
from teamcity_mcp.locators import BuildQuery, format_dimension, join_locator, normalize_locator
from teamcity_mcp.log import debug_log, warn_log
from teamcity_mcp.normalize import as_list, parse_teamcity_date, stringify_values
from teamcity_mcp.pagination import fetch_pages, paged_locator

BUILD_FIELDS = "id,buildTypeId,number,status,state,branchName,startDate,finishDate,queuedDate,statusText,href,webUrl"
REQUIRED_BUILD_FIELDS = {
    "buildTypeId": str,
    "number": str,
    "status": str,
    "state": str,
    "webUrl": str,
}
STATUS_FIELDS = (
    "id,number,state,status,statusText,buildTypeId,branchName,webUrl,percentageComplete,"
    "queuedDate,startDate,finishDate,canceledInfo(user(username),timestamp),"
    "running-info(currentStageText,elapsedSeconds,estimatedTotalSeconds,percentageComplete),"
    "queued-info(position,estimatedStartTime)"
)
TEST_SUMMARY_FIELDS = "testOccurrences(count,passed,failed,ignored,muted,newFailed)"
PROBLEM_FIELDS = "problemOccurrences(problemOccurrence(type,identity,details))"
QUEUED_FIELDS = "id,number,state,status,buildTypeId,branchName,webUrl,queuedDate,waitReason"
DEFAULT_LOG_PAGE_SIZE = 500
MAX_LOG_PAGE_SIZE = 5000


class BuildListManager:
    """List builds with locator filters, pagination metadata and a short-lived cache."""

    CACHE_TTL = 30
    DEFAULT_LIMIT = 100
    MAX_LIMIT = 1000

    def __init__(self, client: TeamCityClient, cache: Optional[TTLCache] = None):
        self.client = client
        self.cache = cache if cache is not None else TTLCache(self.CACHE_TTL)

    def list_builds(
        self,
        project: Optional[str] = None,
        build_type: Optional[str] = None,
        status: Optional[str] = None,
        branch: Optional[str] = None,
        tag: Optional[str] = None,
        since_date: Optional[str] = None,
        until_date: Optional[str] = None,
        since_build: Optional[int] = None,
        running: Optional[bool] = None,
        canceled: Optional[bool] = None,
        personal: Optional[bool] = None,
        failed_to_start: Optional[bool] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        include_total_count: bool = False,
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        """List builds matching the given filters.

        Returns:
            Dictionary with "builds" and "metadata" (count, offset, limit, has_more,
            and total_count when requested)

        Raises:
            ValidationError: On an invalid status, date or paging value
            TeamCityResponseError: If TeamCity returns a malformed payload
        """
        limit = self.DEFAULT_LIMIT if limit is None else limit
        offset = offset or 0
        query = BuildQuery(
            project=project,
            build_type=build_type,
            status=status,
            branch=branch,
            tag=tag,
            since_date=since_date,
            until_date=until_date,
            since_build=since_build,
            running=running,
            canceled=canceled,
            personal=personal,
            failed_to_start=failed_to_start,
            count=min(limit, self.MAX_LIMIT),
            start=offset if offset > 0 else None,
        )
        try:
            locator = query.to_locator()
        except ValueError as e:
            raise ValidationError(str(e), field="locator")

        cache_key = make_key("builds", locator, include_total_count)
        if not force_refresh:
            cached = self.cache.get(cache_key)
            if cached is not None:
                debug_log(f"Build list cache hit for {locator}")
                return cached

        payload = self.client.list_builds(locator, fields=f"count,nextHref,build({BUILD_FIELDS})")
        builds = self._parse_builds(payload, locator)

        metadata = {
            "count": len(builds),
            "offset": offset,
            "limit": limit,
            "has_more": isinstance(payload.get("nextHref"), str) and bool(payload.get("nextHref")),
        }
        if include_total_count:
            metadata["total_count"] = self._total_count(query)

        result = {"builds": builds, "metadata": metadata}
        self.cache.set(cache_key, result)
        return result

    def _parse_builds(self, payload: Any, locator: str) -> List[Dict[str, Any]]:
        if not isinstance(payload, dict):
            raise TeamCityResponseError(
                "TeamCity returned a non-object build list response", details={"locator": locator}
            )
        raw_builds = payload.get("build")
        if raw_builds is None and payload.get("count") == 0:
            raw_builds = []
        if not isinstance(raw_builds, list):
            raise TeamCityResponseError(
                "TeamCity build list response is missing a build array",
                details={"locator": locator, "received_keys": sorted(payload)},
            )

        builds = []
        for index, build in enumerate(raw_builds):
            if not isinstance(build, dict):
                raise TeamCityResponseError(
                    "TeamCity returned a non-object build entry", details={"locator": locator, "index": index}
                )
            build_id = build.get("id")
            missing = [name for name, kind in REQUIRED_BUILD_FIELDS.items() if not isinstance(build.get(name), kind)]
            if not isinstance(build_id, (int, str)) or isinstance(build_id, bool) or missing:
                raise TeamCityResponseError(
                    "TeamCity build entry is missing required fields",
                    details={"locator": locator, "index": index, "received_keys": sorted(build)},
                )
            builds.append({
                "id": int(build_id) if isinstance(build_id, str) else build_id,
                "build_type_id": build["buildTypeId"],
                "number": build["number"],
                "status": build["status"],
                "state": build["state"],
                "branch_name": build.get("branchName"),
                "start_date": build.get("startDate"),
                "finish_date": build.get("finishDate"),
                "queued_date": build.get("queuedDate"),
                "status_text": build.get("statusText") or "",
                "web_url": build["webUrl"],
            })
        return builds

    def _total_count(self, query: BuildQuery) -> int:
        locator = query.without_paging().to_locator()
        try:
            payload = self.client.list_builds(locator or None, fields="count")
            count = payload.get("count") if isinstance(payload, dict) else None
            if isinstance(count, bool) or count is None:
                raise TeamCityResponseError("TeamCity count response is missing the count field")
            return int(count)
        except (TeamCityError, ValueError, TypeError) as e:
            warn_log(f"Failed to fetch total build count: {str(e)}")
            return 0


def _split_log_lines(text: str) -> List[str]:
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _elapsed_seconds(build: Dict[str, Any], state: str) -> Optional[int]:
    start = parse_teamcity_date(build.get("startDate"))
    if start is None:
        return None
    finish = parse_teamcity_date(build.get("finishDate"))
    if finish is not None:
        return int((finish - start).total_seconds())
    if state == "running":
        return int((datetime.now(timezone.utc) - start).total_seconds())
    return None


class BuildManager:
    """Single-build lookups, logs, triggering and the queue."""

    STATUS_CACHE_TTL = 300

    def __init__(self, client: TeamCityClient, cache: Optional[TTLCache] = None):
        self.client = client
        self.status_cache = cache if cache is not None else TTLCache(self.STATUS_CACHE_TTL)

    def get_build(self, build_id: str) -> Dict[str, Any]:
        try:
            return self.client.get_build(build_id)
        except TeamCityNotFoundError:
            raise BuildNotFoundError(str(build_id))

    def get_build_status(
        self,
        build_id: str,
        include_tests: bool = False,
        include_problems: bool = False,
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        """Return a normalized status record for a build, falling back to the queue.

        Finished and canceled builds are cached; running and queued ones are not.
        """
        cache_key = make_key("status", build_id, include_tests, include_problems)
        if not force_refresh:
            cached = self.status_cache.get(cache_key)
            if cached is not None:
                return cached

        fields = STATUS_FIELDS
        if include_tests:
            fields += "," + TEST_SUMMARY_FIELDS
        if include_problems:
            fields += "," + PROBLEM_FIELDS

        try:
            build = self.client.get_build(build_id, fields=fields)
        except TeamCityNotFoundError:
            return self._queued_status(build_id)

        result = self._status_from_build(build, include_tests, include_problems)
        if result["state"] in ("finished", "canceled", "failed"):
            self.status_cache.set(cache_key, result)
        return result

    def _queued_status(self, build_id: str) -> Dict[str, Any]:
        try:
            queued = self.client.get_queued_build(build_id, fields=QUEUED_FIELDS)
        except TeamCityNotFoundError:
            raise BuildNotFoundError(str(build_id))
        return {
            "build_id": str(queued.get("id", build_id)),
            "build_number": queued.get("number"),
            "build_type_id": queued.get("buildTypeId"),
            "state": "queued",
            "status": None,
            "percentage_complete": 0,
            "branch_name": queued.get("branchName"),
            "web_url": queued.get("webUrl"),
            "queued_date": queued.get("queuedDate"),
            "wait_reason": queued.get("waitReason"),
        }

    def _status_from_build(self, build: Dict[str, Any], include_tests: bool, include_problems: bool) -> Dict[str, Any]:
        state = build.get("state") or "queued"
        if state == "finished" and build.get("canceledInfo"):
            state = "canceled"
        elif state == "finished" and build.get("status") in ("FAILURE", "ERROR"):
            state = "failed"

        running_info = build.get("running-info") or {}
        queued_info = build.get("queued-info") or {}
        if state in ("finished", "failed"):
            percentage = 100
        else:
            percentage = running_info.get("percentageComplete", build.get("percentageComplete", 0))

        result = {
            "build_id": str(build.get("id")),
            "build_number": build.get("number"),
            "build_type_id": build.get("buildTypeId"),
            "state": state,
            "status": build.get("status"),
            "status_text": build.get("statusText"),
            "percentage_complete": percentage,
            "branch_name": build.get("branchName"),
            "web_url": build.get("webUrl"),
            "queued_date": build.get("queuedDate"),
            "start_date": build.get("startDate"),
            "finish_date": build.get("finishDate"),
            "elapsed_seconds": running_info.get("elapsedSeconds", _elapsed_seconds(build, state)),
        }
        if running_info.get("currentStageText"):
            result["current_stage_text"] = running_info["currentStageText"]
        if running_info.get("estimatedTotalSeconds") is not None:
            result["estimated_total_seconds"] = running_info["estimatedTotalSeconds"]
        if queued_info:
            result["queue_position"] = queued_info.get("position")
            result["estimated_start_time"] = queued_info.get("estimatedStartTime")
        canceled = build.get("canceledInfo")
        if canceled:
            result["canceled_by"] = (canceled.get("user") or {}).get("username")
            result["canceled_date"] = canceled.get("timestamp")

        if include_tests:
            tests = build.get("testOccurrences") or {}
            result["test_summary"] = {
                "total": tests.get("count", 0),
                "passed": tests.get("passed", 0),
                "failed": tests.get("failed", 0),
                "ignored": tests.get("ignored", 0),
                "muted": tests.get("muted", 0),
                "new_failed": tests.get("newFailed", 0),
            }
        if include_problems:
            problems = as_list((build.get("problemOccurrences") or {}).get("problemOccurrence"))
            result["problems"] = [
                {
                    "type": p.get("type", "UNKNOWN"),
                    "identity": p.get("identity", ""),
                    "description": p.get("details", ""),
                }
                for p in problems
            ]
        return result

    def resolve_build_id(self, build_number: str, build_type_id: Optional[str] = None) -> str:
        """Find the internal build id for a human build number, across all branches."""
        base = [format_dimension("buildType", f"id:{build_type_id}")] if build_type_id else []
        locator = join_locator(*base, "branch:default:any", f"number:{build_number}", "count:10")
        builds = as_list(self.client.list_builds(locator).get("build"))

        if not builds and build_type_id:
            recent = as_list(self.client.list_builds(
                join_locator(*base, "branch:default:any", "count:100")
            ).get("build"))
            builds = [b for b in recent if str(b.get("number")) == str(build_number)][:1]

        suffix = f" for buildTypeId {build_type_id}" if build_type_id else ""
        if not builds:
            raise BuildNotFoundError(str(build_number), message=f"No build found with number {build_number}{suffix}")
        if len(builds) > 1 and not build_type_id:
            raise ValidationError(
                f"Multiple builds match number {build_number}. Provide build_type_id to disambiguate.",
                field="build_type_id",
            )
        if builds[0].get("id") is None:
            raise TeamCityResponseError("Resolved build has no id")
        return str(builds[0]["id"])

    def fetch_build_log(
        self,
        build_id: Optional[str] = None,
        build_number: Optional[str] = None,
        build_type_id: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
        start_line: Optional[int] = None,
        line_count: Optional[int] = None,
        tail: bool = False,
    ) -> Dict[str, Any]:
        """Fetch a slice of a build log by lines.

        Args:
            build_id: Internal build id
            build_number: Human build number, used when build_id is not given
            build_type_id: Narrows build_number lookups to one configuration
            page: 1-based page number
            page_size: Lines per page (default 500)
            start_line: 0-based first line, overrides page
            line_count: Lines to return, overrides page_size
            tail: Return the last lines of the log instead

        Returns:
            Dictionary with "lines" and a "meta" block describing the slice
        """
        if not build_id and not build_number:
            raise ValidationError("Provide either build_id or build_number", field="build_id")
        count = line_count or page_size or DEFAULT_LOG_PAGE_SIZE
        if not 1 <= count <= MAX_LOG_PAGE_SIZE:
            raise ValidationError(f"Line count must be between 1 and {MAX_LOG_PAGE_SIZE}", field="line_count")
        if page < 1:
            raise ValidationError("Page must be at least 1", field="page")
        if start_line is not None and start_line < 0:
            raise ValidationError("start_line must be non-negative", field="start_line")

        effective_id = str(build_id) if build_id else self.resolve_build_id(str(build_number), build_type_id)
        try:
            lines = _split_log_lines(self.client.get_build_log(effective_id))
        except TeamCityNotFoundError:
            raise BuildNotFoundError(effective_id)
        total = len(lines)

        meta = {
            "build_id": effective_id,
            "build_number": str(build_number) if build_number is not None else None,
            "build_type_id": build_type_id,
            "page_size": count,
            "total_lines": total,
        }
        if tail:
            start = max(0, total - count)
            meta.update(mode="tail", start_line=start, has_more=start > 0)
            return {"lines": lines[start:], "meta": meta}

        start = start_line if start_line is not None else (page - 1) * count
        chunk = lines[start:start + count]
        next_start = start + len(chunk)
        has_more = next_start < total
        current_page = start // count + 1
        meta.update(
            page=current_page,
            start_line=start,
            has_more=has_more,
            next_start_line=next_start if has_more else None,
            next_page=current_page + 1 if has_more else None,
            prev_page=current_page - 1 if current_page > 1 else None,
        )
        return {"lines": chunk, "meta": meta}

    def trigger_build(
        self,
        build_type_id: str,
        branch_name: Optional[str] = None,
        comment: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Queue a new build of a configuration."""
        body = {"buildType": {"id": build_type_id}}
        if branch_name:
            body["branchName"] = branch_name
        if comment:
            body["comment"] = {"text": comment}
        if properties:
            body["properties"] = {
                "property": [{"name": k, "value": v} for k, v in stringify_values(properties).items()]
            }
        debug_log(f"Triggering build for {build_type_id}")
        build = self.client.queue_build(body)
        return {
            "success": True,
            "action": "trigger_build",
            "build_id": str(build.get("id", "")),
            "state": build.get("state"),
            "status": build.get("status"),
            "web_url": build.get("webUrl"),
        }

    def cancel_queued_build(self, build_id: str) -> Dict[str, Any]:
        try:
            self.client.cancel_queued_build(build_id)
        except TeamCityNotFoundError:
            raise BuildNotFoundError(str(build_id), message=f"Queued build {build_id} not found")
        return {"success": True, "action": "cancel_queued_build", "build_id": str(build_id)}

    def list_queued_builds(
        self,
        locator: Optional[str] = None,
        page_size: int = 100,
        fetch_all: bool = False,
        max_pages: Optional[int] = None,
    ) -> Dict[str, Any]:
        base = join_locator(*normalize_locator(locator))

        def fetch_page(count: int, start: int) -> List[Dict[str, Any]]:
            return as_list(self.client.list_queued_builds(paged_locator(base, count, start)).get("build"))

        return fetch_pages(fetch_page, page_size=page_size, fetch_all=fetch_all, max_pages=max_pages)

    def cancel_queued_builds_by_locator(self, locator: str) -> Dict[str, Any]:
        """Cancel every queued build matching a queue locator."""
        if not locator or not locator.strip():
            raise ValidationError("A queue locator is required", field="locator")
        queued = as_list(self.client.list_queued_builds(join_locator(*normalize_locator(locator))).get("build"))
        canceled = self._cancel_all(b.get("id") for b in queued)
        return {"success": True, "action": "cancel_queued_builds_by_locator", "locator": locator, "canceled": canceled}

    def cancel_queued_builds_for_build_type(self, build_type_id: str) -> Dict[str, Any]:
        queued = as_list(self.client.list_queued_builds().get("build"))
        canceled = self._cancel_all(b.get("id") for b in queued if b.get("buildTypeId") == build_type_id)
        return {
            "success": True,
            "action": "cancel_queued_builds_for_build_type",
            "build_type_id": build_type_id,
            "canceled": canceled,
        }

    def _cancel_all(self, build_ids) -> int:
        canceled = 0
        for build_id in build_ids:
            if build_id is None:
                continue
            try:
                self.client.cancel_queued_build(build_id)
            except TeamCityNotFoundError:
                # Started or removed since the queue was listed
                warn_log(f"Queued build {build_id} is no longer in the queue")
                continue
            canceled += 1
        return canceled

    def move_queued_build_to_top(self, build_id: str) -> Dict[str, Any]:
        if not str(build_id).isdigit():
            raise ValidationError(f"Queued build id must be numeric, got '{build_id}'", field="build_id")
        try:
            self.client.set_queue_order([build_id])
        except TeamCityNotFoundError:
            raise BuildNotFoundError(str(build_id), message=f"Queued build {build_id} not found")
        return {"success": True, "action": "move_queued_build_to_top", "build_id": str(build_id)}
