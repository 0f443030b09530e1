"""
Build results

One call that gathers a build's summary together with, on request, its
artifacts, statistics, VCS changes and snapshot dependency builds. The
optional sections are fetched in parallel; a section that fails is logged
and returned empty rather than failing the whole call.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from teamcity_mcp.artifacts import ArtifactManager
from teamcity_mcp.cache import TTLCache, make_key
from teamcity_mcp.changes import CHANGE_FIELDS, parse_change
from teamcity_mcp.client import TeamCityClient
from teamcity_mcp.errors import BuildNotFoundError, TeamCityError, TeamCityNotFoundError, TeamCityResponseError
from teamcity_mcp.log import debug_log, warn_log
from teamcity_mcp.normalize import as_list, parse_teamcity_date

RESULT_FIELDS = (
    "id,number,status,state,buildTypeId,projectId,branchName,startDate,finishDate,queuedDate,"
    "statusText,webUrl,triggered(type,date,user(username,name))"
)
INTEGER_STATISTICS = {
    "BuildDuration": "build_duration",
    "TestCount": "test_count",
    "PassedTestCount": "passed_tests",
    "FailedTestCount": "failed_tests",
    "IgnoredTestCount": "ignored_tests",
}
COVERAGE_STATISTICS = ("CodeCoverageL", "CodeCoverageB")


def parse_statistics(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Known counters become ints, line/branch coverage the best of the two; the rest stay as-is."""
    stats: Dict[str, Any] = {}
    for prop in as_list(payload.get("property")):
        name, value = prop.get("name"), prop.get("value")
        try:
            if name in INTEGER_STATISTICS:
                stats[INTEGER_STATISTICS[name]] = int(float(value))
                continue
            if name in COVERAGE_STATISTICS:
                stats["code_coverage"] = max(stats.get("code_coverage", 0.0), float(value))
                continue
        except (TypeError, ValueError):
            warn_log(f"Ignoring non-numeric statistic {name}={value!r}")
            continue
        if name:
            stats[name] = value
    return stats


class BuildResultsManager:
    CACHE_TTL = 600

    def __init__(
        self,
        client: TeamCityClient,
        artifacts: Optional[ArtifactManager] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.client = client
        self.artifacts = artifacts if artifacts is not None else ArtifactManager(client)
        self.cache = cache if cache is not None else TTLCache(self.CACHE_TTL)

    def get_build_results(
        self,
        build_id: str,
        include_artifacts: bool = False,
        include_statistics: bool = False,
        include_changes: bool = False,
        include_dependencies: bool = False,
        artifact_filter: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Summary of a build plus the requested sections.

        Args:
            build_id: Internal build id
            include_artifacts: Add the artifact listing (nested files included)
            include_statistics: Add build statistics such as duration and coverage
            include_changes: Add the VCS changes in the build
            include_dependencies: Add the snapshot dependency builds
            artifact_filter: Glob applied to artifact paths

        Returns:
            Dictionary with "build" and one key per requested section

        Raises:
            BuildNotFoundError: If the build does not exist
        """
        cache_key = make_key(
            "results",
            str(build_id),
            artifacts=include_artifacts,
            statistics=include_statistics,
            changes=include_changes,
            dependencies=include_dependencies,
            artifact_filter=artifact_filter,
        )
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            raw = self.client.get_build(build_id, fields=RESULT_FIELDS)
        except TeamCityNotFoundError:
            raise BuildNotFoundError(str(build_id))
        result = {"build": self._summary(raw, build_id)}

        sections: Dict[str, Callable[[], Any]] = {}
        if include_artifacts:
            sections["artifacts"] = lambda: self.artifacts.list_artifacts(
                build_id, path_filter=artifact_filter, include_nested=True
            )
        if include_statistics:
            sections["statistics"] = lambda: parse_statistics(self.client.get_build_statistics(build_id))
        if include_changes:
            sections["changes"] = lambda: self._changes(build_id)
        if include_dependencies:
            sections["dependencies"] = lambda: self._dependencies(build_id)

        if sections:
            with ThreadPoolExecutor(max_workers=len(sections)) as executor:
                futures = {name: executor.submit(fetch) for name, fetch in sections.items()}
            for name, future in futures.items():
                try:
                    result[name] = future.result()
                except TeamCityError as e:
                    warn_log(f"Failed to fetch {name} for build {build_id}: {e.message}")
                    result[name] = {} if name == "statistics" else []

        if raw.get("state") == "finished":
            self.cache.set(cache_key, result)
        return result

    @staticmethod
    def _summary(raw: Any, build_id: str) -> Dict[str, Any]:
        if not isinstance(raw, dict) or not isinstance(raw.get("status"), str) or not isinstance(raw.get("state"), str):
            raise TeamCityResponseError(
                "TeamCity build summary response is missing required fields", details={"build_id": str(build_id)}
            )
        build = {
            "id": raw.get("id"),
            "number": raw.get("number"),
            "status": raw["status"],
            "state": raw["state"],
            "build_type_id": raw.get("buildTypeId"),
            "status_text": raw.get("statusText") or "",
            "web_url": raw.get("webUrl"),
        }
        for source, target in (
            ("projectId", "project_id"),
            ("branchName", "branch_name"),
            ("queuedDate", "queued_date"),
            ("startDate", "start_date"),
            ("finishDate", "finish_date"),
        ):
            if raw.get(source):
                build[target] = raw[source]

        start = parse_teamcity_date(raw.get("startDate"))
        finish = parse_teamcity_date(raw.get("finishDate"))
        if start and finish:
            build["duration_seconds"] = int((finish - start).total_seconds())

        triggered = raw.get("triggered")
        if triggered:
            user = triggered.get("user") or {}
            build["triggered"] = {
                "type": triggered.get("type"),
                "date": triggered.get("date"),
                "user": user.get("username") or user.get("name"),
            }
        return build

    def _changes(self, build_id: str) -> List[Dict[str, Any]]:
        payload = self.client.list_changes(f"build:(id:{build_id})", fields=CHANGE_FIELDS)
        return [parse_change(c) for c in as_list(payload.get("change"))]

    def _dependencies(self, build_id: str) -> List[Dict[str, Any]]:
        debug_log(f"Fetching snapshot dependencies of build {build_id}")
        payload = self.client.list_builds(
            f"snapshotDependency:(to:(id:{build_id}))", fields="build(id,number,buildTypeId,status)"
        )
        return [
            {
                "build_id": b.get("id"),
                "build_number": b.get("number"),
                "build_type_id": b.get("buildTypeId"),
                "status": b.get("status"),
            }
            for b in as_list(payload.get("build"))
        ]
