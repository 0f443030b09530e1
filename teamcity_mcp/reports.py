"""
Test results and build problems

Summarizes the test occurrences and problem occurrences attached to a build.
"""

from typing import Any, Dict, List, Optional

from teamcity_mcp.client import TeamCityClient
from teamcity_mcp.errors import BuildNotFoundError, TeamCityNotFoundError
from teamcity_mcp.log import debug_log
from teamcity_mcp.normalize import as_list
from teamcity_mcp.pagination import DEFAULT_PAGE_SIZE, fetch_pages, paged_locator

TEST_COUNT_FIELDS = "id,testOccurrences(count,passed,failed,ignored,muted,newFailed)"
TEST_FIELDS = "testOccurrence(id,name,status,duration,details,muted,newFailure,test(id,name))"
PROBLEM_FIELDS = "problemOccurrence(id,type,identity,details,additionalData)"
MAX_FAILED_TESTS_IN_REASON = 5
FAILED_TESTS_FOR_REASON = 10


def success_rate(passed: int, total: int) -> float:
    """Percentage of passed tests, two decimals. A build without tests counts as 100."""
    if total <= 0:
        return 100.0
    return round(passed / total * 100, 2)


class TestResultsManager:
    __test__ = False

    def __init__(self, client: TeamCityClient):
        self.client = client

    def get_test_summary(
        self,
        build_id: str,
        include_failed_tests: bool = False,
        include_problems: bool = False,
    ) -> Dict[str, Any]:
        """Count a build's test outcomes.

        Args:
            build_id: TeamCity build ID
            include_failed_tests: Attach the first page of failed tests
            include_problems: Attach build problems

        Returns:
            Dictionary with totals, success_rate and, when asked for, failures and problems
        """
        try:
            build = self.client.get_build(build_id, fields=TEST_COUNT_FIELDS)
        except TeamCityNotFoundError:
            raise BuildNotFoundError(str(build_id))

        counts = build.get("testOccurrences") or {}
        total = counts.get("count", 0)
        passed = counts.get("passed", 0)
        summary = {
            "build_id": str(build_id),
            "total": total,
            "passed": passed,
            "failed": counts.get("failed", 0),
            "ignored": counts.get("ignored", 0),
            "muted": counts.get("muted", 0),
            "new_failed": counts.get("newFailed", 0),
            "success_rate": success_rate(passed, total),
        }

        # The failure reason needs failures and problems even when they are not attached
        failures = []
        if summary["failed"]:
            page_size = DEFAULT_PAGE_SIZE if include_failed_tests else FAILED_TESTS_FOR_REASON
            failures = self.list_test_failures(build_id, page_size=page_size)["items"]
        problems = self.list_build_problems(build_id)
        if include_failed_tests and summary["failed"]:
            summary["failed_tests"] = failures
        if include_problems:
            summary["problems"] = problems

        summary["has_issues"] = bool(summary["failed"] or problems)
        if summary["has_issues"]:
            summary["failure_reason"] = self._failure_reason(summary["failed"], failures, problems)
        return summary

    @staticmethod
    def _failure_reason(failed_count: int, failures: List[Dict[str, Any]], problems: List[Dict[str, Any]]) -> str:
        reasons = []
        if failed_count:
            reasons.append(f"{failed_count} test(s) failed")
            names = [t["name"] or t["id"] or "unnamed" for t in failures[:MAX_FAILED_TESTS_IN_REASON]]
            if names:
                extra = max(failed_count, len(failures)) - len(names)
                reasons.append("Failed tests: " + ", ".join(names) + (f"... and {extra} more" if extra > 0 else ""))
        if problems:
            reasons.append(f"{len(problems)} build problem(s): " + "; ".join(p["type"] for p in problems))
        return ". ".join(reasons)

    @staticmethod
    def _test_run(raw: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": raw.get("id"),
            "name": raw.get("name"),
            "status": raw.get("status", "UNKNOWN"),
            "duration": raw.get("duration"),
            "details": raw.get("details"),
            "muted": raw.get("muted", False),
            "new_failure": raw.get("newFailure", False),
            "test_id": (raw.get("test") or {}).get("id"),
        }

    def list_test_failures(
        self,
        build_id: str,
        page_size: int = 100,
        fetch_all: bool = False,
        max_pages: Optional[int] = None,
    ) -> Dict[str, Any]:
        base = f"build:(id:{build_id}),status:FAILURE"

        def fetch_page(count: int, start: int) -> List[Dict[str, Any]]:
            payload = self.client.list_test_occurrences(paged_locator(base, count, start), fields=f"count,{TEST_FIELDS}")
            return [self._test_run(t) for t in as_list(payload.get("testOccurrence"))]

        debug_log(f"Listing failed tests for build {build_id}")
        return fetch_pages(fetch_page, page_size=page_size, fetch_all=fetch_all, max_pages=max_pages)

    def list_build_problems(self, build_id: str, categorize: bool = False) -> Any:
        """Problem occurrences for a build, optionally grouped by problem type."""
        payload = self.client.list_problem_occurrences(f"build:(id:{build_id})", fields=f"count,{PROBLEM_FIELDS}")
        problems = [
            {
                "id": raw.get("id"),
                "type": raw.get("type") or "UNKNOWN",
                "identity": raw.get("identity"),
                "details": raw.get("details"),
                "additional_data": raw.get("additionalData"),
            }
            for raw in as_list(payload.get("problemOccurrence"))
        ]
        if not categorize:
            return problems

        categorized: Dict[str, List[Dict[str, Any]]] = {}
        for problem in problems:
            categorized.setdefault(problem["type"], []).append(problem)
        return {"all": problems, "categorized": categorized}
