"""
TeamCity locator helpers

TeamCity filters collections with "locators": comma-separated dimension:value
pairs where a value containing separators has to be wrapped in parentheses,
e.g. `buildType:(id:App_Build),branch:(refs/heads/main),count:10`.
"""

import re
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import List, Optional, Pattern

BUILD_STATUSES = ("SUCCESS", "FAILURE", "ERROR", "UNKNOWN")
MAX_LOCATOR_COUNT = 10000

SIMPLE_BRANCH_VALUES = {
    "default:true",
    "default:false",
    "default:any",
    "unspecified:true",
    "unspecified:false",
    "unspecified:any",
    "branched:true",
    "branched:false",
    "branched:any",
}
UNWRAPPED_BRANCH_PREFIXES = ("default:", "unspecified:", "branched:", "policy:")

_SPECIAL_CHARS = re.compile(r"[:(),]")
_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def needs_wrapping(value: str) -> bool:
    if re.search(r"\s", value) or _SPECIAL_CHARS.search(value):
        return True
    return "/" in value and "*" not in value


def format_dimension(name: str, value) -> str:
    if isinstance(value, bool):
        return f"{name}:{'true' if value else 'false'}"
    value = str(value)
    if needs_wrapping(value):
        return f"{name}:({value})"
    return f"{name}:{value}"


def _parse_date(value: str) -> datetime:
    text = value.strip()
    if _DATE_ONLY.match(text):
        text = f"{text}T00:00:00+00:00"
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_teamcity_date(value: str) -> str:
    """Convert YYYY-MM-DD or an ISO-8601 timestamp to yyyyMMddTHHmmss+0000 (UTC)."""
    try:
        parsed = _parse_date(value)
    except (ValueError, AttributeError):
        raise ValueError(f"Invalid date format: {value}")
    return parsed.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S") + "+0000"


@dataclass
class BuildQuery:
    """Build locator filters, rendered in a fixed dimension order."""

    project: Optional[str] = None
    build_type: Optional[str] = None
    status: Optional[str] = None
    branch: Optional[str] = None
    tag: Optional[str] = None
    since_date: Optional[str] = None
    until_date: Optional[str] = None
    since_build: Optional[int] = None
    running: Optional[bool] = None
    canceled: Optional[bool] = None
    personal: Optional[bool] = None
    failed_to_start: Optional[bool] = None
    count: Optional[int] = None
    start: Optional[int] = None

    def validate(self):
        if self.status is not None and self.status not in BUILD_STATUSES:
            raise ValueError(f"Invalid status value: {self.status}")
        if self.count is not None and not 1 <= self.count <= MAX_LOCATOR_COUNT:
            raise ValueError(f"Count must be between 1 and {MAX_LOCATOR_COUNT}")
        if self.start is not None and self.start < 0:
            raise ValueError("Start offset must be non-negative")
        if self.since_date and self.until_date:
            since = self._checked_date(self.since_date)
            until = self._checked_date(self.until_date)
            if since >= until:
                raise ValueError("sinceDate must be before untilDate")

    @staticmethod
    def _checked_date(value: str) -> datetime:
        try:
            return _parse_date(value)
        except (ValueError, AttributeError):
            raise ValueError(f"Invalid date format: {value}")

    def to_locator(self) -> str:
        """Render the locator string.

        Raises:
            ValueError: On an unknown status, out-of-range paging or bad dates
        """
        self.validate()
        parts = []
        if self.project:
            parts.append(format_dimension("project", self.project))
        if self.build_type:
            parts.append(format_dimension("buildType", self.build_type))
        if self.status:
            parts.append(f"status:{self.status}")
        if self.branch:
            parts.append(format_dimension("branch", self.branch))
        if self.tag:
            parts.append(format_dimension("tag", self.tag))
        if self.since_date:
            parts.append(f"sinceDate:{to_teamcity_date(self.since_date)}")
        if self.until_date:
            parts.append(f"untilDate:{to_teamcity_date(self.until_date)}")
        if self.since_build is not None:
            parts.append(f"sinceBuild:{self.since_build}")
        for name, dimension in (
            ("running", "running"),
            ("canceled", "canceled"),
            ("personal", "personal"),
            ("failed_to_start", "failedToStart"),
        ):
            value = getattr(self, name)
            if value is not None:
                parts.append(format_dimension(dimension, value))
        if self.count is not None:
            parts.append(f"count:{self.count}")
        if self.start is not None:
            parts.append(f"start:{self.start}")
        return ",".join(parts)

    def without_paging(self) -> "BuildQuery":
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update(count=None, start=None)
        return BuildQuery(**values)


def split_locator_parts(locator: str) -> List[str]:
    """Split on top-level commas only; commas inside parentheses are kept."""
    parts = []
    current = ""
    depth = 0
    for char in locator:
        if char == "," and depth == 0:
            if current.strip():
                parts.append(current.strip())
            current = ""
            continue
        if char == "(":
            depth += 1
        elif char == ")" and depth > 0:
            depth -= 1
        current += char
    if current.strip():
        parts.append(current.strip())
    return parts


def wrap_branch_value(value: str) -> str:
    trimmed = value.strip()
    if not trimmed or trimmed.startswith("("):
        return trimmed
    lower = trimmed.lower()
    if lower in SIMPLE_BRANCH_VALUES or lower.startswith(UNWRAPPED_BRANCH_PREFIXES):
        return trimmed
    if "*" in trimmed and ":" not in trimmed:
        return trimmed
    if "/" in trimmed or ":" in trimmed or re.search(r"\s", trimmed):
        return f"({trimmed})"
    return trimmed


def normalize_branch_segment(segment: str) -> str:
    trimmed = segment.strip()
    if not trimmed.lower().startswith("branch:"):
        return trimmed
    raw_value = trimmed[len("branch:"):].strip()
    if not raw_value:
        return trimmed
    return f"branch:{wrap_branch_value(raw_value)}"


def normalize_locator(locator: Optional[str]) -> List[str]:
    """Split a user-supplied locator and wrap any bare branch values."""
    if not locator:
        return []
    return [s for s in (normalize_branch_segment(p) for p in split_locator_parts(locator)) if s]


def join_locator(*parts: Optional[str]) -> str:
    return ",".join(p for p in parts if p)


def glob_to_regex(pattern: str, ignore_case: bool = False) -> Pattern:
    """Anchored regex for a glob where * matches any run of characters and ? one character."""
    escaped = "".join(
        ".*" if char == "*" else "." if char == "?" else re.escape(char)
        for char in pattern
    )
    return re.compile(f"^{escaped}$", re.IGNORECASE if ignore_case else 0)


def matches_name_pattern(name: str, pattern: str) -> bool:
    """Case-insensitive substring match, or a glob match when the pattern has *."""
    if "*" not in pattern:
        return pattern.lower() in (name or "").lower()
    return bool(glob_to_regex(pattern, ignore_case=True).match(name or ""))
