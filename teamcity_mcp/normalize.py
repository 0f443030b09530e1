"""Helpers that smooth over TeamCity's JSON conventions."""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

_TEAMCITY_DATE = re.compile(r"^(\d{8}T\d{6})([+-]\d{4}|Z)$")


def as_list(value: Any) -> List[Any]:
    """TeamCity returns a bare object where a one-element list is expected."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def properties_to_dict(container: Optional[Dict[str, Any]], key: str = "property") -> Dict[str, str]:
    """Flatten {"property": [{"name": ..., "value": ...}]} into a dict."""
    if not container:
        return {}
    result = {}
    for prop in as_list(container.get(key)):
        if isinstance(prop, dict) and prop.get("name"):
            value = prop.get("value")
            result[prop["name"]] = "" if value is None else str(value)
    return result


def options_to_dict(container: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return properties_to_dict(container, key="option")


def stringify_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def stringify_values(values: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return {name: stringify_value(value) for name, value in (values or {}).items()}


def dict_to_properties(values: Optional[Dict[str, Any]], key: str = "property") -> Dict[str, Any]:
    """Inverse of properties_to_dict, with booleans rendered the TeamCity way."""
    items = [{"name": name, "value": value} for name, value in stringify_values(values).items()]
    return {"count": len(items), key: items}


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def parse_teamcity_date(value: Optional[str]) -> Optional[datetime]:
    """Parse yyyyMMddTHHmmss+zzzz (or ISO-8601) into an aware datetime."""
    if not value:
        return None
    match = _TEAMCITY_DATE.match(value)
    if match:
        stamp, offset = match.groups()
        if offset == "Z":
            offset = "+0000"
        return datetime.strptime(stamp + offset, "%Y%m%dT%H%M%S%z")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
