"""
Build triggers

Covers VCS, schedule and finish-build (dependency) triggers: validation of
their property syntax, CRUD against a build configuration, and detection of
trigger cycles between configurations.
"""

import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from teamcity_mcp.client import TeamCityClient
from teamcity_mcp.errors import (
    BuildConfigurationNotFoundError,
    CircularDependencyError,
    TeamCityError,
    TeamCityNotFoundError,
    TriggerNotFoundError,
    ValidationError,
)
from teamcity_mcp.log import debug_log
from teamcity_mcp.normalize import as_list, properties_to_dict, stringify_value, to_bool

TRIGGER_TYPES = ("vcsTrigger", "schedulingTrigger", "buildDependencyTrigger")
SIMPLE_SCHEDULES = ("daily", "weekly", "nightly", "hourly")
COMMON_TIMEZONES = {
    "UTC",
    "GMT",
    "America/New_York",
    "America/Chicago",
    "America/Denver",
    "America/Los_Angeles",
    "Europe/London",
    "Europe/Paris",
    "Europe/Berlin",
    "Asia/Tokyo",
    "Asia/Shanghai",
    "Australia/Sydney",
}
_TIMEZONE_SHAPE = re.compile(r"^([A-Z]{2,4}|[A-Za-z]+/[A-Za-z_]+)$")
_RULE_PREFIX = re.compile(r"^[+-]:")
_PATH_PATTERN = re.compile(r"[/*.]|^[\w-]+\.\w+$")
TEXT_PROPERTIES = ("branchFilter", "triggerRules", "artifactRules", "schedulingPolicy", "timezone")

# (name, min, max, allows "?")
CRON_FIELDS = (
    ("seconds", 0, 59, False),
    ("minutes", 0, 59, False),
    ("hours", 0, 23, False),
    ("day_of_month", 1, 31, True),
    ("month", 1, 12, True),
    ("day_of_week", 0, 7, True),
)


def is_valid_branch_filter(branch_filter: str) -> bool:
    for rule in branch_filter.strip().split():
        if not _RULE_PREFIX.match(rule) or not rule[2:]:
            return False
    return True


def is_valid_path_filter_rules(rules: str) -> bool:
    for line in rules.strip().splitlines():
        line = line.strip()
        if not line:
            continue
        if not _RULE_PREFIX.match(line) or not line[2:] or "::" in line[2:]:
            return False
    return True


def is_valid_artifact_rules(rules: str) -> bool:
    for line in rules.strip().splitlines():
        line = line.strip()
        if not line:
            continue
        if "=>" in line:
            parts = line.split("=>")
            if len(parts) != 2:
                return False
            source, target = parts[0].strip(), parts[1].strip()
            if not source or not target:
                return False
            line = source
        if not _PATH_PATTERN.search(line):
            return False
    return True


def is_valid_cron_field(value: str, low: int, high: int, allow_question: bool = False) -> bool:
    if value == "*":
        return True
    if value == "?":
        return allow_question
    if "," in value:
        return all(is_valid_cron_field(v, low, high, allow_question) for v in value.split(","))
    if "/" in value:
        base, _, step = value.partition("/")
        if not step.isdigit() or int(step) <= 0:
            return False
        return base == "*" or is_valid_cron_field(base, low, high, allow_question)
    if "-" in value:
        start, _, end = value.partition("-")
        if not start.isdigit() or not end.isdigit():
            return False
        return low <= int(start) <= int(end) <= high
    return value.isdigit() and low <= int(value) <= high


def is_valid_schedule(schedule: Optional[str]) -> bool:
    """Accept daily/weekly/nightly/hourly or a 6-7 field Quartz cron expression."""
    if not schedule:
        return False
    if schedule.strip().lower() in SIMPLE_SCHEDULES:
        return True
    parts = schedule.split()
    if len(parts) not in (6, 7):
        return False
    return all(
        is_valid_cron_field(part, low, high, allow_question)
        for part, (_, low, high, allow_question) in zip(parts, CRON_FIELDS)
    )


def is_known_timezone(timezone: str) -> bool:
    return timezone in COMMON_TIMEZONES or bool(_TIMEZONE_SHAPE.match(timezone))


def next_run_time(schedule: str, now: Optional[datetime] = None) -> datetime:
    """Approximate the next firing time of a schedule, in the caller's clock."""
    now = now or datetime.now()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    name = schedule.strip().lower()
    if name == "daily":
        return midnight + timedelta(days=1)
    if name == "weekly":
        return midnight + timedelta(days=7)
    if name == "nightly":
        run = now.replace(hour=2, minute=0, second=0, microsecond=0)
        return run + timedelta(days=1) if now.hour >= 2 else run
    if name == "hourly":
        return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)

    parts = schedule.split()
    if len(parts) < 6:
        return now + timedelta(hours=1)
    run = now.replace(microsecond=0)
    for part, unit in ((parts[2], "hour"), (parts[1], "minute"), (parts[0], "second")):
        if part.isdigit():
            run = run.replace(**{unit: int(part)})
    if run <= now:
        run += timedelta(days=1)
    return run


def properties_for_request(properties: Dict[str, Any]) -> Dict[str, str]:
    """Flatten trigger properties to TeamCity's string name/value pairs.

    Lists are comma-joined and a buildParameters dict becomes buildParams.<name> entries.
    """
    record = {}
    for key, value in properties.items():
        if key == "buildParameters" and isinstance(value, dict):
            for param, param_value in value.items():
                if param_value is not None:
                    record[f"buildParams.{param}"] = stringify_value(param_value)
        elif isinstance(value, (list, tuple)):
            record[key] = ",".join(str(v) for v in value)
        elif value is not None:
            record[key] = stringify_value(value)
    return record


def parse_trigger(raw: Dict[str, Any]) -> Dict[str, Any]:
    properties = properties_to_dict(raw.get("properties"))
    trigger = {
        "id": raw.get("id", ""),
        "type": raw.get("type"),
        "enabled": not to_bool(raw.get("disabled", False)),
        "properties": properties,
    }
    if raw.get("type") == "buildDependencyTrigger":
        depends_on = properties.get("dependsOn")
        if depends_on:
            trigger["depends_on"] = [d.strip() for d in depends_on.split(",")] if "," in depends_on else depends_on
        for flag, key in (
            ("afterSuccessfulBuildOnly", "after_successful_build_only"),
            ("dependOnStartedBuild", "depend_on_started_build"),
            ("promoteArtifacts", "promote_artifacts"),
        ):
            if properties.get(flag):
                trigger[key] = properties[flag] == "true"
        if properties.get("artifactRules"):
            trigger["artifact_rules"] = properties["artifactRules"]
    return trigger


class BuildTriggerManager:
    def __init__(self, client: TeamCityClient):
        self.client = client

    def validate_trigger(self, trigger_type: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        """Check trigger properties locally.

        Returns:
            Dictionary with "valid", "errors" and "warnings"
        """
        errors = []
        warnings = []
        properties = properties or {}
        for key in TEXT_PROPERTIES:
            if properties.get(key) is not None and not isinstance(properties[key], str):
                errors.append(f"{key} must be a string")
        text = {key: value for key, value in properties.items() if isinstance(value, str)}

        if trigger_type == "vcsTrigger":
            branch_filter = text.get("branchFilter")
            if branch_filter and not is_valid_branch_filter(branch_filter):
                errors.append("Invalid branch filter pattern")
            quiet_period = properties.get("quietPeriod")
            if quiet_period is not None:
                try:
                    if int(quiet_period) < 0:
                        errors.append("Quiet period must be non-negative")
                except (TypeError, ValueError):
                    errors.append("Quiet period must be an integer")
            if properties.get("quietPeriodMode") == "USE_CUSTOM" and quiet_period is None:
                errors.append("Quiet period is required when using USE_CUSTOM mode")
            trigger_rules = text.get("triggerRules")
            if trigger_rules and not is_valid_path_filter_rules(trigger_rules):
                errors.append("Invalid path filter rules syntax")
        elif trigger_type == "schedulingTrigger":
            if not is_valid_schedule(text.get("schedulingPolicy")):
                errors.append("Invalid schedule format")
            timezone = text.get("timezone")
            if timezone and not is_known_timezone(timezone):
                warnings.append("Unrecognized timezone")
        elif trigger_type == "buildDependencyTrigger":
            if properties.get("dependsOn") is None:
                errors.append("Dependency trigger requires dependsOn property")
            artifact_rules = text.get("artifactRules")
            if artifact_rules and not is_valid_artifact_rules(artifact_rules):
                errors.append("Invalid artifact rule format")
            branch_filter = text.get("branchFilter")
            if branch_filter and not is_valid_branch_filter(branch_filter):
                errors.append("Invalid branch filter pattern")
        else:
            errors.append(f"Unknown trigger type: {trigger_type}")

        result = {"valid": not errors, "errors": errors, "warnings": warnings}
        if trigger_type == "schedulingTrigger" and not errors:
            result["next_run"] = next_run_time(properties["schedulingPolicy"]).isoformat()
        return result

    def list_triggers(self, build_type_id: str) -> Dict[str, Any]:
        debug_log(f"Listing triggers for {build_type_id}")
        try:
            payload = self.client.list_triggers(build_type_id)
        except TeamCityNotFoundError:
            raise BuildConfigurationNotFoundError(build_type_id)
        return {
            "success": True,
            "build_type_id": build_type_id,
            "triggers": [parse_trigger(t) for t in as_list(payload.get("trigger"))],
        }

    def create_trigger(
        self,
        build_type_id: str,
        trigger_type: str,
        properties: Dict[str, Any],
        enabled: bool = True,
    ) -> Dict[str, Any]:
        """Validate and add a trigger to a build configuration.

        Raises:
            ValidationError: If the properties are invalid or the VCS root is not attached
            CircularDependencyError: If the dependency target already triggers this configuration
            BuildConfigurationNotFoundError: If build_type_id does not exist
        """
        validation = self.validate_trigger(trigger_type, properties)
        if not validation["valid"]:
            raise ValidationError(
                f"Invalid trigger configuration: {', '.join(validation['errors'])}",
                field="properties",
                details={"errors": validation["errors"]},
            )

        if trigger_type == "vcsTrigger" and properties.get("vcsRootId"):
            self._check_vcs_root_attached(build_type_id, properties["vcsRootId"])
        if trigger_type == "buildDependencyTrigger":
            depends_on = properties.get("dependsOn")
            first = depends_on[0] if isinstance(depends_on, (list, tuple)) and depends_on else depends_on
            if first:
                self._check_direct_cycle(build_type_id, first)

        body = {
            "type": trigger_type,
            "disabled": not enabled,
            "properties": {"property": [{"name": k, "value": v} for k, v in properties_for_request(properties).items()]},
        }
        try:
            created = self.client.add_trigger(build_type_id, body)
        except TeamCityNotFoundError:
            raise BuildConfigurationNotFoundError(build_type_id)
        return {"success": True, "trigger": parse_trigger(created), "message": "Trigger created successfully"}

    def update_trigger(
        self,
        build_type_id: str,
        trigger_id: str,
        properties: Optional[Dict[str, Any]] = None,
        enabled: Optional[bool] = None,
    ) -> Dict[str, Any]:
        try:
            existing = parse_trigger(self.client.get_trigger(build_type_id, trigger_id))
        except TeamCityNotFoundError:
            raise TriggerNotFoundError(trigger_id, message=f"Trigger '{trigger_id}' not found")

        merged = dict(existing["properties"])
        if properties:
            merged.update(properties_for_request(properties))
        body = {
            "type": existing["type"],
            "disabled": not (existing["enabled"] if enabled is None else enabled),
            "properties": {"property": [{"name": k, "value": v} for k, v in merged.items()]},
        }
        try:
            updated = self.client.replace_trigger(build_type_id, trigger_id, body)
        except TeamCityNotFoundError:
            raise TriggerNotFoundError(trigger_id, message=f"Trigger '{trigger_id}' not found")
        return {"success": True, "trigger": parse_trigger(updated), "message": "Trigger updated successfully"}

    def delete_trigger(self, build_type_id: str, trigger_id: str) -> Dict[str, Any]:
        try:
            self.client.delete_trigger(build_type_id, trigger_id)
        except TeamCityNotFoundError:
            raise TriggerNotFoundError(trigger_id, message=f"Trigger '{trigger_id}' not found")
        return {"success": True, "message": "Trigger deleted successfully"}

    def _check_vcs_root_attached(self, build_type_id: str, vcs_root_id: str):
        try:
            entries = as_list(self.client.list_vcs_root_entries(build_type_id).get("vcs-root-entry"))
        except TeamCityError as e:
            debug_log(f"Could not validate VCS root {vcs_root_id}: {e.message}")
            return
        if not any((entry.get("vcs-root") or {}).get("id") == vcs_root_id for entry in entries):
            raise ValidationError(
                f"VCS root '{vcs_root_id}' is not attached to build configuration '{build_type_id}'",
                field="vcsRootId",
                details={"vcs_root_id": vcs_root_id, "build_type_id": build_type_id},
            )

    def _check_direct_cycle(self, source: str, target: str):
        try:
            triggers = self.list_triggers(target)["triggers"]
        except TeamCityError as e:
            debug_log(f"Could not check for circular dependencies: {e.message}")
            return
        for trigger in triggers:
            if trigger["type"] == "buildDependencyTrigger" and trigger["properties"].get("dependsOn") == source:
                raise CircularDependencyError(
                    f"Circular dependency detected between {source} and {target}",
                    details={"source": source, "target": target},
                )

    def validate_dependency_chain(self, source: str, target: str) -> Dict[str, Any]:
        """Check whether making source depend on target would close a trigger cycle.

        Follows finish-build triggers from target and reports the path back to source.
        """
        visited: Set[str] = set()

        def walk(config_id: str, path: List[str]) -> Optional[List[str]]:
            if config_id in visited:
                return None
            visited.add(config_id)
            try:
                triggers = self.list_triggers(config_id)["triggers"]
            except TeamCityError as e:
                debug_log(f"Could not check dependencies for {config_id}: {e.message}")
                return None
            for trigger in triggers:
                if trigger["type"] != "buildDependencyTrigger" or not trigger.get("depends_on"):
                    continue
                upstream = trigger["depends_on"]
                for dep in upstream if isinstance(upstream, list) else [upstream]:
                    if dep == source:
                        return path + [dep]
                    found = walk(dep, path + [dep])
                    if found:
                        return found
            return None

        chain = [source, target]
        found = walk(target, chain)
        return {"has_circular_dependency": found is not None, "chain": found or chain}
