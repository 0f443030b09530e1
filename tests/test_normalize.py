from datetime import datetime, timedelta, timezone

from teamcity_mcp.normalize import (
    as_list,
    dict_to_properties,
    options_to_dict,
    parse_teamcity_date,
    properties_to_dict,
    to_bool,
)


def test_as_list_wraps_single_objects():
    assert as_list(None) == []
    assert as_list({"id": 1}) == [{"id": 1}]
    assert as_list([1, 2]) == [1, 2]


def test_properties_to_dict_handles_single_property():
    assert properties_to_dict({"property": {"name": "url", "value": "git@x"}}) == {"url": "git@x"}
    assert properties_to_dict({"property": [{"name": "a"}, {"name": "b", "value": 3}]}) == {"a": "", "b": "3"}
    assert properties_to_dict(None) == {}


def test_options_to_dict():
    assert options_to_dict({"option": [{"name": "sync-revisions", "value": "true"}]}) == {"sync-revisions": "true"}


def test_dict_to_properties_stringifies_booleans():
    assert dict_to_properties({"enabled": True, "count": 2}) == {
        "count": 2,
        "property": [{"name": "enabled", "value": "true"}, {"name": "count", "value": "2"}],
    }


def test_to_bool():
    assert to_bool(True)
    assert to_bool("TRUE")
    assert not to_bool("false")
    assert not to_bool(None)


def test_parse_teamcity_date_formats():
    parsed = parse_teamcity_date("20240115T103000+0200")
    assert parsed == datetime(2024, 1, 15, 10, 30, tzinfo=timezone(timedelta(hours=2)))
    assert parse_teamcity_date("2024-01-15T10:30:00Z") == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
    assert parse_teamcity_date("2024-01-15T10:30:00").tzinfo == timezone.utc
    assert parse_teamcity_date("not a date") is None
    assert parse_teamcity_date(None) is None
