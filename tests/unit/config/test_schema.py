"""Unit tests for prefab config schema validation."""

from __future__ import annotations

import pytest

from prefab.config.schema import (
    ConfigValidationError,
    assert_valid_config,
    default_config,
    merge_config,
    validate_config,
)


def _issues_by_path(config: object) -> dict[str, str]:
    return {issue.path: issue.message for issue in validate_config(config).issues}


def test_defaults_are_valid() -> None:
    result = validate_config(default_config())

    assert result.is_valid
    assert result.config == default_config()


def test_default_config_is_a_fresh_copy() -> None:
    first = default_config()
    first["refresh"]["command"].append("--quiet")

    assert default_config()["refresh"]["command"] == ["apt-get", "update"]


def test_merge_replaces_lists_and_merges_tables() -> None:
    merged = merge_config(
        default_config(),
        {"refresh": {"command": ["true"]}, "fetch": {"concurrency": 2}},
    )

    assert merged["refresh"]["command"] == ["true"]
    assert merged["refresh"]["freshness_days"] == 7.0
    assert merged["fetch"] == {"concurrency": 2, "timeout_seconds": 300.0}


def test_marker_name_must_be_a_bare_name() -> None:
    config = merge_config(default_config(), {"paths": {"marker_name": "../escape"}})

    assert _issues_by_path(config) == {"paths.marker_name": "must be a bare file name"}


def test_log_level_is_case_insensitive_and_checked() -> None:
    lowered = merge_config(default_config(), {"observability": {"log_level": "warning"}})
    bogus = merge_config(default_config(), {"observability": {"log_level": "LOUD"}})

    assert assert_valid_config(lowered)["observability"]["log_level"] == "WARNING"
    assert "observability.log_level" in _issues_by_path(bogus)


@pytest.mark.parametrize(
    ("overlay", "path"),
    [
        ({"refresh": {"command": "apt-get update"}}, "refresh.command"),
        ({"refresh": {"command": ["apt-get", ""]}}, "refresh.command[1]"),
        ({"refresh": {"freshness_days": 0}}, "refresh.freshness_days"),
        ({"fetch": {"concurrency": True}}, "fetch.concurrency"),
        ({"fetch": {"timeout_seconds": float("inf")}}, "fetch.timeout_seconds"),
        ({"observability": {"log_to_stdout": "yes"}}, "observability.log_to_stdout"),
        ({"paths": {"state_dir": "  "}}, "paths.state_dir"),
        ({"archives": {"tool_package": 7}}, "archives.tool_package"),
    ],
)
def test_invalid_values_are_reported_by_path(overlay: dict[str, object], path: str) -> None:
    assert path in _issues_by_path(merge_config(default_config(), overlay))


def test_missing_fields_are_reported() -> None:
    config = default_config()
    del config["fetch"]["concurrency"]
    del config["observability"]

    issues = _issues_by_path(config)

    assert issues["fetch.concurrency"] == "missing required field"
    assert issues["observability"] == "missing required field"


def test_assert_valid_config_lists_every_issue() -> None:
    config = merge_config(
        default_config(),
        {"fetch": {"concurrency": 0}, "extra": {"x": 1}},
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    message = str(excinfo.value)
    assert "- fetch.concurrency: must be >= 1" in message
    assert "- extra: unknown field" in message


def test_non_mapping_root_is_rejected() -> None:
    result = validate_config(["not", "a", "table"])

    assert not result.is_valid
    assert result.issues[0].path == "<root>"
