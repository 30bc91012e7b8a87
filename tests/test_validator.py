"""Tests for schema validation of shared configuration files."""

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from workspace_sync.validator import ConfigValidator, ValidationResult, json_type


@pytest.fixture
def validator() -> ConfigValidator:
    return ConfigValidator()


@pytest.mark.parametrize(
    "value, expected",
    [([], "array"), ({}, "object"), ("x", "string"), (True, "boolean"), (1.5, "number"), (None, "null")],
)
def test_json_type(value: object, expected: str) -> None:
    assert json_type(value) == expected


def test_valid_headers(validator: ConfigValidator) -> None:
    result = validator.validate(
        {"version": "1.0.0", "headers": [{"name": "X-Team", "value": ""}]}, "headers"
    )

    assert result.valid
    assert result.errors == []


def test_missing_and_mistyped_fields(validator: ConfigValidator) -> None:
    """Verifies required fields are reported before type-specific checks."""
    result = validator.validate({"headers": "nope"}, "headers")

    assert not result.valid
    assert "Missing required field: version" in result.errors
    assert "Field 'headers' must be of type array, got string" in result.errors


def test_header_entries_need_name_and_value(validator: ConfigValidator) -> None:
    result = validator.validate(
        {"version": "1", "headers": [{"value": "v"}, {"name": "X"}]}, "headers"
    )

    assert result.errors == [
        "Header at index 0 missing 'name' field",
        "Header at index 1 missing 'value' field",
    ]


def test_duplicate_environment_names(validator: ConfigValidator) -> None:
    result = validator.validate(
        {"version": "1", "environments": [{"name": "Dev"}, {"name": "Dev"}, {}]},
        "environments",
    )

    assert "Duplicate environment name: Dev" in result.errors
    assert "Environment at index 2 missing 'name' field" in result.errors


def test_proxy_rules_need_target_and_match(validator: ConfigValidator) -> None:
    result = validator.validate(
        {"version": "1", "rules": [{"url": "https://a"}, {"target": "t"}]}, "proxy"
    )

    assert result.errors == [
        "Proxy rule at index 0 missing 'target' field",
        "Proxy rule at index 1 must have either 'pattern' or 'url'",
    ]


def test_metadata_checks(validator: ConfigValidator) -> None:
    """Verifies workspace id format is an error but a loose version only warns."""
    result = validator.validate(
        {
            "workspaceId": "team space",
            "workspaceName": "Team",
            "version": "v2",
            "createdAt": "2024-01-01",
        },
        "metadata",
    )

    assert result.errors == ["Invalid workspaceId format"]
    assert result.warnings == ["Version should follow semver format (e.g., 1.0.0)"]


def test_unknown_type_only_warns(validator: ConfigValidator) -> None:
    result = validator.validate({"anything": 1}, "widgets")

    assert result.valid
    assert result.warnings == ["No schema defined for type: widgets"]


def test_non_object_content(validator: ConfigValidator) -> None:
    result = validator.validate([], "rules")

    assert result.errors == ["Configuration must be an object, got array"]


def test_validate_file_errors(validator: ConfigValidator, tmp_path: Path) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text("{oops")

    assert validator.validate_file(tmp_path / "missing.json", "rules").errors == [
        f"File not found: {tmp_path / 'missing.json'}"
    ]
    assert validator.validate_file(bad, "rules").errors == ["Invalid JSON format"]


def test_validate_all_prefixes_and_collects(
    validator: ConfigValidator, tmp_path: Path
) -> None:
    """Verifies per-type prefixes and the list of files that passed.

    Args:
        validator (ConfigValidator): The validator under test.
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    rules = tmp_path / "config" / "rules.json"
    rules.parent.mkdir()
    rules.write_text(json.dumps({"version": "1.0.0", "rules": []}))
    proxy = tmp_path / "proxy.json"
    proxy.write_text(json.dumps({"version": "1.0.0"}))

    result = validator.validate_all(
        {"rules": rules, "proxy": proxy, "headers": None}, tmp_path
    )

    assert not result.valid
    assert result.errors == ["proxy: Missing required field: rules"]
    assert result.validated_files == [
        {
            "type": "rules",
            "path": str(rules),
            "relativePath": str(Path("config") / "rules.json"),
        }
    ]




def test_valid_bundle(validator: ConfigValidator) -> None:
    result = validator.validate(
        {
            "version": "3.0.0",
            "sources": [{"sourceId": "1"}],
            "rules": {"header": [{"id": "h1"}]},
            "proxyRules": [{"id": "p"}],
            "environmentSchema": {
                "environments": {"Dev": {"variables": [{"name": "API"}]}}
            },
            "environments": {"Dev": {"API": "x"}},
        },
        "bundle",
    )

    assert result.valid
    assert result.warnings == []


def test_bundle_type_errors(validator: ConfigValidator) -> None:
    result = validator.validate(
        {"sources": "x", "rules": 3, "environments": {"Dev": []}}, "bundle"
    )

    assert not result.valid
    assert result.errors == [
        "Field 'sources' must be of type array, got string",
        "Field 'rules' must be of type object or array, got number",
        "Environment 'Dev' must be an object",
    ]


def test_bundle_semantic_checks(validator: ConfigValidator) -> None:
    """Verifies per-entry errors and the non-blocking warnings for a bundle."""
    result = validator.validate(
        {
            "version": "latest",
            "sources": [{"sourcePath": "a"}, "b"],
            "rules": {"header": {}},
            "proxyRules": [1],
            "environmentSchema": {
                "environments": {
                    "Dev": {"variables": [{"name": "API"}, {"name": "API"}, {}]}
                }
            },
        },
        "bundle",
    )

    assert result.errors == [
        "Source at index 1 must be an object",
        "Proxy rule at index 0 must be an object",
        "Rules of type 'header' must be an array",
        "Duplicate variable name in environment 'Dev': API",
        "Variable at index 2 in environment 'Dev' missing 'name' field",
    ]
    assert result.warnings == [
        "Source at index 0 has no 'sourceId'",
        "Version should follow semver format (e.g., 1.0.0)",
    ]


def test_bundle_array_bound(validator: ConfigValidator, mocker: MagicMock) -> None:
    mocker.patch.dict(
        "workspace_sync.validator.SCHEMAS",
        {"bundle": {"sources": {"type": "array", "maxLength": 2}}},
    )

    result = validator.validate({"sources": [{"sourceId": str(i)} for i in range(3)]}, "bundle")

    assert result.errors == ["Field 'sources' must have at most 2 items"]


def test_absorb_and_to_dict() -> None:
    result = ValidationResult(warnings=["kept"])
    result.absorb(
        ValidationResult(
            valid=False, errors=["bad"], warnings=["odd"], validated_files=[{"type": "rules"}]
        ),
        prefix="rules",
    )

    assert result.to_dict() == {
        "valid": False,
        "errors": ["rules: bad"],
        "warnings": ["kept", "rules: odd"],
        "validatedFiles": [{"type": "rules"}],
    }


def _metadata(**overrides: object) -> dict:
    document = {
        "workspaceId": "team-1",
        "workspaceName": "Team",
        "version": "1.0.0",
        "createdAt": "2024-01-01T00:00:00Z",
    }
    document.update(overrides)
    return document


def test_workspace_metadata_validates_listed_files(
    validator: ConfigValidator, tmp_path: Path
) -> None:
    """Verifies files named in configPaths are validated, and absent ones only warn.

    Args:
        validator (ConfigValidator): The validator under test.
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    config = tmp_path / "config"
    config.mkdir()
    (config / "rules.json").write_text(json.dumps({"version": "1.0.0", "rules": []}))
    (config / "proxy.json").write_text(json.dumps({"version": "1.0.0", "rules": [{}]}))
    metadata = config / "metadata.json"
    metadata.write_text(
        json.dumps(
            _metadata(
                configPaths={
                    "rules": "config/rules.json",
                    "proxy": "config/proxy.json",
                    "headers": "config/headers.json",
                }
            )
        )
    )

    result = validator.validate_workspace_metadata(metadata, tmp_path)

    assert not result.valid
    assert result.errors == [
        "proxy: Proxy rule at index 0 must have either 'pattern' or 'url'",
        "proxy: Proxy rule at index 0 missing 'target' field",
    ]
    assert result.warnings == ["headers: Not present in checkout: config/headers.json"]
    assert [f["type"] for f in result.validated_files] == ["rules"]


def test_workspace_metadata_errors_are_prefixed(
    validator: ConfigValidator, tmp_path: Path
) -> None:
    metadata = tmp_path / "metadata.json"
    metadata.write_text(json.dumps(_metadata(workspaceId="has space")))

    result = validator.validate_workspace_metadata(metadata, tmp_path)

    assert result.errors == ["metadata: Invalid workspaceId format"]
