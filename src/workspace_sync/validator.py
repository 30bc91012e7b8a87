"""Schema validation for shared configuration files.

Validation never raises: every problem is reported in a `ValidationResult`
so callers can show field-level detail to the user.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .constants import APP_NAME, MAX_BUNDLE_ITEMS

logger = logging.getLogger(APP_NAME)

SCHEMAS: dict[str, dict[str, dict[str, Any]]] = {
    "headers": {
        "version": {"type": "string", "required": True},
        "headers": {"type": "array", "required": True},
    },
    "environments": {
        "version": {"type": "string", "required": True},
        "environments": {"type": "array", "required": True},
    },
    "proxy": {
        "version": {"type": "string", "required": True},
        "rules": {"type": "array", "required": True},
    },
    "rules": {
        "version": {"type": "string", "required": True},
        "rules": {"type": "array", "required": True},
    },
    "metadata": {
        "workspaceId": {"type": "string", "required": True},
        "workspaceName": {"type": "string", "required": True},
        "version": {"type": "string", "required": True},
        "createdAt": {"type": "string", "required": True},
        "configPaths": {"type": "object", "required": False},
    },
    # A synced Open Headers document; every section is optional.
    "bundle": {
        "version": {"type": "string", "required": False},
        "sources": {"type": "array", "required": False, "maxLength": MAX_BUNDLE_ITEMS},
        "rules": {"type": ("object", "array"), "required": False},
        "proxyRules": {"type": "array", "required": False, "maxLength": MAX_BUNDLE_ITEMS},
        "environmentSchema": {"type": "object", "required": False},
        "environments": {"type": "object", "required": False},
    },
}
"""dict: Top-level fields, their JSON types and bounds, per content type."""

METADATA_FILE = "metadata.json"
"""str: Workspace metadata listing further config files by content type."""

_WORKSPACE_ID = re.compile(r"^[a-zA-Z0-9_-]+$")
_SEMVER = re.compile(r"^\d+\.\d+\.\d+$")


@dataclass
class ValidationResult:
    """Outcome of validating one or more configuration files.

    Attributes:
        valid (bool): True when no errors were found.
        errors (list[str]): Blocking problems.
        warnings (list[str]): Non-blocking observations.
        validated_files (list[dict]): Files that passed (only set by `validate_all`).
    """

    valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    validated_files: list[dict] = field(default_factory=list)

    def absorb(self, other: "ValidationResult", prefix: str | None = None) -> None:
        """Folds another result into this one, optionally prefixing its messages."""
        label = f"{prefix}: " if prefix else ""
        self.valid = self.valid and other.valid
        self.errors.extend(f"{label}{e}" for e in other.errors)
        self.warnings.extend(f"{label}{w}" for w in other.warnings)
        self.validated_files.extend(other.validated_files)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "validatedFiles": list(self.validated_files),
        }


def json_type(value: Any) -> str:
    """Names a decoded JSON value's type using JSON vocabulary."""
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, str):
        return "string"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    return "null"


class ConfigValidator:
    """Validates configuration payloads against `SCHEMAS`."""

    def validate(self, content: Any, content_type: str) -> ValidationResult:
        """Validates decoded content for a content type.

        Args:
            content (Any): The decoded JSON document.
            content_type (str): One of the `SCHEMAS` keys.

        Returns:
            ValidationResult: Errors and warnings; unknown types only warn.
        """
        schema = SCHEMAS.get(content_type)
        if schema is None:
            return ValidationResult(
                warnings=[f"No schema defined for type: {content_type}"]
            )
        if not isinstance(content, dict):
            return ValidationResult(
                valid=False,
                errors=[f"Configuration must be an object, got {json_type(content)}"],
            )

        errors: list[str] = []
        warnings: list[str] = []

        for name, definition in schema.items():
            if name not in content:
                if definition.get("required"):
                    errors.append(f"Missing required field: {name}")
                continue
            errors.extend(self._validate_field(name, content[name], definition))

        type_errors, type_warnings = self._validate_type_specific(content, content_type)
        errors.extend(type_errors)
        warnings.extend(type_warnings)

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def validate_file(self, path: Path, content_type: str) -> ValidationResult:
        """Loads and validates a single file.

        Args:
            path (Path): The JSON file.
            content_type (str): One of the `SCHEMAS` keys.

        Returns:
            ValidationResult: The outcome; a missing file or bad JSON is an error.
        """
        if not path.exists():
            return ValidationResult(valid=False, errors=[f"File not found: {path}"])
        try:
            content = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in {path}: {e}")
            return ValidationResult(valid=False, errors=["Invalid JSON format"])
        except OSError as e:
            logger.error(f"Failed to validate {content_type} file: {e}")
            return ValidationResult(valid=False, errors=[str(e)])
        return self.validate(content, content_type)

    def validate_all(
        self, config_paths: dict[str, Path | None], repo_dir: Path
    ) -> ValidationResult:
        """Validates a set of files keyed by content type.

        Args:
            config_paths (dict[str, Path | None]): Content type to file path.
                Empty entries are skipped.
            repo_dir (Path): Repository root, used for relative paths.

        Returns:
            ValidationResult: Combined outcome; messages are prefixed with the type.
        """
        result = ValidationResult()
        for content_type, path in config_paths.items():
            if not path:
                continue
            outcome = self.validate_file(Path(path), content_type)
            if outcome.valid:
                result.validated_files.append(
                    {
                        "type": content_type,
                        "path": str(path),
                        "relativePath": os.path.relpath(path, repo_dir),
                    }
                )
            else:
                result.valid = False
                result.errors.extend(f"{content_type}: {e}" for e in outcome.errors)
            result.warnings.extend(f"{content_type}: {w}" for w in outcome.warnings)
        return result

    def validate_workspace_metadata(
        self, metadata_path: Path, repo_dir: Path
    ) -> ValidationResult:
        """Validates a workspace metadata file and every file its `configPaths` lists.

        Args:
            metadata_path (Path): The metadata document.
            repo_dir (Path): Repository root that `configPaths` entries are relative to.

        Returns:
            ValidationResult: Metadata problems first, then per-file outcomes.
        """
        result = ValidationResult()
        result.absorb(self.validate_file(metadata_path, "metadata"), prefix="metadata")
        if not result.valid:
            return result

        metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
        config_paths: dict[str, Path | None] = {}
        for content_type, relative in (metadata.get("configPaths") or {}).items():
            if not isinstance(relative, str) or not relative:
                continue
            path = repo_dir / relative
            # Sparse trees only hold the configuration directory.
            if path.is_file():
                config_paths[content_type] = path
            else:
                result.warnings.append(f"{content_type}: Not present in checkout: {relative}")
        if config_paths:
            logger.debug(f"Validating workspace files: {sorted(config_paths)}")
            result.absorb(self.validate_all(config_paths, repo_dir))
        return result

    @staticmethod
    def _validate_field(name: str, value: Any, definition: dict) -> list[str]:
        errors = []
        expected = definition.get("type")
        accepted = (expected,) if isinstance(expected, str) else tuple(expected or ())
        actual = json_type(value)
        if accepted and actual not in accepted:
            errors.append(
                f"Field '{name}' must be of type {' or '.join(accepted)}, got {actual}"
            )

        if "array" in accepted and isinstance(value, list):
            if (low := definition.get("minLength")) and len(value) < low:
                errors.append(f"Field '{name}' must have at least {low} items")
            if (high := definition.get("maxLength")) and len(value) > high:
                errors.append(f"Field '{name}' must have at most {high} items")

        if "string" in accepted and isinstance(value, str):
            if (pattern := definition.get("pattern")) and not re.search(pattern, value):
                errors.append(f"Field '{name}' does not match required pattern")
            if (low := definition.get("minLength")) and len(value) < low:
                errors.append(f"Field '{name}' must be at least {low} characters")
        return errors

    @staticmethod
    def _validate_type_specific(
        content: dict, content_type: str
    ) -> tuple[list[str], list[str]]:
        errors: list[str] = []
        warnings: list[str] = []

        if content_type == "headers" and isinstance(content.get("headers"), list):
            for index, header in enumerate(content["headers"]):
                header = header if isinstance(header, dict) else {}
                if not header.get("name"):
                    errors.append(f"Header at index {index} missing 'name' field")
                if header.get("value") is None:
                    errors.append(f"Header at index {index} missing 'value' field")

        elif content_type == "environments" and isinstance(
            content.get("environments"), list
        ):
            seen: set[str] = set()
            for index, env in enumerate(content["environments"]):
                name = env.get("name") if isinstance(env, dict) else None
                if not name:
                    errors.append(f"Environment at index {index} missing 'name' field")
                elif name in seen:
                    errors.append(f"Duplicate environment name: {name}")
                else:
                    seen.add(name)

        elif content_type == "proxy" and isinstance(content.get("rules"), list):
            for index, rule in enumerate(content["rules"]):
                rule = rule if isinstance(rule, dict) else {}
                if not rule.get("pattern") and not rule.get("url"):
                    errors.append(
                        f"Proxy rule at index {index} must have either 'pattern' or 'url'"
                    )
                if not rule.get("target"):
                    errors.append(f"Proxy rule at index {index} missing 'target' field")

        elif content_type == "bundle":
            _check_bundle(content, errors, warnings)

        elif content_type == "metadata":
            workspace_id = content.get("workspaceId")
            if isinstance(workspace_id, str) and workspace_id:
                if not _WORKSPACE_ID.match(workspace_id):
                    errors.append("Invalid workspaceId format")
            version = content.get("version")
            if isinstance(version, str) and version and not _SEMVER.match(version):
                warnings.append("Version should follow semver format (e.g., 1.0.0)")

        return errors, warnings


def _check_bundle(content: dict, errors: list[str], warnings: list[str]) -> None:
    sources = content.get("sources")
    if isinstance(sources, list):
        for index, source in enumerate(sources):
            if not isinstance(source, dict):
                errors.append(f"Source at index {index} must be an object")
            elif not source.get("sourceId"):
                warnings.append(f"Source at index {index} has no 'sourceId'")

    proxy_rules = content.get("proxyRules")
    if isinstance(proxy_rules, list):
        for index, rule in enumerate(proxy_rules):
            if not isinstance(rule, dict):
                errors.append(f"Proxy rule at index {index} must be an object")

    rules = content.get("rules")
    if isinstance(rules, dict):
        for rule_type, entries in rules.items():
            if not isinstance(entries, list):
                errors.append(f"Rules of type '{rule_type}' must be an array")

    schema = content.get("environmentSchema")
    if isinstance(schema, dict) and "environments" in schema:
        environments = schema["environments"]
        if not isinstance(environments, dict):
            errors.append("Field 'environmentSchema.environments' must be of type object")
        else:
            for env_name, env_schema in environments.items():
                variables = env_schema.get("variables") if isinstance(env_schema, dict) else None
                if variables is None:
                    continue
                if not isinstance(variables, list):
                    errors.append(f"Variables of environment '{env_name}' must be an array")
                    continue
                seen: set[str] = set()
                for index, var_def in enumerate(variables):
                    name = var_def.get("name") if isinstance(var_def, dict) else None
                    if not name:
                        errors.append(
                            f"Variable at index {index} in environment '{env_name}' "
                            "missing 'name' field"
                        )
                    elif name in seen:
                        errors.append(
                            f"Duplicate variable name in environment '{env_name}': {name}"
                        )
                    else:
                        seen.add(name)

    environments = content.get("environments")
    if isinstance(environments, dict):
        for env_name, variables in environments.items():
            if not isinstance(variables, dict):
                errors.append(f"Environment '{env_name}' must be an object")

    version = content.get("version")
    if isinstance(version, str) and version and not _SEMVER.match(version):
        warnings.append("Version should follow semver format (e.g., 1.0.0)")
