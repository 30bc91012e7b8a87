"""Locating and analysing configuration files inside a working tree."""

import json
import logging
import posixpath
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from .constants import APP_NAME
from .errors import ConfigNotFoundError, ConfigParseError
from .paths import SearchPatterns
from .validator import METADATA_FILE, ConfigValidator, ValidationResult

logger = logging.getLogger(APP_NAME)

TimestampFn = Callable[[Path], float | None]


def matches_wildcard(filename: str, pattern: str) -> bool:
    """Matches a file name against a pattern containing a single `*`.

    Only `.json` names are ever considered a match.

    Args:
        filename (str): A bare file name.
        pattern (str): A bare name pattern, e.g. `open-headers-env*.json`.

    Returns:
        bool: True if the name matches.
    """
    if not filename.endswith(".json"):
        return False
    if "*" not in pattern:
        return filename == pattern
    if pattern.startswith("*"):
        return filename.endswith(pattern[1:])
    if pattern.endswith("*"):
        return filename.startswith(pattern[:-1])
    prefix, _, suffix = pattern.partition("*")
    return (
        len(filename) >= len(prefix) + len(suffix)
        and filename.startswith(prefix)
        and filename.endswith(suffix.replace("*", ""))
    )


@dataclass
class ConfigAnalysis:
    """Counts and shape flags for a decoded configuration document."""

    valid: bool
    error: str | None = None
    source_count: int = 0
    rule_count: int = 0
    proxy_rule_count: int = 0
    environment_count: int = 0
    variable_count: int = 0
    has_sources: bool = False
    has_rules: bool = False
    has_proxy_rules: bool = False
    has_environment_schema: bool = False
    has_environments: bool = False

    def summary_message(self, prefix: str) -> str:
        return (
            f"{prefix} {self.source_count} sources, {self.rule_count} rules, "
            f"{self.proxy_rule_count} proxy rules, and {self.variable_count} "
            "environment variables."
        )

    def to_dict(self) -> dict:
        return asdict(self)


def _count_rules(rules: Any) -> int:
    if isinstance(rules, list):
        return len(rules)
    if isinstance(rules, dict):
        # Storage form keyed by rule type, e.g. {"header": [...]}.
        return sum(len(v) for v in rules.values() if isinstance(v, list))
    return 0


def _environment_count(data: dict) -> int:
    if environments := data.get("environments"):
        return len(environments)
    schema = data.get("environmentSchema") or {}
    return len(schema.get("environments") or {})


def _variable_count(data: dict) -> int:
    schema = data.get("environmentSchema")
    if not schema:
        return 0
    return len(schema.get("variableDefinitions") or {})


def analyze_config(
    data: Any, is_env_file: bool = False, separate_mode: bool = False
) -> ConfigAnalysis:
    """Classifies a decoded document and counts what it carries.

    Args:
        data (Any): The decoded JSON document.
        is_env_file (bool): The document was supplied as an environment file.
        separate_mode (bool): Config and environments are expected in separate files.

    Returns:
        ConfigAnalysis: The counts, or `valid=False` with an explanation.
    """
    if not isinstance(data, dict):
        return ConfigAnalysis(valid=False, error="Configuration must be a JSON object")

    has_main_data = bool(data.get("rules") or data.get("sources") or data.get("proxyRules"))
    has_env_data = bool(data.get("environmentSchema") or data.get("environments"))

    if is_env_file and has_main_data:
        return ConfigAnalysis(
            valid=False,
            error=(
                "This appears to be a main configuration file with sources/rules/proxy "
                "rules. Please use the main configuration file upload area for this file."
            ),
        )

    if separate_mode and not is_env_file and not has_main_data and has_env_data:
        return ConfigAnalysis(
            valid=False,
            error=(
                "This appears to be an environment-only file. Please use the "
                "environment file upload area for environment files."
            ),
        )

    return ConfigAnalysis(
        valid=True,
        source_count=0 if is_env_file else len(data.get("sources") or []),
        rule_count=0 if is_env_file else _count_rules(data.get("rules")),
        proxy_rule_count=0 if is_env_file else len(data.get("proxyRules") or []),
        environment_count=_environment_count(data),
        variable_count=_variable_count(data),
        has_sources=bool(data.get("sources")),
        has_rules=bool(data.get("rules")),
        has_proxy_rules=bool(data.get("proxyRules")),
        has_environment_schema=bool(data.get("environmentSchema")),
        has_environments=bool(data.get("environments")),
    )


def merge_environment_data(config_data: dict, env_data: dict) -> dict:
    """Overlays the environment fields of `env_data` onto a main bundle."""
    combined = dict(config_data)
    if env_data.get("environmentSchema"):
        combined["environmentSchema"] = env_data["environmentSchema"]
    if env_data.get("environments"):
        combined["environments"] = env_data["environments"]
    return combined


def read_json_file(path: Path) -> Any:
    """Reads a JSON file.

    Raises:
        ConfigNotFoundError: If the file does not exist.
        ConfigParseError: If the content is not valid JSON.
    """
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigNotFoundError(f"Configuration file not found: {path.name}") from e
    except json.JSONDecodeError as e:
        raise ConfigParseError(f"Invalid JSON in {path.name}: {e}") from e


def _mtime(path: Path) -> float | None:
    try:
        return path.stat().st_mtime
    except OSError:
        return None


@dataclass
class LocatedFiles:
    """Repository-relative paths of the files a search settled on."""

    config_file: str | None = None
    env_file: str | None = None


class ConfigFileLocator:
    """Resolves search patterns to concrete files in a working tree.

    When a wildcard matches several files, the one with the newest timestamp
    wins; names are compared only to break exact timestamp ties.

    Attributes:
        repo_dir (Path): The working tree root.
        timestamp_of (TimestampFn): Returns a recency timestamp for a file.
            Defaults to the file's modification time.
    """

    def __init__(self, repo_dir: Path, timestamp_of: TimestampFn | None = None):
        self.repo_dir = repo_dir
        self.timestamp_of = timestamp_of or _mtime

    def locate(self, patterns: SearchPatterns) -> LocatedFiles:
        return LocatedFiles(
            config_file=self._first_match(patterns.config_files),
            env_file=self._first_match(patterns.env_files),
        )

    def _first_match(self, candidates: tuple[str, ...]) -> str | None:
        for pattern in candidates:
            if "*" in pattern:
                found = self._match_wildcard(pattern)
            else:
                found = pattern if (self.repo_dir / pattern).is_file() else None
            if found:
                return found
        return None

    def _match_wildcard(self, pattern: str) -> str | None:
        directory, name_pattern = posixpath.split(pattern)
        dir_path = self.repo_dir / directory if directory else self.repo_dir
        try:
            names = [p.name for p in dir_path.iterdir() if p.is_file()]
        except OSError as e:
            logger.debug(f"Could not read directory {directory or '.'}: {e}")
            return None

        matches = [n for n in names if matches_wildcard(n, name_pattern)]
        if not matches:
            return None
        if len(matches) > 1:
            logger.info(f"Multiple files match '{pattern}': {', '.join(sorted(matches))}")

        def recency(name: str) -> tuple[float, str]:
            return (self.timestamp_of(dir_path / name) or 0.0, name)

        chosen = max(matches, key=recency)
        return posixpath.join(directory, chosen) if directory else chosen


def load_bundle(repo_dir: Path, located: LocatedFiles) -> dict:
    """Reads the located files into one bundle.

    Raises:
        ConfigNotFoundError: If no config file was located.
        ConfigParseError: If a file is not valid JSON.
    """
    if not located.config_file:
        raise ConfigNotFoundError(
            "No configuration files found matching the specified path pattern"
        )
    bundle = read_json_file(repo_dir / located.config_file)
    if located.env_file and isinstance(bundle, dict):
        env_data = read_json_file(repo_dir / located.env_file)
        if isinstance(env_data, dict):
            bundle = merge_environment_data(bundle, env_data)
    return bundle


def validate_bundle(
    bundle: Any, repo_dir: Path | None = None, config_dir: str = ""
) -> ValidationResult:
    """Schema-checks a bundle, plus any workspace metadata stored beside it.

    Args:
        bundle (Any): The decoded configuration.
        repo_dir (Path | None): Working tree holding the bundle, if any.
        config_dir (str): Directory of the config file, relative to `repo_dir`.

    Returns:
        ValidationResult: Field-level errors and warnings.
    """
    validator = ConfigValidator()
    result = validator.validate(bundle, "bundle")
    if repo_dir is not None:
        metadata_path = repo_dir / config_dir / METADATA_FILE
        if metadata_path.is_file():
            result.absorb(validator.validate_workspace_metadata(metadata_path, repo_dir))
    if not result.valid:
        logger.warning(f"Configuration failed validation: {'; '.join(result.errors)}")
    return result


def validation_error(validation: ValidationResult) -> str:
    return f"Configuration validation failed: {'; '.join(validation.errors)}"


def validation_details(
    analysis: ConfigAnalysis | None, validation: ValidationResult | None
) -> dict | None:
    """Combines counts and schema findings into one `{valid, errors, warnings, ...}` dict."""
    if analysis is None and validation is None:
        return None
    details = analysis.to_dict() if analysis else {}
    if validation is not None:
        details.update(validation.to_dict())
        details["valid"] = (analysis is None or analysis.valid) and validation.valid
    return details


@dataclass
class DetectionResult:
    """Outcome of finding and analysing the configuration in a working tree."""

    success: bool
    message: str | None = None
    data: dict | None = None
    analysis: ConfigAnalysis | None = None
    error: str | None = None
    located: LocatedFiles | None = None
    validation: ValidationResult | None = None

    def details(self) -> dict | None:
        return validation_details(self.analysis, self.validation)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "data": self.data,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "validation": self.validation.to_dict() if self.validation else None,
            "error": self.error,
        }


def detect_and_validate(
    repo_dir: Path, patterns: SearchPatterns, timestamp_of: TimestampFn | None = None
) -> DetectionResult:
    """Finds, loads and analyses the configuration described by `patterns`.

    Args:
        repo_dir (Path): The working tree root.
        patterns (SearchPatterns): Candidates from the path resolver.
        timestamp_of (TimestampFn | None): Recency source for wildcard ties.

    Returns:
        DetectionResult: Success with the bundle and counts, or an analysis failure.

    Raises:
        ConfigNotFoundError: If the expected files are missing.
        ConfigParseError: If a located file is not valid JSON.
    """
    logger.debug(f"Config detection in {repo_dir}: {patterns}")

    if patterns.exact_match and patterns.config_files and patterns.env_files:
        config_file, env_file = patterns.config_files[0], patterns.env_files[0]
        if not (repo_dir / config_file).is_file() or not (repo_dir / env_file).is_file():
            raise ConfigNotFoundError(
                f"One or both files not found: {config_file}, {env_file}"
            )
        located = LocatedFiles(config_file, env_file)
        prefix = "Connection successful! Found comma-separated configuration files with"
    elif patterns.exact_match and patterns.config_files:
        config_file = patterns.config_files[0]
        if not (repo_dir / config_file).is_file():
            raise ConfigNotFoundError(f"Configuration file not found: {config_file}")
        located = LocatedFiles(config_file)
        prefix = "Connection successful! Found configuration file with"
    else:
        located = ConfigFileLocator(repo_dir, timestamp_of).locate(patterns)
        if not located.config_file:
            logger.error("No configuration files found!")
            raise ConfigNotFoundError(
                "No configuration files found matching the specified path pattern"
            )
        if located.env_file:
            prefix = (
                "Connection successful! Found multi-file configuration "
                f"({posixpath.basename(located.config_file)} + "
                f"{posixpath.basename(located.env_file)}) with"
            )
        elif located.config_file != patterns.config_files[0]:
            prefix = (
                f"Connection successful! Found configuration file "
                f"({located.config_file}) with"
            )
        else:
            prefix = "Connection successful! Configuration verified with"

    bundle = load_bundle(repo_dir, located)
    analysis = analyze_config(bundle)
    if not analysis.valid:
        return DetectionResult(
            success=False, error=analysis.error, analysis=analysis, located=located
        )

    validation = validate_bundle(bundle, repo_dir, posixpath.dirname(located.config_file))
    if not validation.valid:
        return DetectionResult(
            success=False,
            error=validation_error(validation),
            analysis=analysis,
            located=located,
            validation=validation,
        )

    logger.info(f"Configuration located: {located.config_file}")
    return DetectionResult(
        success=True,
        message=analysis.summary_message(prefix),
        data=bundle,
        analysis=analysis,
        located=located,
        validation=validation,
    )
