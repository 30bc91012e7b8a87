"""Parsing of user-supplied configuration path strings.

A workspace names where its configuration lives with a single free-form string.
This module turns that string into one of four explicit shapes and derives,
purely and deterministically, the file patterns used to find the configuration
inside a repository checkout.
"""

import posixpath
from dataclasses import dataclass, field

from .constants import DEFAULT_CONFIG_PATH


@dataclass(frozen=True)
class SinglePath:
    """A single named file, e.g. ``config/open-headers.json``."""

    primary_path: str
    base_path: str
    file_name: str
    is_default: bool = False
    kind: str = field(default="single", init=False)


@dataclass(frozen=True)
class FolderPath:
    """A directory to auto-detect files in, e.g. ``config/``."""

    folder_path: str
    kind: str = field(default="folder", init=False)

    @property
    def base_path(self) -> str:
        return self.folder_path


@dataclass(frozen=True)
class BasePath:
    """An extension-less stem, e.g. ``config/open-headers``.

    Implies ``<stem>.json`` plus sibling ``<stem>-config*.json`` and
    ``<stem>-env*.json`` files.
    """

    base_path: str
    base_file_name: str
    primary_path: str
    multi_file_config: str
    multi_file_env: str
    kind: str = field(default="base-path", init=False)


@dataclass(frozen=True)
class CommaSeparatedPath:
    """An explicit ``config,env`` file pair."""

    config_path: str
    env_path: str
    base_path: str
    kind: str = field(default="comma-separated", init=False)


ParsedConfigPath = SinglePath | FolderPath | BasePath | CommaSeparatedPath


@dataclass(frozen=True)
class SearchPatterns:
    """Candidate locations for configuration and environment files.

    Attributes:
        config_files (tuple[str, ...]): Ordered config candidates, possibly wildcards.
        env_files (tuple[str, ...]): Ordered environment candidates.
        exact_match (bool): Whether the candidates name concrete files only.
    """

    config_files: tuple[str, ...]
    env_files: tuple[str, ...]
    exact_match: bool


def _dirname(path: str) -> str:
    return posixpath.dirname(path) or "."


def parse_config_path(raw: str | None) -> ParsedConfigPath:
    """Parses a raw configuration path into a structured variant.

    Rules are applied in order: empty input, comma-separated pair, trailing
    slash, extension-less stem or folder, and finally a single file.

    Args:
        raw (str | None): The path exactly as the user typed it.

    Returns:
        ParsedConfigPath: The parsed variant.
    """
    if not raw or not isinstance(raw, str) or not raw.strip():
        return SinglePath(
            primary_path=DEFAULT_CONFIG_PATH,
            base_path=_dirname(DEFAULT_CONFIG_PATH),
            file_name=posixpath.basename(DEFAULT_CONFIG_PATH),
            is_default=True,
        )

    text = raw.strip().replace("\\", "/")

    if "," in text:
        parts = [p.strip() for p in text.split(",") if p.strip()]
        if len(parts) == 2:
            return CommaSeparatedPath(
                config_path=parts[0],
                env_path=parts[1],
                base_path=_dirname(parts[0]),
            )

    if text.endswith("/"):
        return FolderPath(folder_path=text[:-1])

    if not posixpath.splitext(text)[1]:
        last = text.split("/")[-1]
        if "-" in last or "_" in last or len(last) > 10:
            return BasePath(
                base_path=_dirname(text),
                base_file_name=posixpath.basename(text),
                primary_path=f"{text}.json",
                multi_file_config=f"{text}-config*.json",
                multi_file_env=f"{text}-env*.json",
            )
        return FolderPath(folder_path=text)

    return SinglePath(
        primary_path=text,
        base_path=_dirname(text),
        file_name=posixpath.basename(text),
    )


_FOLDER_CONFIG_NAMES = (
    "open-headers.json",
    "config.json",
    "configuration.json",
    "open-headers-config*.json",
    "open-headers-conf*.json",
    "config_*.json",
    "configuration_*.json",
)

_FOLDER_ENV_NAMES = (
    "open-headers-env*.json",
    "open-headers-environment*.json",
    "env_*.json",
    "environment_*.json",
    "environments.json",
)


def _join(folder: str, name: str) -> str:
    return f"{folder}/{name}" if folder else name


def get_search_patterns(parsed: ParsedConfigPath) -> SearchPatterns:
    """Derives the candidate file patterns for a parsed path.

    Args:
        parsed (ParsedConfigPath): The parsed variant.

    Returns:
        SearchPatterns: Config and environment candidates.

    Raises:
        TypeError: If `parsed` is not one of the known variants.
    """
    if isinstance(parsed, CommaSeparatedPath):
        return SearchPatterns((parsed.config_path,), (parsed.env_path,), True)
    if isinstance(parsed, FolderPath):
        folder = parsed.folder_path
        return SearchPatterns(
            tuple(_join(folder, n) for n in _FOLDER_CONFIG_NAMES),
            tuple(_join(folder, n) for n in _FOLDER_ENV_NAMES),
            False,
        )
    if isinstance(parsed, BasePath):
        return SearchPatterns(
            (parsed.primary_path, parsed.multi_file_config),
            (parsed.multi_file_env,),
            False,
        )
    if isinstance(parsed, SinglePath):
        return SearchPatterns((parsed.primary_path,), (), True)
    raise TypeError(f"Unsupported path variant: {parsed!r}")


def get_sparse_patterns(parsed: ParsedConfigPath) -> list[str]:
    """Returns the sparse-checkout lines needed to materialize a parsed path.

    Args:
        parsed (ParsedConfigPath): The parsed variant.

    Returns:
        list[str]: Lines for ``.git/info/sparse-checkout``.

    Raises:
        TypeError: If `parsed` is not one of the known variants.
    """
    if isinstance(parsed, FolderPath):
        folder = parsed.folder_path
        return [f"{folder}/*", folder] if folder else ["/*"]

    if isinstance(parsed, CommaSeparatedPath):
        patterns: list[str] = []
        for file in (parsed.config_path, parsed.env_path):
            directory = _dirname(file)
            if directory == ".":
                patterns.append(file)
            else:
                patterns.extend([f"{directory}/*", directory])
        return list(dict.fromkeys(patterns))

    if isinstance(parsed, BasePath) and parsed.base_path == ".":
        return [parsed.primary_path, parsed.multi_file_config, parsed.multi_file_env]

    if isinstance(parsed, (BasePath, SinglePath)):
        if parsed.base_path == ".":
            return [parsed.primary_path]
        return [f"{parsed.base_path}/*", parsed.base_path]

    raise TypeError(f"Unsupported path variant: {parsed!r}")


def config_directory(parsed: ParsedConfigPath) -> str:
    """The repository-relative directory expected to hold the configuration."""
    if isinstance(parsed, FolderPath):
        return parsed.folder_path or "."
    return parsed.base_path


def relevant_directories(parsed: ParsedConfigPath) -> list[str]:
    """Directories whose JSON files are worth suggesting when lookup fails."""
    if isinstance(parsed, CommaSeparatedPath):
        return list(
            dict.fromkeys([_dirname(parsed.config_path), _dirname(parsed.env_path)])
        )
    return [config_directory(parsed)]


def get_path_error_message(
    parsed: ParsedConfigPath, found_files: list[str] | None = None
) -> str:
    """Builds a user-facing explanation for a failed configuration lookup.

    Args:
        parsed (ParsedConfigPath): The parsed variant that was searched.
        found_files (list[str] | None): Files seen near the expected location.

    Returns:
        str: A multi-line message ending with the supported format reference.
    """
    json_files = [f for f in (found_files or []) if f.endswith(".json")]
    listing = ", ".join(json_files)
    message = "Configuration file not found. "

    if isinstance(parsed, CommaSeparatedPath):
        message += (
            f"Could not find one or both files: {parsed.config_path}, {parsed.env_path}"
        )
    elif isinstance(parsed, FolderPath):
        message += (
            "No valid Open Headers configuration files found in folder: "
            f"{parsed.folder_path}"
        )
        if json_files:
            message += f"\n\nFound these JSON files: {listing}"
    elif isinstance(parsed, BasePath):
        message += (
            "Could not find configuration files matching pattern: "
            f"{parsed.base_file_name}*.json"
        )
        if json_files:
            message += f"\n\nFound these JSON files: {listing}"
    else:
        message += f"File not found: {parsed.primary_path}"
        if json_files:
            message += f"\n\nDid you mean one of these? {listing}"

    message += "\n\nSupported path formats:\n"
    message += "• Single file: config/open-headers.json\n"
    message += "• Folder path: config/ or config\n"
    message += "• Base path: config/open-headers (detects -config and -env files)\n"
    message += "• Comma-separated: config/main.json,config/env.json"
    return message
