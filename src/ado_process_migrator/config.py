"""
Run configuration for the process migration tool.

The config file is the JSON document the desktop shell writes before it
launches a run:

    {
        "sourceAccountUrl": "https://dev.azure.com/contoso",
        "sourceAccountToken": "...",
        "targetAccountUrl": "https://dev.azure.com/fabrikam",
        "targetAccountToken": "...",
        "sourceProcessName": "Contoso Agile",
        "targetProcessName": "Contoso Agile",
        "sourceFilePath": "contoso-agile.json",
        "targetFilePath": "contoso-agile.json",
        "options": {"overwritePicklist": false, ...}
    }
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

from . import ado_utils
from .exceptions import ConfigError

logger: logging.Logger = logging.getLogger(__name__)


class MigrationMode(enum.StrEnum):
    EXPORT = "export"
    IMPORT = "import"
    MIGRATE = "migrate"


@dataclass(frozen=True)
class MigrationOptions:
    """Switches controlling planning and failure tolerance."""

    overwrite_picklist: bool = False
    continue_on_rule_import_failure: bool = False
    continue_on_identity_default_value_failure: bool = False
    skip_import_form_contributions: bool = False
    allow_state_category_change: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MigrationOptions:
        data = data or {}
        return cls(
            overwrite_picklist=bool(data.get("overwritePicklist", False)),
            continue_on_rule_import_failure=bool(data.get("continueOnRuleImportFailure", False)),
            # The desktop shell calls this one continueOnFieldDefaultValueFailure
            continue_on_identity_default_value_failure=bool(
                data.get("continueOnIdentityDefaultValueFailure", data.get("continueOnFieldDefaultValueFailure", False))
            ),
            skip_import_form_contributions=bool(data.get("skipImportFormContributions", False)),
            allow_state_category_change=bool(data.get("allowStateCategoryChange", False)),
        )


@dataclass(frozen=True)
class ConnectionConfig:
    """Organization URL plus personal access token."""

    url: str
    token: str | None = None

    def __repr__(self) -> str:
        return f"ConnectionConfig(url={self.url!r}, token={'***' if self.token else None})"


@dataclass(frozen=True)
class MigrationConfig:
    mode: MigrationMode
    source: ConnectionConfig | None = None
    target: ConnectionConfig | None = None
    source_process_name: str | None = None
    target_process_name: str | None = None
    file_path: str | None = None
    options: MigrationOptions = field(default_factory=MigrationOptions)
    log_level: Literal["verbose", "info", "warning", "error"] = "info"

    @property
    def resolved_target_process_name(self) -> str | None:
        return self.target_process_name or self.source_process_name

    def validate(self) -> None:
        """Reject invalid mode/connection/path combinations before any I/O.

        Raises:
            ConfigError: Describing every problem found
        """
        problems: list[str] = []

        if not isinstance(self.mode, MigrationMode):
            problems.append(f"Unknown mode: {self.mode!r}")
        else:
            needs_source = self.mode in (MigrationMode.EXPORT, MigrationMode.MIGRATE)
            needs_target = self.mode in (MigrationMode.IMPORT, MigrationMode.MIGRATE)
            needs_file = self.mode in (MigrationMode.EXPORT, MigrationMode.IMPORT)

            if needs_source:
                problems.extend(_connection_problems("source", self.source))
                if not self.source_process_name:
                    problems.append("A source process name is required")
            if needs_target:
                problems.extend(_connection_problems("target", self.target))
            if needs_file and not self.file_path:
                problems.append(f"A process file path is required for {self.mode} mode")

        if problems:
            msg = "Invalid configuration: " + "; ".join(problems)
            raise ConfigError(msg)


def _connection_problems(role: str, connection: ConnectionConfig | None) -> list[str]:
    if connection is None or not connection.url:
        return [f"A {role} organization URL is required"]
    if not connection.url.startswith(("https://", "http://")):
        return [f"The {role} organization URL must be an http(s) URL: {connection.url}"]
    if not connection.token:
        return [f"A {role} access token is required"]
    return []


def resolve_tokens(
    config: MigrationConfig,
    *,
    source_pass_path: str | None = None,
    target_pass_path: str | None = None,
) -> MigrationConfig:
    """Fill in missing tokens from pass or the environment."""
    source = config.source
    target = config.target
    if source and not source.token:
        source = replace(source, token=ado_utils.get_token("source", pass_path=source_pass_path))
    if target and not target.token:
        target = replace(target, token=ado_utils.get_token("target", pass_path=target_pass_path))
    return replace(config, source=source, target=target)


def config_from_dict(data: dict[str, Any], mode: MigrationMode | str) -> MigrationConfig:
    """Build a MigrationConfig from the desktop shell's config document."""
    try:
        mode = MigrationMode(mode)
    except ValueError as e:
        msg = f"Unknown mode: {mode!r}"
        raise ConfigError(msg) from e

    source: ConnectionConfig | None = None
    if data.get("sourceAccountUrl"):
        source = ConnectionConfig(data["sourceAccountUrl"], data.get("sourceAccountToken"))
    target: ConnectionConfig | None = None
    if data.get("targetAccountUrl"):
        target = ConnectionConfig(data["targetAccountUrl"], data.get("targetAccountToken"))

    if mode is MigrationMode.EXPORT:
        file_path = data.get("targetFilePath") or data.get("filePath")
    elif mode is MigrationMode.IMPORT:
        file_path = data.get("sourceFilePath") or data.get("filePath")
    else:
        file_path = None

    raw_options: dict[str, Any] = data.get("options") or {}
    log_level = raw_options.get("logLevel", "info")
    if log_level not in ("verbose", "info", "warning", "error"):
        msg = f"Unknown log level: {log_level!r}"
        raise ConfigError(msg)

    return MigrationConfig(
        mode=mode,
        source=source,
        target=target,
        source_process_name=data.get("sourceProcessName"),
        target_process_name=data.get("targetProcessName"),
        file_path=file_path,
        options=MigrationOptions.from_dict(raw_options),
        log_level=log_level,
    )


def load_config(path: str | Path, mode: MigrationMode | str) -> MigrationConfig:
    """Load a config file.

    Raises:
        ConfigError: If the file cannot be read or is not a JSON object
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        msg = f"Cannot read config file {path}: {e}"
        raise ConfigError(msg) from e
    if not isinstance(data, dict):
        msg = f"Config file {path} must contain a JSON object"
        raise ConfigError(msg)

    logger.debug(f"Loaded config from {path}")
    return config_from_dict(data, mode)
