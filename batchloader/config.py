"""
Configuration management for the batch loader.

This module handles:
- Loading the YAML configuration file into typed, frozen dataclasses
- Environment variable overrides for top-level scalar settings
- Hook command tables keyed by table name (or the run-level sentinel)
"""

import os
import re
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


# Key used in hook tables for hooks that run once per run rather than per table
RUN_LEVEL_KEY = "__run__"

ENV_PREFIX = "BATCHLOADER_"

SOURCE_PROFILES = {"local", "gcs"}
LOAD_MODES = {"full", "append"}
ARCHIVE_POLICIES = {"always", "on-error", "on-bad-records", "never"}
TRIGGERS = ("before", "after")
ACTION_KINDS = ("query", "command")


class ConfigError(ValueError):
    """Raised when the configuration file is missing, unreadable or invalid."""


@dataclass(frozen=True)
class LoaderOptions:
    """
    Parameters shared by every bulk-load invocation.

    The command is split with shlex, so it may carry its own fixed
    arguments (e.g. "python /opt/loader/run.py").
    """
    command: str
    format: str = "csv"
    field_separator: str = ","
    enclosed_by: str = '"'
    header: bool = True
    max_ignored_rows: int = 0
    null_token: str = ""
    date_format: str | None = None
    time_format: str | None = None
    timestamp_format: str | None = None
    boolean_format: str | None = None
    verbosity: int = 1
    bad_records_dir: str | None = None  # Local profile only


@dataclass(frozen=True)
class ObjectStoreOptions:
    """Parameters the loader needs to read directly from the object store."""
    bucket: str
    object_root: str = ""
    region: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    buffer_size: int = 8 * 1024 * 1024


@dataclass(frozen=True)
class QueryOptions:
    """Query-execution command: one statement on stdin, success marker in output."""
    command: str
    success_marker: str = "OK"


@dataclass(frozen=True)
class PollOptions:
    max_attempts: int = 60
    interval_seconds: float = 5.0
    terminate_on_timeout: bool = False


@dataclass(frozen=True)
class NotificationConfig:
    recipients: tuple[str, ...] = ()
    sender: str = "batchloader@localhost"
    smtp_host: str | None = None
    smtp_port: int = 25
    subject_prefix: str = "batchloader"
    html: bool = True
    cluster_name: str = field(default_factory=socket.gethostname)


@dataclass(frozen=True)
class ExtraColumn:
    """Header/value pair appended to every line of a table's source file."""
    header: str
    value: str


@dataclass(frozen=True)
class Config:
    """
    Complete configuration for one batch loader deployment.

    Supports two source profiles:
    - local: files on a filesystem path, piped or passed to the loader
    - gcs: objects under gs://bucket/prefix, referenced by the loader directly
    """
    # Target
    database: str
    default_schema: str
    default_load_mode: str

    # Source
    source_profile: str
    source_path: str

    # Run directories - must exist before a run starts
    work_dir: str
    lock_dir: str
    log_dir: str

    loader: LoaderOptions
    query: QueryOptions | None = None
    object_store: ObjectStoreOptions | None = None
    poll: PollOptions = field(default_factory=PollOptions)
    notification: NotificationConfig = field(default_factory=NotificationConfig)

    # Enumeration filters
    file_extension: str = ".csv"
    exclude_pattern: str | None = None
    ignore_dirs: tuple[str, ...] = ()
    strip_patterns: tuple[str, ...] = ()

    # Optional signal artifact that must be present for a run to start
    gate_signal: str | None = None

    # Load behaviour
    truncate_before_load: bool = False
    truncate_statement: str = "TRUNCATE TABLE {schema}.{table};"
    normalize_line_endings: bool = False
    extra_columns: dict[str, ExtraColumn] = field(default_factory=dict)

    # Hooks: (trigger, kind) -> table name or RUN_LEVEL_KEY -> template
    actions: dict[tuple[str, str], dict[str, str]] = field(default_factory=dict)

    # Archiving
    archive_path: str | None = None
    failed_path: str | None = None
    artifact_archive_dir: str | None = None
    archive_policy: str = "never"

    # Path of the file this config was read from (hook placeholder)
    config_path: str = ""

    @classmethod
    def from_file(cls, path: str) -> "Config":
        """
        Load configuration from a YAML file.

        Top-level scalar keys can be overridden from the environment with
        the BATCHLOADER_ prefix, e.g. BATCHLOADER_SOURCE_PROFILE=gcs.

        Raises:
            ConfigError: If the file cannot be read or is invalid
        """
        try:
            raw = yaml.safe_load(Path(path).read_text())
        except OSError as e:
            raise ConfigError(f"Cannot read configuration file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(raw, dict):
            raise ConfigError(f"Configuration file {path} must contain a mapping")

        return cls.from_dict(_apply_env_overrides(raw), config_path=str(path))

    @classmethod
    def from_dict(cls, raw: dict[str, Any], config_path: str = "") -> "Config":
        """Build a Config from an already-parsed mapping."""
        for key in ("database", "source_path", "work_dir", "lock_dir", "log_dir", "loader"):
            if not raw.get(key):
                raise ConfigError(f"Missing required setting: {key}")

        source_profile = raw.get("source_profile", "local")
        if source_profile not in SOURCE_PROFILES:
            raise ConfigError(f"source_profile must be one of {sorted(SOURCE_PROFILES)}")

        default_load_mode = raw.get("default_load_mode", "append")
        if default_load_mode not in LOAD_MODES:
            raise ConfigError(f"default_load_mode must be one of {sorted(LOAD_MODES)}")

        archive_policy = raw.get("archive_policy", "never")
        if archive_policy not in ARCHIVE_POLICIES:
            raise ConfigError(f"archive_policy must be one of {sorted(ARCHIVE_POLICIES)}")

        object_store = None
        if source_profile == "gcs":
            if not (raw.get("object_store") or {}).get("bucket"):
                raise ConfigError("object_store.bucket is required for the gcs profile")
            object_store = _section(ObjectStoreOptions, raw, "object_store")

        return cls(
            database=raw["database"],
            default_schema=raw.get("default_schema", "public"),
            default_load_mode=default_load_mode,
            source_profile=source_profile,
            source_path=raw["source_path"],
            work_dir=raw["work_dir"],
            lock_dir=raw["lock_dir"],
            log_dir=raw["log_dir"],
            loader=_section(LoaderOptions, raw, "loader"),
            query=_section(QueryOptions, raw, "query") if raw.get("query") else None,
            object_store=object_store,
            poll=_section(PollOptions, raw, "poll") if raw.get("poll") else PollOptions(),
            notification=_load_notification(raw.get("notification") or {}),
            file_extension=raw.get("file_extension", ".csv"),
            exclude_pattern=raw.get("exclude_pattern") or None,
            ignore_dirs=tuple(raw.get("ignore_dirs") or ()),
            strip_patterns=tuple(raw.get("strip_patterns") or ()),
            gate_signal=raw.get("gate_signal") or None,
            truncate_before_load=_as_bool(raw.get("truncate_before_load", False)),
            truncate_statement=raw.get("truncate_statement", "TRUNCATE TABLE {schema}.{table};"),
            normalize_line_endings=_as_bool(raw.get("normalize_line_endings", False)),
            extra_columns={
                table: ExtraColumn(header=cfg["header"], value=str(cfg["value"]))
                for table, cfg in (raw.get("extra_columns") or {}).items()
            },
            actions=_load_actions(raw.get("actions") or {}),
            archive_path=raw.get("archive_path") or None,
            failed_path=raw.get("failed_path") or None,
            artifact_archive_dir=raw.get("artifact_archive_dir") or None,
            archive_policy=archive_policy,
            config_path=config_path,
        )

    def action_table(self, trigger: str, kind: str) -> dict[str, str]:
        """Return the hook table for (trigger, kind); empty if none configured."""
        return self.actions.get((trigger, kind), {})


def _section(cls, raw: dict[str, Any], key: str):
    """Instantiate a nested options dataclass, reporting unknown keys."""
    values = raw[key]
    if not isinstance(values, dict):
        raise ConfigError(f"{key} must be a mapping")
    try:
        return cls(**values)
    except TypeError as e:
        raise ConfigError(f"Invalid {key} section: {e}") from e


def _load_notification(raw: dict[str, Any]) -> NotificationConfig:
    recipients = raw.get("recipients") or ()
    if isinstance(recipients, str):
        recipients = [r.strip() for r in recipients.split(",") if r.strip()]
    values = {k: v for k, v in raw.items() if k != "recipients"}
    try:
        return NotificationConfig(recipients=tuple(recipients), **values)
    except TypeError as e:
        raise ConfigError(f"Invalid notification section: {e}") from e


def _load_actions(raw: dict[str, Any]) -> dict[tuple[str, str], dict[str, str]]:
    """
    Parse the hook tables.

    Example YAML:

        actions:
          before:
            query:
              orders: "DELETE FROM sales.orders WHERE day = CURRENT_DATE;"
            command:
              __run__: "/opt/hooks/notify_start.sh {database}"
          after:
            command:
              orders: "/opt/hooks/refresh.sh {schema} {table} {file_name}"
    """
    result: dict[tuple[str, str], dict[str, str]] = {}
    for trigger, kinds in raw.items():
        if trigger not in TRIGGERS:
            raise ConfigError(f"Unknown action trigger: {trigger}")
        for kind, table_map in (kinds or {}).items():
            if kind not in ACTION_KINDS:
                raise ConfigError(f"Unknown action kind: {kind}")
            result[(trigger, kind)] = {
                str(table): str(template) for table, template in (table_map or {}).items()
            }
    return result


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Override top-level scalar keys from BATCHLOADER_* environment variables."""
    merged = dict(raw)
    for name, value in os.environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        key = name[len(ENV_PREFIX):].lower()
        if isinstance(merged.get(key), (dict, list)):
            continue
        merged[key] = value
    return merged


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def fill_placeholders(template: str, **values: Any) -> str:
    """
    Substitute {name} for each named value and leave every other brace alone.

    Hook commands and SQL carry braces of their own (awk programs, ${VAR},
    JSON), so str.format is not usable on them.
    """
    if not values:
        return template
    pattern = re.compile(r"\{(" + "|".join(re.escape(name) for name in values) + r")\}")
    return pattern.sub(lambda m: str(values[m.group(1)]), template)
