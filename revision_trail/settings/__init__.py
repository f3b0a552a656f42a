"""Settings for revision-trail.

Configuration comes from an optional YAML file with environment variable
overrides.

Usage:
    from revision_trail.settings import load_settings

    settings = load_settings("revision_trail.yml")
    settings.configure_logging()
    store = settings.build_store()

YAML keys (all optional):
    db_path: audit.db
    versioning_enabled: true
    disabled: false
    payload_encoding: text        # or "structured"
    log_level: INFO
    json_logs: true

Env vars (override the file):
    REVISION_TRAIL_DB_PATH, REVISION_TRAIL_VERSIONING_ENABLED,
    REVISION_TRAIL_DISABLED, REVISION_TRAIL_PAYLOAD_ENCODING,
    REVISION_TRAIL_LOG_LEVEL, REVISION_TRAIL_JSON_LOGS
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from revision_trail.actor_context import AuditContext
from revision_trail.audit_store import AuditStore
from revision_trail.change_codec import ColumnEncoding
from revision_trail.errors import SettingsLoadError
from revision_trail.structured_logging import setup_logging

ENV_PREFIX = "REVISION_TRAIL_"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off", ""):
            return False
    raise SettingsLoadError(f"Invalid boolean for {name}: {value!r}")


@dataclass
class AuditSettings:
    """Audit log configuration.

    Attributes:
        db_path: SQLite file holding the audit table
        versioning_enabled: Assign incrementing per-target versions (False
            records every change at version 0)
        disabled: Start with tracking switched off
        payload_encoding: Payload column type for newly created tables
        log_level: Log level name
        json_logs: JSON log output instead of console rendering
    """
    db_path: str = "audit.db"
    versioning_enabled: bool = True
    disabled: bool = False
    payload_encoding: ColumnEncoding = ColumnEncoding.TEXT
    log_level: str = "INFO"
    json_logs: bool = True

    def __post_init__(self) -> None:
        self.db_path = str(self.db_path)
        self.versioning_enabled = _parse_bool(self.versioning_enabled, "versioning_enabled")
        self.disabled = _parse_bool(self.disabled, "disabled")
        if not isinstance(self.payload_encoding, ColumnEncoding):
            try:
                self.payload_encoding = ColumnEncoding(str(self.payload_encoding).strip().lower())
            except ValueError:
                raise SettingsLoadError(f"Invalid payload_encoding: {self.payload_encoding!r}")
        self.log_level = str(self.log_level).upper()
        if self.log_level not in _LOG_LEVELS:
            raise SettingsLoadError(f"Invalid log_level: {self.log_level!r}")
        self.json_logs = _parse_bool(self.json_logs, "json_logs")

    @classmethod
    def from_env(cls, base: Optional["AuditSettings"] = None) -> "AuditSettings":
        """Apply REVISION_TRAIL_* environment variables.

        Args:
            base: Settings to start from (defaults when omitted). Only
                variables that are set override it.

        Returns:
            New AuditSettings instance
        """
        values = base.to_dict() if base is not None else {}
        for field in fields(cls):
            raw = os.getenv(ENV_PREFIX + field.name.upper())
            if raw is not None:
                values[field.name] = raw
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {
            "db_path": self.db_path,
            "versioning_enabled": self.versioning_enabled,
            "disabled": self.disabled,
            "payload_encoding": self.payload_encoding.value,
            "log_level": self.log_level,
            "json_logs": self.json_logs,
        }

    def build_context(self) -> AuditContext:
        return AuditContext(disabled=self.disabled, versioning_enabled=self.versioning_enabled)

    def build_store(self, context: AuditContext | None = None) -> AuditStore:
        """Create the audit store described by these settings."""
        return AuditStore(
            db_path=self.db_path,
            context=context or self.build_context(),
            payload_encoding=self.payload_encoding,
        )

    def configure_logging(self, log_file: str | None = None) -> None:
        setup_logging(level=self.log_level, log_file=log_file, json_output=self.json_logs)


def load_settings(settings_path: str | Path = "revision_trail.yml") -> AuditSettings:
    """
    Load settings from a YAML file, then apply environment overrides.

    A missing file is not an error: defaults plus environment apply.

    Args:
        settings_path: Path to the YAML settings file.

    Returns:
        AuditSettings instance.

    Raises:
        SettingsLoadError: If the file is unreadable, not a YAML mapping,
            or holds invalid values.
    """
    settings_path = Path(settings_path)

    data: dict[str, Any] = {}
    if settings_path.exists():
        try:
            with open(settings_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise SettingsLoadError(f"Invalid YAML syntax: {e}")
        except OSError as e:
            raise SettingsLoadError(f"Failed to read settings file: {e}")

        if loaded is not None:
            if not isinstance(loaded, dict):
                raise SettingsLoadError("Settings file must contain a YAML dictionary")
            data = loaded

    known = {field.name for field in fields(AuditSettings)}
    unknown = set(data) - known
    if unknown:
        raise SettingsLoadError(f"Unknown settings: {', '.join(sorted(unknown))}")

    try:
        settings = AuditSettings(**data)
    except TypeError as e:
        raise SettingsLoadError(f"Invalid settings: {e}")

    return AuditSettings.from_env(settings)


__all__ = ["AuditSettings", "ENV_PREFIX", "SettingsLoadError", "load_settings"]
