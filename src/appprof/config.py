from __future__ import annotations

"""Configuration loading: optional YAML file validated against a JSON schema."""

import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from .errors import ConfigError


CONFIG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "data_dir": {"type": "string", "minLength": 1},
        "default_output": {"type": "string", "minLength": 1},
        "temp_prefix": {"type": "string", "minLength": 1},
        "chunk_size": {"type": "integer", "minimum": 1},
        "tracepoint_events_path": {"type": "string", "minLength": 1},
        "tracefs_roots": {"type": "array", "items": {"type": "string", "minLength": 1}},
        "perf_event_paranoid_path": {"type": "string", "minLength": 1},
        "durable_grant_min_android_version": {"type": "integer", "minimum": 0},
        "property_store": {"enum": ["system", "file"]},
        "sandbox": {"enum": ["run-as", "local"]},
        "command": {"type": "array", "minItems": 1, "items": {"type": "string", "minLength": 1}},
        "telemetry": {"type": "boolean"},
    },
}


def _default_command() -> list[str]:
    return [sys.executable, "-m", "appprof"]


@dataclass(frozen=True)
class ProfilerConfig:
    data_dir: str = "appprof_data"
    default_output: str = "appprof_data.zip"
    temp_prefix: str = "TemporaryFile-"
    chunk_size: int = 64 * 1024
    tracepoint_events_path: str = "/data/local/tmp/tracepoint_events"
    tracefs_roots: list[str] = field(default_factory=lambda: ["/sys/kernel/tracing", "/sys/kernel/debug/tracing"])
    perf_event_paranoid_path: str = "/proc/sys/kernel/perf_event_paranoid"
    durable_grant_min_android_version: int = 13
    property_store: str = "system"
    sandbox: str = "run-as"
    command: list[str] = field(default_factory=_default_command)
    telemetry: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_dir": self.data_dir,
            "default_output": self.default_output,
            "temp_prefix": self.temp_prefix,
            "chunk_size": self.chunk_size,
            "tracepoint_events_path": self.tracepoint_events_path,
            "tracefs_roots": list(self.tracefs_roots),
            "perf_event_paranoid_path": self.perf_event_paranoid_path,
            "durable_grant_min_android_version": self.durable_grant_min_android_version,
            "property_store": self.property_store,
            "sandbox": self.sandbox,
            "command": list(self.command),
            "telemetry": self.telemetry,
        }


def validate_config(payload: Any, *, source: str = "<memory>") -> dict[str, Any]:
    """Validate a raw configuration mapping and return it unchanged."""

    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigError(f"Configuration must be a mapping: {source}")
    validator = Draft202012Validator(CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(payload), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.path) or "<root>"
        raise ConfigError(f"Configuration validation failed for {source} at {where}: {first.message}")
    return payload


def load_config(path: Path | None = None) -> ProfilerConfig:
    """Load configuration from YAML, falling back to defaults when the file is absent."""

    if path is None or not path.exists():
        return ProfilerConfig()
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Configuration file is not readable YAML: {path}") from exc
    overrides = validate_config(payload, source=str(path))
    return replace(ProfilerConfig(), **overrides)
