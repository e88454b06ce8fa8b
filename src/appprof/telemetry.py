from __future__ import annotations

"""Append-only JSONL event log for prepare and collect invocations."""

import hashlib
import json
import logging
import os
import platform
import sys
import unicodedata
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path
from typing import Any


logger = logging.getLogger(__name__)

SCHEMA_VERSION = "0.1"
VALID_EVENT_TYPES = {
    "prepare.completed",
    "prepare.failed",
    "grant.persisted",
    "perf.relaxed",
    "tracepoints.exported",
    "collect.delegated",
    "collect.completed",
    "collect.failed",
    "data.removed",
    "risk.flagged",
}
VALID_SOURCES = {"outer", "in-app"}
MAX_STRING_LENGTH = 200


def _utc_now_rfc3339() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _safe_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def _strip_control_chars(value: str) -> str:
    return "".join(ch for ch in value if not unicodedata.category(ch).startswith("C"))


def hashlib_sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def sanitize_event_data(data: Any) -> Any:
    """Strip control characters and truncate long strings, recursively."""

    if isinstance(data, dict):
        return {str(key): sanitize_event_data(value) for key, value in data.items()}
    if isinstance(data, (list, tuple)):
        return [sanitize_event_data(item) for item in data]
    if data is None or isinstance(data, (bool, int, float)):
        return data
    text = _strip_control_chars(str(data)).strip()
    if len(text) > MAX_STRING_LENGTH:
        return f"{text[:MAX_STRING_LENGTH]}...[truncated]"
    return text


def detect_tool_version() -> str:
    try:
        return package_version("appprof")
    except PackageNotFoundError:
        return "0.1.0"


@dataclass(frozen=True)
class BuildInfo:
    """Static build/runtime metadata attached to every event."""

    tool_version: str
    python_version: str
    platform: str
    pid: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_version": self.tool_version,
            "python_version": self.python_version,
            "platform": self.platform,
            "pid": self.pid,
        }


class TelemetryLogger:
    """Append-only event logger; a disabled logger accepts and drops events."""

    def __init__(self, events_path: Path, *, enabled: bool = True) -> None:
        self.events_path = events_path
        self.enabled = enabled
        self.build = BuildInfo(
            tool_version=detect_tool_version(),
            python_version=sys.version.split()[0],
            platform=platform.platform(),
            pid=os.getpid(),
        )

    def _append_jsonl(self, payload: dict[str, Any]) -> None:
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        with self.events_path.open("a", encoding="utf-8", newline="\n") as handle:
            handle.write(_safe_json(payload))
            handle.write("\n")

    def _base_event(self, *, event_type: str, source: str, data: dict[str, Any]) -> dict[str, Any]:
        if event_type not in VALID_EVENT_TYPES:
            data = {
                "reason": "invalid_event_type",
                "invalid_event_type_hash": hashlib_sha256_hex(event_type),
            }
            event_type = "risk.flagged"
        return {
            "schema_version": SCHEMA_VERSION,
            "event_id": str(uuid.uuid4()),
            "ts": _utc_now_rfc3339(),
            "event_type": event_type,
            "source": source if source in VALID_SOURCES else "outer",
            "build": self.build.to_dict(),
            "data": data,
        }

    def log_event(self, event_type: str, *, source: str, data: dict[str, Any]) -> None:
        """Write one sanitized event; failures are reported and otherwise ignored."""

        if not self.enabled:
            return
        try:
            self._append_jsonl(self._base_event(event_type=event_type, source=source, data=sanitize_event_data(data)))
        except Exception as exc:  # noqa: BLE001
            logger.warning("failed to append telemetry event %s: %s", event_type, exc)

    def iter_events(self) -> list[dict[str, Any]]:
        if not self.events_path.exists():
            return []
        events: list[dict[str, Any]] = []
        with self.events_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(payload, dict):
                    events.append(payload)
        return events
