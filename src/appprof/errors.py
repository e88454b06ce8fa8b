from __future__ import annotations

from typing import Any


class ProfilerError(Exception):
    """Structured failure carrying a stable code for CLI and telemetry output."""

    default_code = "profiler_error"

    def __init__(self, message: str, *, code: str | None = None, hint: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.message = message
        self.hint = hint
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.hint:
            payload["hint"] = self.hint
        for key, value in self.context.items():
            if value is not None:
                payload[key] = value
        return payload


class ConfigError(ProfilerError, ValueError):
    default_code = "invalid_config"


class OptionError(ProfilerError, ValueError):
    default_code = "invalid_option"


class UidResolutionError(ProfilerError):
    default_code = "uid_resolution_failed"


class PackageNotFoundError(UidResolutionError):
    default_code = "package_not_found"


class PropertyWriteError(ProfilerError):
    default_code = "property_write_failed"


class PermissionGrantError(ProfilerError):
    default_code = "permission_denied"


class TracepointExportError(ProfilerError):
    default_code = "tracepoint_export_failed"


class SandboxError(ProfilerError):
    default_code = "sandbox_spawn_failed"


class OutputError(ProfilerError):
    default_code = "output_unavailable"


class CollectionError(ProfilerError):
    default_code = "collection_failed"


class ArchiveError(CollectionError):
    default_code = "archive_write_failed"
