from __future__ import annotations

import json
import logging
import re
import subprocess
from pathlib import Path
from typing import Protocol

from .errors import ConfigError, PropertyWriteError
from .paths import atomic_write_text


logger = logging.getLogger(__name__)

ANDROID_VERSION_P = 9
SDK_VERSION_T = 33
ANDROID_VERSION_T = 13
LEADING_INT_PATTERN = re.compile(r"^\d+")


class PropertyStore(Protocol):
    def get(self, name: str, default: str = "") -> str:
        ...

    def set(self, name: str, value: str) -> None:
        ...


class SystemPropertyStore:
    """Android system properties through the `getprop` and `setprop` tools."""

    def __init__(self, timeout_s: float = 5.0) -> None:
        self.timeout_s = timeout_s

    def get(self, name: str, default: str = "") -> str:
        try:
            result = subprocess.run(  # noqa: S603
                ["getprop", name],
                check=False,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("getprop %s unavailable: %s", name, exc)
            return default
        value = result.stdout.strip()
        if result.returncode != 0 or not value:
            return default
        return value

    def set(self, name: str, value: str) -> None:
        try:
            result = subprocess.run(  # noqa: S603
                ["setprop", name, value],
                check=False,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise PropertyWriteError(f"failed to run setprop {name}", property=name) from exc
        if result.returncode != 0:
            raise PropertyWriteError(
                f"setprop {name} exited with status {result.returncode}",
                property=name,
                stderr=result.stderr.strip() or None,
            )


class FilePropertyStore:
    """JSON-file backed property store for hosts without Android properties."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigError(
                f"Property store is not readable JSON: {self.path}",
                hint="Fix or delete the file to start from an empty property store.",
                path=str(self.path),
            ) from exc
        if not isinstance(payload, dict):
            return {}
        return {str(key): str(value) for key, value in payload.items()}

    def get(self, name: str, default: str = "") -> str:
        return self._load().get(name, default)

    def set(self, name: str, value: str) -> None:
        try:
            data = self._load()
            data[name] = value
            atomic_write_text(self.path, json.dumps(data, indent=2, sort_keys=True))
        except (OSError, ValueError) as exc:
            raise PropertyWriteError(f"failed to write property {name} to {self.path}", property=name) from exc


def _parse_version(value: str) -> int:
    # Release strings look like "8.1.0", a letter like "Q", or a codename like "OMR1".
    if not value:
        return 0
    first = value[0]
    if "L" <= first <= "V":
        return ord(first) - ord("P") + ANDROID_VERSION_P
    match = LEADING_INT_PATTERN.match(value)
    if match:
        return int(match.group(0))
    return 0


def android_version(store: PropertyStore) -> int:
    """Return the major Android version, or 0 when it cannot be determined."""

    version = 0
    codename = store.get("ro.build.version.codename", "REL")
    if codename != "REL":
        version = _parse_version(codename)
    if version == 0:
        version = _parse_version(store.get("ro.build.version.release", ""))
    if version == 0:
        match = LEADING_INT_PATTERN.match(store.get("ro.build.version.sdk", ""))
        if match and int(match.group(0)) >= SDK_VERSION_T:
            version = int(match.group(0)) - SDK_VERSION_T + ANDROID_VERSION_T
    return version
