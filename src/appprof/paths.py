from __future__ import annotations

import os
from pathlib import Path

def appprof_home() -> Path:
    configured = os.environ.get("APPPROF_HOME")
    if configured:
        return Path(configured).expanduser().resolve()
    return Path.home() / ".appprof"

def config_path(home: Path | None = None) -> Path:
    configured = os.environ.get("APPPROF_CONFIG")
    if configured:
        return Path(configured).expanduser().resolve()
    return (home or appprof_home()) / "config.yaml"

def home_dirs(base: Path) -> dict[str, Path]:
    return {"base": base, "state": base / "state", "telemetry": base / "telemetry"}

def atomic_write_text(path: Path, text: str) -> None:
    """Write text through a sibling temp file and an atomic rename."""

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.parent / f".{path.name}.tmp"
    temp_path.write_text(text, encoding="utf-8", newline="\n")
    temp_path.replace(path)
