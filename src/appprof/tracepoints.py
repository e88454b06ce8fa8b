from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .errors import TracepointExportError
from .paths import atomic_write_text


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tracepoint:
    system: str
    name: str
    config: int

    @property
    def full_name(self) -> str:
        return f"{self.system}:{self.name}"


TracepointSource = Callable[[], list[Tracepoint]]


def scan_tracefs(roots: Sequence[str]) -> list[Tracepoint]:
    """List tracepoints from the first tracefs root that has an events directory."""

    for root in roots:
        events_dir = Path(root) / "events"
        if not events_dir.is_dir():
            continue
        found: list[Tracepoint] = []
        for id_file in events_dir.glob("*/*/id"):
            try:
                config = int(id_file.read_text(encoding="utf-8").strip())
            except (OSError, ValueError):
                continue
            found.append(Tracepoint(system=id_file.parent.parent.name, name=id_file.parent.name, config=config))
        return sorted(found, key=lambda tp: tp.full_name)
    logger.debug("no tracefs events directory under %s", ", ".join(roots))
    return []


def render_tracepoints(tracepoints: Sequence[Tracepoint]) -> str:
    return "".join(f"{tp.full_name} {tp.config}\n" for tp in tracepoints)


class TracepointExporter:
    def __init__(self, path: Path, source: TracepointSource) -> None:
        self.path = path
        self.source = source

    def export(self) -> int:
        """Rewrite the descriptor file and return the number of tracepoints written."""

        tracepoints = self.source()
        try:
            atomic_write_text(self.path, render_tracepoints(tracepoints))
        except OSError as exc:
            raise TracepointExportError(f"failed to write {self.path}: {exc}", path=str(self.path)) from exc
        return len(tracepoints)
