from __future__ import annotations

"""Prepare and collect operations wired to their platform collaborators."""

import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

from .archive import ArchiveCollector, remove_data_dir
from .cancellation import StopSignalWatcher
from .config import ProfilerConfig, load_config
from .errors import OptionError, OutputError, ProfilerError
from .grants import GrantStore, PermissionGrantor, SessionRelaxer
from .packages import ApplicationIdentity, PackageLister, UidResolver, list_packages
from .paths import appprof_home, config_path, home_dirs
from .properties import FilePropertyStore, PropertyStore, SystemPropertyStore, android_version
from .sandbox import ContextSwitcher, LocalSpawner, RunAsSpawner, SandboxSpawner
from .telemetry import TelemetryLogger
from .tracepoints import TracepointExporter, TracepointSource, scan_tracefs


def _property_store(config: ProfilerConfig, state_dir: Path) -> PropertyStore:
    if config.property_store == "file":
        return FilePropertyStore(state_dir / "properties.json")
    return SystemPropertyStore()


def _spawner(config: ProfilerConfig) -> SandboxSpawner:
    if config.sandbox == "local":
        return LocalSpawner(config.command)
    return RunAsSpawner(config.command)


@dataclass
class ProfilerService:
    """Entry point for the `api-prepare` and `api-collect` operations."""

    config: ProfilerConfig
    home: Path
    telemetry: TelemetryLogger
    properties: PropertyStore
    grantor: PermissionGrantor
    switcher: ContextSwitcher
    collector: ArchiveCollector
    config_file: Path | None = None
    watcher_factory: Callable[[int], StopSignalWatcher] = StopSignalWatcher

    @classmethod
    def create(
        cls,
        config: ProfilerConfig | None = None,
        *,
        home: Path | None = None,
        lister: PackageLister = list_packages,
        tracepoint_source: TracepointSource | None = None,
        spawner: SandboxSpawner | None = None,
        config_file: Path | None = None,
    ) -> "ProfilerService":
        """Build a service from configuration with the default platform collaborators.

        An explicit `config` wins over any file. Otherwise `config_file` (or the
        default `config_path`) is loaded, and remembered when it exists so the
        sandboxed child reads the same file.
        """

        home = home or appprof_home()
        if config is None:
            config_file = config_file or config_path(home)
            config = load_config(config_file)
            if not config_file.exists():
                config_file = None
        dirs = home_dirs(home)
        telemetry = TelemetryLogger(events_path=dirs["telemetry"] / "events.jsonl", enabled=config.telemetry)
        properties = _property_store(config, dirs["state"])
        source = tracepoint_source or (lambda: scan_tracefs(config.tracefs_roots))
        grantor = PermissionGrantor(
            GrantStore(properties),
            UidResolver(lister),
            SessionRelaxer(properties, Path(config.perf_event_paranoid_path)),
            TracepointExporter(Path(config.tracepoint_events_path), source),
            android_version=lambda: android_version(properties),
            min_durable_version=config.durable_grant_min_android_version,
        )
        return cls(
            config=config,
            home=home,
            telemetry=telemetry,
            properties=properties,
            grantor=grantor,
            switcher=ContextSwitcher(spawner or _spawner(config)),
            collector=ArchiveCollector(temp_prefix=config.temp_prefix, chunk_size=config.chunk_size),
            config_file=config_file,
        )

    def prepare(self, app_name: str | None = None, days: int = 0) -> dict[str, Any]:
        """Apply one permission policy and rewrite the tracepoint descriptor file."""

        try:
            result = self.grantor.prepare(app_name, days)
        except ProfilerError as exc:
            self.telemetry.log_event("prepare.failed", source="outer", data={"app": app_name, **exc.to_dict()})
            raise
        if result.grant is not None:
            self.telemetry.log_event("grant.persisted", source="outer", data={"app": app_name, **result.grant.to_dict()})
        else:
            self.telemetry.log_event("perf.relaxed", source="outer", data={"relaxation": result.relaxation})
        self.telemetry.log_event(
            "tracepoints.exported",
            source="outer",
            data={"path": self.config.tracepoint_events_path, "count": result.tracepoints},
        )
        self.telemetry.log_event("prepare.completed", source="outer", data={"policy": result.policy})
        return {"app": app_name, **result.to_dict()}

    def collect(
        self,
        app_name: str | None,
        *,
        output_path: str | None = None,
        output_fd: int | None = None,
        stop_signal_fd: int | None = None,
        log_level: str = "info",
    ) -> dict[str, Any]:
        """Run collection inside the app's sandbox and return the child's exit status."""

        if not app_name:
            raise OptionError("--app is missing")
        output = output_path or self.config.default_output
        args = ["--log", log_level]
        if self.config_file is not None:
            # The child runs under another uid and may not resolve the same home.
            args += ["--config", str(self.config_file)]
        args += ["api-collect", "--app", app_name]
        self.telemetry.log_event("collect.delegated", source="outer", data={"app": app_name, "sandbox": self.config.sandbox})
        status = self.switcher.run(
            ApplicationIdentity(package_name=app_name),
            args,
            output_path=Path(output) if output_fd is None else None,
            output_fd=output_fd,
            stop_signal_fd=stop_signal_fd,
        )
        return {"app": app_name, "output": output if output_fd is None else f"fd:{output_fd}", "exit_status": status}

    def _open_output(self, output_fd: int | None, output_path: str | None) -> IO[bytes]:
        try:
            if output_fd is not None:
                return os.fdopen(output_fd, "wb")
            return open(output_path or self.config.default_output, "wb")  # noqa: SIM115
        except OSError as exc:
            raise OutputError(f"failed to open output: {exc}", fd=output_fd, path=output_path) from exc

    def collect_in_app(
        self,
        *,
        output_fd: int | None = None,
        output_path: str | None = None,
        stop_signal_fd: int | None = None,
    ) -> dict[str, Any]:
        """Archive the data directory, then delete it once the archive is complete."""

        if stop_signal_fd is not None:
            self.watcher_factory(stop_signal_fd).start()
        data_dir = Path(self.config.data_dir)
        try:
            sink = self._open_output(output_fd, output_path)
            try:
                with sink:
                    result = self.collector.collect(data_dir, sink)
            except OSError as exc:
                raise OutputError(f"failed to close output: {exc}") from exc
        except ProfilerError as exc:
            self.telemetry.log_event("collect.failed", source="in-app", data=exc.to_dict())
            raise
        self.telemetry.log_event("collect.completed", source="in-app", data=result.to_dict())

        removed = remove_data_dir(data_dir)
        self.telemetry.log_event("data.removed", source="in-app", data={"path": str(data_dir), "removed": removed})
        return {**result.to_dict(), "removed": removed}
