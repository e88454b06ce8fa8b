from __future__ import annotations

"""Re-run a command inside an application's sandbox with relayed descriptors."""

import logging
import os
import signal
import subprocess
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from .errors import OutputError, SandboxError
from .packages import ApplicationIdentity


logger = logging.getLogger(__name__)

FORWARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


class SandboxSpawner(Protocol):
    def spawn(
        self,
        identity: ApplicationIdentity,
        args: Sequence[str],
        output_fd: int,
        cancel_fd: int,
    ) -> int:
        ...


def exit_status(returncode: int) -> int:
    """Map a Popen return code to a shell-style exit status."""

    if returncode < 0:
        return 128 - returncode
    return returncode


def _run_child(argv: Sequence[str], *, pass_fds: Sequence[int], cwd: Path | None = None) -> int:
    logger.debug("spawning %s", " ".join(argv))
    try:
        process = subprocess.Popen(list(argv), pass_fds=tuple(pass_fds), cwd=cwd)  # noqa: S603
    except OSError as exc:
        raise SandboxError(f"failed to start {argv[0]}: {exc}", command=argv[0]) from exc
    return exit_status(process.wait())


class RunAsSpawner:
    """Enter the application's sandbox through Android's `run-as`."""

    def __init__(self, command: Sequence[str]) -> None:
        self.command = list(command)

    def spawn(
        self,
        identity: ApplicationIdentity,
        args: Sequence[str],
        output_fd: int,
        cancel_fd: int,
    ) -> int:
        argv = ["run-as", identity.package_name, *self.command, *args]
        return _run_child(argv, pass_fds=(output_fd, cancel_fd))


class LocalSpawner:
    """Run the command as a plain subprocess, without any privilege transition."""

    def __init__(self, command: Sequence[str], cwd: Path | None = None) -> None:
        self.command = list(command)
        self.cwd = cwd

    def spawn(
        self,
        identity: ApplicationIdentity,
        args: Sequence[str],
        output_fd: int,
        cancel_fd: int,
    ) -> int:
        return _run_child([*self.command, *args], pass_fds=(output_fd, cancel_fd), cwd=self.cwd)


@contextmanager
def forward_signals(write_fd: int | None, signals: Sequence[signal.Signals] = FORWARDED_SIGNALS) -> Iterator[None]:
    """Turn termination signals into a byte on the cancellation pipe."""

    if write_fd is None or threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: object) -> None:
        logger.info("received signal %d, asking the collector to stop", signum)
        os.write(write_fd, b"\0")

    previous = {signum: signal.signal(signum, _handler) for signum in signals}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


class ContextSwitcher:
    """Delegate collection to a sandboxed re-invocation and report its status."""

    def __init__(self, spawner: SandboxSpawner, *, signals: Sequence[signal.Signals] = FORWARDED_SIGNALS) -> None:
        self.spawner = spawner
        self.signals = signals

    def run(
        self,
        identity: ApplicationIdentity,
        args: Sequence[str],
        *,
        output_path: Path | None = None,
        output_fd: int | None = None,
        stop_signal_fd: int | None = None,
    ) -> int:
        """Spawn `args` in the sandbox with an output sink and a stop descriptor."""

        owned: list[int] = []
        try:
            if output_fd is None:
                if output_path is None:
                    raise OutputError("an output path or descriptor is required")
                try:
                    output_fd = os.open(output_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC | os.O_CLOEXEC, 0o644)
                except OSError as exc:
                    raise OutputError(f"failed to open {output_path}: {exc}", path=str(output_path)) from exc
                owned.append(output_fd)
            forward_fd: int | None = None
            if stop_signal_fd is None:
                stop_signal_fd, forward_fd = os.pipe()
                owned.extend([stop_signal_fd, forward_fd])
            child_args = [
                *args,
                "--in-app",
                "--out-fd",
                str(output_fd),
                "--stop-signal-fd",
                str(stop_signal_fd),
            ]
            with forward_signals(forward_fd, self.signals):
                return self.spawner.spawn(identity, child_args, output_fd, stop_signal_fd)
        finally:
            for fd in owned:
                os.close(fd)
