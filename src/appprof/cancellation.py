from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable


logger = logging.getLogger(__name__)

CANCELLED_EXIT_STATUS = 1


class StopSignalWatcher:
    """Terminate the whole process once the stop descriptor becomes readable.

    Blocking file reads cannot be interrupted from another thread, so the
    collection loop is never polled for cancellation. Instead a detached daemon
    thread waits on the descriptor (data or peer close) and calls `os._exit`
    without flushing anything. A killed collection leaves an archive without its
    central directory, which every zip reader rejects.
    """

    def __init__(
        self,
        fd: int,
        *,
        exit_func: Callable[[int], object] = os._exit,
        status: int = CANCELLED_EXIT_STATUS,
    ) -> None:
        self.fd = fd
        self.exit_func = exit_func
        self.status = status

    def start(self) -> threading.Thread:
        thread = threading.Thread(target=self._wait, name="stop-signal-watcher", daemon=True)
        thread.start()
        return thread

    def _wait(self) -> None:
        try:
            os.read(self.fd, 1)
        except OSError as exc:
            logger.warning("stop signal descriptor %d is unreadable: %s", self.fd, exc)
        logger.warning("stop signal received, terminating")
        self.exit_func(self.status)
