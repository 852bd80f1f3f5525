"""Cooperative shutdown state shared by the pool, workers, and collectors."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from chunkpipe.execution.runner import SIGNAL_EXIT_BASE

logger = logging.getLogger(__name__)


class ShutdownState:
    """Records the first termination signal and wakes sleepers."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.signal_name: str | None = None
        self.signum: int | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    @property
    def exit_code(self) -> int:
        """Exit code derived from the received signal (``128 + signum``)."""

        return SIGNAL_EXIT_BASE + (self.signum or signal.SIGTERM)

    def request(self, signum: int) -> None:
        with self._lock:
            if self._event.is_set():
                return
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.signum = signum
            self.signal_name = name
            self._event.set()
            callbacks = list(self._callbacks)
        logger.warning("Shutdown requested by %s", name)
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` once shutdown is requested (immediately if it already was)."""

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True when shutdown was requested."""

        return self._event.wait(timeout=max(0.0, timeout))

    @contextmanager
    def signal_handlers(self) -> Iterator[None]:
        """Route SIGINT/SIGTERM into this state while the block runs."""

        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            self.request(signum)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return

        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
