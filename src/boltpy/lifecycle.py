from __future__ import annotations

import logging
import signal
import threading
from types import FrameType, TracebackType
from typing import Any

_log = logging.getLogger("bolt.lifecycle")

INTERRUPT_MESSAGE = (
    "Exiting after receiving SIGINT signal. There may be processes left "
    "executing on some nodes."
)


class InterruptGuard:
    """Context manager that turns SIGINT into a cancelled, unwinding run.

    On SIGINT the cancellation token is set, so the executor starts no further
    targets, and ``KeyboardInterrupt`` is raised in the main thread so the
    caller's ``finally`` blocks run. The previous handler is always restored.
    Signal handlers can only be installed from the main thread; elsewhere the
    guard does nothing.
    """

    def __init__(self, cancel_token: threading.Event, message: str = INTERRUPT_MESSAGE):
        self.cancel_token = cancel_token
        self.message = message
        self._previous: Any = None
        self._installed = False

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        _log.warning(self.message)
        self.cancel_token.set()
        raise KeyboardInterrupt

    def __enter__(self) -> "InterruptGuard":
        if threading.current_thread() is not threading.main_thread():
            _log.debug("interrupt_guard_skipped reason=not_main_thread")
            return self
        self._previous = signal.signal(signal.SIGINT, self._handle)
        self._installed = True
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._installed:
            signal.signal(signal.SIGINT, self._previous)
            self._installed = False
            self._previous = None
