from __future__ import annotations

import logging
import signal
import threading
from typing import Callable

logger = logging.getLogger(__name__)

_SIGNAL_REASONS = {
    signal.SIGTERM: "Process terminated",
    signal.SIGINT: "Process interrupted",
}


class CancellationToken:
    """Cooperative cancellation flag shared by the pipeline and its runner.

    ``cancel`` is safe to call from a signal handler: it only flips state and
    runs the registered callbacks once.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def on_cancel(self, callback: Callable[[str], None]) -> None:
        self._callbacks.append(callback)

    def cancel(self, reason: str) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.warning("Cancellation requested: %s", reason)
        for callback in self._callbacks:
            callback(reason)


def install_signal_handlers(token: CancellationToken) -> Callable[[], None]:
    """Route SIGINT/SIGTERM into ``token``; returns a function restoring the old handlers."""
    previous = {}

    def _handler(signum, frame) -> None:
        token.cancel(_SIGNAL_REASONS.get(signum, f"Received signal {signum}"))

    for signum in _SIGNAL_REASONS:
        previous[signum] = signal.signal(signum, _handler)

    def restore() -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    return restore
