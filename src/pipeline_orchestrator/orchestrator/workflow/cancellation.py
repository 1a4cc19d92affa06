from __future__ import annotations

import threading


class CancellationToken:
    """Cooperative cancellation signal shared by the scheduler and step executors.

    The scheduler checks it at job start and at every step boundary; executors
    may poll it to ask a running process to stop.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None

    def cancel(self, reason: str = "Run cancelled") -> None:
        with self._lock:
            if self._reason is None:
                self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds; return True early if cancelled."""

        return self._event.wait(timeout)
