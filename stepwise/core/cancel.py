"""Per-run cancellation flag."""

from __future__ import annotations

import threading

from stepwise.utils.logging import get_logger

log = get_logger(__name__)

# Upper bound on how long any blocking wait goes without re-checking the flag
POLL_INTERVAL_S = 0.2


class CancelFlag:
    """Thread-safe, set-once cancellation signal shared by one agent run.

    The flag is handed explicitly to every component that blocks (the turn
    loop, approval waits, tool timeouts, batch scheduling). Setting it from
    any thread is safe.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        log.info("run_cancel_requested", reason=reason)

    def __bool__(self) -> bool:
        return self.is_cancelled
