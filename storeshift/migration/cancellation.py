from __future__ import annotations

import threading
from enum import Enum


class StopReason(str, Enum):
    CANCEL = "cancel"
    PAUSE = "pause"
    ABORT = "abort"


# A later request only replaces an earlier one when it is stronger.
_PRIORITY = {StopReason.PAUSE: 0, StopReason.CANCEL: 1, StopReason.ABORT: 2}


class CancellationToken:
    """Cooperative stop flag shared by a job's coordinator and its workers.

    Workers check it between claims and after each file; it is never consulted
    mid-stream.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: StopReason | None = None
        self._detail: str | None = None
        self._error_kind: str | None = None

    def request(self, reason: StopReason, *, detail: str | None = None, error_kind: str | None = None) -> None:
        with self._lock:
            if self._reason is not None and _PRIORITY[self._reason] >= _PRIORITY[reason]:
                return
            self._reason = reason
            self._detail = detail
            self._error_kind = error_kind
            self._event.set()

    def abort(self, error_kind: str, detail: str) -> None:
        self.request(StopReason.ABORT, detail=detail, error_kind=error_kind)

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> StopReason | None:
        with self._lock:
            return self._reason

    @property
    def detail(self) -> str | None:
        with self._lock:
            return self._detail

    @property
    def error_kind(self) -> str | None:
        with self._lock:
            return self._error_kind

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True early if a stop was requested."""
        return self._event.wait(timeout)
