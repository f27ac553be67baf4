"""Cooperative cancellation for per-pair work units."""

from __future__ import annotations

import threading
import time
from typing import Optional

from ..errors import PairCancelledError


class CancelToken:
    """Cancellation flag with an optional deadline.

    Long-running pair computations call :meth:`check` between stages; once the
    token is cancelled (explicitly or because the deadline passed) the check
    raises :class:`PairCancelledError` and the computation unwinds without
    writing a cache entry.

    Parameters
    ----------
    timeout : float, optional
        Seconds from construction after which the token counts as cancelled
    label : str
        Name of the work unit, used in error messages
    """

    def __init__(self, timeout: Optional[float] = None, label: str = ""):
        self.label = label
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def check(self, stage: str = "") -> None:
        """Raise PairCancelledError if the token is cancelled."""
        if self.cancelled:
            reason = "cancelled" if self._event.is_set() else "timed out"
            raise PairCancelledError(
                f"Pair {self.label or '<unnamed>'} {reason}",
                {"stage": stage} if stage else None,
            )
