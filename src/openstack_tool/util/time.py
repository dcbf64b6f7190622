from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from time import monotonic
from typing import Callable, Iterator, Optional

from .errors import RunTimeoutError


def utc_now_iso(seconds: bool = True) -> str:
    """
    Return current UTC time in ISO-8601 format.
    - If seconds is True, use seconds precision (stable strings).
    - Else, use milliseconds precision.
    """
    if seconds:
        return datetime.now(timezone.utc).isoformat(timespec="seconds")
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


class Deadline:
    """
    Single run-wide deadline. Every network suspension point asks for the
    remaining budget or calls check(); expiry surfaces as RunTimeoutError.

    A timeout of None or <= 0 means unbounded.
    """

    def __init__(self, timeout: Optional[float], *, clock: Callable[[], float] = monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self.timeout = timeout if timeout and timeout > 0 else None
        self._expires_at = clock() + self.timeout if self.timeout else None

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        with self._lock:
            return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, what: str) -> None:
        if self.expired():
            raise RunTimeoutError(f"timed out after {self.timeout:g}s while {what}")

    @contextmanager
    def paused(self) -> Iterator[None]:
        """Do not charge the time spent inside this block (interactive waits)."""
        started = self._clock()
        try:
            yield
        finally:
            if self._expires_at is not None:
                with self._lock:
                    self._expires_at += self._clock() - started
