from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from .errors import RunTimeoutError
from .time import Deadline

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_DELAY = 1.0


def with_retry(
    func: Callable[[], T],
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    delay: float = DEFAULT_DELAY,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    deadline: Optional[Deadline] = None,
    what: str = "operation",
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call func up to `attempts` times with linear backoff (delay * attempt).
    The last error is re-raised. RunTimeoutError is never retried, and no
    sleep is started that would overrun the deadline.
    """
    attempts = max(1, int(attempts))
    log = logger or logging.getLogger(__name__)
    for attempt in range(1, attempts + 1):
        if deadline is not None:
            deadline.check(what)
        try:
            return func()
        except RunTimeoutError:
            raise
        except retry_on as e:
            if attempt == attempts:
                raise
            pause = delay * attempt
            if deadline is not None:
                remaining = deadline.remaining()
                if remaining is not None and remaining <= pause:
                    raise
            log.debug(
                "Retrying %s after error (attempt %d/%d): %s",
                what,
                attempt,
                attempts,
                e,
                extra={"attempt": attempt, "attempts": attempts},
            )
            sleep(pause)
    raise AssertionError("unreachable")  # pragma: no cover
