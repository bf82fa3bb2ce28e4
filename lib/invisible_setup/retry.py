from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from .errors import SetupError

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_S = 2.0

logger = logging.getLogger(__name__)


def retry(
        operation: Callable[[], T],
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_s: float = DEFAULT_BACKOFF_S,
        retry_on: tuple[type[BaseException], ...] = (SetupError,),
        sleep: Callable[[float], None] = time.sleep,
        on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    The last error is re-raised once attempts are exhausted. Errors outside
    ``retry_on`` propagate on the first occurrence.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    attempt = 1
    while True:
        try:
            return operation()
        except retry_on as exc:
            if attempt >= max_attempts:
                logger.debug("giving up after %d attempts: %s", attempt, exc)
                raise
            logger.debug("attempt %d/%d failed: %s", attempt, max_attempts, exc)
            if on_retry:
                on_retry(attempt, exc)
            sleep(max(0.0, backoff_s))
            attempt += 1
