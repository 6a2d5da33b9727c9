"""
Bounded retry for individual object store calls.

Cycle-level failures are retried by the next scheduled fire; this wrapper
only absorbs short network blips inside a cycle, e.g. one failed part of a
large upload.
"""

import logging
import time
from typing import Any, Callable, Optional


logger = logging.getLogger(__name__)


def retry_call(
    func: Callable[..., Any],
    *args,
    attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    description: Optional[str] = None,
    **kwargs
) -> Any:
    """
    Call ``func`` and retry it on retryable errors.

    Args:
        func: Callable to invoke with ``*args`` and ``**kwargs``
        attempts: Total number of attempts (at least 1)
        delay: Seconds to wait before the first retry
        backoff: Multiplier applied to the delay after every retry
        should_retry: Predicate deciding whether an error is transient;
            every Exception is retried when omitted
        description: Name used in log messages

    Returns:
        Whatever ``func`` returns

    Raises:
        The last error once attempts are exhausted, or immediately for
        errors ``should_retry`` rejects
    """
    attempts = max(1, attempts)
    name = description or getattr(func, '__name__', repr(func))
    wait = delay

    for attempt in range(1, attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if attempt >= attempts or (should_retry is not None and not should_retry(e)):
                raise
            logger.warning(f"{name} failed (attempt {attempt}/{attempts}), retrying in {wait:.1f}s: {e}")
            time.sleep(wait)
            wait *= backoff
