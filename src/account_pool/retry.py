"""
Retry helper for flaky external steps (nuke runs, deploy triggers).
"""

import logging
import time
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry(
    fn: Callable[[], T],
    attempts: int = 3,
    delay: float = 0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Call ``fn`` until it succeeds, at most ``attempts`` times.

    Only the last error is raised; earlier ones are logged. ``delay`` seconds
    are slept between attempts.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt == attempts:
                raise
            logger.warning("Attempt %d/%d failed: %s", attempt, attempts, e)
            if delay:
                time.sleep(delay)
    raise AssertionError("unreachable")
