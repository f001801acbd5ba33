"""Bounded retry helper shared by verification and audit-log writes."""

import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def linear_backoff(base: float) -> Callable[[int], float]:
    """Delay grows with the attempt number: base, 2*base, 3*base..."""
    return lambda attempt: base * attempt


def jitter_backoff(low: float, high: float) -> Callable[[int], float]:
    """Randomized delay in [low, high] * attempt."""
    return lambda attempt: random.uniform(low, high) * attempt


def retry_call(
    func: Callable[[], T],
    attempts: int,
    backoff: Callable[[int], float],
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    until: Optional[Callable[[T], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Calls func up to `attempts` times.

    A call is retried when it raises one of `retry_on`, or when `until` is
    given and returns False for the result. The last exception is re-raised;
    the last result is returned when `until` never accepts one.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    result = None
    for attempt in range(1, attempts + 1):
        try:
            result = func()
        except retry_on as exc:
            if attempt == attempts:
                raise
            logger.debug(f"RETRY: attempt {attempt}/{attempts} raised {exc!r}")
        else:
            if until is None or until(result):
                return result
            if attempt == attempts:
                return result
            logger.debug(f"RETRY: attempt {attempt}/{attempts} result not accepted")
        sleep(backoff(attempt))
    return result
