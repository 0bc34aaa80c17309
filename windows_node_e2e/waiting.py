from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Type, TypeVar

from .errors import HarnessError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def wait_for(
    probe: Callable[[], Optional[T]],
    *,
    description: str,
    timeout_s: float,
    interval_s: float,
    error_cls: Type[HarnessError] = HarnessError,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call ``probe`` until it returns a truthy value and return that value.

    The probe is always called at least once. Exceptions raised by the probe
    propagate. When ``timeout_s`` elapses, ``error_cls`` is raised with
    ``description`` in its message.
    """

    deadline = clock() + float(timeout_s)
    attempt = 0
    while True:
        attempt += 1
        value = probe()
        if value:
            if attempt > 1:
                logger.info("%s: ready after %d attempts", description, attempt)
            return value
        remaining = deadline - clock()
        if remaining <= 0:
            raise error_cls(f"timed out after {timeout_s:g}s waiting for {description}")
        logger.info("%s: not ready yet (attempt %d), retrying in %gs", description, attempt, interval_s)
        sleep(min(float(interval_s), remaining))
