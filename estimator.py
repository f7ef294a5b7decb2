"""Running estimate of how long a consult takes."""

from __future__ import annotations

import logging
import math

logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class DurationEstimator:
    """Weighted running average of observed consult durations.

    Each completed consult moves the estimate a quarter of the way towards
    the observed duration, rounded to whole minutes.  Only the consult
    lifecycle calls ``record`` and it does so while holding the store lock.
    """

    def __init__(self, default_minutes: int = 8):
        if default_minutes < 1:
            raise ValueError("default_minutes must be at least 1")
        self._average = int(default_minutes)

    def current(self) -> int:
        return self._average

    def record(self, actual_minutes: int) -> int:
        if actual_minutes < 1:
            raise ValueError("actual_minutes must be at least 1")
        previous = self._average
        self._average = round_half_up((previous * 3 + actual_minutes) / 4)
        logger.debug("Consult estimate %s -> %s min (observed %s)", previous, self._average, actual_minutes)
        return self._average

    def reset(self, default_minutes: int) -> None:
        self._average = int(default_minutes)
