"""Throttled progress reporting with a rate-based ETA."""

import time
from dataclasses import dataclass
from typing import Callable, Optional

# Lower bound on percent-per-second when estimating ETA
RATE_EPSILON = 1e-4


@dataclass(frozen=True)
class ProgressUpdate:
    """One emitted progress sample for a single variant."""

    percent: int  # 0-100, non-decreasing within an attempt
    eta_s: int  # estimated seconds remaining, >= 0


class ProgressThrottle:
    """Turns irregular percent readings into at most one update per interval.

    An update is emitted only when the percent advanced and at least
    ``min_interval_s`` of wall time passed since the previous emission. The
    ETA uses the rate observed between the previous and current emission, so
    it is a moving estimate rather than an exact figure.
    """

    def __init__(
        self,
        min_interval_s: float = 0.3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._last_time = clock()
        self._last_percent = 0

    @property
    def last_percent(self) -> int:
        return self._last_percent

    def observe(self, percent: float) -> Optional[ProgressUpdate]:
        """Record a raw reading; return an update if one should be emitted."""
        now = self._clock()
        pct = max(0, min(100, int(round(percent))))
        elapsed = now - self._last_time
        delta = pct - self._last_percent

        if delta <= 0 or elapsed < self.min_interval_s:
            return None

        rate = delta / elapsed if elapsed > 0 else float("inf")
        eta = (100 - pct) / max(rate, RATE_EPSILON)

        self._last_time = now
        self._last_percent = pct
        return ProgressUpdate(percent=pct, eta_s=max(0, int(round(eta))))
