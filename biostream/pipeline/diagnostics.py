"""
Stream health diagnostics: device counter gap detection.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence

from biostream.core.logging import RateLimiter, get_logger
from biostream.pipeline.models import COUNTER_MODULUS

logger = get_logger(__name__)


@dataclass(frozen=True)
class CounterReport:
    """Counter check result for one flushed batch."""
    flushed: int
    counted: int
    first: Optional[int]
    last: Optional[int]
    missing: int

    def to_dict(self) -> Dict[str, Optional[int]]:
        return {
            "flushed": self.flushed,
            "counted": self.counted,
            "first": self.first,
            "last": self.last,
            "missing": self.missing,
        }


class CounterMonitor:
    """
    Detects missing samples from a wrapping device counter.

    Gaps are measured modulo the counter range both inside a batch and
    against the last counter of the previous batch. Nothing is
    reconstructed; gaps are only reported. Warnings are rate-limited and
    the "no missing samples" confirmation is logged at info level at most
    once per ``report_interval``.
    """

    def __init__(
        self,
        report_interval: float = 5.0,
        modulus: int = COUNTER_MODULUS,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.modulus = modulus
        self.total_missing = 0
        self._last: Optional[int] = None
        self._ok_log = RateLimiter(report_interval, clock=clock)
        self._gap_log = RateLimiter(1.0, clock=clock)

    @property
    def last_counter(self) -> Optional[int]:
        return self._last

    def check(self, counters: Sequence[int], flushed: Optional[int] = None) -> CounterReport:
        """
        Count missing samples across ``counters`` (oldest first).

        Args:
            counters: Counter values of the batch
            flushed: Batch size, for the report (defaults to ``len(counters)``)
        """
        flushed = len(counters) if flushed is None else flushed
        missing = 0
        previous = self._last
        for current in counters:
            if previous is not None:
                diff = (current - previous) % self.modulus
                if diff > 1:
                    missing += diff - 1
            previous = current

        report = CounterReport(
            flushed=flushed,
            counted=len(counters),
            first=counters[0] if counters else None,
            last=counters[-1] if counters else None,
            missing=missing,
        )
        if not counters:
            return report

        self._last = previous
        self.total_missing += missing

        if missing > 0:
            if self._gap_log.allow("gap"):
                logger.warning(
                    "samples_missing",
                    **report.to_dict(),
                    total_missing=self.total_missing,
                    suppressed=self._gap_log.pop_suppressed("gap")
                )
        elif self._ok_log.allow("ok"):
            logger.info("flush_counters_ok", **report.to_dict())
        else:
            logger.debug("flush_counters", **report.to_dict())

        return report

    def reset(self) -> None:
        self._last = None
