"""
Render-aligned batching of ingested samples.

Producers append to one pending queue; at most one flush is requested from
the tick source at a time. A flush takes the whole queue as one ordered
batch. When the queue grows past its capacity the oldest entries are
dropped instead of blocking the producer.
"""

import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional

from biostream.core.logging import RateLimiter, get_logger
from biostream.pipeline.models import ChannelSample, SampleBatch

logger = get_logger(__name__)

TickCallback = Callable[[], Any]


class TickSource(ABC):
    """
    Clock that runs a requested callback on its next tick.

    Only the most recent request is kept; the scheduler never has more
    than one outstanding.
    """

    @abstractmethod
    def request(self, callback: TickCallback) -> None:
        """Run ``callback`` on the next tick."""

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass


class ManualTickSource(TickSource):
    """Tick source driven explicitly by ``tick()``; used for deterministic tests."""

    def __init__(self) -> None:
        self._pending: Optional[TickCallback] = None
        self._lock = threading.Lock()
        self.requests = 0

    def request(self, callback: TickCallback) -> None:
        with self._lock:
            self._pending = callback
            self.requests += 1

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def tick(self) -> bool:
        """Fire the pending callback; returns False if none was pending."""
        with self._lock:
            callback, self._pending = self._pending, None
        if callback is None:
            return False
        callback()
        return True


class IntervalTickSource(TickSource):
    """
    Daemon-thread clock firing the pending callback every ``interval`` seconds.

    Stands in for a display refresh loop. The thread starts lazily on the
    first request; ``stop`` fires any outstanding callback once so queued
    samples are not lost.
    """

    def __init__(self, interval: float = 1.0 / 60.0, name: str = "FlushTick") -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.name = name
        self._pending: Optional[TickCallback] = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()
        logger.debug("tick_source_started", interval=self.interval)

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(1.0, self.interval * 4))
        self._thread = None
        self._fire()
        logger.debug("tick_source_stopped")

    def request(self, callback: TickCallback) -> None:
        with self._lock:
            self._pending = callback
            running = self._thread is not None and self._thread.is_alive()
        if not running and not self._stop_event.is_set():
            self.start()

    def _fire(self) -> None:
        with self._lock:
            callback, self._pending = self._pending, None
        if callback is None:
            return
        try:
            callback()
        except Exception:
            logger.exception("tick_callback_failed")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self._fire()


@dataclass
class SchedulerStats:
    enqueued: int = 0
    dropped: int = 0
    flushes: int = 0
    flushed_samples: int = 0
    largest_batch: int = 0
    flush_errors: int = 0

    def snapshot(self) -> Dict[str, int]:
        return {
            "enqueued": self.enqueued,
            "dropped": self.dropped,
            "flushes": self.flushes,
            "flushed_samples": self.flushed_samples,
            "largest_batch": self.largest_batch,
            "flush_errors": self.flush_errors,
        }


class FlushScheduler:
    """
    Pending queue with lossy backpressure and single-flight flushing.

    ``enqueue`` is safe from any thread and never blocks on consumers.
    ``flush`` runs the handler with the whole queue as one batch; flushes
    are serialized so batches reach the handler in order.
    """

    def __init__(
        self,
        tick_source: TickSource,
        on_flush: Callable[[SampleBatch], None],
        capacity: int = 5000,
        drop_fraction: float = 0.2,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        """
        Initialize scheduler.

        Args:
            tick_source: Clock that runs flushes
            on_flush: Receives each flushed batch
            capacity: Hard limit on pending samples
            drop_fraction: Share of ``capacity`` dropped (oldest first) on overflow
            clock: Time source for batch timestamps
        """
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if not 0.0 < drop_fraction <= 1.0:
            raise ValueError("drop_fraction must be in (0, 1]")

        self.tick_source = tick_source
        self.capacity = capacity
        self.drop_fraction = drop_fraction
        self.drop_count = max(1, int(capacity * drop_fraction))
        self._on_flush = on_flush
        self._clock = clock

        self._pending: Deque[ChannelSample] = deque()
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._flush_scheduled = False
        self._dropped_since_flush = 0
        self._overflow_log = RateLimiter(1.0)
        self.stats = SchedulerStats()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def flush_scheduled(self) -> bool:
        return self._flush_scheduled

    def enqueue(self, sample: ChannelSample) -> int:
        """
        Append one sample.

        Returns:
            Number of old samples dropped to make room
        """
        dropped = 0
        with self._lock:
            self._pending.append(sample)
            self.stats.enqueued += 1
            if len(self._pending) > self.capacity:
                dropped = min(self.drop_count, len(self._pending))
                for _ in range(dropped):
                    self._pending.popleft()
                self.stats.dropped += dropped
                self._dropped_since_flush += dropped
            request = not self._flush_scheduled
            if request:
                self._flush_scheduled = True

        if dropped and self._overflow_log.allow("overflow"):
            logger.warning(
                "pending_queue_overflow",
                dropped=dropped,
                capacity=self.capacity,
                total_dropped=self.stats.dropped,
                suppressed=self._overflow_log.pop_suppressed("overflow")
            )

        if request:
            self._request_flush()
        return dropped

    def _request_flush(self) -> None:
        try:
            self.tick_source.request(self.flush)
        except Exception:
            logger.exception("flush_request_failed")
            with self._lock:
                self._flush_scheduled = False

    def take_dropped(self) -> int:
        """Samples dropped since the last call."""
        with self._lock:
            dropped, self._dropped_since_flush = self._dropped_since_flush, 0
        return dropped

    def flush(self) -> Optional[SampleBatch]:
        """
        Take the entire pending queue as one batch and hand it to the handler.

        Returns:
            The delivered batch, or None if nothing was pending
        """
        with self._flush_lock:
            with self._lock:
                self._flush_scheduled = False
                if not self._pending:
                    return None
                samples = tuple(self._pending)
                self._pending.clear()

            batch = SampleBatch(samples=samples, flushed_at=self._clock())
            self.stats.flushes += 1
            self.stats.flushed_samples += len(samples)
            self.stats.largest_batch = max(self.stats.largest_batch, len(samples))

            try:
                self._on_flush(batch)
            except Exception:
                self.stats.flush_errors += 1
                logger.exception("flush_handler_failed", batch_size=len(samples))
            return batch

    def clear(self) -> int:
        """Discard pending samples; returns how many were discarded."""
        with self._lock:
            count = len(self._pending)
            self._pending.clear()
        return count
