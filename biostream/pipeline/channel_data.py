"""
Streaming channel-data pipeline.

Coordinates ingestion, filtering, batching, buffering and fan-out:
Record → Normalizer (+ filters) → pending queue → flush →
circular buffers + batch subscribers → widget-output chaining.
"""

import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from biostream.core.config import settings
from biostream.core.exceptions import ValidationError
from biostream.core.logging import RateLimiter, get_logger
from biostream.pipeline.diagnostics import CounterMonitor
from biostream.pipeline.fanout import BatchCallback, EventCallback, FanOut, OutputCallback, Subscription
from biostream.pipeline.filter_nodes import FilterNodeRegistry
from biostream.pipeline.models import ChannelSample, ControlEvent, SampleBatch, parse_channel_node_id
from biostream.pipeline.normalizer import SampleNormalizer
from biostream.pipeline.scheduler import FlushScheduler, IntervalTickSource, TickSource
from biostream.signal_processing.buffer import CircularBufferStore
from biostream.signal_processing.fft import FFTCache
from biostream.signal_processing.filters import FilterConfig, FilterRegistry

logger = get_logger(__name__)


class ChannelDataPipeline:
    """
    Owns all mutable streaming state for one device session.

    ``add_sample`` may be called from any thread and never raises. Flushes
    run on the tick source (or explicitly via ``flush``); subscribers get
    immutable batches, fresh copies of output frames and control events.
    Subscribers must not feed samples back into ``add_sample``: such calls
    are rejected and logged.
    """

    def __init__(
        self,
        n_channels: Optional[int] = None,
        tick_source: Optional[TickSource] = None,
        buffer_capacity: Optional[int] = None,
        queue_capacity: Optional[int] = None,
        drop_fraction: Optional[float] = None,
        adc_bits: Optional[int] = None,
        sampling_rate: Optional[int] = None,
        output_capacity: Optional[int] = None,
        snapshot_interval: Optional[float] = None,
        snapshot_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        """
        Initialize pipeline. Unset arguments fall back to ``settings``.

        Args:
            n_channels: Channel slots per sample
            tick_source: Clock driving flushes (defaults to an interval thread)
            buffer_capacity: Samples kept per channel buffer
            queue_capacity: Pending-queue limit before oldest samples drop
            drop_fraction: Share of the queue dropped on overflow
            adc_bits: Explicit ADC bit-depth (None to infer full-scale)
            sampling_rate: Device sampling rate, if already known
            output_capacity: Frames kept per widget-output stream
            snapshot_interval: Minimum seconds between snapshot refreshes
            snapshot_size: Samples kept in the recent history and snapshot
            clock: Time source
        """
        self.n_channels = n_channels or settings.max_channels
        if self.n_channels <= 0:
            raise ValueError("n_channels must be positive")
        self.sampling_rate = sampling_rate or settings.sampling_rate
        self.snapshot_interval = (
            settings.snapshot_interval if snapshot_interval is None else snapshot_interval
        )
        self.sequence_modulus = settings.sequence_modulus
        self._clock = clock

        self.filters = FilterRegistry(self.n_channels, self.sampling_rate)
        self.filter_nodes = FilterNodeRegistry(self.n_channels, self.sampling_rate)
        self.normalizer = SampleNormalizer(
            self.n_channels,
            self.filters,
            adc_bits if adc_bits is not None else settings.adc_bits
        )
        self.buffers = CircularBufferStore(buffer_capacity or settings.buffer_capacity)
        self.fanout = FanOut(output_capacity or settings.output_stream_capacity)
        self.counters = CounterMonitor(settings.counter_report_interval, clock=clock)
        self.fft_cache = FFTCache(settings.fft_cache_size)

        self.tick_source = tick_source or IntervalTickSource(settings.tick_interval)
        self.scheduler = FlushScheduler(
            self.tick_source,
            self._handle_flush,
            capacity=queue_capacity or settings.queue_capacity,
            drop_fraction=drop_fraction or settings.queue_drop_fraction,
            clock=clock
        )

        self._registered: FrozenSet[int] = frozenset()
        self._recent: Deque[ChannelSample] = deque(maxlen=snapshot_size or settings.snapshot_size)
        self._snapshot: Tuple[ChannelSample, ...] = ()
        self._snapshot_at: Optional[float] = None
        self._seq = 0
        self._ingest_lock = threading.Lock()
        self._reentry_log = RateLimiter(1.0, clock=clock)
        self.rejected = 0
        self.closed = False

        logger.info(
            "channel_pipeline_initialized",
            n_channels=self.n_channels,
            sampling_rate=self.sampling_rate,
            buffer_capacity=self.buffers.capacity,
            queue_capacity=self.scheduler.capacity
        )

    # Ingestion -------------------------------------------------------------------

    @property
    def registered_channels(self) -> List[int]:
        return sorted(self._registered)

    def add_sample(self, record: Any) -> bool:
        """
        Normalize one record and queue it for the next flush.

        Returns:
            False if the record was rejected (closed pipeline or a call
            from inside a subscriber callback)
        """
        if self.closed:
            return False
        if self.fanout.in_delivery:
            self.rejected += 1
            if self._reentry_log.allow("reentry"):
                logger.warning(
                    "reentrant_ingest_rejected",
                    rejected=self.rejected,
                    suppressed=self._reentry_log.pop_suppressed("reentry")
                )
            return False

        try:
            sample = ChannelSample.from_record(record, self.n_channels)
        except Exception as e:
            logger.debug("sample_record_degraded", error_type=type(e).__name__, error=str(e))
            sample = ChannelSample.from_record((), self.n_channels)

        with self._ingest_lock:
            registered = self._registered
            self.filter_nodes.on_raw_sample(sample.channels)
            normalized = self.normalizer.normalize(sample, registered)
            seq = self._seq
            self._seq = (self._seq + 1) % self.sequence_modulus
            self.scheduler.enqueue(normalized.with_values(normalized.channels, seq=seq))
        return True

    def add_samples(self, records: Iterable[Any]) -> int:
        """Queue several records in order; returns how many were accepted."""
        return sum(1 for record in records if self.add_sample(record))

    # Configuration -----------------------------------------------------------------

    def _validate_channel(self, channel: Any) -> int:
        if isinstance(channel, bool) or not isinstance(channel, (int, np.integer)):
            raise ValidationError(f"Channel index must be an integer, got {channel!r}")
        if not 0 <= int(channel) < self.n_channels:
            raise ValidationError(f"Channel index {channel} out of range [0, {self.n_channels})")
        return int(channel)

    def set_registered_channels(self, channels: Iterable[int]) -> List[int]:
        """
        Replace the set of active channels.

        Buffers are created for new channels and dropped for removed ones.
        Samples on any other channel are zeroed from the next ingest on.
        """
        indices = sorted({self._validate_channel(ch) for ch in channels})
        with self._ingest_lock:
            previous = self._registered
            self._registered = frozenset(indices)
            self.buffers.set_channels(indices)

        if previous != self._registered:
            logger.info("registered_channels_changed", channels=indices)
            self.fanout.publish_event(
                ControlEvent("channelsChanged", payload={"channels": indices})
            )
        return indices

    def set_channel_ids(self, channel_ids: Iterable[Any]) -> List[int]:
        """Register channels from ``channel-N`` node ids (1-based) or zero-based ints."""
        indices = []
        for node_id in channel_ids:
            if isinstance(node_id, (int, np.integer)) and not isinstance(node_id, bool):
                indices.append(int(node_id))
                continue
            channel = parse_channel_node_id(node_id)
            if channel is None:
                raise ValidationError(f"Not a channel node id: {node_id!r}")
            indices.append(channel)
        return self.set_registered_channels(indices)

    def configure_filters(self, mapping: Mapping[Any, Any]) -> List[int]:
        """
        Apply per-channel filter configs.

        Keys are zero-based channel indices (ints or digit strings); values
        are FilterConfig instances or ``{enabled, filterKeys, samplingRate}``
        dicts. Every changed channel has its buffer reset and a
        ``filterChanged`` event published.

        Returns:
            Channels whose filtering changed
        """
        parsed: Dict[int, FilterConfig] = {}
        for key, value in mapping.items():
            try:
                channel = self._validate_channel(int(key))
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid channel key: {key!r}") from None
            parsed[channel] = value if isinstance(value, FilterConfig) else FilterConfig.from_dict(value)

        changed = self.filters.configure_many(parsed)
        for channel in changed:
            self.buffers.reset_channel(channel)
            self.fanout.publish_event(
                ControlEvent("filterChanged", channel_index=channel, payload={"config": parsed[channel].to_dict()})
            )
        return changed

    def set_sampling_rate(self, sampling_rate: int, channel: Optional[int] = None) -> List[int]:
        """
        Supply the device sampling rate, globally or for one channel.

        Pending filters activate; active cascades are reloaded with zeroed state.
        """
        if channel is not None:
            channel = self._validate_channel(channel)
        affected = self.filters.set_sampling_rate(sampling_rate, channel)
        rate = self.filters.default_sampling_rate if channel is None else int(sampling_rate)
        if channel is None:
            self.sampling_rate = rate
            self.filter_nodes.set_sampling_rate(rate)

        self.fanout.publish_event(
            ControlEvent(
                "samplingRateChanged",
                channel_index=channel,
                payload={"samplingRate": rate, "channels": affected}
            )
        )
        return affected

    def set_adc_bits(self, bits: Optional[int], channel: Optional[int] = None) -> None:
        self.normalizer.set_adc_bits(bits, channel)

    # Flushing ---------------------------------------------------------------------

    def flush(self) -> Optional[SampleBatch]:
        """Flush pending samples now instead of waiting for the next tick."""
        return self.scheduler.flush()

    def _handle_flush(self, batch: SampleBatch) -> None:
        dropped = self.scheduler.take_dropped()
        if dropped:
            self.fanout.publish_event(
                ControlEvent(
                    "queueOverflow",
                    payload={"dropped": dropped, "capacity": self.scheduler.capacity}
                )
            )

        report = self.counters.check(batch.counters(), flushed=len(batch))
        if report.missing:
            self.fanout.publish_event(
                ControlEvent("samplesMissing", payload=report.to_dict())
            )

        self.buffers.append_batch(batch)
        self._recent.extend(batch.samples)
        self._refresh_snapshot()
        self.fanout.deliver_batch(batch)

    def _refresh_snapshot(self) -> None:
        now = self._clock()
        if self._snapshot_at is not None and now - self._snapshot_at < self.snapshot_interval:
            return
        self._snapshot = tuple(self._recent)
        self._snapshot_at = now

    # Subscriptions ------------------------------------------------------------------

    def subscribe_batches(self, callback: BatchCallback) -> Subscription:
        return self.fanout.subscribe_batches(callback)

    def subscribe_widget_outputs(self, name: str, callback: OutputCallback) -> Subscription:
        """Subscribe to a named output; current history is replayed first."""
        return self.fanout.subscribe_output(name, callback)

    def subscribe_events(self, callback: EventCallback) -> Subscription:
        return self.fanout.subscribe_events(callback)

    def publish_widget_output(self, name: str, frame: Any) -> None:
        self.fanout.publish_output(name, frame)

    def get_widget_output(self, name: str) -> List[Any]:
        return self.fanout.get_output_history(name)

    # Reads -----------------------------------------------------------------------

    def snapshot(self) -> List[Dict[str, Any]]:
        """Recent samples as of the last throttled refresh, oldest first."""
        return [s.to_dict() for s in self._snapshot]

    def recent_samples(self, n: Optional[int] = None) -> List[ChannelSample]:
        samples = list(self._recent)
        if n is not None:
            samples = samples[-n:] if n > 0 else []
        return samples

    def get_buffer(self, channel: int) -> Optional[NDArray[np.float64]]:
        return self.buffers.get(channel)

    def clear_samples(self) -> int:
        """
        Drop pending samples, buffered history and filter state.

        Returns:
            Number of pending samples discarded
        """
        with self._ingest_lock:
            discarded = self.scheduler.clear()
            self.scheduler.take_dropped()
            self.buffers.reset_all()
            self.filters.reset()
            self.counters.reset()
            self._recent.clear()
            self._snapshot = ()
            self._snapshot_at = None

        logger.info("samples_cleared", discarded=discarded)
        self.fanout.publish_event(ControlEvent("buffersCleared", payload={"discarded": discarded}))
        return discarded

    def stats(self) -> Dict[str, Any]:
        return {
            "n_channels": self.n_channels,
            "registered_channels": self.registered_channels,
            "sampling_rate": self.sampling_rate,
            "pending": self.scheduler.pending_count,
            "scheduler": self.scheduler.stats.snapshot(),
            "fanout": self.fanout.stats(),
            "missing_samples": self.counters.total_missing,
            "rejected_reentrant": self.rejected,
            "buffer_capacity": self.buffers.capacity,
            "filters": self.filters.describe(),
            "filter_nodes": self.filter_nodes.registered(),
            "next_seq": self._seq,
        }

    # Lifecycle ---------------------------------------------------------------------

    def close(self) -> None:
        """Stop the tick source; samples still pending are flushed once."""
        if self.closed:
            return
        self.tick_source.stop()
        self.scheduler.flush()
        self.closed = True
        logger.info("channel_pipeline_closed", **self.scheduler.stats.snapshot())

    def __enter__(self) -> "ChannelDataPipeline":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
