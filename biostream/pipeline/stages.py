"""
Processing stages chained through the pipeline's fan-out.

A stage reads channel values from sample batches or frames from upstream
widget outputs, and publishes its own frames under its name so other
stages (or external consumers) can subscribe to it in turn.
"""

import threading
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import Future
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from biostream.core.logging import get_logger
from biostream.pipeline.bandpower_worker import BandPowerResponse, BandPowerWorker
from biostream.pipeline.channel_data import ChannelDataPipeline
from biostream.pipeline.fanout import Subscription
from biostream.pipeline.models import Frame, SampleBatch, coerce_value, parse_channel_node_id
from biostream.signal_processing.bandpower import BAND_NAMES

logger = get_logger(__name__)

Source = Union[int, str]

MIN_ENVELOPE_BUFFER = 4


def resolve_source(source: Source) -> Tuple[str, Optional[int]]:
    """
    Split a stage input into ``(key, channel)``.

    Ints and ``channel-N`` ids are channel sources (channel is the
    zero-based index); any other string names a widget output.
    """
    if isinstance(source, (int, np.integer)) and not isinstance(source, bool):
        return f"channel-{int(source) + 1}", int(source)
    text = str(source)
    if text.lower().startswith("channel-"):
        channel = parse_channel_node_id(text)
        if channel is not None:
            return text, channel
    return text, None


class _Stage(ABC):
    """Subscription bookkeeping shared by stages."""

    def __init__(self, pipeline: ChannelDataPipeline, name: str) -> None:
        self.pipeline = pipeline
        self.name = str(name)
        self._subscriptions: List[Subscription] = []
        self._lock = threading.RLock()

    @property
    def active(self) -> bool:
        return bool(self._subscriptions)

    def close(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []

    def __enter__(self) -> "_Stage":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @abstractmethod
    def start(self) -> None:
        """Subscribe to the stage's sources."""


class EnvelopeStage(_Stage):
    """
    Amplitude envelope per source.

    Each source keeps a circular buffer of ``|x|``; the envelope is the
    running mean of that buffer times ``gain``. After every input value the
    stage publishes the envelope vector, one entry per source in source
    order.
    """

    def __init__(
        self,
        pipeline: ChannelDataPipeline,
        name: str,
        sources: Sequence[Source],
        buffer_size: int = 32,
        gain: float = 12.0
    ) -> None:
        super().__init__(pipeline, name)
        self.sources = [resolve_source(s) for s in sources]
        self.buffer_size = max(MIN_ENVELOPE_BUFFER, int(buffer_size))
        self.gain = gain
        self._buffers: Dict[str, np.ndarray] = {}
        self._idx: Dict[str, int] = {}
        self._sums: Dict[str, float] = {}
        self._latest: Dict[str, float] = {}
        self._reset_state()

    def _reset_state(self) -> None:
        for key, _ in self.sources:
            self._buffers[key] = np.zeros(self.buffer_size, dtype=np.float64)
            self._idx[key] = 0
            self._sums[key] = 0.0
            self._latest[key] = 0.0

    @property
    def values(self) -> List[float]:
        return [self._latest[key] for key, _ in self.sources]

    def start(self) -> None:
        if self.active:
            return
        if any(channel is not None for _, channel in self.sources):
            self._subscriptions.append(self.pipeline.subscribe_batches(self._on_batch))
        for key, channel in self.sources:
            if channel is None and key != self.name:
                self._subscriptions.append(
                    self.pipeline.subscribe_widget_outputs(key, self._output_handler(key))
                )

    def push(self, key: str, value: float) -> None:
        """Feed one rectified value for ``key`` and publish the envelope vector."""
        with self._lock:
            buf = self._buffers.get(key)
            if buf is None:
                return
            idx = self._idx[key]
            self._sums[key] += value - buf[idx]
            buf[idx] = value
            self._idx[key] = (idx + 1) % self.buffer_size
            self._latest[key] = (self._sums[key] / self.buffer_size) * self.gain
            frame = self.values
        self.pipeline.publish_widget_output(self.name, frame)

    def _on_batch(self, batch: SampleBatch) -> None:
        channels = [(key, ch) for key, ch in self.sources if ch is not None]
        for sample in batch:
            for key, ch in channels:
                if ch < len(sample.channels):
                    self.push(key, abs(sample.channels[ch]))

    def _output_handler(self, key: str):
        def handle(frames: List[Frame]) -> None:
            for frame in frames:
                if isinstance(frame, list):
                    # Vector frames map element i onto source i
                    for (target, _), value in zip(self.sources, frame):
                        self.push(target, abs(coerce_value(value)))
                else:
                    self.push(key, abs(coerce_value(frame)))
        return handle


class BandPowerStage(_Stage):
    """
    Rolling band-power analysis of one source.

    Values accumulate in a window of ``window_size`` samples; every
    ``update_every`` new values a request is handed to the worker and the
    smoothed relative band vector (delta..gamma) is published under
    ``name``. A request is skipped while the previous one is still
    running, so a slow worker never builds a backlog.
    """

    def __init__(
        self,
        pipeline: ChannelDataPipeline,
        name: str,
        source: Source,
        worker: BandPowerWorker,
        update_every: int = 32,
        window_size: Optional[int] = None,
        method: str = "direct",
        sample_rate: Optional[float] = None
    ) -> None:
        super().__init__(pipeline, name)
        if update_every < 1:
            raise ValueError("update_every must be >= 1")
        self.source_key, self.channel = resolve_source(source)
        self.worker = worker
        self.update_every = int(update_every)
        self.window_size = int(window_size or worker.fft_size)
        self.method = method
        self.sample_rate = sample_rate
        self._window: Deque[float] = deque(maxlen=self.window_size)
        self._since_update = 0
        self.last_future: Optional[Future] = None
        self.last_response: Optional[BandPowerResponse] = None
        self.submitted = 0
        self.skipped = 0
        self.failed = 0

    def start(self) -> None:
        if self.active:
            return
        if self.channel is not None:
            self._subscriptions.append(self.pipeline.subscribe_batches(self._on_batch))
        else:
            self._subscriptions.append(
                self.pipeline.subscribe_widget_outputs(self.source_key, self._on_frames)
            )

    def _on_batch(self, batch: SampleBatch) -> None:
        self.extend(batch.channel(self.channel))

    def _on_frames(self, frames: List[Frame]) -> None:
        values = []
        for frame in frames:
            if isinstance(frame, list):
                values.append(frame[0] if frame else 0.0)
            else:
                values.append(frame)
        self.extend(values)

    def extend(self, values: Sequence[float]) -> None:
        """Append source values; submits an analysis every ``update_every`` values."""
        submit = False
        with self._lock:
            for value in values:
                self._window.append(coerce_value(value))
                self._since_update += 1
                if self._since_update >= self.update_every:
                    self._since_update = 0
                    submit = True
            signal = list(self._window)
        if submit:
            self._submit(signal)

    def _submit(self, signal: List[float]) -> None:
        if self.last_future is not None and not self.last_future.done():
            self.skipped += 1
            logger.debug("bandpower_update_skipped", stage=self.name, skipped=self.skipped)
            return

        params: Dict[str, Any] = {"method": self.method}
        if self.sample_rate:
            params["sample_rate"] = self.sample_rate
        request = self.worker.request(signal, stream=self.name, **params)
        self.last_future = self.worker.submit(request, callback=self._publish)
        self.last_future.add_done_callback(self._check_failure)
        self.submitted += 1

    def _check_failure(self, future: "Future[BandPowerResponse]") -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self.failed += 1
            logger.error(
                "bandpower_stage_failed",
                stage=self.name,
                error=str(error),
                error_type=type(error).__name__,
                failed=self.failed
            )

    def _publish(self, response: BandPowerResponse) -> None:
        self.last_response = response
        self.pipeline.publish_widget_output(
            self.name, [response.smooth[band] for band in BAND_NAMES]
        )

    def wait(self, timeout: Optional[float] = None) -> Optional[BandPowerResponse]:
        """Block until the last submitted analysis has been published."""
        if self.last_future is None:
            return None
        return self.last_future.result(timeout=timeout)
