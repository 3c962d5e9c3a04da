"""
Publish/subscribe fan-out for sample batches, widget outputs and control events.

Delivery is synchronous and isolated per subscriber: an exception raised
by one callback is counted and logged, and delivery continues with the
next one. Output frames are delivered outside the stream lock, in publish
order, by whichever thread is draining that stream. Consumers only ever receive immutable batches or fresh copies
of output frames.
"""

import itertools
import threading
from collections import Counter, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

import numpy as np

from biostream.core.config import settings
from biostream.core.exceptions import SubscriptionError
from biostream.core.logging import RateLimiter, get_logger
from biostream.pipeline.models import ControlEvent, Frame, SampleBatch, coerce_value

logger = get_logger(__name__)

BatchCallback = Callable[[SampleBatch], Any]
OutputCallback = Callable[[List[Frame]], Any]
EventCallback = Callable[[ControlEvent], Any]


def copy_frame(frame: Any) -> Frame:
    """Scalar frames become floats, vector frames become new lists of floats."""
    if isinstance(frame, (list, tuple, np.ndarray)):
        return [coerce_value(v) for v in frame]
    return coerce_value(frame)


class Subscription:
    """
    Handle for one registered callback.

    ``unsubscribe`` is idempotent: the first call removes the callback,
    later calls do nothing. Also usable as a context manager, and calling
    the handle itself unsubscribes.
    """

    def __init__(self, remove: Callable[[], None], kind: str, name: Optional[str] = None) -> None:
        self.kind = kind
        self.name = name
        self._remove = remove
        self._active = True
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> bool:
        """Remove the callback; returns False if already removed."""
        with self._lock:
            if not self._active:
                return False
            self._active = False
        self._remove()
        return True

    def __call__(self) -> bool:
        return self.unsubscribe()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()

    def __repr__(self) -> str:
        state = "active" if self._active else "closed"
        return f"Subscription(kind={self.kind!r}, name={self.name!r}, {state})"


class WidgetOutputStream:
    """Named bounded history of output frames with its own subscribers."""

    def __init__(self, name: str, capacity: int) -> None:
        self.name = name
        self.capacity = capacity
        self.history: Deque[Frame] = deque(maxlen=capacity)
        self.subscribers: Dict[int, OutputCallback] = {}
        self.published = 0
        # Frames waiting for delivery, each with the subscribers present
        # when it was published
        self.outbox: Deque[Tuple[Frame, List[Tuple[int, OutputCallback]]]] = deque()
        self.draining = False
        # Guards history, subscribers and the outbox. Replay to a new
        # subscriber runs under it; live delivery never does.
        self.lock = threading.RLock()

    def frames(self) -> List[Frame]:
        return [copy_frame(f) for f in self.history]


class FanOut:
    """Three independent subscription kinds: batches, named outputs, control events."""

    def __init__(self, output_capacity: Optional[int] = None) -> None:
        self.output_capacity = output_capacity or settings.output_stream_capacity
        self._batch_subscribers: Dict[int, BatchCallback] = {}
        self._event_subscribers: Dict[int, EventCallback] = {}
        self._streams: Dict[str, WidgetOutputStream] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.RLock()
        self._local = threading.local()
        self._error_log = RateLimiter(1.0)
        self.delivered: Counter = Counter()
        self.errors: Counter = Counter()

    # Delivery ----------------------------------------------------------------

    @property
    def in_delivery(self) -> bool:
        """True while the current thread is inside a subscriber callback."""
        return getattr(self._local, "depth", 0) > 0

    def _invoke(self, kind: str, callback: Callable[[Any], Any], payload: Any) -> None:
        self._local.depth = getattr(self._local, "depth", 0) + 1
        try:
            callback(payload)
            self.delivered[kind] += 1
        except Exception as e:
            self.errors[kind] += 1
            if self._error_log.allow(kind):
                logger.warning(
                    "subscriber_failed",
                    kind=kind,
                    error_type=type(e).__name__,
                    error=str(e),
                    total_errors=self.errors[kind],
                    suppressed=self._error_log.pop_suppressed(kind),
                    exc_info=True
                )
        finally:
            self._local.depth -= 1

    @staticmethod
    def _check_callable(callback: Any) -> None:
        if not callable(callback):
            raise SubscriptionError(f"Subscriber must be callable, got {type(callback).__name__}")

    # Sample batches ------------------------------------------------------------

    def subscribe_batches(self, callback: BatchCallback) -> Subscription:
        self._check_callable(callback)
        with self._lock:
            token = next(self._tokens)
            self._batch_subscribers[token] = callback

        def remove() -> None:
            with self._lock:
                self._batch_subscribers.pop(token, None)

        return Subscription(remove, kind="batch")

    def deliver_batch(self, batch: SampleBatch) -> int:
        """Deliver ``batch`` to every batch subscriber; returns the subscriber count."""
        with self._lock:
            subscribers = list(self._batch_subscribers.values())
        for callback in subscribers:
            self._invoke("batch", callback, batch)
        return len(subscribers)

    # Widget outputs -------------------------------------------------------------

    def _stream(self, name: str) -> WidgetOutputStream:
        with self._lock:
            stream = self._streams.get(name)
            if stream is None:
                stream = WidgetOutputStream(name, self.output_capacity)
                self._streams[name] = stream
                logger.debug("widget_output_created", name=name, capacity=self.output_capacity)
            return stream

    def publish_output(self, name: str, frame: Any) -> None:
        """
        Append ``frame`` to the ``name`` stream and deliver it.

        Subscribers receive ``[frame]`` (a list of one fresh copy). If another
        thread is already delivering this stream, or the caller is a
        subscriber of it, the frame is queued and delivered by that drain.
        """
        name = str(name)
        stream = self._stream(name)
        with stream.lock:
            stored = copy_frame(frame)
            stream.history.append(stored)
            stream.published += 1
            stream.outbox.append((stored, list(stream.subscribers.items())))
            if stream.draining:
                return
            stream.draining = True
        self._drain(stream)

    def _drain(self, stream: WidgetOutputStream) -> None:
        try:
            while True:
                with stream.lock:
                    if not stream.outbox:
                        stream.draining = False
                        return
                    stored, subscribers = stream.outbox.popleft()
                for token, callback in subscribers:
                    if token in stream.subscribers:
                        self._invoke("output", callback, [copy_frame(stored)])
        except BaseException:
            with stream.lock:
                stream.draining = False
            raise

    def publish_outputs(self, name: str, frames: Sequence[Any]) -> None:
        for frame in frames:
            self.publish_output(name, frame)

    def subscribe_output(self, name: str, callback: OutputCallback) -> Subscription:
        """
        Subscribe to a named output.

        The callback immediately receives the current history (if any),
        then every later frame.
        """
        self._check_callable(callback)
        name = str(name)
        stream = self._stream(name)
        with stream.lock:
            with self._lock:
                token = next(self._tokens)
            stream.subscribers[token] = callback
            history = stream.frames()
            if history:
                self._invoke("output", callback, history)

        def remove() -> None:
            with stream.lock:
                stream.subscribers.pop(token, None)

        return Subscription(remove, kind="output", name=name)

    def get_output_history(self, name: str) -> List[Frame]:
        with self._lock:
            stream = self._streams.get(str(name))
        if stream is None:
            return []
        with stream.lock:
            return stream.frames()

    def output_names(self) -> List[str]:
        with self._lock:
            return sorted(self._streams.keys())

    # Control events ---------------------------------------------------------------

    def subscribe_events(self, callback: EventCallback) -> Subscription:
        self._check_callable(callback)
        with self._lock:
            token = next(self._tokens)
            self._event_subscribers[token] = callback

        def remove() -> None:
            with self._lock:
                self._event_subscribers.pop(token, None)

        return Subscription(remove, kind="event")

    def publish_event(self, event: ControlEvent) -> None:
        with self._lock:
            subscribers = list(self._event_subscribers.values())
        logger.debug(
            "control_event",
            event_type=event.type,
            channel=event.channel_index,
            subscribers=len(subscribers)
        )
        for callback in subscribers:
            self._invoke("event", callback, event)

    # Introspection ---------------------------------------------------------------

    def subscriber_counts(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "batch": len(self._batch_subscribers),
                "event": len(self._event_subscribers),
                "output": {name: len(s.subscribers) for name, s in self._streams.items()},
            }

    def stats(self) -> Dict[str, Any]:
        return {
            "subscribers": self.subscriber_counts(),
            "delivered": dict(self.delivered),
            "errors": dict(self.errors),
            "outputs": {name: len(s.history) for name, s in list(self._streams.items())},
        }
