"""
Records exchanged between connection adapters, the pipeline and consumers.
"""

import math
import re
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Literal, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

# Widget-output frames are scalars or vectors
Frame = Union[float, List[float]]

EventType = Literal[
    "filterChanged",
    "samplingRateChanged",
    "channelsChanged",
    "buffersCleared",
    "samplesMissing",
    "queueOverflow",
]

COUNTER_MODULUS = 256

_CHANNEL_NODE_RE = re.compile(r"channel-(\d+)", re.IGNORECASE)


def coerce_value(value: Any) -> float:
    """Numeric value as a finite float; anything else becomes 0."""
    if value is None or isinstance(value, (str, bytes)):
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    return result if math.isfinite(result) else 0.0


def parse_channel_node_id(node_id: Any) -> Optional[int]:
    """Zero-based index for a 1-based flow node id like ``channel-3``."""
    match = _CHANNEL_NODE_RE.search(str(node_id))
    if match is None:
        return None
    return max(0, int(match.group(1)) - 1)


@dataclass(frozen=True)
class ChannelSample:
    """
    One fixed-width sample across all channel slots.

    Attributes:
        channels: Channel values, index = zero-based channel number
        timestamp: Device or host timestamp, if supplied
        counter: Wrapping 8-bit device counter, if supplied
        raw: Raw values before normalization
        seq: Pipeline sequence id (monotonic modulo the sequence modulus)
    """
    channels: Tuple[float, ...]
    timestamp: Optional[float] = None
    counter: Optional[int] = None
    raw: Optional[Tuple[float, ...]] = None
    seq: Optional[int] = None

    @classmethod
    def from_record(cls, record: Any, n_channels: int) -> "ChannelSample":
        """
        Build a fixed-width sample from an adapter record.

        Accepts ``{"ch0": .., "ch1": .., "timestamp": .., "counter": ..}``
        mappings, plain sequences of channel values, or another
        ChannelSample. Missing or non-numeric fields become 0; keys
        beyond ``n_channels`` are ignored.
        """
        timestamp = None
        counter = None

        if isinstance(record, ChannelSample):
            values = list(record.channels[:n_channels])
            timestamp = record.timestamp
            counter = record.counter
        elif isinstance(record, Mapping):
            values = [coerce_value(record.get(f"ch{i}")) for i in range(n_channels)]
            timestamp = record.get("timestamp")
            counter = record.get("counter")
        elif isinstance(record, (Sequence, np.ndarray)) and not isinstance(record, (str, bytes)):
            values = [coerce_value(v) for v in list(record)[:n_channels]]
        else:
            values = []

        values.extend([0.0] * (n_channels - len(values)))
        channels = tuple(values)

        if timestamp is not None:
            timestamp = coerce_value(timestamp) or None
        if counter is not None:
            try:
                counter = int(counter) % COUNTER_MODULUS
            except (TypeError, ValueError, OverflowError):
                counter = None

        return cls(channels=channels, timestamp=timestamp, counter=counter, raw=channels)

    @property
    def n_channels(self) -> int:
        return len(self.channels)

    def with_values(self, channels: Sequence[float], seq: Optional[int] = None) -> "ChannelSample":
        return replace(self, channels=tuple(channels), seq=seq)

    def to_dict(self) -> Dict[str, Any]:
        """Render in the ``ch{i}`` wire shape."""
        out: Dict[str, Any] = {f"ch{i}": v for i, v in enumerate(self.channels)}
        if self.timestamp is not None:
            out["timestamp"] = self.timestamp
        if self.counter is not None:
            out["counter"] = self.counter
        if self.seq is not None:
            out["seq"] = self.seq
        return out


@dataclass(frozen=True)
class SampleBatch:
    """Samples flushed together in one scheduling tick, oldest first."""
    samples: Tuple[ChannelSample, ...]
    flushed_at: float = 0.0

    def __len__(self) -> int:
        return len(self.samples)

    def __iter__(self) -> Iterator[ChannelSample]:
        return iter(self.samples)

    def __getitem__(self, index: int) -> ChannelSample:
        return self.samples[index]

    def channel(self, index: int) -> NDArray[np.float64]:
        """Values of one channel across the batch (a new array)."""
        return np.array(
            [s.channels[index] if index < len(s.channels) else 0.0 for s in self.samples],
            dtype=np.float64,
        )

    def matrix(self, n_channels: int) -> NDArray[np.float64]:
        """(n_samples, n_channels) array of channel values."""
        out = np.zeros((len(self.samples), n_channels), dtype=np.float64)
        for row, sample in enumerate(self.samples):
            width = min(n_channels, len(sample.channels))
            out[row, :width] = sample.channels[:width]
        return out

    def counters(self) -> List[int]:
        return [s.counter for s in self.samples if s.counter is not None]

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self.samples]


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class ControlEvent:
    """
    Structured notification for consumers holding derived state.

    Attributes:
        type: Event type, e.g. ``filterChanged``
        channel_index: Affected channel, if any
        payload: Extra event details
    """
    type: EventType
    channel_index: Optional[int] = None
    payload: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Events are shared by every subscriber, so the payload is read-only
        object.__setattr__(self, "payload", _freeze(self.payload))

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type}
        if self.channel_index is not None:
            out["channelIndex"] = self.channel_index
        out.update(_thaw(self.payload))
        return out
