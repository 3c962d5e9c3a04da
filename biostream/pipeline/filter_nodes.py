"""
Standalone filter nodes fed from raw channel samples.

A filter node is a named cascade (high-pass, notch or low-pass) bound to
one input channel. Every raw sample is pushed through each connected node
and the outputs are kept in a bounded per-node history, independent of the
per-channel filters applied during normalization.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Union

from biostream.core.exceptions import FilterConfigurationError, ValidationError
from biostream.core.logging import get_logger
from biostream.pipeline.models import parse_channel_node_id
from biostream.signal_processing.filters import BiquadCascade, create_filter_instance, is_known_filter

logger = get_logger(__name__)

FilterKind = Literal["highpass", "notch", "lowpass"]

NODE_BUFFER_SIZE = 1024

KIND_PREFIXES: Dict[str, str] = {
    "highpass": "hp-",
    "notch": "notch-",
    "lowpass": "lp-",
}

DEFAULT_KEYS: Dict[str, str] = {
    "highpass": "hp-0.5",
    "notch": "notch-50",
    "lowpass": "lp-50.0",
}


@dataclass
class FilterNode:
    node_id: str
    kind: str
    filter_key: str
    sampling_rate: Optional[int] = None
    input_channel: Optional[int] = None
    instance: Optional[BiquadCascade] = None
    buffer: Deque[float] = field(default_factory=lambda: deque(maxlen=NODE_BUFFER_SIZE))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.node_id,
            "kind": self.kind,
            "filter_key": self.filter_key,
            "sampling_rate": self.sampling_rate,
            "input_channel": self.input_channel,
            "active": self.instance is not None,
            "buffered": len(self.buffer),
        }


class FilterNodeRegistry:
    """Filter nodes owned by one pipeline."""

    def __init__(self, n_channels: int, sampling_rate: Optional[int] = None) -> None:
        self.n_channels = n_channels
        self._default_rate = sampling_rate
        self._nodes: Dict[str, FilterNode] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._nodes)

    def register(
        self,
        node_id: str,
        kind: str,
        filter_key: Optional[str] = None,
        sampling_rate: Optional[int] = None
    ) -> FilterNode:
        """
        Create or reconfigure a node. Reconfiguring clears its history.

        Raises:
            FilterConfigurationError: Unknown kind, or key not matching the kind
        """
        prefix = KIND_PREFIXES.get(kind)
        if prefix is None:
            raise FilterConfigurationError(f"Unknown filter kind: {kind!r}")
        filter_key = filter_key or DEFAULT_KEYS[kind]
        if not filter_key.startswith(prefix) or not is_known_filter(filter_key):
            raise FilterConfigurationError(
                f"Filter key {filter_key!r} is not a known {kind} filter"
            )

        with self._lock:
            node = self._nodes.get(node_id)
            input_channel = node.input_channel if node is not None else None
            rate = sampling_rate or self._default_rate
            node = FilterNode(
                node_id=node_id,
                kind=kind,
                filter_key=filter_key,
                sampling_rate=rate,
                input_channel=input_channel,
                instance=create_filter_instance(filter_key, rate),
            )
            self._nodes[node_id] = node

        logger.info("filter_node_registered", **node.to_dict())
        return node

    def unregister(self, node_id: str) -> None:
        with self._lock:
            self._nodes.pop(node_id, None)

    def _resolve_channel(self, source: Union[int, str, None]) -> Optional[int]:
        if source is None:
            return None
        if isinstance(source, int) and not isinstance(source, bool):
            channel = source
        else:
            channel = parse_channel_node_id(source)
            if channel is None:
                raise ValidationError(f"Not a channel source: {source!r}")
        if not 0 <= channel < self.n_channels:
            raise ValidationError(f"Channel index {channel} out of range [0, {self.n_channels})")
        return channel

    def connect_input(self, node_id: str, source: Union[int, str, None]) -> None:
        """Bind a node to a zero-based channel index or a ``channel-N`` node id."""
        channel = self._resolve_channel(source)
        with self._lock:
            node = self._nodes.get(node_id)
            if node is not None:
                node.input_channel = channel

    def sync_connections(self, connections: Iterable[Union[Mapping[str, str], Sequence[str]]]) -> None:
        """
        Rebind every node from flow-graph edges.

        Only ``channel-N -> <node id>`` edges are considered; nodes without
        such an edge are disconnected.
        """
        edges = []
        for conn in connections:
            if isinstance(conn, Mapping):
                edges.append((conn.get("from"), conn.get("to")))
            else:
                edges.append((conn[0], conn[1]))

        with self._lock:
            for node in self._nodes.values():
                node.input_channel = None
            for source, target in edges:
                node = self._nodes.get(str(target))
                channel = parse_channel_node_id(source) if source else None
                if node is not None and channel is not None and channel < self.n_channels:
                    node.input_channel = channel

    def set_sampling_rate(self, sampling_rate: int) -> None:
        """Activate nodes that were waiting for a rate (nodes with an explicit rate keep it)."""
        with self._lock:
            self._default_rate = sampling_rate
            for node in self._nodes.values():
                if node.sampling_rate is None:
                    node.sampling_rate = sampling_rate
                    node.instance = create_filter_instance(node.filter_key, sampling_rate)

    def on_raw_sample(self, values: Sequence[float]) -> None:
        """Push one raw sample through every connected node."""
        with self._lock:
            for node in self._nodes.values():
                if node.input_channel is None or node.instance is None:
                    continue
                idx = node.input_channel
                value = values[idx] if idx < len(values) else 0.0
                node.buffer.append(node.instance.process(value))

    def get_buffer(self, node_id: str) -> List[float]:
        with self._lock:
            node = self._nodes.get(node_id)
            return list(node.buffer) if node is not None else []

    def registered(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [node.to_dict() for node in self._nodes.values()]
