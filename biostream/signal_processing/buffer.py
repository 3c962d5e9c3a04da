"""
Circular buffers for per-channel sample history.
"""

import threading
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
from numpy.typing import ArrayLike, NDArray

from biostream.core.logging import get_logger

logger = get_logger(__name__)


class CircularBuffer:
    """
    Fixed-capacity history for one channel.

    Uses a preallocated numpy array and a wrapping write cursor (the
    sweep index). Writes overwrite in place; the array is never
    reallocated.
    """

    def __init__(self, capacity: int) -> None:
        """
        Initialize circular buffer.

        Args:
            capacity: Number of samples held
        """
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")

        self.capacity = int(capacity)
        self.buffer = np.zeros(self.capacity, dtype=np.float64)
        self.sweep_index = 0
        self.is_full = False

    def append(self, new_data: ArrayLike) -> None:
        """
        Append samples, oldest first.

        Blocks longer than the capacity keep only their last ``capacity``
        values.
        """
        data = np.asarray(new_data, dtype=np.float64).ravel()
        n_new = data.shape[0]
        if n_new == 0:
            return

        if n_new >= self.capacity:
            self.buffer[:] = data[-self.capacity:]
            self.sweep_index = 0
            self.is_full = True
            return

        end = self.sweep_index + n_new
        if end <= self.capacity:
            self.buffer[self.sweep_index:end] = data
        else:
            part1_size = self.capacity - self.sweep_index
            self.buffer[self.sweep_index:] = data[:part1_size]
            self.buffer[:n_new - part1_size] = data[part1_size:]

        if end >= self.capacity:
            self.is_full = True
        self.sweep_index = end % self.capacity

    def get_latest(self, n_samples: int) -> NDArray[np.float64]:
        """
        Get the most recent ``n_samples`` in chronological order.

        Returns fewer samples when the buffer holds less than requested.
        """
        if n_samples > self.capacity:
            raise ValueError(
                f"Requested {n_samples} samples exceeds buffer size ({self.capacity} samples)"
            )
        data = self.get_all()
        if n_samples <= 0:
            return data[:0]
        return data[-n_samples:]

    def get_all(self) -> NDArray[np.float64]:
        """Get all valid data in chronological order (a copy)."""
        if not self.is_full:
            return self.buffer[:self.sweep_index].copy()

        return np.concatenate([
            self.buffer[self.sweep_index:],
            self.buffer[:self.sweep_index]
        ])

    def clear(self) -> None:
        """Zero the storage and rewind the cursor."""
        self.buffer.fill(0)
        self.sweep_index = 0
        self.is_full = False

    @property
    def current_samples(self) -> int:
        """Get number of valid samples currently in buffer."""
        return self.capacity if self.is_full else self.sweep_index


class CircularBufferStore:
    """One circular buffer per active channel."""

    def __init__(self, capacity: int, channels: Iterable[int] = ()) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = int(capacity)
        self._buffers: Dict[int, CircularBuffer] = {}
        self._lock = threading.RLock()
        self.set_channels(channels)

    def set_channels(self, channels: Iterable[int]) -> None:
        """Create buffers for new channels and drop buffers of removed ones."""
        wanted = {int(ch) for ch in channels}
        with self._lock:
            removed = [ch for ch in self._buffers if ch not in wanted]
            for ch in removed:
                del self._buffers[ch]
            added = [ch for ch in sorted(wanted) if ch not in self._buffers]
            for ch in added:
                self._buffers[ch] = CircularBuffer(self.capacity)
        if added or removed:
            logger.debug("buffer_channels_updated", added=added, removed=removed)

    def append_channel(self, channel: int, values: ArrayLike) -> None:
        with self._lock:
            buf = self._buffers.get(channel)
            if buf is not None:
                buf.append(values)

    def append_matrix(self, channel_ids: List[int], data: NDArray[np.float64]) -> None:
        """
        Append a (n_samples, n_columns) matrix; column ``i`` feeds ``channel_ids[i]``.
        """
        with self._lock:
            for col, channel in enumerate(channel_ids):
                buf = self._buffers.get(channel)
                if buf is not None:
                    buf.append(data[:, col])

    def append_batch(self, batch: Any) -> None:
        """
        Append a flushed batch; anything exposing ``len()`` and
        ``matrix(width)`` works. Column ``i`` feeds channel ``i``.
        """
        with self._lock:
            if not self._buffers or not len(batch):
                return
            data = batch.matrix(max(self._buffers) + 1)
            for channel, buf in self._buffers.items():
                buf.append(data[:, channel])

    def reset_channel(self, channel: int) -> bool:
        """Zero one channel's buffer; other channels are untouched."""
        with self._lock:
            buf = self._buffers.get(channel)
            if buf is None:
                return False
            buf.clear()
        logger.debug("channel_buffer_reset", channel=channel)
        return True

    def reset_all(self) -> None:
        with self._lock:
            for buf in self._buffers.values():
                buf.clear()

    def get(self, channel: int) -> Optional[NDArray[np.float64]]:
        """Chronological copy of one channel's buffer, or None if inactive."""
        with self._lock:
            buf = self._buffers.get(channel)
            return buf.get_all() if buf is not None else None

    def buffer(self, channel: int) -> Optional[CircularBuffer]:
        return self._buffers.get(channel)

    def channels(self) -> List[int]:
        return sorted(self._buffers.keys())

    def snapshot(self) -> Dict[int, NDArray[np.float64]]:
        with self._lock:
            return {ch: buf.get_all() for ch, buf in sorted(self._buffers.items())}

    def __contains__(self, channel: object) -> bool:
        return channel in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)
