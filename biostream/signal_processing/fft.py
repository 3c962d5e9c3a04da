"""
Fixed-size radix-2 FFT producing magnitude spectra.

The engine precomputes its twiddle tables and the per-stage butterfly
index plans once, so instances are meant to be reused. ``FFTCache`` keeps
a bounded set of engines keyed by transform size; it is owned by a
pipeline (or estimator) instance rather than living at module level.
"""

import threading
from collections import OrderedDict

import numpy as np
from numpy.typing import ArrayLike, NDArray

from biostream.core.logging import get_logger

logger = get_logger(__name__)


def is_power_of_two(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0


def next_power_of_two(n: int) -> int:
    """Smallest power of two >= n (1 for n <= 1)."""
    value = 1
    while value < n:
        value <<= 1
    return value


def _bit_reversal_permutation(n: int) -> NDArray[np.intp]:
    bits = n.bit_length() - 1
    idx = np.arange(n, dtype=np.intp)
    rev = np.zeros(n, dtype=np.intp)
    for b in range(bits):
        rev |= ((idx >> b) & 1) << (bits - 1 - b)
    return rev


class FFTEngine:
    """
    In-place iterative radix-2 Cooley-Tukey transform of a fixed size.

    Twiddle factors are ``cos(-2*pi*i/N)`` and ``sin(-2*pi*i/N)`` for
    ``i < N/2``; each butterfly stage of length ``L`` reads every
    ``N/L``-th entry of the tables.
    """

    def __init__(self, size: int) -> None:
        """
        Initialize the engine.

        Args:
            size: Transform length, a power of two >= 2

        Raises:
            ValueError: If size is not a power of two
        """
        if size < 2 or not is_power_of_two(size):
            raise ValueError(f"FFT size must be a power of two >= 2, got {size}")

        self.size = size
        half = size // 2
        angles = -2.0 * np.pi * np.arange(half) / size
        self.cos_table: NDArray[np.float64] = np.cos(angles)
        self.sin_table: NDArray[np.float64] = np.sin(angles)
        self._bit_reverse = _bit_reversal_permutation(size)

        # Butterfly plan: (top indices, bottom indices, cos, sin) per stage
        self._stages: list[tuple[NDArray[np.intp], NDArray[np.intp], NDArray[np.float64], NDArray[np.float64]]] = []
        length = 2
        while length <= size:
            half_len = length // 2
            step = size // length
            starts = np.arange(0, size, length, dtype=np.intp)[:, None]
            offsets = np.arange(half_len, dtype=np.intp)[None, :]
            top = (starts + offsets).ravel()
            groups = size // length
            tw_cos = np.tile(self.cos_table[::step][:half_len], groups)
            tw_sin = np.tile(self.sin_table[::step][:half_len], groups)
            self._stages.append((top, top + half_len, tw_cos, tw_sin))
            length <<= 1

        logger.debug("fft_engine_initialized", size=size, stages=len(self._stages))

    def transform(self, real: NDArray[np.float64], imag: NDArray[np.float64]) -> None:
        """
        Transform ``real``/``imag`` in place.

        Both arrays must be float numpy arrays of length ``size``.
        """
        n = self.size
        if len(real) != n or len(imag) != n:
            raise ValueError(
                f"real and imag arrays must have length {n}, "
                f"got {len(real)} and {len(imag)}"
            )

        real[:] = real[self._bit_reverse]
        imag[:] = imag[self._bit_reverse]

        for top, bottom, tw_cos, tw_sin in self._stages:
            b_re = real[bottom]
            b_im = imag[bottom]
            t_re = b_re * tw_cos - b_im * tw_sin
            t_im = b_re * tw_sin + b_im * tw_cos
            a_re = real[top]
            a_im = imag[top]
            real[bottom] = a_re - t_re
            imag[bottom] = a_im - t_im
            real[top] = a_re + t_re
            imag[top] = a_im + t_im

    def compute_magnitudes(self, signal: ArrayLike) -> NDArray[np.float64]:
        """
        Magnitude spectrum of a real input.

        Args:
            signal: Real samples, exactly ``size`` long

        Returns:
            ``size/2`` magnitudes, each divided by ``size/2``

        Raises:
            ValueError: If the input length differs from ``size``
        """
        arr = np.asarray(signal, dtype=np.float64)
        if arr.ndim != 1 or arr.shape[0] != self.size:
            raise ValueError(
                f"input length must equal FFT size {self.size}, got shape {arr.shape}"
            )

        real = arr.copy()
        imag = np.zeros(self.size, dtype=np.float64)
        self.transform(real, imag)

        half = self.size // 2
        return np.hypot(real[:half], imag[:half]) / half


class FFTCache:
    """Bounded LRU cache of FFT engines keyed by transform size."""

    def __init__(self, max_entries: int = 8) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self._engines: "OrderedDict[int, FFTEngine]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, size: int) -> FFTEngine:
        with self._lock:
            engine = self._engines.get(size)
            if engine is not None:
                self._engines.move_to_end(size)
                return engine

        # Build outside the lock; a concurrent build for the same size is harmless
        engine = FFTEngine(size)
        with self._lock:
            existing = self._engines.get(size)
            if existing is not None:
                self._engines.move_to_end(size)
                return existing
            self._engines[size] = engine
            while len(self._engines) > self.max_entries:
                evicted, _ = self._engines.popitem(last=False)
                logger.debug("fft_engine_evicted", size=evicted)
        return engine

    def clear(self) -> None:
        with self._lock:
            self._engines.clear()

    def __len__(self) -> int:
        return len(self._engines)

    def __contains__(self, size: object) -> bool:
        return size in self._engines
