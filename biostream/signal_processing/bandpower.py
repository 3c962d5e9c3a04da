"""
Band power estimation from FFT magnitudes.

Two reducers share the same band table:
- Direct: squared FFT magnitudes of the most recent ``fft_size`` samples
- Welch: averaged Hann-windowed segment spectra normalized to a PSD

Both return finite values only; degenerate input (empty signal, zero
power) yields zeros and a -120 dB floor.
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.signal import windows

from biostream.core.logging import get_logger
from biostream.signal_processing.fft import FFTCache, FFTEngine, is_power_of_two, next_power_of_two

logger = get_logger(__name__)

# Frequency bands (Hz)
BANDS: Dict[str, Tuple[float, float]] = {
    "delta": (0.5, 4.0),
    "theta": (4.0, 8.0),
    "alpha": (8.0, 12.0),
    "beta": (12.0, 30.0),
    "gamma": (30.0, 45.0),
}

BAND_NAMES: Tuple[str, ...] = tuple(BANDS.keys())

DB_FLOOR = -120.0
POWER_EPSILON = 1e-12


@dataclass
class BandPowerResult:
    """
    Per-band powers.

    Attributes:
        raw: Absolute band power
        relative: Fraction of total power
        db: 10*log10(raw), floored at -120 dB (Welch only)
    """
    raw: Dict[str, float]
    relative: Dict[str, float]
    db: Optional[Dict[str, float]] = None

    def relative_vector(self) -> List[float]:
        return [self.relative[band] for band in BAND_NAMES]

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        out: Dict = {"raw": dict(self.raw), "relative": dict(self.relative)}
        if self.db is not None:
            out["dB"] = dict(self.db)
        return out


def _finite_non_negative(value: float) -> float:
    value = float(value)
    return value if math.isfinite(value) and value > 0 else 0.0


def _engine(fft_size: int, fft_cache: Optional[FFTCache]) -> FFTEngine:
    if fft_cache is not None:
        return fft_cache.get(fft_size)
    return FFTEngine(fft_size)


def band_bin_range(
    band: Tuple[float, float],
    sample_rate: float,
    fft_size: int,
    n_bins: int
) -> Tuple[int, int]:
    """
    Inclusive bin range covering ``band``; the DC bin is always excluded.

    Returns:
        (start, end); ``end < start`` means the band is empty
    """
    low, high = band
    resolution = sample_rate / fft_size
    start = max(1, math.ceil(low / resolution))
    end = min(n_bins - 1, math.floor(high / resolution))
    return start, end


def calculate_band_power(
    magnitudes: ArrayLike,
    band: Tuple[float, float],
    sample_rate: float = 500,
    fft_size: int = 256
) -> float:
    """Sum of squared magnitudes within ``band``."""
    mags = np.asarray(magnitudes, dtype=np.float64)
    start, end = band_bin_range(band, sample_rate, fft_size, mags.shape[0])
    if end < start:
        return 0.0
    segment = mags[start:end + 1]
    return _finite_non_negative(np.sum(segment * segment))


def _right_aligned(signal: Optional[ArrayLike], length: int) -> NDArray[np.float64]:
    """Last ``length`` samples of ``signal``, zero-padded at the front."""
    out = np.zeros(length, dtype=np.float64)
    if signal is None:
        return out
    data = np.asarray(signal, dtype=np.float64).ravel()
    if data.size == 0:
        return out
    tail = data[-length:]
    out[length - tail.size:] = tail
    return np.nan_to_num(out, nan=0.0, posinf=0.0, neginf=0.0)


def relative_powers(raw: Mapping[str, float], total: float) -> Dict[str, float]:
    rel = {}
    for band in BAND_NAMES:
        value = raw.get(band, 0.0) / total if total > 0 else 0.0
        rel[band] = min(1.0, max(0.0, value)) if math.isfinite(value) else 0.0
    return rel


def compute_band_powers(
    signal: Optional[ArrayLike],
    sample_rate: float = 500,
    fft_size: int = 256,
    fft_cache: Optional[FFTCache] = None
) -> BandPowerResult:
    """
    Direct band powers of a single-channel signal.

    The most recent ``fft_size`` samples are transformed (zero-padded at
    the front when the signal is shorter). Relative power is each band's
    share of the summed band powers.

    Args:
        signal: Samples, oldest first
        sample_rate: Sampling rate in Hz
        fft_size: Transform length (rounded up to a power of two)
        fft_cache: Engine cache to reuse precomputed tables

    Returns:
        BandPowerResult with raw and relative powers
    """
    if not is_power_of_two(fft_size):
        fft_size = next_power_of_two(max(2, int(fft_size)))

    mags = _engine(fft_size, fft_cache).compute_magnitudes(_right_aligned(signal, fft_size))

    raw = {
        band: calculate_band_power(mags, rng, sample_rate, fft_size)
        for band, rng in BANDS.items()
    }
    total = sum(raw.values())
    return BandPowerResult(raw=raw, relative=relative_powers(raw, total))


def hann_window(length: int) -> NDArray[np.float64]:
    """Symmetric Hann window: 0.5 * (1 - cos(2*pi*n / (L - 1)))."""
    return windows.hann(length, sym=True)


def compute_band_powers_welch(
    signal: Optional[ArrayLike],
    sample_rate: float = 500,
    fft_size: int = 256,
    segment_length: Optional[int] = None,
    overlap: float = 0.5,
    mains_frequency: float = 50.0,
    mains_notch_radius: float = 1.0,
    fft_cache: Optional[FFTCache] = None
) -> BandPowerResult:
    """
    Welch band powers of a single-channel signal.

    Splits the signal into overlapping Hann-windowed segments, averages
    their power spectra, and normalizes by window energy and frequency
    resolution to get a PSD. Total power excludes DC and the bins within
    ``mains_notch_radius`` Hz of ``mains_frequency``.

    Args:
        signal: Samples, oldest first
        sample_rate: Sampling rate in Hz
        fft_size: Transform length (rounded up to a power of two)
        segment_length: Segment length (default ``min(fft_size, 256)``)
        overlap: Segment overlap fraction, clamped to [0, 0.9]
        mains_frequency: Mains interference frequency in Hz
        mains_notch_radius: Half-width of the excluded mains region in Hz
        fft_cache: Engine cache to reuse precomputed tables

    Returns:
        BandPowerResult with raw, relative and dB values
    """
    overlap = min(max(float(overlap), 0.0), 0.9)
    if not is_power_of_two(fft_size):
        fft_size = next_power_of_two(max(2, int(fft_size)))
    if segment_length is None:
        segment_length = min(fft_size, 256)

    seg_len = min(max(4, int(segment_length)), fft_size)
    hop = max(1, int(seg_len * (1 - overlap)))

    data = np.asarray(signal if signal is not None else [], dtype=np.float64).ravel()
    data = np.nan_to_num(data, nan=0.0, posinf=0.0, neginf=0.0)

    window = hann_window(seg_len)
    window_energy = max(float(np.sum(window * window)) / seg_len, POWER_EPSILON)

    engine = _engine(fft_size, fft_cache)
    n_bins = fft_size // 2
    accum = np.zeros(n_bins, dtype=np.float64)
    segments = 0
    frame = np.zeros(fft_size, dtype=np.float64)

    for start in range(0, data.size - seg_len + 1, hop):
        frame[:seg_len] = data[start:start + seg_len] * window
        frame[seg_len:] = 0.0
        mags = engine.compute_magnitudes(frame)
        accum += mags * mags
        segments += 1

    if segments == 0:
        # Too short for one full segment: single zero-padded windowed frame
        use = min(data.size, seg_len)
        frame[:] = 0.0
        frame[:use] = data[:use] * window[:use]
        mags = engine.compute_magnitudes(frame)
        accum = mags * mags
        segments = 1

    df = sample_rate / fft_size
    psd = (accum / segments) / window_energy * df

    raw = {}
    for band, rng in BANDS.items():
        start, end = band_bin_range(rng, sample_rate, fft_size, n_bins)
        power = float(np.sum(psd[start:end + 1])) if end >= start else 0.0
        raw[band] = _finite_non_negative(power)

    mains_bin = round(mains_frequency / df)
    radius = max(1, round(mains_notch_radius / df))
    bins = np.arange(n_bins)
    keep = (bins >= 1) & (np.abs(bins - mains_bin) > radius) & np.isfinite(psd) & (psd > 0)
    total = float(np.sum(psd[keep]))

    db = {}
    for band in BAND_NAMES:
        value = 10.0 * math.log10(max(raw[band], POWER_EPSILON))
        db[band] = max(DB_FLOOR, round(value, 2)) if math.isfinite(value) else DB_FLOOR

    return BandPowerResult(raw=raw, relative=relative_powers(raw, total), db=db)


class BandSmoother:
    """
    Per-band circular moving average.

    ``update_all`` is O(1) per band (running sum); ``prefill`` fills the
    whole window with one value vector in O(1) sum updates so the average
    starts at a steady value instead of ramping up from zero.
    """

    def __init__(self, window: int, bands: Sequence[str] = BAND_NAMES) -> None:
        if window < 1:
            raise ValueError(f"Smoother window must be >= 1, got {window}")
        self.window = int(window)
        self.bands = tuple(bands)
        self._buffers = {band: np.zeros(self.window, dtype=np.float64) for band in self.bands}
        self._sums = {band: 0.0 for band in self.bands}
        self._idx = 0
        self.updates = 0

    def update_all(self, values: Mapping[str, float]) -> None:
        for band, value in values.items():
            if band not in self._buffers:
                continue
            value = float(value) if math.isfinite(value) else 0.0
            buf = self._buffers[band]
            self._sums[band] += value - buf[self._idx]
            buf[self._idx] = value
        self._idx = (self._idx + 1) % self.window
        self.updates += 1

    def prefill(self, values: Mapping[str, float]) -> None:
        for band in self.bands:
            value = float(values.get(band, 0.0))
            if not math.isfinite(value):
                value = 0.0
            self._buffers[band].fill(value)
            self._sums[band] = value * self.window
        self._idx = 0
        self.updates = self.window

    def get_all(self) -> Dict[str, float]:
        return {band: self._sums[band] / self.window for band in self.bands}

    def reset(self) -> None:
        for band in self.bands:
            self._buffers[band].fill(0.0)
            self._sums[band] = 0.0
        self._idx = 0
        self.updates = 0


class BandPowerEstimator:
    """Band power reducers bound to a shared FFT engine cache."""

    def __init__(
        self,
        sample_rate: float = 500,
        fft_size: int = 256,
        fft_cache: Optional[FFTCache] = None,
        mains_frequency: float = 50.0,
        mains_notch_radius: float = 1.0,
        overlap: float = 0.5
    ) -> None:
        self.sample_rate = sample_rate
        self.fft_size = fft_size
        self.fft_cache = fft_cache if fft_cache is not None else FFTCache()
        self.mains_frequency = mains_frequency
        self.mains_notch_radius = mains_notch_radius
        self.overlap = overlap

    def estimate(
        self,
        signal: Optional[ArrayLike],
        method: str = "direct",
        sample_rate: Optional[float] = None,
        fft_size: Optional[int] = None,
        segment_length: Optional[int] = None
    ) -> BandPowerResult:
        sample_rate = sample_rate or self.sample_rate
        fft_size = fft_size or self.fft_size
        if method == "direct":
            return compute_band_powers(signal, sample_rate, fft_size, fft_cache=self.fft_cache)
        if method == "welch":
            return compute_band_powers_welch(
                signal,
                sample_rate,
                fft_size,
                segment_length=segment_length,
                overlap=self.overlap,
                mains_frequency=self.mains_frequency,
                mains_notch_radius=self.mains_notch_radius,
                fft_cache=self.fft_cache,
            )
        raise ValueError(f"Unknown band power method: {method!r}")
