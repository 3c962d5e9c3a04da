"""
Signal processing for biosignal streams: FFT, IIR filters, band power, buffers.
"""

from biostream.signal_processing.bandpower import (
    BANDS,
    BandPowerEstimator,
    BandPowerResult,
    BandSmoother,
    compute_band_powers,
    compute_band_powers_welch,
)
from biostream.signal_processing.buffer import CircularBuffer, CircularBufferStore
from biostream.signal_processing.fft import FFTCache, FFTEngine
from biostream.signal_processing.filters import (
    BiquadCascade,
    FilterConfig,
    FilterRegistry,
    create_filter_instance,
)

__all__ = [
    "BANDS",
    "BandPowerEstimator",
    "BandPowerResult",
    "BandSmoother",
    "compute_band_powers",
    "compute_band_powers_welch",
    "CircularBuffer",
    "CircularBufferStore",
    "FFTCache",
    "FFTEngine",
    "BiquadCascade",
    "FilterConfig",
    "FilterRegistry",
    "create_filter_instance",
]
