"""
Simulated connection for testing and development without hardware.

Generates multi-channel EEG-like signals with:
- Fixed oscillators per frequency band (delta, theta, alpha, beta, gamma)
- Optional mains interference
- Raw unsigned ADC counts centered on half full-scale
- A wrapping 8-bit sample counter with optional dropped samples
"""

from typing import Any, Dict, List, Optional

import numpy as np
from numpy.typing import NDArray

from biostream.core.logging import get_logger
from biostream.eeg.device_interface import ConnectionAdapter, Record
from biostream.pipeline.models import COUNTER_MODULUS

logger = get_logger(__name__)

BAND_FREQUENCIES = {
    "delta": (0.5, 4.0),
    "theta": (4.0, 8.0),
    "alpha": (8.0, 12.0),
    "beta": (12.0, 30.0),
    "gamma": (30.0, 45.0),
}

DEFAULT_BAND_POWERS = {
    "delta": 1.0,
    "theta": 0.8,
    "alpha": 1.2,
    "beta": 0.6,
    "gamma": 0.3,
}


class SimulatedConnection(ConnectionAdapter):
    """
    Deterministic (seeded) stand-in for a device connection.

    Time advances by one sample period per generated record, so output
    does not depend on the wall clock.
    """

    def __init__(
        self,
        n_channels: int = 8,
        sampling_rate: int = 500,
        adc_bits: int = 14,
        seed: Optional[int] = None,
        drop_rate: float = 0.0,
        mains_frequency: Optional[float] = None,
        mains_amplitude: float = 0.0
    ) -> None:
        """
        Initialize simulator.

        Args:
            n_channels: Number of channels
            sampling_rate: Sampling rate in Hz
            adc_bits: ADC bit-depth of the emitted counts
            seed: Random seed for reproducibility
            drop_rate: Probability that a generated sample is lost in transit
            mains_frequency: Interference frequency in Hz (None for none)
            mains_amplitude: Interference amplitude, same units as band signals
        """
        if not 0.0 <= drop_rate < 1.0:
            raise ValueError("drop_rate must be in [0, 1)")

        self._n_channels = n_channels
        self._sampling_rate = sampling_rate
        self._adc_bits = adc_bits
        self.drop_rate = drop_rate
        self.mains_frequency = mains_frequency
        self.mains_amplitude = mains_amplitude
        self.rng = np.random.RandomState(seed)

        self.band_powers = dict(DEFAULT_BAND_POWERS)
        # One oscillator per band and channel, fixed for the session
        self._frequencies = {
            band: self.rng.uniform(low, high, n_channels)
            for band, (low, high) in BAND_FREQUENCIES.items()
        }
        self._phases = {
            band: self.rng.uniform(0, 2 * np.pi, n_channels)
            for band in BAND_FREQUENCIES
        }

        # Band peaks stay well inside the ADC range
        self.counts_per_unit = (2 ** adc_bits) / 400.0

        self.connected = False
        self.is_streaming = False
        self.sample_index = 0
        self.counter = 0
        self.dropped = 0

        logger.info(
            "simulated_connection_initialized",
            n_channels=n_channels,
            sampling_rate=sampling_rate,
            adc_bits=adc_bits
        )

    @property
    def sampling_rate(self) -> int:
        return self._sampling_rate

    @property
    def n_channels(self) -> int:
        return self._n_channels

    @property
    def adc_bits(self) -> Optional[int]:
        return self._adc_bits

    def connect(self) -> bool:
        self.connected = True
        return True

    def disconnect(self) -> None:
        self.stop_stream()
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    def start_stream(self) -> None:
        if not self.connected:
            self.connect()
        self.is_streaming = True
        logger.info("simulated_stream_started")

    def stop_stream(self) -> None:
        if self.is_streaming:
            logger.info("simulated_stream_stopped", samples=self.sample_index, dropped=self.dropped)
        self.is_streaming = False

    def set_band_powers(self, **powers: float) -> None:
        """Override relative power of named bands, e.g. ``alpha=2.0``."""
        for band, power in powers.items():
            if band not in self.band_powers:
                raise ValueError(f"Unknown band: {band}")
            self.band_powers[band] = max(0.0, float(power))

    def generate_sample(self) -> NDArray[np.float64]:
        """
        One sample across all channels, before ADC conversion.

        Returns:
            Array of shape (n_channels,)
        """
        t = self.sample_index / self._sampling_rate
        sample = np.zeros(self._n_channels)
        for band, power in self.band_powers.items():
            amplitude = np.sqrt(power) * 10.0
            sample += amplitude * np.sin(2 * np.pi * self._frequencies[band] * t + self._phases[band])

        sample += self.rng.randn(self._n_channels) * 2.5
        if self.mains_frequency:
            sample += self.mains_amplitude * np.sin(2 * np.pi * self.mains_frequency * t)

        self.sample_index += 1
        return sample

    def to_counts(self, sample: NDArray[np.float64]) -> NDArray[np.int64]:
        """Convert to unsigned ADC counts centered on half full-scale."""
        full_scale = 2 ** self._adc_bits
        counts = np.round(sample * self.counts_per_unit + full_scale / 2)
        return np.clip(counts, 0, full_scale - 1).astype(np.int64)

    def read_records(self, n_samples: int = 1) -> List[Record]:
        if not self.is_streaming:
            return []

        records: List[Record] = []
        for _ in range(n_samples):
            counts = self.to_counts(self.generate_sample())
            counter = self.counter
            self.counter = (self.counter + 1) % COUNTER_MODULUS
            if self.drop_rate and self.rng.random_sample() < self.drop_rate:
                self.dropped += 1
                continue
            record: Record = {f"ch{i}": int(v) for i, v in enumerate(counts)}
            record["timestamp"] = (self.sample_index - 1) / self._sampling_rate
            record["counter"] = counter
            records.append(record)
        return records

    def get_info(self) -> Dict[str, Any]:
        return {
            "device_type": "simulator",
            "n_channels": self._n_channels,
            "sampling_rate": self._sampling_rate,
            "adc_bits": self._adc_bits,
            "channels": self.channel_names,
            "drop_rate": self.drop_rate,
        }
