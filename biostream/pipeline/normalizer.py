"""
Raw ADC count normalization.

Each channel value is centered on half the ADC full-scale, run through the
channel's filter chain and rescaled to roughly [-1, 1]. The full-scale comes
from an explicit bit-depth when one is configured; otherwise it is inferred
as the smallest power of two covering the largest value seen so far on that
channel. Inference can drift while the true maximum has not been observed
yet, so explicit bit-depth should be preferred whenever it is known.
"""

import math
import threading
from typing import AbstractSet, Dict, List, Optional

from biostream.core.exceptions import ValidationError
from biostream.core.logging import get_logger
from biostream.pipeline.models import ChannelSample
from biostream.signal_processing.filters import FilterRegistry

logger = get_logger(__name__)

MIN_FULL_SCALE = 2.0
MAX_ADC_BITS = 32


def full_scale_for_bits(bits: int) -> float:
    return float(2 ** int(bits))


def inferred_full_scale(max_abs: float) -> float:
    """Smallest power of two >= ``max_abs`` (at least 2)."""
    if not math.isfinite(max_abs) or max_abs <= MIN_FULL_SCALE:
        return MIN_FULL_SCALE
    return float(2 ** math.ceil(math.log2(max_abs)))


class SampleNormalizer:
    """
    Converts raw per-channel counts into centered, filtered, scaled values.

    ``normalize`` never raises: any failure on one field yields 0 for that
    field and the rest of the sample is still processed.
    """

    def __init__(
        self,
        n_channels: int,
        filters: FilterRegistry,
        adc_bits: Optional[int] = None
    ) -> None:
        """
        Initialize normalizer.

        Args:
            n_channels: Number of channel slots per sample
            filters: Per-channel filter chains
            adc_bits: Explicit bit-depth for every channel (None to infer)
        """
        self.n_channels = n_channels
        self.filters = filters
        self._default_bits: Optional[int] = None
        self._channel_bits: Dict[int, int] = {}
        self._observed_max: List[float] = [0.0] * n_channels
        self._lock = threading.Lock()
        if adc_bits is not None:
            self.set_adc_bits(adc_bits)

    def set_adc_bits(self, bits: Optional[int], channel: Optional[int] = None) -> None:
        """
        Configure an explicit bit-depth, globally or per channel.

        Passing None removes the explicit setting and falls back to inference.
        """
        if bits is not None:
            if isinstance(bits, bool) or not isinstance(bits, int) or not 1 <= bits <= MAX_ADC_BITS:
                raise ValidationError(f"ADC bit-depth must be an integer in [1, {MAX_ADC_BITS}], got {bits!r}")
        if channel is not None and not 0 <= channel < self.n_channels:
            raise ValidationError(f"Channel index {channel} out of range [0, {self.n_channels})")

        with self._lock:
            if channel is None:
                self._default_bits = bits
            elif bits is None:
                self._channel_bits.pop(channel, None)
            else:
                self._channel_bits[channel] = bits

        logger.info("adc_bits_configured", bits=bits, channel=channel)

    def full_scale(self, channel: int) -> float:
        """Effective full-scale for ``channel`` given what has been seen so far."""
        bits = self._channel_bits.get(channel, self._default_bits)
        if bits is not None:
            return full_scale_for_bits(bits)
        return inferred_full_scale(self._observed_max[channel])

    def normalize(
        self,
        sample: ChannelSample,
        registered: AbstractSet[int]
    ) -> ChannelSample:
        """
        Normalize every channel slot of ``sample``.

        Args:
            sample: Fixed-width raw sample
            registered: Active zero-based channel indices

        Returns:
            New sample with normalized values; ``raw`` keeps the input counts
        """
        out = [0.0] * self.n_channels
        with self._lock:
            for ch in range(min(self.n_channels, len(sample.channels))):
                try:
                    out[ch] = self._normalize_value(ch, sample.channels[ch], ch in registered)
                except Exception as e:
                    logger.debug(
                        "sample_field_degraded",
                        channel=ch,
                        error_type=type(e).__name__,
                        error=str(e)
                    )
                    out[ch] = 0.0
        return sample.with_values(out)

    def _normalize_value(self, channel: int, raw: float, is_registered: bool) -> float:
        magnitude = abs(raw)
        if magnitude > self._observed_max[channel]:
            self._observed_max[channel] = magnitude

        if not is_registered:
            return 0.0

        half_scale = self.full_scale(channel) / 2.0
        centered = raw - half_scale
        filtered = self.filters.process(channel, centered)
        value = filtered / half_scale
        return value if math.isfinite(value) else 0.0

    def reset(self) -> None:
        """Forget inferred maxima."""
        with self._lock:
            self._observed_max = [0.0] * self.n_channels
