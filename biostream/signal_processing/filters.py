"""
Biquad-cascade IIR filters driven by a fixed coefficient table.

Filters are looked up by ``(sampling_rate, filter_key)``; each entry is an
ordered list of second-order sections. ``FilterRegistry`` keeps one chain
of cascades per channel and is owned by a pipeline instance.
"""

import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence

import numpy as np
from numpy.typing import ArrayLike, NDArray

from biostream.core.exceptions import ValidationError
from biostream.core.logging import get_logger

logger = get_logger(__name__)


class SectionCoefficients(NamedTuple):
    """Coefficients of one second-order section (a0 normalized to 1)."""
    b0: float
    b1: float
    b2: float
    a1: float
    a2: float


def _sections(*rows: tuple[float, float, float, float, float]) -> tuple[SectionCoefficients, ...]:
    return tuple(SectionCoefficients(*row) for row in rows)


# sampling rate -> filter key -> sections
COEFFICIENTS: Mapping[int, Mapping[str, tuple[SectionCoefficients, ...]]] = MappingProxyType({
    500: MappingProxyType({
        # Notch, two sections each
        "notch-50": _sections(
            (0.96508099, -1.56202714, 0.96508099, -1.56858163, 0.96424138),
            (1.0, -1.61854514, 1.0, -1.61100358, 0.96592171),
        ),
        "notch-60": _sections(
            (0.96508099, -1.40747202, 0.96508099, -1.40810535, 0.96443153),
            (1.0, -1.45839783, 1.0, -1.45687509, 0.96573127),
        ),

        # High-pass, single section
        "hp-0.01": _sections((0.99990838, -1.99981676, 0.99990838, -1.99981669, 0.99981683)),
        "hp-0.02": _sections((0.99981675, -1.99963351, 0.99981675, -1.99963318, 0.99963385)),
        "hp-0.05": _sections((0.99954186, -1.99908372, 0.99954186, -1.99908205, 0.99908539)),
        "hp-0.1": _sections((0.99908372, -1.99816744, 0.99908372, -1.99816246, 0.99817242)),
        "hp-0.2": _sections((0.99816745, -1.99633491, 0.99816745, -1.99631790, 0.99635192)),
        "hp-0.5": _sections((0.99556697, -1.99113394, 0.99556697, -1.99111429, 0.99115360)),
        "hp-1.0": _sections((0.99115360, -1.98230719, 0.99115360, -1.98222893, 0.98238545)),
        "hp-2.0": _sections((0.98238544, -1.96477088, 0.98238544, -1.96446058, 0.96508117)),
        "hp-5.0": _sections((0.95654323, -1.91308645, 0.95654323, -1.91119707, 0.91497583)),
        "hp-10.0": _sections((0.91497583, -1.82995167, 0.91497583, -1.82660694, 0.83329639)),

        # Low-pass, single section
        "lp-10.0": _sections((0.00362168, 0.00724336, 0.00362168, -1.82269493, 0.83718165)),
        "lp-20.0": _sections((0.01335920, 0.02671840, 0.01335920, -1.64745998, 0.70089678)),
        "lp-30.0": _sections((0.02785977, 0.05571953, 0.02785977, -1.47548044, 0.58691951)),
        "lp-50.0": _sections((0.06646074, 0.13292149, 0.06646074, -1.14298050, 0.41280160)),
        "lp-70.0": _sections((0.10926967, 0.21853934, 0.10926967, -0.78734302, 0.28518928)),
    }),
    250: MappingProxyType({
        "notch-50": _sections(
            (0.93137886, -0.57635175, 0.93137886, -0.53127491, 0.93061518),
            (1.0, -0.61881558, 1.0, -0.66243374, 0.93214913),
        ),
        "notch-60": _sections(
            (0.93137886, -0.11711144, 0.93137886, -0.05269865, 0.93123336),
            (1.0, -0.12573985, 1.0, -0.18985625, 0.93153034),
        ),
    }),
})


def lookup_sections(filter_key: str, sampling_rate: Optional[float]) -> Optional[tuple[SectionCoefficients, ...]]:
    """Sections for ``(filter_key, sampling_rate)`` or None if absent."""
    if not sampling_rate:
        return None
    by_rate = COEFFICIENTS.get(int(sampling_rate))
    if by_rate is None or int(sampling_rate) != sampling_rate:
        return None
    return by_rate.get(filter_key)


def available_filters(sampling_rate: int) -> List[str]:
    """Filter keys with coefficients at ``sampling_rate``."""
    return list(COEFFICIENTS.get(sampling_rate, {}).keys())


def filter_catalog() -> Dict[int, List[str]]:
    """All filter keys grouped by sampling rate."""
    return {rate: list(keys.keys()) for rate, keys in COEFFICIENTS.items()}


def is_known_filter(filter_key: str) -> bool:
    return any(filter_key in keys for keys in COEFFICIENTS.values())


class BiquadCascade:
    """
    Cascade of second-order sections with per-section state.

    Each section runs the direct-form II recurrence:
        x = input - a1*z1 - a2*z2
        output = b0*x + b1*z1 + b2*z2
        z2 = z1; z1 = x
    """

    def __init__(self, sections: Sequence[SectionCoefficients] = ()) -> None:
        self.sections: tuple[SectionCoefficients, ...] = ()
        self.z1: List[float] = []
        self.z2: List[float] = []
        self.set_coefficients(sections)

    def set_coefficients(self, sections: Sequence[SectionCoefficients]) -> None:
        """Replace the sections and zero all state."""
        self.sections = tuple(SectionCoefficients(*s) for s in sections)
        self.z1 = [0.0] * len(self.sections)
        self.z2 = [0.0] * len(self.sections)

    def reset(self) -> None:
        for i in range(len(self.sections)):
            self.z1[i] = 0.0
            self.z2[i] = 0.0

    def process(self, value: float) -> float:
        output = float(value)
        z1 = self.z1
        z2 = self.z2
        for i, s in enumerate(self.sections):
            x = output - s.a1 * z1[i] - s.a2 * z2[i]
            output = s.b0 * x + s.b1 * z1[i] + s.b2 * z2[i]
            z2[i] = z1[i]
            z1[i] = x
        return output

    def process_block(self, values: ArrayLike) -> NDArray[np.float64]:
        """Filter a 1-D block sample by sample, carrying state across calls."""
        data = np.asarray(values, dtype=np.float64).ravel()
        out = np.empty_like(data)
        for i, value in enumerate(data):
            out[i] = self.process(value)
        return out

    @property
    def order(self) -> int:
        return 2 * len(self.sections)


def create_filter_instance(filter_key: str, sampling_rate: Optional[float]) -> Optional[BiquadCascade]:
    """
    Create a cascade for ``filter_key`` at ``sampling_rate``.

    Returns None when the table has no entry for the pair; callers bypass
    filtering for that key.
    """
    sections = lookup_sections(filter_key, sampling_rate)
    if sections is None:
        return None
    return BiquadCascade(sections)


@dataclass
class FilterConfig:
    """Per-channel filter configuration."""
    enabled: bool = True
    filter_keys: tuple[str, ...] = ()
    sampling_rate: Optional[int] = None

    def __post_init__(self) -> None:
        self.filter_keys = tuple(str(k) for k in self.filter_keys)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FilterConfig":
        """Accept both snake_case and camelCase keys."""
        keys = data.get("filter_keys", data.get("filterKeys", ()))
        if isinstance(keys, str):
            keys = (keys,)
        rate = data.get("sampling_rate", data.get("samplingRate"))
        return cls(
            enabled=bool(data.get("enabled", True)),
            filter_keys=tuple(keys or ()),
            sampling_rate=int(rate) if rate else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "filter_keys": list(self.filter_keys),
            "sampling_rate": self.sampling_rate,
        }


@dataclass
class ChannelFilterChain:
    """Ordered cascades for one channel, created once the rate is known."""
    config: FilterConfig
    sampling_rate: Optional[int] = None
    cascades: Dict[str, Optional[BiquadCascade]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._build()

    @property
    def pending(self) -> bool:
        """True while filters are configured but no rate is known yet."""
        return bool(self.config.filter_keys) and not self.sampling_rate

    def _build(self) -> None:
        self.cascades = {}
        if not self.sampling_rate:
            return
        for key in self.config.filter_keys:
            instance = create_filter_instance(key, self.sampling_rate)
            if instance is None:
                logger.warning(
                    "filter_coefficients_missing",
                    filter_key=key,
                    sampling_rate=self.sampling_rate
                )
            self.cascades[key] = instance

    def set_sampling_rate(self, sampling_rate: int) -> None:
        """
        Switch to ``sampling_rate``.

        Existing cascades keep their identity; their coefficients are
        reloaded for the new rate and their state is zeroed.
        """
        if sampling_rate == self.sampling_rate:
            return
        was_pending = not self.sampling_rate
        self.sampling_rate = sampling_rate
        if was_pending:
            self._build()
            return
        for key in self.config.filter_keys:
            sections = lookup_sections(key, sampling_rate)
            existing = self.cascades.get(key)
            if sections is None:
                self.cascades[key] = None
            elif existing is None:
                self.cascades[key] = BiquadCascade(sections)
            else:
                existing.set_coefficients(sections)

    def reset(self) -> None:
        for cascade in self.cascades.values():
            if cascade is not None:
                cascade.reset()

    def process(self, value: float) -> float:
        if not self.config.enabled or not self.cascades:
            return value
        for cascade in self.cascades.values():
            if cascade is not None:
                value = cascade.process(value)
        return value

    def describe(self) -> Dict[str, Any]:
        return {
            **self.config.to_dict(),
            "sampling_rate": self.sampling_rate,
            "pending": self.pending,
            "active_filters": [k for k, c in self.cascades.items() if c is not None],
            "bypassed_filters": [k for k, c in self.cascades.items() if c is None],
        }


class FilterRegistry:
    """
    Per-channel filter chains for one pipeline.

    Thread-safe; the normalizer calls ``process`` for every sample while
    configuration calls may arrive from another thread.
    """

    def __init__(self, max_channels: int = 16, sampling_rate: Optional[int] = None) -> None:
        self.max_channels = max_channels
        self._default_rate: Optional[int] = None
        # Per-channel rates, kept even before a channel has a filter config
        self._channel_rates: Dict[int, int] = {}
        self._chains: Dict[int, ChannelFilterChain] = {}
        self._lock = threading.RLock()
        if sampling_rate:
            self.set_sampling_rate(sampling_rate)

    def _validate_channel(self, channel: int) -> int:
        if isinstance(channel, bool) or not isinstance(channel, (int, np.integer)):
            raise ValidationError(f"Channel index must be an integer, got {channel!r}")
        if not 0 <= int(channel) < self.max_channels:
            raise ValidationError(
                f"Channel index {channel} out of range [0, {self.max_channels})"
            )
        return int(channel)

    @staticmethod
    def _validate_rate(sampling_rate: Any) -> int:
        try:
            rate = int(sampling_rate)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid sampling rate: {sampling_rate!r}") from None
        if rate <= 0:
            raise ValidationError(f"Sampling rate must be positive, got {sampling_rate}")
        return rate

    @property
    def default_sampling_rate(self) -> Optional[int]:
        return self._default_rate

    def configure(self, channel: int, config: FilterConfig) -> bool:
        """
        Apply ``config`` to ``channel``.

        Returns:
            True if the channel's filtering changed
        """
        channel = self._validate_channel(channel)
        for key in config.filter_keys:
            if not is_known_filter(key):
                logger.warning("unknown_filter_key", channel=channel, filter_key=key)

        with self._lock:
            existing = self._chains.get(channel)
            rate = (
                self._validate_rate(config.sampling_rate) if config.sampling_rate
                else (existing.sampling_rate if existing else None)
                or self._channel_rates.get(channel)
                or self._default_rate
            )

            if (
                existing is not None
                and existing.config.filter_keys == config.filter_keys
                and existing.config.enabled == config.enabled
            ):
                changed = rate != existing.sampling_rate
                existing.config = config
                if rate:
                    existing.set_sampling_rate(rate)
                return changed

            self._chains[channel] = ChannelFilterChain(config=config, sampling_rate=rate)

        logger.info(
            "channel_filters_configured",
            channel=channel,
            enabled=config.enabled,
            filter_keys=list(config.filter_keys),
            sampling_rate=rate
        )
        return True

    def configure_many(self, mapping: Mapping[int, Any]) -> List[int]:
        """Configure several channels; values may be FilterConfig or dicts."""
        changed = []
        for channel, config in mapping.items():
            if not isinstance(config, FilterConfig):
                config = FilterConfig.from_dict(config)
            if self.configure(int(channel), config):
                changed.append(int(channel))
        return changed

    def remove(self, channel: int) -> None:
        with self._lock:
            self._chains.pop(channel, None)

    def set_sampling_rate(self, sampling_rate: int, channel: Optional[int] = None) -> List[int]:
        """
        Supply the sampling rate globally or for a single channel.

        Pending filters become active immediately; active filters are reset.

        Returns:
            Channels whose chains were affected
        """
        rate = self._validate_rate(sampling_rate)
        with self._lock:
            if channel is None:
                self._default_rate = rate
                self._channel_rates.clear()
                targets = list(self._chains.items())
            else:
                channel = self._validate_channel(channel)
                self._channel_rates[channel] = rate
                chain = self._chains.get(channel)
                targets = [(channel, chain)] if chain is not None else []

            affected = []
            for idx, chain in targets:
                if chain.sampling_rate != rate:
                    chain.set_sampling_rate(rate)
                    affected.append(idx)

        if affected:
            logger.info("filter_sampling_rate_set", sampling_rate=rate, channels=affected)
        return affected

    def process(self, channel: int, value: float) -> float:
        chain = self._chains.get(channel)
        if chain is None:
            return value
        with self._lock:
            return chain.process(value)

    def reset(self, channel: Optional[int] = None) -> None:
        with self._lock:
            if channel is None:
                for chain in self._chains.values():
                    chain.reset()
            elif channel in self._chains:
                self._chains[channel].reset()

    def get_chain(self, channel: int) -> Optional[ChannelFilterChain]:
        return self._chains.get(channel)

    def channels(self) -> Iterable[int]:
        return sorted(self._chains.keys())

    def describe(self) -> Dict[int, Dict[str, Any]]:
        with self._lock:
            return {ch: chain.describe() for ch, chain in sorted(self._chains.items())}
