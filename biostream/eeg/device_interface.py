"""
Abstract interface for biosignal connections.

Every data source (simulator, BLE, serial, WiFi) delivers records of raw
ADC counts in the ``{ch0..chN, timestamp?, counter?}`` shape. Byte-level
framing is the concern of each concrete adapter.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from biostream.core.logging import get_logger

if TYPE_CHECKING:
    from biostream.pipeline.channel_data import ChannelDataPipeline

logger = get_logger(__name__)

Record = Dict[str, Any]


class ConnectionAdapter(ABC):
    """
    Abstract base class for connections.

    All sources must implement this interface; ``attach`` and ``pump``
    are shared plumbing into a ``ChannelDataPipeline``.
    """

    @abstractmethod
    def connect(self) -> bool:
        """
        Connect to the device.

        Returns:
            True if connection successful, False otherwise
        """

    @abstractmethod
    def disconnect(self) -> None:
        """Disconnect from the device."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if device is connected."""

    @abstractmethod
    def start_stream(self) -> None:
        """Start streaming data from the device."""

    @abstractmethod
    def stop_stream(self) -> None:
        """Stop streaming data from the device."""

    @abstractmethod
    def read_records(self, n_samples: int = 1) -> List[Record]:
        """
        Read up to ``n_samples`` records.

        Returns:
            Records oldest first; empty when nothing is available
        """

    @abstractmethod
    def get_info(self) -> Dict[str, Any]:
        """Device information (name, channels, sampling rate, etc.)."""

    @property
    @abstractmethod
    def sampling_rate(self) -> int:
        """Device sampling rate in Hz."""

    @property
    @abstractmethod
    def n_channels(self) -> int:
        """Number of channels."""

    @property
    def adc_bits(self) -> Optional[int]:
        """ADC bit-depth, when the device reports one."""
        return None

    @property
    def channel_names(self) -> List[str]:
        return [f"ch{i}" for i in range(self.n_channels)]

    def attach(self, pipeline: "ChannelDataPipeline") -> None:
        """Announce rate, bit-depth and channels to ``pipeline``."""
        pipeline.set_sampling_rate(self.sampling_rate)
        if self.adc_bits is not None:
            pipeline.set_adc_bits(self.adc_bits)
        pipeline.set_registered_channels(range(min(self.n_channels, pipeline.n_channels)))
        logger.info("connection_attached", **self.get_info())

    def pump(self, pipeline: "ChannelDataPipeline", n_samples: int) -> int:
        """
        Move up to ``n_samples`` records into ``pipeline``.

        Returns:
            Number of records accepted
        """
        return pipeline.add_samples(self.read_records(n_samples))
