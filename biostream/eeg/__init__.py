"""
Connection adapters and simulator.
"""

from biostream.eeg.device_interface import ConnectionAdapter
from biostream.eeg.simulator import SimulatedConnection

__all__ = [
    "ConnectionAdapter",
    "SimulatedConnection",
]
