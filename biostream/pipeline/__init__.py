"""
Streaming pipeline: ingestion, batching, fan-out and chained stages.
"""

from biostream.pipeline.bandpower_worker import (
    BandPowerRequest,
    BandPowerResponse,
    BandPowerWorker,
)
from biostream.pipeline.channel_data import ChannelDataPipeline
from biostream.pipeline.diagnostics import CounterMonitor, CounterReport
from biostream.pipeline.fanout import FanOut, Subscription, WidgetOutputStream
from biostream.pipeline.filter_nodes import FilterNodeRegistry
from biostream.pipeline.models import ChannelSample, ControlEvent, SampleBatch
from biostream.pipeline.normalizer import SampleNormalizer
from biostream.pipeline.scheduler import (
    FlushScheduler,
    IntervalTickSource,
    ManualTickSource,
    TickSource,
)
from biostream.pipeline.stages import BandPowerStage, EnvelopeStage

__all__ = [
    "BandPowerRequest",
    "BandPowerResponse",
    "BandPowerWorker",
    "ChannelDataPipeline",
    "CounterMonitor",
    "CounterReport",
    "FanOut",
    "Subscription",
    "WidgetOutputStream",
    "FilterNodeRegistry",
    "ChannelSample",
    "ControlEvent",
    "SampleBatch",
    "SampleNormalizer",
    "FlushScheduler",
    "IntervalTickSource",
    "ManualTickSource",
    "TickSource",
    "BandPowerStage",
    "EnvelopeStage",
]
