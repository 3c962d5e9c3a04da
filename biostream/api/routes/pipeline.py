"""
Pipeline configuration and ingestion endpoints.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from biostream.api.dependencies import get_pipeline
from biostream.core.logging import get_logger
from biostream.pipeline.channel_data import ChannelDataPipeline
from biostream.signal_processing.filters import FilterConfig, filter_catalog

logger = get_logger(__name__)

router = APIRouter(prefix="/pipeline")


# Request models
class SamplesRequest(BaseModel):
    """Raw records to ingest."""
    records: List[Dict[str, Any]] = Field(..., description="Records shaped {ch0..chN, timestamp?, counter?}")
    flush: bool = Field(False, description="Flush immediately instead of waiting for the next tick")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "records": [{"ch0": 8200, "ch1": 8150, "counter": 17}],
                "flush": False
            }
        }
    )


class ChannelsRequest(BaseModel):
    """Active channel selection; either zero-based indices or channel-N node ids."""
    channels: Optional[List[int]] = None
    channel_ids: Optional[List[str]] = Field(None, alias="channelIds")

    model_config = ConfigDict(populate_by_name=True)


class FilterConfigModel(BaseModel):
    """Filter chain for one channel."""
    enabled: bool = True
    filter_keys: List[str] = Field(default_factory=list, alias="filterKeys")
    sampling_rate: Optional[int] = Field(None, gt=0, alias="samplingRate")

    model_config = ConfigDict(populate_by_name=True)

    def to_config(self) -> FilterConfig:
        return FilterConfig(
            enabled=self.enabled,
            filter_keys=tuple(self.filter_keys),
            sampling_rate=self.sampling_rate,
        )


class FiltersRequest(BaseModel):
    """Map of zero-based channel index to filter chain."""
    filters: Dict[int, FilterConfigModel]

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "filters": {"0": {"enabled": True, "filterKeys": ["hp-0.5", "notch-50"]}}
            }
        }
    )


class SamplingRateRequest(BaseModel):
    sampling_rate: int = Field(..., gt=0, alias="samplingRate")
    channel: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)


class AdcBitsRequest(BaseModel):
    bits: Optional[int] = Field(None, ge=1, le=32, description="None reverts to inferred full-scale")
    channel: Optional[int] = None


@router.get("/status")
async def pipeline_status(pipeline: ChannelDataPipeline = Depends(get_pipeline)):
    """Counters, configuration and subscriber state of the pipeline."""
    return pipeline.stats()


@router.post("/samples")
async def ingest_samples(
    request: SamplesRequest,
    pipeline: ChannelDataPipeline = Depends(get_pipeline)
):
    """Ingest raw records; malformed fields are read as 0."""
    accepted = pipeline.add_samples(request.records)
    flushed = 0
    if request.flush:
        batch = pipeline.flush()
        flushed = len(batch) if batch is not None else 0

    return {
        "accepted": accepted,
        "flushed": flushed,
        "pending": pipeline.scheduler.pending_count,
    }


@router.put("/channels")
async def set_channels(
    request: ChannelsRequest,
    pipeline: ChannelDataPipeline = Depends(get_pipeline)
):
    """Replace the registered channel set."""
    if request.channel_ids is not None:
        registered = pipeline.set_channel_ids(request.channel_ids)
    else:
        registered = pipeline.set_registered_channels(request.channels or [])
    return {"channels": registered}


@router.put("/filters")
async def configure_filters(
    request: FiltersRequest,
    pipeline: ChannelDataPipeline = Depends(get_pipeline)
):
    """Configure per-channel filter chains; changed channels have their buffers reset."""
    changed = pipeline.configure_filters(
        {channel: model.to_config() for channel, model in request.filters.items()}
    )
    return {"changed": changed, "filters": pipeline.filters.describe()}


@router.get("/filters/catalog")
async def get_filter_catalog():
    """Filter keys available per sampling rate."""
    return {"rates": filter_catalog()}


@router.put("/sampling-rate")
async def set_sampling_rate(
    request: SamplingRateRequest,
    pipeline: ChannelDataPipeline = Depends(get_pipeline)
):
    affected = pipeline.set_sampling_rate(request.sampling_rate, request.channel)
    return {
        "sampling_rate": request.sampling_rate,
        "channel": request.channel,
        "affected_channels": affected,
    }


@router.put("/adc-bits")
async def set_adc_bits(
    request: AdcBitsRequest,
    pipeline: ChannelDataPipeline = Depends(get_pipeline)
):
    pipeline.set_adc_bits(request.bits, request.channel)
    return {"bits": request.bits, "channel": request.channel}


@router.get("/buffers/{channel}")
async def get_buffer(
    channel: int,
    last: Optional[int] = None,
    pipeline: ChannelDataPipeline = Depends(get_pipeline)
):
    """Chronological contents of one channel's circular buffer."""
    data = pipeline.get_buffer(channel)
    if data is None:
        raise HTTPException(status_code=404, detail=f"Channel {channel} is not registered")
    if last is not None:
        data = data[-last:] if last > 0 else data[:0]
    return {
        "channel": channel,
        "capacity": pipeline.buffers.capacity,
        "samples": data.tolist(),
    }


@router.delete("/buffers")
async def clear_buffers(pipeline: ChannelDataPipeline = Depends(get_pipeline)):
    """Drop pending samples, buffered history and filter state."""
    discarded = pipeline.clear_samples()
    return {"cleared": True, "discarded": discarded}


@router.get("/snapshot")
async def get_snapshot(pipeline: ChannelDataPipeline = Depends(get_pipeline)):
    """Recent samples as of the last throttled refresh."""
    return {"samples": pipeline.snapshot()}
