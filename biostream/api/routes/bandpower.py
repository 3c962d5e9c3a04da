"""
Band-power analysis endpoint.
"""

import asyncio
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from biostream.api.dependencies import get_worker
from biostream.core.logging import get_logger
from biostream.pipeline.bandpower_worker import BandPowerRequest, BandPowerWorker

logger = get_logger(__name__)

router = APIRouter()


class BandPowerRequestModel(BaseModel):
    """Signal window and analysis parameters."""
    signal: List[float] = Field(..., description="Samples, oldest first")
    sample_rate: float = Field(500, gt=0, alias="sampleRate")
    fft_size: int = Field(256, ge=2, le=65536, alias="fftSize")
    smoother_window: int = Field(128, ge=1, alias="smootherWindow")
    method: Literal["direct", "welch"] = "direct"
    segment_length: Optional[int] = Field(None, ge=4, alias="segmentLength")
    stream: str = Field("default", min_length=1, description="Smoother key; windows of one stream share a trend")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "signal": [0.0, 0.12, 0.25, 0.1],
                "sampleRate": 500,
                "fftSize": 256,
                "smootherWindow": 128,
                "method": "welch"
            }
        }
    )


@router.post("/bandpower")
async def compute_bandpower(
    request: BandPowerRequestModel,
    worker: BandPowerWorker = Depends(get_worker)
):
    """
    Reduce a signal window to delta..gamma band powers.

    Runs on the worker thread; the response carries raw, relative and
    smoothed relative powers, plus dB for the Welch method.
    """
    job = BandPowerRequest(
        signal=request.signal,
        sample_rate=request.sample_rate,
        fft_size=request.fft_size,
        smoother_window=request.smoother_window,
        method=request.method,
        segment_length=request.segment_length,
        stream=request.stream,
    )
    response = await asyncio.wrap_future(worker.submit(job))
    logger.debug("bandpower_computed", method=request.method, n_samples=len(request.signal))
    return response.to_dict()
