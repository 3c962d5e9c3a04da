"""
Health check endpoints.
"""

from fastapi import APIRouter, Depends

from biostream.api.dependencies import get_pipeline, get_worker
from biostream.core.config import Settings, get_settings
from biostream.pipeline.bandpower_worker import BandPowerWorker
from biostream.pipeline.channel_data import ChannelDataPipeline

router = APIRouter()


@router.get("/health")
async def health_check(
    pipeline: ChannelDataPipeline = Depends(get_pipeline),
    worker: BandPowerWorker = Depends(get_worker),
    config: Settings = Depends(get_settings)
):
    """
    System health check endpoint.

    Reports whether the pipeline and band-power worker are still running,
    plus the counters most useful when a stream looks wrong.
    """
    running = not pipeline.closed and not worker.closed
    return {
        "status": "healthy" if running else "degraded",
        "app_name": config.app_name,
        "version": config.app_version,
        "environment": config.env,
        "components": {
            "pipeline": "closed" if pipeline.closed else "running",
            "bandpower_worker": "closed" if worker.closed else "running",
            "registered_channels": pipeline.registered_channels,
            "pending_samples": pipeline.scheduler.pending_count,
            "missing_samples": pipeline.counters.total_missing,
            "rejected_reentrant": pipeline.rejected,
        }
    }
