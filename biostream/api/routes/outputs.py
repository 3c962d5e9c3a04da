"""
Widget-output stream endpoints.
"""

from typing import List, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from biostream.api.dependencies import get_pipeline
from biostream.pipeline.channel_data import ChannelDataPipeline

router = APIRouter(prefix="/outputs")


class PublishRequest(BaseModel):
    """Frames to append, oldest first."""
    frames: List[Union[float, List[float]]] = Field(..., description="Scalar or vector frames")


@router.get("")
async def list_outputs(pipeline: ChannelDataPipeline = Depends(get_pipeline)):
    return {"outputs": pipeline.fanout.output_names()}


@router.get("/{name}")
async def get_output(name: str, pipeline: ChannelDataPipeline = Depends(get_pipeline)):
    """Bounded history of a named output (empty if nothing was published)."""
    return {"name": name, "frames": pipeline.get_widget_output(name)}


@router.post("/{name}")
async def publish_output(
    name: str,
    request: PublishRequest,
    pipeline: ChannelDataPipeline = Depends(get_pipeline)
):
    pipeline.fanout.publish_outputs(name, request.frames)
    return {"name": name, "published": len(request.frames)}
