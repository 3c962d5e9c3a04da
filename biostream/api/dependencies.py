"""
FastAPI dependencies for the app-owned pipeline and band-power worker.
"""

from fastapi.requests import HTTPConnection

from biostream.pipeline.bandpower_worker import BandPowerWorker
from biostream.pipeline.channel_data import ChannelDataPipeline


def get_pipeline(conn: HTTPConnection) -> ChannelDataPipeline:
    return conn.app.state.pipeline


def get_worker(conn: HTTPConnection) -> BandPowerWorker:
    return conn.app.state.worker
