"""
Main FastAPI application for the biostream pipeline.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from biostream.api.routes import bandpower, health, outputs, pipeline
from biostream.api.websocket import router as websocket_router
from biostream.core.config import settings
from biostream.core.exceptions import BioStreamError
from biostream.core.logging import get_logger
from biostream.pipeline.bandpower_worker import BandPowerWorker
from biostream.pipeline.channel_data import ChannelDataPipeline
from biostream.pipeline.scheduler import IntervalTickSource

logger = get_logger(__name__)


def create_app(
    channel_pipeline: Optional[ChannelDataPipeline] = None,
    worker: Optional[BandPowerWorker] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        channel_pipeline: Pipeline to serve (created on startup if None)
        worker: Band-power worker to use (created on startup if None)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        """
        Application lifespan handler.
        Runs on startup and shutdown.
        """
        logger.info(
            "application_starting",
            app_name=settings.app_name,
            version=settings.app_version,
            env=settings.env
        )

        app.state.pipeline = channel_pipeline or ChannelDataPipeline(
            tick_source=IntervalTickSource(settings.tick_interval)
        )
        app.state.worker = worker or BandPowerWorker(fft_cache=app.state.pipeline.fft_cache)

        yield

        logger.info("application_shutting_down")
        app.state.pipeline.close()
        app.state.worker.close()

    app = FastAPI(
        title="biostream API",
        description="Streaming biosignal pipeline with band-power analysis",
        version=settings.app_version,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BioStreamError)
    async def biostream_error_handler(request, exc: BioStreamError) -> JSONResponse:
        """Handle custom biostream errors."""
        logger.error(
            "biostream_error",
            error_code=exc.code,
            message=exc.message,
            path=request.url.path
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "code": exc.code,
                    "message": exc.message
                }
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request, exc: Exception) -> JSONResponse:
        """Handle unexpected errors."""
        logger.exception(
            "unexpected_error",
            error_type=type(exc).__name__,
            path=request.url.path
        )

        if settings.is_development:
            content = {
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": str(exc),
                    "type": type(exc).__name__
                }
            }
        else:
            content = {
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred"
                }
            }
        return JSONResponse(status_code=500, content=content)

    app.include_router(health.router, prefix="/api/v1", tags=["health"])
    app.include_router(pipeline.router, prefix="/api/v1", tags=["pipeline"])
    app.include_router(outputs.router, prefix="/api/v1", tags=["outputs"])
    app.include_router(bandpower.router, prefix="/api/v1", tags=["bandpower"])
    app.include_router(websocket_router, tags=["websocket"])

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "app": settings.app_name,
            "version": settings.app_version,
            "status": "running",
            "environment": settings.env,
            "docs": "/docs",
            "api": {
                "health": "/api/v1/health",
                "pipeline": "/api/v1/pipeline/status",
                "outputs": "/api/v1/outputs",
                "bandpower": "/api/v1/bandpower",
                "stream": "/ws/stream",
                "output_stream": "/ws/outputs/{name}"
            }
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "biostream.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower()
    )
