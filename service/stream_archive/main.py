"""Stream Archive Service - Main entry point."""

import logging
import shutil

import uvicorn
from fastapi import FastAPI
from contextlib import asynccontextmanager

from stream_archive.api.routes import router
from stream_archive.archiver import Archiver
from stream_archive.config import settings
from stream_archive.logging_config import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    configure_logging(settings.log_level, settings.log_file)
    if shutil.which(settings.ffmpeg_path) is None:
        logger.error("%s not found - you need to install FFmpeg on your system", settings.ffmpeg_path)
        raise RuntimeError(f"ffmpeg executable not found: {settings.ffmpeg_path}")

    app.state.archiver = Archiver(settings)
    await app.state.archiver.start()
    yield
    # Shutdown
    await app.state.archiver.stop()


app = FastAPI(
    title="Stream Archive Service",
    description="Continuous segmented recording with per-stream retention",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(router, prefix="/api")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "stream-archive"}


def main():
    """Run the service."""
    uvicorn.run(
        "stream_archive.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=None,
    )


if __name__ == "__main__":
    main()
