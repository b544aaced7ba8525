"""FastAPI application exposing the detection lifecycle to a host UI."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from detection_overlay import __version__
from detection_overlay.config import Settings, get_settings
from detection_overlay.detection.controller import DetectionController
from detection_overlay.errors import InitializationError
from detection_overlay.logging_config import configure_logging
from detection_overlay.web.routes import session

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Load the detector on startup and release it on shutdown."""
    controller: DetectionController = app.state.controller

    try:
        await controller.initialize()
    except InitializationError as e:
        # Keep serving; lifecycle endpoints answer 503 until restarted
        logger.error("Detector unavailable", error=str(e))

    logger.info("Detection Overlay API started", ready=controller.is_ready)

    yield

    logger.info("Shutting down Detection Overlay API")
    await controller.shutdown()


def create_app(
    settings: Settings | None = None,
    controller: DetectionController | None = None,
) -> FastAPI:
    """Create FastAPI application.

    Args:
        settings: Application settings (loaded from env/config.yaml if None)
        controller: Pre-built controller (built from settings if None)

    Returns:
        FastAPI application
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level, json_logs=settings.json_logs)

    app = FastAPI(
        title="Detection Overlay API",
        description="Real-time object detection overlay for video streams",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.controller = controller or DetectionController(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(session.router, prefix="/api/v1")

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "service": "Detection Overlay API",
            "version": __version__,
            "docs": "/docs",
        }

    return app
