"""Detection session API routes."""

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request, Response
from pydantic import BaseModel

from detection_overlay.detection.controller import DetectionController
from detection_overlay.detection.renderer import format_label
from detection_overlay.errors import (
    ExportFailure,
    FrameUnavailable,
    InitializationError,
    InvalidStateError,
)
from detection_overlay.schemas import ModelMetadata

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["session"])


def get_controller(request: Request) -> DetectionController:
    """Get the controller stored on the application."""
    return request.app.state.controller


# Request/Response models
class StartRequest(BaseModel):
    """Request to start a detection session."""
    source: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    detector_ready: bool
    error: str | None = None


class LifecycleResponse(BaseModel):
    """Result of a lifecycle operation."""
    state: str
    session_id: str | None = None
    changed: bool = True


class OverlayBox(BaseModel):
    """A detection positioned in native video pixels."""
    x: float
    y: float
    width: float
    height: float
    label: str
    confidence: float
    text: str


class OverlayResponse(BaseModel):
    """What the renderer needs to draw the current frame."""
    state: str
    video_width: int
    video_height: int
    frame_index: int | None
    boxes: list[OverlayBox]


class ExportResponse(BaseModel):
    """Result of an export."""
    path: str
    filename: str
    batches: int
    total_detections: int


def _lifecycle(controller: DetectionController, changed: bool = True) -> LifecycleResponse:
    session = controller.scheduler.session
    return LifecycleResponse(
        state=controller.state.value,
        session_id=session.id if session else None,
        changed=changed,
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Check service health."""
    controller = get_controller(request)
    return HealthResponse(
        status="healthy" if controller.is_ready else "unhealthy",
        detector_ready=controller.is_ready,
        error=controller.initialization_error,
    )


@router.get("/model", response_model=ModelMetadata)
async def model_metadata(request: Request) -> ModelMetadata:
    """Get the loaded model's metadata."""
    controller = get_controller(request)
    if not controller.is_ready:
        raise HTTPException(status_code=503, detail="Detector not initialized")
    return controller.metadata


@router.post("/session/start", response_model=LifecycleResponse)
async def start_session(request: Request, body: StartRequest | None = None) -> LifecycleResponse:
    """Start detection on a source (file path, URL or camera index)."""
    controller = get_controller(request)
    source = body.source if body else None

    try:
        await controller.start(source)
    except InitializationError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except FrameUnavailable as e:
        logger.warning("Source produced no frames", source=source, error=str(e))
        raise HTTPException(status_code=422, detail=str(e)) from e

    return _lifecycle(controller)


@router.post("/session/pause", response_model=LifecycleResponse)
async def pause_session(request: Request) -> LifecycleResponse:
    """Pause detection (no-op unless running)."""
    controller = get_controller(request)
    return _lifecycle(controller, changed=controller.pause())


@router.post("/session/resume", response_model=LifecycleResponse)
async def resume_session(request: Request) -> LifecycleResponse:
    """Resume detection (no-op unless paused)."""
    controller = get_controller(request)
    return _lifecycle(controller, changed=controller.resume())


@router.post("/session/toggle", response_model=LifecycleResponse)
async def toggle_session(request: Request) -> LifecycleResponse:
    """Pause when running, resume when paused."""
    controller = get_controller(request)
    try:
        controller.toggle_pause()
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _lifecycle(controller)


@router.post("/session/stop", response_model=LifecycleResponse)
async def stop_session(request: Request) -> LifecycleResponse:
    """Stop detection; results stay available for export."""
    controller = get_controller(request)
    stopped = await controller.stop()
    return _lifecycle(controller, changed=stopped)


@router.post("/session/reset", response_model=LifecycleResponse)
async def reset_session(request: Request) -> LifecycleResponse:
    """Zero statistics and clear the overlay."""
    controller = get_controller(request)
    try:
        controller.reset()
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _lifecycle(controller)


@router.post("/session/clear", response_model=LifecycleResponse)
async def clear_session(request: Request) -> LifecycleResponse:
    """Stop any session and forget its results."""
    controller = get_controller(request)
    await controller.clear()
    return _lifecycle(controller)


@router.post("/session/export", response_model=ExportResponse)
async def export_session(request: Request) -> ExportResponse:
    """Write the session's batches and final stats to a JSON document."""
    controller = get_controller(request)
    try:
        path = controller.export()
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except ExportFailure as e:
        logger.error("Export request failed", error=str(e))
        raise HTTPException(status_code=500, detail=str(e)) from e

    return ExportResponse(
        path=str(path),
        filename=path.name,
        batches=len(controller.scheduler.history()),
        total_detections=controller.stats.total_detections,
    )


@router.get("/session/status")
async def session_status(request: Request) -> dict[str, Any]:
    """Get state, statistics and the latest batch."""
    return get_controller(request).get_status()


@router.get("/session/stats")
async def session_stats(request: Request) -> dict[str, Any]:
    """Get the running statistics."""
    return get_controller(request).stats.to_dict()


@router.get("/session/overlay", response_model=OverlayResponse)
async def session_overlay(request: Request) -> OverlayResponse:
    """Get the latest batch mapped into native video coordinates."""
    controller = get_controller(request)
    boxes, width, height = controller.overlay()
    latest = controller.latest_batch

    return OverlayResponse(
        state=controller.state.value,
        video_width=width,
        video_height=height,
        frame_index=latest.frame_index if latest else None,
        boxes=[
            OverlayBox(
                x=box.x,
                y=box.y,
                width=box.width,
                height=box.height,
                label=box.label,
                confidence=box.confidence,
                text=format_label(box),
            )
            for box in boxes
        ],
    )


@router.get("/session/snapshot")
async def session_snapshot(request: Request) -> Response:
    """Get the current frame as JPEG with the latest detections drawn on it."""
    controller = get_controller(request)
    try:
        jpeg = controller.snapshot_jpeg()
    except FrameUnavailable as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return Response(content=jpeg, media_type="image/jpeg")
