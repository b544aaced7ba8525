"""Lifecycle controller binding settings, sources and the scheduler.

The controller is what a host (web API, CLI) talks to. It owns the inference
client for the lifetime of the application and hands it to each session as
a borrow; sessions come and go through start/stop.
"""

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from detection_overlay.config import Settings
from detection_overlay.detection.aggregator import DetectionStats
from detection_overlay.detection.export import build_export_document, write_export
from detection_overlay.detection.frame_source import (
    FrameSource,
    ManualFrameSource,
    VideoCaptureSource,
)
from detection_overlay.detection.inference import InferenceClient, YoloInferenceClient
from detection_overlay.detection.mapper import DisplayBox
from detection_overlay.detection.renderer import OverlayRenderer, encode_jpeg
from detection_overlay.detection.scheduler import (
    ProcessingScheduler,
    SchedulerSettings,
    SchedulerState,
    Session,
)
from detection_overlay.errors import (
    FrameUnavailable,
    InitializationError,
    InvalidStateError,
)
from detection_overlay.schemas import DetectionBatch, ModelMetadata

logger = structlog.get_logger(__name__)

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".bmp", ".webp"}


class DetectionController:
    """Start, pause, stop, reset and export detection sessions.

    Example:
        ```python
        controller = DetectionController(settings)
        await controller.initialize()

        await controller.start("traffic.mp4")
        controller.toggle_pause()
        await controller.stop()
        path = controller.export()

        await controller.shutdown()
        ```
    """

    def __init__(
        self,
        settings: Settings,
        inference_client: InferenceClient | None = None,
        source_factory: Callable[[str], FrameSource] | None = None,
    ):
        """Initialize controller.

        Args:
            settings: Application settings
            inference_client: Client to use instead of a YOLO client built from settings
            source_factory: Builds a frame source from a source string
                            (defaults to image files or VideoCaptureSource)
        """
        self.settings = settings
        self._client: InferenceClient = inference_client or YoloInferenceClient.from_settings(
            settings.inference
        )
        self._source_factory = source_factory or self._default_source
        self._initialized = False
        self._initialization_error: str | None = None

        self._scheduler = self._new_scheduler()
        self._renderer = OverlayRenderer(model_size=settings.inference.input_size)
        self._source: FrameSource | None = None
        self._source_label: str | None = None
        self._owns_source = False
        self._loop_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

        self._latest_stats = DetectionStats()
        self._log = logger.bind(service="controller")

    def _new_scheduler(self) -> ProcessingScheduler:
        processing = self.settings.processing
        return ProcessingScheduler(
            settings=SchedulerSettings(
                refresh_rate=processing.refresh_rate,
                failure_warning_threshold=processing.failure_warning_threshold,
                history_limit=processing.history_limit,
                skip_repeated_frames=processing.skip_repeated_frames,
            ),
            on_stats=self._on_stats,
        )

    def _on_stats(self, stats: DetectionStats) -> None:
        self._latest_stats = stats

    @property
    def scheduler(self) -> ProcessingScheduler:
        return self._scheduler

    @property
    def inference_client(self) -> InferenceClient:
        return self._client

    @property
    def is_ready(self) -> bool:
        """Whether the inference backend loaded successfully."""
        return self._initialized

    @property
    def initialization_error(self) -> str | None:
        return self._initialization_error

    @property
    def state(self) -> SchedulerState:
        return self._scheduler.state

    @property
    def is_active(self) -> bool:
        return self._scheduler.is_active

    @property
    def source(self) -> FrameSource | None:
        return self._source

    @property
    def metadata(self) -> ModelMetadata:
        return self._client.metadata

    @property
    def stats(self) -> DetectionStats:
        return self._latest_stats

    @property
    def latest_batch(self) -> DetectionBatch | None:
        return self._scheduler.latest_batch

    async def initialize(self) -> None:
        """Load the inference backend.

        Raises:
            InitializationError: If the backend cannot be loaded
        """
        if self._initialized:
            return

        load = getattr(self._client, "load", None)
        try:
            if load is not None:
                await asyncio.to_thread(load)
        except InitializationError as e:
            self._initialization_error = str(e)
            self._log.error("Failed to initialize detector", error=str(e))
            raise
        except Exception as e:
            self._initialization_error = str(e)
            self._log.error("Failed to initialize detector", error=str(e))
            raise InitializationError(str(e)) from e

        self._initialized = True
        self._initialization_error = None
        self._log.info("Detector initialized", metadata=self._client.metadata.model_dump())

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------

    async def start(self, source: str | FrameSource | None = None) -> Session:
        """Open a source and start a new session.

        Args:
            source: Source string (file, URL, camera index), a ready FrameSource,
                    or None for the configured default

        Raises:
            InitializationError: If the detector is not loaded
            InvalidStateError: If a session is already running or paused
            FrameUnavailable: If the source produced no frame in time
        """
        async with self._lock:
            if not self._initialized:
                raise InitializationError(
                    self._initialization_error or "Detector not initialized"
                )
            if self._scheduler.is_active:
                raise InvalidStateError("start", self._scheduler.state.value)

            await self._finish_loop()
            await self._close_owned_source()

            if isinstance(source, str) or source is None:
                label = source if source is not None else self.settings.video.source
                frame_source = self._source_factory(label)
                owned = True
            else:
                label = type(source).__name__
                frame_source = source
                owned = False

            if owned and isinstance(frame_source, VideoCaptureSource):
                await self._attach(frame_source)

            session = self._scheduler.start(frame_source, self._client)
            self._source = frame_source
            self._source_label = label
            self._owns_source = owned
            self._latest_stats = session.aggregator.snapshot()
            self._loop_task = asyncio.create_task(self._scheduler.run())

            self._log.info("Detection started", source=label, session_id=session.id)
            return session

    async def _attach(self, source: VideoCaptureSource) -> None:
        """Open a capture source and wait for its first frame."""
        attached = asyncio.Event()
        loop = asyncio.get_running_loop()
        source.on_attach(lambda _s: loop.call_soon_threadsafe(attached.set))
        source.open()

        try:
            await asyncio.wait_for(attached.wait(), timeout=self.settings.video.attach_timeout)
        except asyncio.TimeoutError:
            pass

        if source.current_frame() is None:
            await source.aclose()
            raise FrameUnavailable(f"No frames from video source: {source.source}")

        self._log.info(
            "Video source attached",
            source=str(source.source),
            resolution=source.native_resolution(),
        )

    def pause(self) -> bool:
        return self._scheduler.pause()

    def resume(self) -> bool:
        return self._scheduler.resume()

    def toggle_pause(self) -> SchedulerState:
        """Pause or resume (the host's single pause button)."""
        return self._scheduler.toggle_pause()

    async def stop(self) -> bool:
        """Stop the current session and release its source.

        Returns:
            True if a session was stopped
        """
        async with self._lock:
            stopped = self._scheduler.stop()
            await self._finish_loop()
            await self._close_owned_source()
            if stopped:
                self._log.info("Detection stopped", stats=self._latest_stats.to_dict())
            return stopped

    def reset(self) -> None:
        """Zero statistics and clear the overlay.

        Raises:
            InvalidStateError: If the session has been stopped
        """
        self._scheduler.reset()
        self._latest_stats = self._scheduler.stats()

    async def clear(self) -> None:
        """Stop any session and forget its results (video removed)."""
        await self.stop()
        async with self._lock:
            self._scheduler = self._new_scheduler()
            self._latest_stats = DetectionStats()
        self._log.info("Detection cleared")

    def export(self, output_dir: Path | None = None) -> Path:
        """Write the current session's batches and stats to disk.

        Raises:
            InvalidStateError: If no session has been started
            ExportFailure: If the document cannot be written
        """
        if self._scheduler.session is None:
            raise InvalidStateError("export", "idle")

        export_settings = self.settings.export
        document = build_export_document(
            self._scheduler.history(),
            self._scheduler.stats(),
        )
        return write_export(
            document,
            output_dir=output_dir or export_settings.output_dir,
            prefix=export_settings.filename_prefix,
            indent=export_settings.indent,
        )

    async def shutdown(self) -> None:
        """Stop processing and release the inference backend."""
        await self.stop()
        self._client.dispose()
        self._initialized = False
        self._log.info("Controller shut down")

    # ------------------------------------------------------------------
    # Renderer interface
    # ------------------------------------------------------------------

    def overlay(self) -> tuple[list[DisplayBox], int, int]:
        """Latest batch in native video coordinates, with the video size."""
        width, height = self._source.native_resolution() if self._source else (0, 0)
        return self._renderer.overlay(self.latest_batch, width, height), width, height

    def snapshot_jpeg(self) -> bytes:
        """Current frame with the latest batch drawn on it.

        Raises:
            FrameUnavailable: If there is no frame to draw on
        """
        frame = self._source.current_frame() if self._source else None
        if frame is None:
            raise FrameUnavailable("No frame available")
        return encode_jpeg(self._renderer.draw(frame.image, self.latest_batch))

    def annotate(self, image: Any) -> Any:
        """Draw the latest batch on an arbitrary frame image."""
        return self._renderer.draw(image, self.latest_batch)

    def get_status(self) -> dict[str, Any]:
        """Get controller status for monitoring."""
        status = self._scheduler.get_status()
        status.update(
            {
                "ready": self._initialized,
                "initialization_error": self._initialization_error,
                "source": self._source_label if self._source else None,
                "resolution": (
                    list(self._source.native_resolution()) if self._source else None
                ),
            }
        )
        if isinstance(self._source, VideoCaptureSource):
            status["capture"] = {
                "state": self._source.state.value,
                **self._source.stats.to_dict(),
            }
        return status

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _default_source(self, source: str) -> FrameSource:
        path = Path(source)
        if path.suffix.lower() in IMAGE_SUFFIXES and path.exists():
            return ManualFrameSource.from_image(path)
        return VideoCaptureSource(source, loop=self.settings.video.loop)

    async def _finish_loop(self) -> None:
        task = self._loop_task
        self._loop_task = None
        if task is None:
            return
        if not task.done():
            # The loop exits on its next wake-up once the session is stopped
            try:
                await asyncio.wait_for(task, timeout=1.0)
            except asyncio.TimeoutError:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        elif not task.cancelled() and task.exception() is not None:
            self._log.error("Refresh loop error", error=str(task.exception()))

    async def _close_owned_source(self) -> None:
        source = self._source
        if source is not None and self._owns_source:
            aclose = getattr(source, "aclose", None)
            close = getattr(source, "close", None)
            if aclose is not None:
                await aclose()
            elif close is not None:
                # Closing may join a decode thread; keep it off the loop
                await asyncio.to_thread(close)
        self._source = None
        self._owns_source = False
