"""Frame sources for the detection pipeline.

A frame source answers one question without blocking: "what is the latest
decoded frame right now?". Whether the pixels come from a video file, a
camera or a still image is hidden behind the same pull interface.
"""

import asyncio
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

# Suppress FFmpeg decoder chatter before importing cv2
os.environ.setdefault("OPENCV_FFMPEG_LOGLEVEL", "-8")  # AV_LOG_QUIET

import cv2
import numpy as np
import structlog
from PIL import Image

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Frame:
    """A decoded frame (BGR numpy array) and where it came from."""

    image: np.ndarray
    index: int
    timestamp: float  # Unix timestamp at decode time

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])


@runtime_checkable
class FrameSource(Protocol):
    """Pull interface the scheduler reads frames through."""

    def current_frame(self) -> Frame | None:
        """Return the latest decoded frame, or None if nothing is available."""
        ...

    def native_resolution(self) -> tuple[int, int]:
        """Return the (width, height) of the source."""
        ...


class ManualFrameSource:
    """Frame source whose content is pushed by the caller.

    Used for still images and for driving the pipeline from code.

    Example:
        ```python
        source = ManualFrameSource.from_image("street.jpg")
        frame = source.current_frame()
        ```
    """

    def __init__(self, image: np.ndarray | None = None):
        self._lock = threading.Lock()
        self._frame: Frame | None = None
        self._next_index = 0
        self._resolution = (0, 0)
        if image is not None:
            self.push(image)

    @classmethod
    def from_image(cls, path: Path | str) -> "ManualFrameSource":
        """Load a still image from disk."""
        with Image.open(path) as img:
            rgb = np.array(img.convert("RGB"))
        return cls(cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR))

    def push(self, image: np.ndarray, timestamp: float | None = None) -> Frame:
        """Replace the current frame."""
        with self._lock:
            frame = Frame(
                image=image,
                index=self._next_index,
                timestamp=time.time() if timestamp is None else timestamp,
            )
            self._next_index += 1
            self._frame = frame
            self._resolution = (frame.width, frame.height)
        return frame

    def clear(self) -> None:
        """Drop the current frame (subsequent pulls return None)."""
        with self._lock:
            self._frame = None

    def current_frame(self) -> Frame | None:
        with self._lock:
            return self._frame

    def native_resolution(self) -> tuple[int, int]:
        return self._resolution


class CaptureState(str, Enum):
    """State of a capture source."""

    CLOSED = "closed"
    OPENING = "opening"
    PLAYING = "playing"
    ENDED = "ended"
    ERROR = "error"


@dataclass
class CaptureStats:
    """Statistics for frame decoding."""

    frames_decoded: int = 0
    frames_pulled: int = 0
    frames_overwritten: int = 0
    errors: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def uptime(self) -> float:
        """Get uptime in seconds."""
        return time.time() - self.start_time

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "frames_decoded": self.frames_decoded,
            "frames_pulled": self.frames_pulled,
            "frames_overwritten": self.frames_overwritten,
            "errors": self.errors,
            "uptime_seconds": round(self.uptime, 1),
        }


AttachCallback = Callable[["VideoCaptureSource"], None]


class VideoCaptureSource:
    """Decodes a video file, stream URL or camera into a single latest-frame slot.

    A background thread keeps decoding; only the newest frame is kept, so a
    slow consumer skips frames instead of queueing them. Files are paced at
    their native frame rate so they play back in real time.

    Attach callbacks fire exactly once, from the decode thread: when the first
    frame is available, or when the source fails before producing one (the
    state is then ENDED or ERROR).

    Example:
        ```python
        source = VideoCaptureSource("traffic.mp4")
        source.on_attach(lambda s: print("ready", s.native_resolution()))
        source.open()
        await source.wait_attached(timeout=10.0)
        frame = source.current_frame()
        await source.aclose()
        ```
    """

    def __init__(self, source: str | int, loop: bool = False):
        """Initialize capture source.

        Args:
            source: File path, stream URL or camera index ("0" is treated as 0)
            loop: Restart files at the end instead of ending
        """
        if isinstance(source, str) and source.isdigit():
            source = int(source)
        self.source = source
        self.loop = loop

        self._state = CaptureState.CLOSED
        self._stats = CaptureStats()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._attached = threading.Event()
        self._attach_callbacks: list[AttachCallback] = []
        self._thread: threading.Thread | None = None

        self._frame: Frame | None = None
        self._frame_consumed = True
        self._width = 0
        self._height = 0
        self._source_fps = 0.0

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def stats(self) -> CaptureStats:
        return self._stats

    @property
    def is_live(self) -> bool:
        """Camera indices and URLs are live, file paths are not."""
        return isinstance(self.source, int) or "://" in str(self.source)

    @property
    def source_fps(self) -> float:
        return self._source_fps

    @property
    def has_ended(self) -> bool:
        return self._state in (CaptureState.ENDED, CaptureState.ERROR)

    def on_attach(self, callback: AttachCallback) -> None:
        """Register a callback for when the first frame has been decoded.

        Registering after attachment calls the callback immediately.
        """
        with self._lock:
            if not self._attached.is_set():
                self._attach_callbacks.append(callback)
                return
        callback(self)

    def open(self) -> None:
        """Start decoding in a background thread.

        Raises:
            RuntimeError: If already open
        """
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("Capture source already open")

        logger.info("Opening video source", source=str(self.source))

        self._stop_event.clear()
        self._attached.clear()
        self._stats = CaptureStats()
        self._state = CaptureState.OPENING
        self._thread = threading.Thread(
            target=self._capture_loop,
            name=f"VideoCaptureSource-{str(self.source)[:30]}",
            daemon=True,
        )
        self._thread.start()

    async def wait_attached(self, timeout: float | None = None) -> bool:
        """Wait until the first frame is decoded.

        Returns:
            True if attached, False on timeout or if the source failed first
        """
        attached = await asyncio.to_thread(self._attached.wait, timeout)
        return attached and self._frame is not None

    def close(self) -> None:
        """Stop decoding and release the capture device."""
        self._stop_event.set()
        self._attached.set()  # Unblock waiters
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=2.0)
            if self._thread.is_alive():
                logger.warning("Capture thread still running after close")
        self._thread = None
        with self._lock:
            self._frame = None
        self._state = CaptureState.CLOSED
        logger.info("Video source closed", source=str(self.source), stats=self._stats.to_dict())

    async def aclose(self) -> None:
        """Close without blocking the event loop on a stalled decoder."""
        self._stop_event.set()
        await asyncio.to_thread(self.close)

    def __enter__(self) -> "VideoCaptureSource":
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def current_frame(self) -> Frame | None:
        with self._lock:
            if self._state is not CaptureState.PLAYING:
                return None
            if self._frame is not None and not self._frame_consumed:
                self._frame_consumed = True
                self._stats.frames_pulled += 1
            return self._frame

    def native_resolution(self) -> tuple[int, int]:
        return (self._width, self._height)

    def _fire_attach(self) -> None:
        with self._lock:
            callbacks = self._attach_callbacks
            self._attach_callbacks = []
            self._attached.set()

        for callback in callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.error("Attach callback error", error=str(e))

    def _capture_loop(self) -> None:
        """Decode loop running in its own thread."""
        log = logger.bind(source=str(self.source))
        cap = None
        try:
            cap = cv2.VideoCapture(self.source)
            if not cap.isOpened():
                raise ConnectionError("Failed to open video source")

            self._width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
            self._height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
            self._source_fps = cap.get(cv2.CAP_PROP_FPS) or 30.0
            if self.is_live:
                cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

            frame_interval = 0.0 if self.is_live else 1.0 / self._source_fps
            index = 0
            consecutive_failures = 0

            log.info(
                "Video source opened",
                resolution=f"{self._width}x{self._height}",
                fps=self._source_fps,
            )

            while not self._stop_event.is_set():
                read_start = time.monotonic()
                ret, image = cap.read()

                if not ret or image is None:
                    if not self.is_live:
                        if self.loop and index > 0:
                            cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
                            continue
                        log.info("Video ended", frames=index)
                        self._state = CaptureState.ENDED
                        break
                    consecutive_failures += 1
                    if consecutive_failures > 30:
                        raise ConnectionError("Too many consecutive read failures")
                    time.sleep(0.01)
                    continue

                consecutive_failures = 0
                frame = Frame(image=image, index=index, timestamp=time.time())
                index += 1

                with self._lock:
                    if not self._frame_consumed:
                        self._stats.frames_overwritten += 1
                    self._frame = frame
                    self._frame_consumed = False
                    self._stats.frames_decoded += 1
                    if self._state is CaptureState.OPENING:
                        self._state = CaptureState.PLAYING
                        self._width, self._height = frame.width, frame.height

                if not self._attached.is_set():
                    self._fire_attach()

                if frame_interval:
                    remaining = frame_interval - (time.monotonic() - read_start)
                    if remaining > 0:
                        self._stop_event.wait(remaining)

        except Exception as e:
            self._stats.errors += 1
            self._state = CaptureState.ERROR
            log.error("Video source error", error=str(e))

        finally:
            if cap is not None:
                cap.release()
            # Nobody should wait forever on a source that never produced a frame
            if not self._attached.is_set():
                self._fire_attach()

        log.debug("Capture loop exiting")
