"""Inference clients wrapping the detection backend.

The scheduler only ever sees the InferenceClient protocol: one async
``detect(frame)`` per frame and an idempotent ``dispose()``. Boxes are
reported in model input space; the renderer maps them to display space.
"""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Any, Literal, Protocol, runtime_checkable

import numpy as np
import structlog

from detection_overlay.config import InferenceSettings
from detection_overlay.detection.frame_source import Frame
from detection_overlay.errors import InferenceFailure, InitializationError
from detection_overlay.schemas import Detection, DetectionBatch, ModelMetadata

logger = structlog.get_logger(__name__)


@runtime_checkable
class InferenceClient(Protocol):
    """Contract between the scheduler and a detection backend."""

    @property
    def metadata(self) -> ModelMetadata:
        """Declared model properties (input size, classes, thresholds)."""
        ...

    async def detect(self, frame: Frame) -> DetectionBatch:
        """Run detection on one frame. May raise."""
        ...

    def dispose(self) -> None:
        """Release backend resources. Safe to call more than once."""
        ...


class YoloInferenceClient:
    """Object detector backed by an Ultralytics YOLOv8 model.

    Prediction runs in the default thread pool so the event loop keeps
    ticking while a frame is being processed.

    Example:
        ```python
        client = YoloInferenceClient(model_path="yolov8n.pt")
        client.load()

        batch = await client.detect(frame)
        for det in batch:
            print(det.label, det.confidence)

        client.dispose()
        ```
    """

    def __init__(
        self,
        model_path: str = "yolov8n.pt",
        input_size: tuple[int, int] = (640, 640),
        confidence_threshold: float = 0.5,
        nms_threshold: float = 0.45,
        device: Literal["auto", "cuda", "cpu"] = "auto",
        classes: list[str] | None = None,
    ):
        """Initialize the client.

        Args:
            model_path: Path to YOLO weights or model name (e.g. "yolov8n.pt").
                       Will auto-download if not found locally.
            input_size: Model input (width, height); boxes are reported in this space.
            confidence_threshold: Minimum confidence for detections (0-1).
            nms_threshold: IoU threshold for NMS.
            device: Inference device ("auto", "cuda", or "cpu").
            classes: Only report these labels (None or empty = all).
        """
        self.model_path = model_path
        self.input_size = input_size
        self.confidence_threshold = confidence_threshold
        self.nms_threshold = nms_threshold
        self.device = device
        self.classes = list(classes or [])

        self._model: Any = None
        self._names: dict[int, str] = {}
        self._class_ids: list[int] | None = None
        self._resolved_device: str | None = None
        self._disposed = False
        # One predict at a time, including calls left running by a cancelled detect
        self._predict_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: InferenceSettings) -> YoloInferenceClient:
        """Create a client from inference settings."""
        return cls(
            model_path=settings.weights,
            input_size=settings.input_size,
            confidence_threshold=settings.confidence_threshold,
            nms_threshold=settings.nms_threshold,
            device=settings.device,
            classes=settings.classes,
        )

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    @property
    def resolved_device(self) -> str | None:
        """Get the resolved device (after loading)."""
        return self._resolved_device

    @property
    def metadata(self) -> ModelMetadata:
        return ModelMetadata(
            input_size=self.input_size,
            classes=[self._names[k] for k in sorted(self._names)],
            confidence_threshold=self.confidence_threshold,
            nms_threshold=self.nms_threshold,
        )

    def load(self) -> None:
        """Load the YOLO model.

        Raises:
            InitializationError: If the backend or the weights cannot be loaded
        """
        if self._model is not None:
            return

        try:
            from ultralytics import YOLO
        except ImportError as e:
            raise InitializationError(
                "ultralytics package required. Install with: pip install ultralytics"
            ) from e

        logger.info("Loading detection model", model=self.model_path)

        try:
            model = YOLO(self.model_path)
        except Exception as e:
            raise InitializationError(
                f"Failed to load model {self.model_path}: {e}"
            ) from e

        if self.device == "auto":
            import torch

            self._resolved_device = "cuda" if torch.cuda.is_available() else "cpu"
        else:
            self._resolved_device = self.device

        self._names = {int(k): str(v) for k, v in dict(model.names).items()}

        if self.classes:
            by_name = {name: idx for idx, name in self._names.items()}
            unknown = [c for c in self.classes if c not in by_name]
            if unknown:
                raise InitializationError(f"Unknown class labels: {unknown}")
            self._class_ids = [by_name[c] for c in self.classes]
        else:
            self._class_ids = None

        self._model = model
        self._disposed = False

        logger.info(
            "Detection model loaded",
            model=self.model_path,
            device=self._resolved_device,
            num_classes=len(self._names),
        )

    async def detect(self, frame: Frame) -> DetectionBatch:
        """Detect objects in a frame.

        Raises:
            InferenceFailure: If the client was disposed
        """
        if self._disposed:
            raise InferenceFailure("Inference client has been disposed")
        if self._model is None:
            self.load()

        start = time.perf_counter()
        loop = asyncio.get_running_loop()
        detections = await loop.run_in_executor(None, self._predict, frame.image)
        elapsed_ms = (time.perf_counter() - start) * 1000

        return DetectionBatch.from_detections(
            detections,
            frame_index=frame.index,
            timestamp=frame.timestamp,
            processing_time_ms=elapsed_ms,
        )

    def _predict(self, image: np.ndarray) -> list[Detection]:
        """Blocking prediction; returns boxes scaled into model input space."""
        img_h, img_w = image.shape[:2]
        in_w, in_h = self.input_size
        scale_x = in_w / img_w
        scale_y = in_h / img_h

        with self._predict_lock:
            model = self._model
            if model is None:
                raise InferenceFailure("Inference client has been disposed")
            results = model.predict(
                source=image,
                imgsz=(in_h, in_w),
                conf=self.confidence_threshold,
                iou=self.nms_threshold,
                classes=self._class_ids,
                device=self._resolved_device,
                verbose=False,
            )

        detections: list[Detection] = []

        for result in results:
            if result.boxes is None:
                continue

            boxes = result.boxes
            for i in range(len(boxes)):
                cls_id = int(boxes.cls[i].item())
                conf = float(boxes.conf[i].item())
                x1, y1, x2, y2 = boxes.xyxy[i].tolist()

                detections.append(
                    Detection(
                        x=max(0.0, x1 * scale_x),
                        y=max(0.0, y1 * scale_y),
                        width=max(0.0, (x2 - x1) * scale_x),
                        height=max(0.0, (y2 - y1) * scale_y),
                        confidence=min(1.0, max(0.0, conf)),
                        label=self._names.get(cls_id, str(cls_id)),
                    )
                )

        logger.debug(
            "Detection complete",
            num_detections=len(detections),
            image_size=f"{img_w}x{img_h}",
        )

        return detections

    def dispose(self) -> None:
        """Release the model."""
        if self._disposed:
            return
        self._disposed = True
        if self._model is not None:
            logger.info("Disposing detection model", model=self.model_path)
            self._model = None
