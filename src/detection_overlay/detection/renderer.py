"""Overlay rendering of the latest detection batch."""

from __future__ import annotations

import cv2
import numpy as np
import structlog

from detection_overlay.detection.mapper import CoordinateMapper, DisplayBox
from detection_overlay.schemas import DetectionBatch

logger = structlog.get_logger(__name__)


def format_label(box: DisplayBox) -> str:
    """Label drawn next to a box, e.g. ``car 87.5%``."""
    return f"{box.label} {box.confidence * 100:.1f}%"


class OverlayRenderer:
    """Positions detections on the video and draws them.

    Example:
        ```python
        renderer = OverlayRenderer(model_size=(640, 640))
        boxes = renderer.overlay(batch, 1920, 1080)
        annotated = renderer.draw(frame.image, batch)
        ```
    """

    def __init__(
        self,
        model_size: tuple[int, int],
        box_color: tuple[int, int, int] = (0, 255, 0),  # Green in BGR
        box_thickness: int = 2,
        font_scale: float = 0.5,
    ):
        self.model_size = model_size
        self.box_color = box_color
        self.box_thickness = box_thickness
        self.font_scale = font_scale

    def overlay(
        self,
        batch: DetectionBatch | None,
        video_width: int,
        video_height: int,
    ) -> list[DisplayBox]:
        """Map a batch into native video coordinates."""
        if batch is None or video_width <= 0 or video_height <= 0:
            return []
        mapper = CoordinateMapper(self.model_size, (video_width, video_height))
        return mapper.map_batch(batch)

    def draw(self, image: np.ndarray, batch: DetectionBatch | None) -> np.ndarray:
        """Return a copy of ``image`` with boxes and labels drawn on it."""
        annotated = image.copy()
        height, width = annotated.shape[:2]

        for box in self.overlay(batch, width, height):
            x1, y1, x2, y2 = box.to_pixel_coords()
            cv2.rectangle(annotated, (x1, y1), (x2, y2), self.box_color, self.box_thickness)

            label = format_label(box)
            (text_w, text_h), _ = cv2.getTextSize(
                label, cv2.FONT_HERSHEY_SIMPLEX, self.font_scale, 1
            )
            # Keep the label inside the frame when the box touches the top edge
            label_top = max(y1 - text_h - 8, 0)
            cv2.rectangle(
                annotated,
                (x1, label_top),
                (x1 + text_w, label_top + text_h + 8),
                self.box_color,
                -1,
            )
            cv2.putText(
                annotated,
                label,
                (x1, label_top + text_h + 3),
                cv2.FONT_HERSHEY_SIMPLEX,
                self.font_scale,
                (0, 0, 0),
                1,
            )

        return annotated


def encode_jpeg(image: np.ndarray, quality: int = 85) -> bytes:
    """Encode a BGR image as JPEG.

    Raises:
        ValueError: If OpenCV cannot encode the image
    """
    ok, buffer = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        raise ValueError("Failed to encode JPEG")
    return buffer.tobytes()
