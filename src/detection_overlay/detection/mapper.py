"""Mapping detection boxes from model input space to display space.

Each axis is scaled independently, which matches a stretch resize during
preprocessing. A backend that letterboxes instead would need a different
mapping; mixing the two shifts boxes without raising anything.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from detection_overlay.schemas import Detection, DetectionBatch


@dataclass(frozen=True)
class DisplayBox:
    """A detection positioned in display pixels."""

    x: float
    y: float
    width: float
    height: float
    label: str
    confidence: float

    def to_pixel_coords(self) -> tuple[int, int, int, int]:
        """Return (x_min, y_min, x_max, y_max) as integer pixels."""
        return (
            int(round(self.x)),
            int(round(self.y)),
            int(round(self.x + self.width)),
            int(round(self.y + self.height)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "class": self.label,
            "confidence": self.confidence,
        }


def _check_size(name: str, size: tuple[float, float]) -> None:
    if size[0] <= 0 or size[1] <= 0:
        raise ValueError(f"{name} must be positive, got {size[0]}x{size[1]}")


def map_to_display(
    detection: Detection,
    model_size: tuple[float, float],
    display_size: tuple[float, float],
) -> DisplayBox:
    """Scale a detection from model input space into display space.

    Args:
        detection: Detection in model input pixels
        model_size: Model input (width, height)
        display_size: Native display (width, height)

    Raises:
        ValueError: If either size is not positive
    """
    _check_size("model_size", model_size)
    _check_size("display_size", display_size)

    model_w, model_h = model_size
    display_w, display_h = display_size

    # Multiply before dividing so the full model extent lands exactly on the
    # full display extent
    return DisplayBox(
        x=detection.x * display_w / model_w,
        y=detection.y * display_h / model_h,
        width=detection.width * display_w / model_w,
        height=detection.height * display_h / model_h,
        label=detection.label,
        confidence=detection.confidence,
    )


class CoordinateMapper:
    """Maps whole batches for a fixed model and display size."""

    def __init__(self, model_size: tuple[float, float], display_size: tuple[float, float]):
        _check_size("model_size", model_size)
        _check_size("display_size", display_size)
        self.model_size = model_size
        self.display_size = display_size

    @property
    def scale(self) -> tuple[float, float]:
        """Per-axis (scale_x, scale_y)."""
        return (
            self.display_size[0] / self.model_size[0],
            self.display_size[1] / self.model_size[1],
        )

    def map(self, detection: Detection) -> DisplayBox:
        return map_to_display(detection, self.model_size, self.display_size)

    def map_batch(self, batch: DetectionBatch | None) -> list[DisplayBox]:
        if batch is None:
            return []
        return [self.map(d) for d in batch]
