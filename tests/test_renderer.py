"""Tests for overlay rendering."""

from __future__ import annotations

import numpy as np
import pytest

from conftest import make_detection, make_image
from detection_overlay.detection.mapper import DisplayBox
from detection_overlay.detection.renderer import OverlayRenderer, encode_jpeg, format_label
from detection_overlay.schemas import DetectionBatch


@pytest.fixture
def renderer() -> OverlayRenderer:
    return OverlayRenderer(model_size=(640, 640))


@pytest.fixture
def batch() -> DetectionBatch:
    return DetectionBatch.from_detections(
        [make_detection("car", 0.875, x=64, y=64, width=128, height=128)],
        frame_index=0,
        timestamp=0.0,
    )


class TestOverlayRenderer:
    """Tests for OverlayRenderer."""

    def test_overlay_maps_to_video_size(self, renderer, batch) -> None:
        boxes = renderer.overlay(batch, 320, 240)

        assert len(boxes) == 1
        box = boxes[0]
        assert box.x == pytest.approx(32)
        assert box.y == pytest.approx(24)
        assert box.width == pytest.approx(64)
        assert box.height == pytest.approx(48)

    def test_overlay_without_batch_or_video(self, renderer, batch) -> None:
        assert renderer.overlay(None, 320, 240) == []
        assert renderer.overlay(batch, 0, 0) == []

    def test_draw_returns_annotated_copy(self, renderer, batch) -> None:
        image = make_image(320, 240)

        annotated = renderer.draw(image, batch)

        assert annotated.shape == image.shape
        assert annotated.any()
        assert not image.any()

    def test_draw_without_batch_is_unchanged(self, renderer) -> None:
        image = make_image(320, 240)

        annotated = renderer.draw(image, None)

        assert np.array_equal(annotated, image)


class TestFormatting:
    """Tests for labels and encoding."""

    def test_format_label(self) -> None:
        box = DisplayBox(x=0, y=0, width=1, height=1, label="car", confidence=0.875)

        assert format_label(box) == "car 87.5%"

    def test_encode_jpeg(self) -> None:
        data = encode_jpeg(make_image(32, 32))

        assert data[:2] == b"\xff\xd8"
