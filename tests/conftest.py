"""Shared fixtures for detection overlay tests."""

from __future__ import annotations

import asyncio

import numpy as np
import pytest

from detection_overlay.config import Settings
from detection_overlay.detection.frame_source import Frame, ManualFrameSource
from detection_overlay.errors import InitializationError
from detection_overlay.schemas import Detection, DetectionBatch, ModelMetadata


def make_detection(
    label: str = "car",
    confidence: float = 0.9,
    x: float = 10.0,
    y: float = 20.0,
    width: float = 100.0,
    height: float = 50.0,
) -> Detection:
    """Build a detection in model input space."""
    return Detection(
        x=x, y=y, width=width, height=height, confidence=confidence, label=label
    )


def make_image(width: int = 320, height: int = 240) -> np.ndarray:
    """Blank BGR image."""
    return np.zeros((height, width, 3), dtype=np.uint8)


async def settle(rounds: int = 5) -> None:
    """Let pending tasks run to their next suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class StubInferenceClient:
    """Inference client returning fixed detections.

    When ``gate`` is given, every call waits for it to be set, which lets a
    test hold a call in flight.
    """

    def __init__(
        self,
        detections: list[Detection] | None = None,
        gate: asyncio.Event | None = None,
        error: Exception | None = None,
        fail_load: bool = False,
    ):
        self.detections = detections if detections is not None else [make_detection()]
        self.gate = gate
        self.error = error
        self.fail_load = fail_load
        self.frames: list[Frame] = []
        self.loaded = False
        self.dispose_calls = 0

    @property
    def calls(self) -> int:
        return len(self.frames)

    @property
    def metadata(self) -> ModelMetadata:
        return ModelMetadata(
            input_size=(640, 640),
            classes=["car", "person"],
            confidence_threshold=0.5,
            nms_threshold=0.45,
        )

    def load(self) -> None:
        if self.fail_load:
            raise InitializationError("weights not found")
        self.loaded = True

    async def detect(self, frame: Frame) -> DetectionBatch:
        self.frames.append(frame)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return DetectionBatch.from_detections(self.detections, frame.index, frame.timestamp)

    def dispose(self) -> None:
        self.dispose_calls += 1


class ListInferenceClient(StubInferenceClient):
    """Client that returns a bare list of detections."""

    async def detect(self, frame: Frame) -> list[Detection]:  # type: ignore[override]
        self.frames.append(frame)
        return list(self.detections)


class SyncRaisingClient(StubInferenceClient):
    """Client whose detect raises before returning an awaitable."""

    def detect(self, frame: Frame):  # type: ignore[override]
        self.frames.append(frame)
        raise RuntimeError("backend crashed")


@pytest.fixture
def frame_source() -> ManualFrameSource:
    """Frame source holding one 320x240 frame."""
    return ManualFrameSource(make_image())


@pytest.fixture
def stub_client() -> StubInferenceClient:
    return StubInferenceClient()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with exports going to a temporary directory."""
    return Settings(
        export={"output_dir": tmp_path / "exports"},
        processing={"refresh_rate": 200.0},
        video={"attach_timeout": 2.0},
    )
