"""Tests for the YOLO inference client."""

from __future__ import annotations

import asyncio
import sys
import threading
import time
import types
from unittest.mock import MagicMock

import numpy as np
import pytest

from conftest import make_image
from detection_overlay.config import InferenceSettings
from detection_overlay.detection.frame_source import Frame
from detection_overlay.detection.inference import InferenceClient, YoloInferenceClient
from detection_overlay.errors import InferenceFailure, InitializationError


class FakeTensor:
    """Just enough of a torch tensor for box parsing."""

    def __init__(self, values):
        self._values = np.asarray(values, dtype=float)

    def __getitem__(self, i):
        return FakeTensor(self._values[i])

    def item(self) -> float:
        return float(self._values)

    def tolist(self):
        return self._values.tolist()


class FakeBoxes:
    def __init__(self, xyxy, conf, cls):
        self.xyxy = FakeTensor(xyxy)
        self.conf = FakeTensor(conf)
        self.cls = FakeTensor(cls)

    def __len__(self) -> int:
        return len(self.conf._values)


@pytest.fixture
def fake_yolo(monkeypatch):
    """Install a fake ultralytics module and return the model mock."""
    model = MagicMock()
    model.names = {0: "person", 1: "bicycle", 2: "car"}
    model.predict.return_value = [
        types.SimpleNamespace(
            boxes=FakeBoxes(
                xyxy=[[32.0, 24.0, 96.0, 72.0], [0.0, 0.0, 320.0, 240.0]],
                conf=[0.9, 0.6],
                cls=[2, 0],
            )
        )
    ]

    module = types.ModuleType("ultralytics")
    module.YOLO = MagicMock(return_value=model)
    monkeypatch.setitem(sys.modules, "ultralytics", module)
    return model


@pytest.fixture
def frame() -> Frame:
    return Frame(image=make_image(320, 240), index=7, timestamp=1234.5)


class TestYoloInferenceClient:
    """Tests for YoloInferenceClient."""

    def test_satisfies_protocol(self) -> None:
        assert isinstance(YoloInferenceClient(), InferenceClient)

    def test_from_settings(self) -> None:
        settings = InferenceSettings(
            weights="custom.onnx",
            input_width=416,
            input_height=320,
            confidence_threshold=0.3,
            device="cpu",
            classes=["car"],
        )

        client = YoloInferenceClient.from_settings(settings)

        assert client.model_path == "custom.onnx"
        assert client.input_size == (416, 320)
        assert client.confidence_threshold == 0.3
        assert client.classes == ["car"]

    def test_load(self, fake_yolo) -> None:
        client = YoloInferenceClient(device="cpu")

        client.load()

        assert client.is_loaded
        assert client.resolved_device == "cpu"
        assert client.metadata.classes == ["person", "bicycle", "car"]

    def test_load_failure_raises_initialization_error(self, monkeypatch) -> None:
        module = types.ModuleType("ultralytics")
        module.YOLO = MagicMock(side_effect=FileNotFoundError("missing.pt"))
        monkeypatch.setitem(sys.modules, "ultralytics", module)

        client = YoloInferenceClient(model_path="missing.pt", device="cpu")

        with pytest.raises(InitializationError):
            client.load()
        assert not client.is_loaded

    def test_unknown_class_filter_rejected(self, fake_yolo) -> None:
        client = YoloInferenceClient(device="cpu", classes=["unicorn"])

        with pytest.raises(InitializationError):
            client.load()

    def test_class_filter_passed_to_model(self, fake_yolo, frame) -> None:
        client = YoloInferenceClient(device="cpu", classes=["car", "person"])
        client.load()

        client._predict(frame.image)

        assert fake_yolo.predict.call_args.kwargs["classes"] == [2, 0]

    @pytest.mark.asyncio
    async def test_detect_reports_model_space(self, fake_yolo, frame) -> None:
        """Boxes from a 320x240 frame are scaled into the 640x640 input."""
        client = YoloInferenceClient(device="cpu", input_size=(640, 640))
        client.load()

        batch = await client.detect(frame)

        assert batch.frame_index == 7
        assert batch.timestamp == 1234.5
        assert len(batch) == 2

        car, person = batch.detections
        assert car.label == "car"
        assert car.confidence == pytest.approx(0.9)
        assert car.x == pytest.approx(64)
        assert car.y == pytest.approx(64)
        assert car.width == pytest.approx(128)
        assert car.height == pytest.approx(128)
        assert (person.width, person.height) == (pytest.approx(640), pytest.approx(640))

        kwargs = fake_yolo.predict.call_args.kwargs
        assert kwargs["imgsz"] == (640, 640)
        assert kwargs["conf"] == 0.5
        assert kwargs["iou"] == 0.45

    @pytest.mark.asyncio
    async def test_detect_after_dispose_fails(self, fake_yolo, frame) -> None:
        client = YoloInferenceClient(device="cpu")
        client.load()
        client.dispose()

        with pytest.raises(InferenceFailure):
            await client.detect(frame)

    def test_dispose_is_idempotent(self, fake_yolo) -> None:
        client = YoloInferenceClient(device="cpu")
        client.load()

        client.dispose()
        client.dispose()

        assert not client.is_loaded

    def test_dispose_before_load(self) -> None:
        YoloInferenceClient().dispose()

    @pytest.mark.asyncio
    async def test_cancelled_detect_does_not_overlap_next_predict(
        self, fake_yolo, frame
    ) -> None:
        """Stopping a session abandons the executor call; the next one must wait."""
        guard = threading.Lock()
        active = 0
        max_active = 0
        results = fake_yolo.predict.return_value

        def slow_predict(**kwargs):
            nonlocal active, max_active
            with guard:
                active += 1
                max_active = max(max_active, active)
            time.sleep(0.2)
            with guard:
                active -= 1
            return results

        fake_yolo.predict.side_effect = slow_predict
        client = YoloInferenceClient(device="cpu")
        client.load()

        abandoned = asyncio.create_task(client.detect(frame))
        await asyncio.sleep(0.05)
        abandoned.cancel()
        with pytest.raises(asyncio.CancelledError):
            await abandoned

        batch = await client.detect(frame)

        assert len(batch) == 2
        assert fake_yolo.predict.call_count == 2
        assert max_active == 1
