"""Tests for the detection controller."""

from __future__ import annotations

import asyncio
import json
import threading
import time

import pytest

from conftest import StubInferenceClient, make_detection, make_image
from detection_overlay.config import Settings
from detection_overlay.detection.controller import DetectionController
from detection_overlay.detection.frame_source import ManualFrameSource
from detection_overlay.detection.scheduler import SchedulerState
from detection_overlay.errors import (
    FrameUnavailable,
    InitializationError,
    InvalidStateError,
)


async def wait_for_batch(controller: DetectionController, timeout: float = 2.0) -> None:
    """Wait until the running session has published a batch."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while controller.latest_batch is None:
        if loop.time() > deadline:
            raise AssertionError("No batch published")
        await asyncio.sleep(0.01)


@pytest.fixture
def client() -> StubInferenceClient:
    return StubInferenceClient(
        detections=[make_detection("car", 0.9), make_detection("person", 0.5)]
    )


@pytest.fixture
async def controller(settings: Settings, client: StubInferenceClient):
    controller = DetectionController(
        settings,
        inference_client=client,
        source_factory=lambda _source: ManualFrameSource(make_image()),
    )
    await controller.initialize()
    yield controller
    await controller.shutdown()


class TestInitialization:
    """Tests for detector initialization."""

    @pytest.mark.asyncio
    async def test_initialize_loads_client(self, settings, client) -> None:
        controller = DetectionController(settings, inference_client=client)

        await controller.initialize()

        assert controller.is_ready
        assert client.loaded
        assert controller.metadata.input_size == (640, 640)

    @pytest.mark.asyncio
    async def test_initialize_failure(self, settings) -> None:
        controller = DetectionController(
            settings, inference_client=StubInferenceClient(fail_load=True)
        )

        with pytest.raises(InitializationError):
            await controller.initialize()

        assert not controller.is_ready
        assert controller.initialization_error == "weights not found"

    @pytest.mark.asyncio
    async def test_start_before_initialize_rejected(self, settings, client) -> None:
        controller = DetectionController(settings, inference_client=client)

        with pytest.raises(InitializationError):
            await controller.start(ManualFrameSource(make_image()))

        assert controller.state is SchedulerState.IDLE


class TestSessionLifecycle:
    """Tests for start, pause, stop and reset through the controller."""

    @pytest.mark.asyncio
    async def test_start_publishes_batches(self, controller) -> None:
        session = await controller.start("street.mp4")

        await wait_for_batch(controller)

        assert controller.state is SchedulerState.RUNNING
        assert controller.scheduler.session is session
        assert controller.stats.total_detections == 2
        assert dict(controller.stats.class_counts) == {"car": 1, "person": 1}

    @pytest.mark.asyncio
    async def test_start_with_frame_source(self, controller) -> None:
        source = ManualFrameSource(make_image())

        await controller.start(source)

        assert controller.source is source

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, controller) -> None:
        await controller.start("a.mp4")

        with pytest.raises(InvalidStateError):
            await controller.start("b.mp4")

    @pytest.mark.asyncio
    async def test_toggle_and_stop(self, controller) -> None:
        await controller.start("a.mp4")

        assert controller.toggle_pause() is SchedulerState.PAUSED
        assert controller.toggle_pause() is SchedulerState.RUNNING
        assert await controller.stop() is True

        assert controller.state is SchedulerState.STOPPED
        assert controller.source is None
        assert await controller.stop() is False

    @pytest.mark.asyncio
    async def test_stop_closes_owned_source_off_loop(self, settings, client) -> None:
        class SlowClosingSource(ManualFrameSource):
            closed_on: threading.Thread | None = None

            def close(self) -> None:
                time.sleep(0.2)
                self.closed_on = threading.current_thread()

        source = SlowClosingSource(make_image())
        controller = DetectionController(
            settings, inference_client=client, source_factory=lambda _source: source
        )
        await controller.initialize()
        await controller.start("a.mp4")

        ticks = 0
        done = asyncio.Event()

        async def ticker() -> None:
            nonlocal ticks
            while not done.is_set():
                ticks += 1
                await asyncio.sleep(0.01)

        task = asyncio.create_task(ticker())
        await controller.stop()
        done.set()
        await task
        await controller.shutdown()

        assert source.closed_on is not None
        assert source.closed_on is not threading.main_thread()
        assert ticks >= 5

    @pytest.mark.asyncio
    async def test_stop_awaits_async_close(self, settings, client) -> None:
        class AsyncClosingSource(ManualFrameSource):
            aclose_calls = 0

            async def aclose(self) -> None:
                self.aclose_calls += 1

        source = AsyncClosingSource(make_image())
        controller = DetectionController(
            settings, inference_client=client, source_factory=lambda _source: source
        )
        await controller.initialize()
        await controller.start("a.mp4")

        await controller.stop()
        await controller.shutdown()

        assert source.aclose_calls == 1

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, controller) -> None:
        first = await controller.start("a.mp4")
        await controller.stop()

        second = await controller.start("b.mp4")

        assert second.id != first.id
        assert controller.state is SchedulerState.RUNNING

    @pytest.mark.asyncio
    async def test_reset(self, controller) -> None:
        await controller.start("a.mp4")
        await wait_for_batch(controller)
        controller.pause()

        controller.reset()

        assert controller.state is SchedulerState.PAUSED
        assert controller.stats.total_detections == 0
        assert controller.latest_batch is None

    @pytest.mark.asyncio
    async def test_reset_after_stop_rejected(self, controller) -> None:
        await controller.start("a.mp4")
        await controller.stop()

        with pytest.raises(InvalidStateError):
            controller.reset()

    @pytest.mark.asyncio
    async def test_clear_forgets_session(self, controller) -> None:
        await controller.start("a.mp4")
        await wait_for_batch(controller)

        await controller.clear()

        assert controller.state is SchedulerState.IDLE
        assert controller.scheduler.session is None
        assert controller.stats.total_detections == 0

    @pytest.mark.asyncio
    async def test_shutdown_disposes_client(self, settings, client) -> None:
        controller = DetectionController(settings, inference_client=client)
        await controller.initialize()

        await controller.shutdown()
        await controller.shutdown()

        assert client.dispose_calls == 2
        assert not controller.is_ready


class TestExport:
    """Tests for exporting through the controller."""

    @pytest.mark.asyncio
    async def test_export_without_session_rejected(self, controller) -> None:
        with pytest.raises(InvalidStateError):
            controller.export()

    @pytest.mark.asyncio
    async def test_export_after_stop(self, controller, settings) -> None:
        await controller.start("a.mp4")
        await wait_for_batch(controller)
        await controller.stop()

        path = controller.export()

        assert path.parent == settings.export.output_dir
        assert path.name.startswith("object-detections-")
        data = json.loads(path.read_text())
        assert data["stats"]["totalDetections"] == 2
        assert data["detections"][0]["detections"][0]["class"] == "car"


class TestRendering:
    """Tests for the renderer-facing helpers."""

    @pytest.mark.asyncio
    async def test_overlay_in_video_coordinates(self, controller) -> None:
        await controller.start("a.mp4")
        await wait_for_batch(controller)

        boxes, width, height = controller.overlay()

        assert (width, height) == (320, 240)
        assert len(boxes) == 2
        assert boxes[0].x == pytest.approx(10 * 320 / 640)

    @pytest.mark.asyncio
    async def test_overlay_without_session(self, controller) -> None:
        assert controller.overlay() == ([], 0, 0)

    @pytest.mark.asyncio
    async def test_snapshot_jpeg(self, controller) -> None:
        await controller.start("a.mp4")
        await wait_for_batch(controller)

        data = controller.snapshot_jpeg()

        assert data[:2] == b"\xff\xd8"

    @pytest.mark.asyncio
    async def test_snapshot_without_frame(self, controller) -> None:
        with pytest.raises(FrameUnavailable):
            controller.snapshot_jpeg()

    @pytest.mark.asyncio
    async def test_status(self, controller) -> None:
        await controller.start("a.mp4")

        status = controller.get_status()

        assert status["state"] == "running"
        assert status["ready"] is True
        assert status["source"] == "a.mp4"
        assert status["resolution"] == [320, 240]
