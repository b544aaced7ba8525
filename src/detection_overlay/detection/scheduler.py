"""Processing scheduler: the pull → infer → publish cycle.

All work interleaves on one asyncio event loop. Each tick makes a single
scheduling decision; the inference call is the only thing that suspends, and
it is held as a task the scheduler polls rather than awaits. At most one call
is in flight per session, so a slow model lowers the processed frame rate
instead of building a queue.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from detection_overlay.detection.aggregator import DetectionAggregator, DetectionStats
from detection_overlay.detection.frame_source import Frame, FrameSource
from detection_overlay.detection.inference import InferenceClient
from detection_overlay.errors import InferenceFailure, InvalidStateError
from detection_overlay.schemas import Detection, DetectionBatch

logger = structlog.get_logger(__name__)


class SchedulerState(str, Enum):
    """Scheduler lifecycle state."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass
class SchedulerSettings:
    """Settings for the processing scheduler."""

    refresh_rate: float = 60.0  # Ticks per second
    failure_warning_threshold: int = 3
    history_limit: int | None = None
    skip_repeated_frames: bool = True  # Never submit the same frame index twice


# None means the overlay was cleared
BatchCallback = Callable[[DetectionBatch | None], None]
StatsCallback = Callable[[DetectionStats], None]


@dataclass
class Session:
    """One run of the pipeline, from start to stop.

    Owns its aggregator and scheduling state; the frame source and inference
    client are borrowed and dropped on release.
    """

    frame_source: FrameSource | None
    inference_client: InferenceClient | None
    aggregator: DetectionAggregator = field(default_factory=DetectionAggregator)
    history_limit: int | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: float = field(default_factory=time.time)
    stopped_at: float | None = None

    latest_batch: DetectionBatch | None = None
    history: deque[DetectionBatch] = field(init=False)

    # In-flight inference
    in_flight: asyncio.Task | None = None
    in_flight_frame: Frame | None = None
    in_flight_generation: int = -1
    last_frame_index: int | None = None

    # Counters
    ticks: int = 0
    frames_submitted: int = 0
    frames_skipped: int = 0
    batches_published: int = 0
    inference_failures: int = 0
    consecutive_failures: int = 0
    results_discarded: int = 0
    warning: str | None = None

    def __post_init__(self) -> None:
        self.history = deque(maxlen=self.history_limit)

    @property
    def is_released(self) -> bool:
        return self.frame_source is None and self.inference_client is None

    @property
    def has_in_flight(self) -> bool:
        return self.in_flight is not None

    def clear_results(self) -> None:
        """Drop statistics, the displayed batch and the export history."""
        self.aggregator.reset()
        self.latest_batch = None
        self.history.clear()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        end = self.stopped_at or time.time()
        return {
            "id": self.id,
            "started_at": self.started_at,
            "stopped_at": self.stopped_at,
            "runtime": round(end - self.started_at, 1),
            "ticks": self.ticks,
            "frames_submitted": self.frames_submitted,
            "frames_skipped": self.frames_skipped,
            "batches_published": self.batches_published,
            "inference_failures": self.inference_failures,
            "consecutive_failures": self.consecutive_failures,
            "results_discarded": self.results_discarded,
            "in_flight": self.has_in_flight,
            "warning": self.warning,
        }


def _consume_abandoned(task: asyncio.Task) -> None:
    """Retrieve the outcome of an abandoned task so asyncio does not warn."""
    if not task.cancelled():
        task.exception()


class ProcessingScheduler:
    """Drives frame pulls, inference and publication for one session at a time.

    Example:
        ```python
        scheduler = ProcessingScheduler(on_batch=draw, on_stats=show_stats)
        scheduler.start(frame_source, inference_client)
        loop_task = asyncio.create_task(scheduler.run())

        scheduler.pause()
        scheduler.resume()
        scheduler.stop()
        await loop_task
        ```
    """

    def __init__(
        self,
        settings: SchedulerSettings | None = None,
        on_batch: BatchCallback | None = None,
        on_stats: StatsCallback | None = None,
    ):
        """Initialize scheduler.

        Args:
            settings: Scheduler settings (uses defaults if None)
            on_batch: Called with every published batch (None when cleared)
            on_stats: Called with a fresh stats snapshot after every change
        """
        self.settings = settings or SchedulerSettings()
        self.on_batch = on_batch
        self.on_stats = on_stats

        self._state = SchedulerState.IDLE
        self._session: Session | None = None
        # Bumped on every start and stop; results from an older generation are dropped
        self._generation = 0

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_active(self) -> bool:
        """Running or paused."""
        return self._state in (SchedulerState.RUNNING, SchedulerState.PAUSED)

    @property
    def latest_batch(self) -> DetectionBatch | None:
        return self._session.latest_batch if self._session else None

    def stats(self) -> DetectionStats:
        """Snapshot of the current session's statistics."""
        if self._session is None:
            return DetectionStats()
        return self._session.aggregator.snapshot()

    def history(self) -> list[DetectionBatch]:
        """All batches published in the current session (oldest first)."""
        if self._session is None:
            return []
        return list(self._session.history)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, frame_source: FrameSource, inference_client: InferenceClient) -> Session:
        """Create a new session and begin processing.

        Raises:
            InvalidStateError: If a session is running or paused
        """
        if self.is_active:
            raise InvalidStateError("start", self._state.value)

        if self._session is not None:
            self._release(self._session)

        self._generation += 1
        session = Session(
            frame_source=frame_source,
            inference_client=inference_client,
            history_limit=self.settings.history_limit,
        )
        self._session = session
        self._state = SchedulerState.RUNNING

        logger.info(
            "Session started",
            session_id=session.id,
            generation=self._generation,
            resolution=frame_source.native_resolution(),
        )
        return session

    def pause(self) -> bool:
        """Stop submitting new frames. In-flight work still completes.

        Returns:
            True if the state changed
        """
        if self._state is not SchedulerState.RUNNING:
            return False
        self._state = SchedulerState.PAUSED
        logger.info("Session paused", session_id=self._session.id)
        return True

    def resume(self) -> bool:
        """Resume submitting frames.

        Returns:
            True if the state changed
        """
        if self._state is not SchedulerState.PAUSED:
            return False
        self._state = SchedulerState.RUNNING
        logger.info("Session resumed", session_id=self._session.id)
        return True

    def toggle_pause(self) -> SchedulerState:
        """Pause when running, resume when paused."""
        if self._state is SchedulerState.RUNNING:
            self.pause()
        elif self._state is SchedulerState.PAUSED:
            self.resume()
        else:
            raise InvalidStateError("toggle pause", self._state.value)
        return self._state

    def stop(self) -> bool:
        """End the session, abandoning any in-flight inference.

        Returns:
            True if a session was stopped
        """
        if not self.is_active:
            return False

        session = self._session
        self._generation += 1
        self._state = SchedulerState.STOPPED
        self._release(session)

        logger.info(
            "Session stopped",
            session_id=session.id,
            stats=session.aggregator.snapshot().to_dict(),
            **{k: v for k, v in session.to_dict().items() if k.startswith("frames_")},
        )
        return True

    def reset(self) -> None:
        """Clear statistics and the displayed batch without changing state.

        Raises:
            InvalidStateError: If the session has been stopped
        """
        if self._state is SchedulerState.STOPPED:
            raise InvalidStateError("reset", self._state.value)
        if self._session is None:
            return

        self._session.clear_results()
        logger.info("Session reset", session_id=self._session.id)
        self._notify(None, self._session.aggregator.snapshot())

    def _release(self, session: Session) -> None:
        """Cancel in-flight work and drop the borrowed collaborators."""
        task = session.in_flight
        if task is not None:
            if not task.done():
                task.cancel()
            task.add_done_callback(_consume_abandoned)
            session.results_discarded += 1
            logger.debug("In-flight inference abandoned", session_id=session.id)

        session.in_flight = None
        session.in_flight_frame = None
        session.frame_source = None
        session.inference_client = None
        if session.stopped_at is None:
            session.stopped_at = time.time()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Tick at the refresh rate until the current session stops."""
        session = self._session
        if session is None:
            raise InvalidStateError("run", self._state.value)

        interval = 1.0 / self.settings.refresh_rate

        # Everything logged from this task carries the session id
        with structlog.contextvars.bound_contextvars(loop_session=session.id):
            logger.debug("Refresh loop started", interval=interval)

            while self._session is session and self.is_active:
                self.tick()
                await asyncio.sleep(interval)

            logger.debug("Refresh loop ended", ticks=session.ticks)

    def tick(self) -> None:
        """Make one scheduling decision. Never blocks."""
        session = self._session
        if session is None or session.is_released:
            return

        session.ticks += 1
        self._harvest(session)

        if self._state is not SchedulerState.RUNNING:
            return
        if session.in_flight is not None:
            return

        frame = session.frame_source.current_frame()
        if frame is None:
            session.frames_skipped += 1
            return
        if self.settings.skip_repeated_frames and frame.index == session.last_frame_index:
            return

        self._submit(session, frame)

    def _submit(self, session: Session, frame: Frame) -> None:
        session.frames_submitted += 1
        session.last_frame_index = frame.index

        try:
            task = asyncio.ensure_future(session.inference_client.detect(frame))
        except Exception as e:
            self._publish(session, self._record_failure(session, frame, e))
            return

        session.in_flight = task
        session.in_flight_frame = frame
        session.in_flight_generation = self._generation

        logger.debug(
            "Frame submitted",
            session_id=session.id,
            frame_index=frame.index,
        )

    def _harvest(self, session: Session) -> None:
        """Publish the in-flight result if it has completed."""
        task = session.in_flight
        if task is None or not task.done():
            return

        frame = session.in_flight_frame
        generation = session.in_flight_generation
        session.in_flight = None
        session.in_flight_frame = None

        if generation != self._generation or self._state is SchedulerState.STOPPED:
            _consume_abandoned(task)
            session.results_discarded += 1
            logger.debug("Discarded stale inference result", session_id=session.id)
            return

        if task.cancelled():
            session.results_discarded += 1
            return

        try:
            batch = self._coerce_batch(task.result(), frame)
        except Exception as e:
            batch = self._record_failure(session, frame, e)
        else:
            if session.consecutive_failures:
                logger.info(
                    "Inference recovered",
                    session_id=session.id,
                    after_failures=session.consecutive_failures,
                )
            session.consecutive_failures = 0
            session.warning = None

        self._publish(session, batch)

    def _record_failure(
        self,
        session: Session,
        frame: Frame,
        error: BaseException,
    ) -> DetectionBatch:
        """Log a failed call and substitute an empty batch."""
        failure = error if isinstance(error, InferenceFailure) else InferenceFailure(str(error))
        session.inference_failures += 1
        session.consecutive_failures += 1

        logger.error(
            "Inference failed",
            session_id=session.id,
            frame_index=frame.index,
            error=str(failure),
            error_type=type(error).__name__,
        )

        threshold = self.settings.failure_warning_threshold
        if session.consecutive_failures >= threshold:
            session.warning = (
                f"{session.consecutive_failures} consecutive inference failures"
            )
            if session.consecutive_failures == threshold:
                logger.warning(
                    "Inference keeps failing",
                    session_id=session.id,
                    consecutive_failures=session.consecutive_failures,
                )

        return DetectionBatch.empty(frame.index, frame.timestamp)

    @staticmethod
    def _coerce_batch(
        result: DetectionBatch | Sequence[Detection],
        frame: Frame,
    ) -> DetectionBatch:
        """Accept either a batch or a bare list of detections from a client."""
        if isinstance(result, DetectionBatch):
            return result
        if isinstance(result, (list, tuple)):
            if not all(isinstance(d, Detection) for d in result):
                raise InferenceFailure("Inference client returned non-Detection items")
            return DetectionBatch.from_detections(result, frame.index, frame.timestamp)
        raise InferenceFailure(
            f"Inference client returned unsupported type: {type(result).__name__}"
        )

    def _publish(self, session: Session, batch: DetectionBatch) -> None:
        """Replace the displayed batch and fold it into the statistics."""
        session.latest_batch = batch
        session.history.append(batch)
        session.aggregator.ingest(batch)
        session.batches_published += 1

        logger.debug(
            "Batch published",
            session_id=session.id,
            frame_index=batch.frame_index,
            detections=len(batch),
        )
        self._notify(batch, session.aggregator.snapshot())

    def _notify(self, batch: DetectionBatch | None, stats: DetectionStats) -> None:
        if self.on_batch:
            try:
                self.on_batch(batch)
            except Exception as e:
                logger.error("Batch callback error", error=str(e))
        if self.on_stats:
            try:
                self.on_stats(stats)
            except Exception as e:
                logger.error("Stats callback error", error=str(e))

    def get_status(self) -> dict[str, Any]:
        """Get scheduler status for monitoring."""
        latest = self.latest_batch
        return {
            "state": self._state.value,
            "generation": self._generation,
            "session": self._session.to_dict() if self._session else None,
            "stats": self.stats().to_dict(),
            "latest_batch": latest.to_dict() if latest else None,
        }
