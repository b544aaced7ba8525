"""Running statistics over published detection batches."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

import structlog

from detection_overlay.schemas import DetectionBatch, ExportedStats

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DetectionStats:
    """Immutable snapshot of the running statistics.

    ``total_detections`` always equals ``sum(class_counts.values())``.
    """

    total_detections: int = 0
    average_confidence: float = 0.0
    last_detection_time: float = 0.0
    class_counts: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_detections": self.total_detections,
            "average_confidence": self.average_confidence,
            "last_detection_time": self.last_detection_time,
            "class_counts": dict(self.class_counts),
        }

    def to_export(self) -> ExportedStats:
        """Convert to the export document model."""
        return ExportedStats(
            total_detections=self.total_detections,
            average_confidence=self.average_confidence,
            last_detection_time=self.last_detection_time,
            class_counts=dict(self.class_counts),
        )


class DetectionAggregator:
    """Accumulates detection counts and confidence over a session.

    The average confidence is the exact mean over every detection ingested
    since the last reset, not a per-batch mean.

    Example:
        ```python
        aggregator = DetectionAggregator()
        aggregator.ingest(batch)
        stats = aggregator.snapshot()
        print(stats.total_detections, stats.average_confidence)
        ```
    """

    def __init__(self) -> None:
        self._total = 0
        self._average = 0.0
        self._last_detection_time = 0.0
        self._class_counts: dict[str, int] = {}
        self._batches = 0

    @property
    def batches_ingested(self) -> int:
        return self._batches

    def ingest(self, batch: DetectionBatch) -> None:
        """Fold one batch into the running statistics."""
        self._batches += 1
        if batch.is_empty:
            return

        batch_size = len(batch)
        confidence_sum = 0.0
        for detection in batch:
            confidence_sum += detection.confidence
            self._class_counts[detection.label] = self._class_counts.get(detection.label, 0) + 1

        new_total = self._total + batch_size
        if new_total:
            self._average += (confidence_sum - self._average * batch_size) / new_total
        self._total = new_total
        self._last_detection_time = batch.timestamp

        logger.debug(
            "Batch ingested",
            frame_index=batch.frame_index,
            batch_size=batch_size,
            total=self._total,
        )

    def snapshot(self) -> DetectionStats:
        """Return an immutable copy of the current statistics."""
        return DetectionStats(
            total_detections=self._total,
            average_confidence=self._average,
            last_detection_time=self._last_detection_time,
            class_counts=MappingProxyType(dict(self._class_counts)),
        )

    def reset(self) -> None:
        """Zero all statistics."""
        self._total = 0
        self._average = 0.0
        self._last_detection_time = 0.0
        self._class_counts = {}
        self._batches = 0
