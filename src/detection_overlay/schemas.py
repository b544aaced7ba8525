"""Shared data models and schemas."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Detection(BaseModel):
    """A single detected object in model input space (pixels).

    Immutable; two detections are equal when all their fields are equal.
    The label is exposed as ``label`` and serialized as ``class``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    x: float = Field(ge=0.0, description="Left edge (model pixels)")
    y: float = Field(ge=0.0, description="Top edge (model pixels)")
    width: float = Field(ge=0.0, description="Box width (model pixels)")
    height: float = Field(ge=0.0, description="Box height (model pixels)")
    confidence: float = Field(ge=0.0, le=1.0, description="Detection confidence")
    label: str = Field(alias="class", description="Class label")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary using the wire field names."""
        return self.model_dump(by_alias=True)


@dataclass(frozen=True)
class DetectionBatch:
    """Detections produced by one inference call on one frame.

    A published batch replaces the previous one, batches are never merged.
    """

    detections: tuple[Detection, ...]
    frame_index: int
    timestamp: float  # Unix timestamp of the source frame
    processing_time_ms: float = 0.0

    @classmethod
    def from_detections(
        cls,
        detections: Sequence[Detection],
        frame_index: int,
        timestamp: float,
        processing_time_ms: float = 0.0,
    ) -> DetectionBatch:
        """Build a batch from any sequence of detections."""
        return cls(
            detections=tuple(detections),
            frame_index=frame_index,
            timestamp=timestamp,
            processing_time_ms=processing_time_ms,
        )

    @classmethod
    def empty(cls, frame_index: int, timestamp: float) -> DetectionBatch:
        """Batch with no detections."""
        return cls(detections=(), frame_index=frame_index, timestamp=timestamp)

    @property
    def is_empty(self) -> bool:
        return not self.detections

    def __len__(self) -> int:
        return len(self.detections)

    def __iter__(self) -> Iterator[Detection]:
        return iter(self.detections)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "frame_index": self.frame_index,
            "timestamp": self.timestamp,
            "processing_time_ms": round(self.processing_time_ms, 2),
            "detections": [d.to_dict() for d in self.detections],
        }


class ModelMetadata(BaseModel):
    """Declared properties of the loaded detection model."""

    input_size: tuple[int, int] = Field(description="Model input (width, height)")
    classes: list[str] = Field(default_factory=list, description="Class labels")
    confidence_threshold: float = Field(ge=0.0, le=1.0)
    nms_threshold: float = Field(ge=0.0, le=1.0)


class _CamelModel(BaseModel):
    """Base for exported documents, serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExportedBatch(_CamelModel):
    """One published batch inside an export document."""

    frame_index: int
    timestamp: float
    detections: list[Detection]


class ExportedStats(_CamelModel):
    """Final session statistics inside an export document."""

    total_detections: int
    average_confidence: float
    last_detection_time: float
    class_counts: dict[str, int]


class ExportDocument(_CamelModel):
    """Everything published during a session, as written to disk."""

    detections: list[ExportedBatch]
    stats: ExportedStats
    timestamp: str = Field(description="ISO-8601 export time")

    def to_json(self, indent: int | None = 2) -> str:
        """Serialize with wire field names."""
        return self.model_dump_json(by_alias=True, indent=indent)
