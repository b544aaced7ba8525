"""Real-time detection pipeline.

Pulls frames from a source, runs one inference at a time, keeps running
statistics and publishes the latest batch for rendering.
"""

from detection_overlay.detection.aggregator import DetectionAggregator, DetectionStats
from detection_overlay.detection.controller import DetectionController
from detection_overlay.detection.export import (
    build_export_document,
    export_filename,
    write_export,
)
from detection_overlay.detection.frame_source import (
    CaptureState,
    Frame,
    FrameSource,
    ManualFrameSource,
    VideoCaptureSource,
)
from detection_overlay.detection.inference import InferenceClient, YoloInferenceClient
from detection_overlay.detection.mapper import CoordinateMapper, DisplayBox, map_to_display
from detection_overlay.detection.renderer import OverlayRenderer, encode_jpeg, format_label
from detection_overlay.detection.scheduler import (
    ProcessingScheduler,
    SchedulerSettings,
    SchedulerState,
    Session,
)

__all__ = [
    "CaptureState",
    "CoordinateMapper",
    "DetectionAggregator",
    "DetectionController",
    "DetectionStats",
    "DisplayBox",
    "Frame",
    "FrameSource",
    "InferenceClient",
    "ManualFrameSource",
    "OverlayRenderer",
    "ProcessingScheduler",
    "SchedulerSettings",
    "SchedulerState",
    "Session",
    "VideoCaptureSource",
    "YoloInferenceClient",
    "build_export_document",
    "encode_jpeg",
    "export_filename",
    "format_label",
    "map_to_display",
    "write_export",
]
