"""Session export: everything published during a session as one JSON document."""

from __future__ import annotations

import time
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

import structlog

from detection_overlay.detection.aggregator import DetectionStats
from detection_overlay.errors import ExportFailure
from detection_overlay.schemas import DetectionBatch, ExportDocument, ExportedBatch

logger = structlog.get_logger(__name__)


def build_export_document(
    batches: Iterable[DetectionBatch],
    stats: DetectionStats,
    exported_at: datetime | None = None,
) -> ExportDocument:
    """Assemble the export document.

    Args:
        batches: Published batches, oldest first
        stats: Final statistics snapshot
        exported_at: Export time (defaults to now, UTC)
    """
    exported_at = exported_at or datetime.now(UTC)
    return ExportDocument(
        detections=[
            ExportedBatch(
                frame_index=batch.frame_index,
                timestamp=batch.timestamp,
                detections=list(batch.detections),
            )
            for batch in batches
        ],
        stats=stats.to_export(),
        timestamp=exported_at.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
    )


def export_filename(prefix: str = "object-detections", epoch_ms: int | None = None) -> str:
    """Build ``<prefix>-<epoch milliseconds>.json``."""
    if epoch_ms is None:
        epoch_ms = int(time.time() * 1000)
    return f"{prefix}-{epoch_ms}.json"


def write_export(
    document: ExportDocument,
    output_dir: Path,
    prefix: str = "object-detections",
    indent: int | None = 2,
    epoch_ms: int | None = None,
) -> Path:
    """Write the document to ``output_dir``.

    Returns:
        Path of the written file

    Raises:
        ExportFailure: If the document cannot be serialized or written
    """
    path = Path(output_dir) / export_filename(prefix, epoch_ms)
    try:
        payload = document.to_json(indent=indent or None)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(payload, encoding="utf-8")
    except (OSError, ValueError) as e:
        logger.error("Export failed", path=str(path), error=str(e))
        raise ExportFailure(f"Failed to write export {path}: {e}") from e

    logger.info(
        "Session exported",
        path=str(path),
        batches=len(document.detections),
        total_detections=document.stats.total_detections,
    )
    return path
