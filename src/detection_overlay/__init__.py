"""Detection Overlay - real-time object detection overlay for video streams."""

__version__ = "0.1.0"

# Configure logging early to ensure all modules use correct settings
from detection_overlay.logging_config import configure_logging  # noqa: F401
