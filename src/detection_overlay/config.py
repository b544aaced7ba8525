"""Configuration management using Pydantic Settings."""

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class InferenceSettings(BaseSettings):
    """Detection model settings."""

    weights: str = Field(
        default="yolov8n.pt",
        description="Path to YOLOv8 weights (.pt or .onnx) or model name (auto-downloads)",
    )
    input_width: int = Field(default=640, gt=0, description="Model input width")
    input_height: int = Field(default=640, gt=0, description="Model input height")
    confidence_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Minimum confidence for a detection to be reported",
    )
    nms_threshold: float = Field(
        default=0.45,
        ge=0.0,
        le=1.0,
        description="IoU threshold for non-max suppression",
    )
    device: Literal["auto", "cuda", "cpu"] = Field(
        default="auto",
        description="Inference device (auto, cuda, cpu)",
    )
    classes: list[str] = Field(
        default=[],
        description="Only report these class labels (empty = all)",
    )

    @property
    def input_size(self) -> tuple[int, int]:
        """Model input size as (width, height)."""
        return (self.input_width, self.input_height)


class ProcessingSettings(BaseSettings):
    """Processing scheduler settings."""

    refresh_rate: float = Field(
        default=60.0,
        gt=0.0,
        le=240.0,
        description="Scheduling ticks per second (display refresh cadence)",
    )
    failure_warning_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive inference failures before a warning is raised",
    )
    history_limit: int | None = Field(
        default=None,
        ge=1,
        description="Maximum published batches kept for export (None = unbounded)",
    )
    skip_repeated_frames: bool = Field(
        default=True,
        description="Do not run inference twice on the same decoded frame",
    )


class VideoSettings(BaseSettings):
    """Video source settings."""

    source: str = Field(
        default="0",
        description="Video file path, stream URL or camera index",
    )
    loop: bool = Field(
        default=False,
        description="Restart video files when they reach the end",
    )
    attach_timeout: float = Field(
        default=10.0,
        gt=0.0,
        description="Seconds to wait for the first decoded frame",
    )


class ExportSettings(BaseSettings):
    """Session export settings."""

    output_dir: Path = Field(
        default=Path("data/exports"),
        description="Directory for export documents",
    )
    filename_prefix: str = Field(
        default="object-detections",
        description="Export filename prefix (epoch milliseconds are appended)",
    )
    indent: int = Field(default=2, ge=0, description="JSON indentation")

    @field_validator("output_dir", mode="before")
    @classmethod
    def ensure_path(cls, v: str | Path) -> Path:
        """Ensure value is a Path object."""
        return Path(v) if isinstance(v, str) else v


class WebSettings(BaseSettings):
    """HTTP server settings."""

    host: str = Field(default="0.0.0.0", description="Host to bind to")
    port: int = Field(default=8080, description="Port to bind to")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="DETECTION_OVERLAY_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    json_logs: bool = Field(default=False, description="Emit JSON log lines")

    inference: InferenceSettings = Field(default_factory=InferenceSettings)
    processing: ProcessingSettings = Field(default_factory=ProcessingSettings)
    video: VideoSettings = Field(default_factory=VideoSettings)
    export: ExportSettings = Field(default_factory=ExportSettings)
    web: WebSettings = Field(default_factory=WebSettings)


def load_settings(config_path: Path | None = None) -> Settings:
    """Load settings from environment and optional config file.

    Args:
        config_path: Optional path to YAML config file.

    Returns:
        Configured Settings instance.
    """
    import yaml

    settings_dict: dict[str, Any] = {}

    if config_path and config_path.exists():
        with open(config_path) as f:
            settings_dict = yaml.safe_load(f) or {}

    return Settings(**settings_dict)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance.

    Returns:
        Global Settings instance, created on first call.
    """
    global _settings
    if _settings is None:
        config_path = Path("config.yaml")
        _settings = load_settings(config_path if config_path.exists() else None)
    return _settings
