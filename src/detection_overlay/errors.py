"""Exception hierarchy for the detection pipeline.

Only InitializationError and InvalidStateError are meant to reach the user as
blocking errors. FrameUnavailable and InferenceFailure are absorbed by the
scheduler, ExportFailure is reported without changing pipeline state.
"""


class DetectionOverlayError(Exception):
    """Base class for all pipeline errors."""


class InitializationError(DetectionOverlayError):
    """The inference backend could not be loaded."""


class InvalidStateError(DetectionOverlayError):
    """A lifecycle operation was invoked in a state that forbids it."""

    def __init__(self, operation: str, state: str):
        self.operation = operation
        self.state = state
        super().__init__(f"Cannot {operation} while {state}")


class FrameUnavailable(DetectionOverlayError):
    """No decoded frame is available yet (or the video has ended)."""


class InferenceFailure(DetectionOverlayError):
    """A single detection call failed."""


class ExportFailure(DetectionOverlayError):
    """The export document could not be written."""
