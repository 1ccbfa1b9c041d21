"""Error taxonomy for the video-processing pipeline."""

from typing import Optional


class PipelineError(Exception):
    """Base exception for pipeline errors."""

    reason: str = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DecodeError(PipelineError):
    """Payload cannot be parsed into a job (poison message)."""

    reason = "poison_message"


class ValidationError(PipelineError):
    """Job decoded but is semantically invalid (unknown quality, unreachable source)."""

    reason = "validation_failed"


class EngineFailure(PipelineError):
    """The external transcoding tool failed for one quality."""

    reason = "engine_failure"

    def __init__(
        self,
        message: str,
        quality: Optional[str] = None,
        diagnostics: Optional[str] = None,
    ):
        super().__init__(message)
        self.quality = quality
        self.diagnostics = diagnostics


class QueueUnavailable(PipelineError):
    """The message broker is unreachable."""

    reason = "queue_unavailable"
