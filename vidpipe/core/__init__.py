"""Core module for configuration and utilities."""

from vidpipe.core.config import settings, Settings
from vidpipe.core.exceptions import (
    PipelineError,
    DecodeError,
    ValidationError,
    EngineFailure,
    QueueUnavailable,
)

__all__ = [
    "settings",
    "Settings",
    "PipelineError",
    "DecodeError",
    "ValidationError",
    "EngineFailure",
    "QueueUnavailable",
]
