"""Job envelope and pipeline event models.

A Job is created by the producer, published once, and replayed unchanged on
every redelivery. Its video_id addresses the output directory so that
reprocessing overwrites rather than duplicates.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from vidpipe.modules.transcoding.models import normalize_qualities


class JobMetadata(BaseModel):
    """Opaque upload metadata passed through to events and callbacks."""
    title: Optional[str] = None
    duration: Optional[float] = Field(None, ge=0, description="Duration in seconds")
    size: Optional[int] = Field(None, ge=0, description="Size in bytes")

    class Config:
        frozen = True
        extra = "allow"


class Job(BaseModel):
    """One requested video-transcoding unit of work."""
    video_id: str = Field(..., min_length=1, description="Producer-assigned unique job identifier")
    source_path: str = Field(..., min_length=1, description="Location of the uploaded source file")
    output_path: str = Field(..., min_length=1, description="Directory that receives the HLS output")
    user_id: str = Field(..., min_length=1, description="Owner of the video")
    quality: tuple[str, ...] = Field(..., min_length=1, description="Requested rendition labels")
    thumbnail_time: Optional[str] = Field(None, description="Timestamp of the thumbnail frame, e.g. 00:00:05")
    callback_url: Optional[str] = Field(None, description="URL notified once processing completes")
    metadata: Optional[JobMetadata] = None

    class Config:
        frozen = True
        extra = "ignore"

    @field_validator("quality")
    @classmethod
    def dedupe_quality(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        """Keep the first occurrence of each label, preserving request order."""
        return tuple(normalize_qualities(value))


class DeliveryState(str, Enum):
    """States a delivery moves through inside a worker."""
    RECEIVED = "received"
    VALIDATING = "validating"
    TRANSCODING = "transcoding"
    COMPLETED = "completed"
    FAILED = "failed"


class RenditionSummary(BaseModel):
    """Rendition entry carried by completion events and callbacks."""
    quality: str
    playlist: str
    bandwidth: int
    resolution: str
    segments: int


class ProcessedEvent(BaseModel):
    """Published on video.processed after a job has been acknowledged."""
    video_id: str
    user_id: str
    status: str = "completed"
    output_path: str
    master_playlist: str
    renditions: list[RenditionSummary]
    thumbnail: Optional[str] = None
    metadata: Optional[JobMetadata] = None
    completed_at: datetime


class FailedEvent(BaseModel):
    """Published on video.failed when a delivery is dead-lettered."""
    video_id: Optional[str] = None
    user_id: Optional[str] = None
    status: str = "failed"
    reason: str
    error: str
    deliveries: int
    sequence: int
    failed_at: datetime
