"""Pydantic schemas for the video job API."""

import json
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from vidpipe.modules.job.models import JobMetadata
from vidpipe.modules.queue.base import DeadLetter, StreamInfo
from vidpipe.modules.transcoding.models import QUALITY_PRESETS, normalize_qualities, unknown_qualities


# ==================== Job Submission ====================

class JobSubmitRequest(BaseModel):
    """Request to transcode an uploaded video."""
    video_id: Optional[str] = Field(None, min_length=1, description="Job identifier; generated when omitted")
    source_path: str = Field(..., min_length=1, description="Location of the uploaded source file")
    output_path: Optional[str] = Field(None, min_length=1, description="Output directory; defaults to OUTPUT_ROOT/<video_id>")
    user_id: str = Field(..., min_length=1, description="Owner of the video")
    quality: list[str] = Field(..., min_length=1, description="Requested rendition labels")
    thumbnail_time: Optional[str] = Field(None, description="Timestamp of the thumbnail frame")
    callback_url: Optional[str] = Field(None, description="URL notified once processing completes")
    metadata: Optional[JobMetadata] = None

    @field_validator("quality")
    @classmethod
    def validate_quality(cls, value: list[str]) -> list[str]:
        value = normalize_qualities(value)
        unknown = unknown_qualities(value)
        if unknown:
            raise ValueError(
                f"Unsupported quality {', '.join(unknown)}; expected one of {', '.join(QUALITY_PRESETS)}"
            )
        return value


class JobSubmitResponse(BaseModel):
    """Response after a job was accepted by the broker."""
    video_id: str
    sequence: int
    output_path: str
    status: str = "queued"
    message: str


# ==================== Queue Stats ====================

class ConsumerStats(BaseModel):
    name: str
    filter_subject: str
    pending: int
    ack_wait: float
    max_deliveries: int


class QueueStatsResponse(BaseModel):
    """Stream, consumer group and dead-letter counts."""
    stream: str
    subjects: list[str]
    messages: int
    last_sequence: int
    dead_letters: int
    consumers: list[ConsumerStats]

    @classmethod
    def from_info(cls, info: StreamInfo) -> "QueueStatsResponse":
        return cls(
            stream=info.name,
            subjects=list(info.subjects),
            messages=info.messages,
            last_sequence=info.last_sequence,
            dead_letters=info.dead_letters,
            consumers=[
                ConsumerStats(
                    name=c.name,
                    filter_subject=c.filter_subject,
                    pending=c.pending,
                    ack_wait=c.ack_wait,
                    max_deliveries=c.max_deliveries,
                )
                for c in info.consumers
            ],
        )


# ==================== Dead Letters ====================

class DeadLetterInfo(BaseModel):
    """A dead-lettered message with its last failure."""
    entry_id: str
    subject: str
    sequence: int
    deliveries: int
    reason: str
    error: Optional[str] = None
    video_id: Optional[str] = None
    payload: Any = None
    dead_lettered_at: datetime

    @classmethod
    def from_dead_letter(cls, entry: DeadLetter) -> "DeadLetterInfo":
        payload = _payload_view(entry.data)
        return cls(
            entry_id=entry.entry_id,
            subject=entry.subject,
            sequence=entry.sequence,
            deliveries=entry.deliveries,
            reason=entry.reason,
            error=entry.error,
            video_id=payload.get("video_id") if isinstance(payload, dict) else None,
            payload=payload,
            dead_lettered_at=datetime.fromtimestamp(entry.dead_lettered_at, tz=timezone.utc),
        )


class DeadLetterListResponse(BaseModel):
    items: list[DeadLetterInfo]
    total: int


class DeadLetterRequeueResponse(BaseModel):
    entry_id: str
    sequence: int
    message: str


def _payload_view(data: bytes) -> Any:
    """Show the payload as JSON when it parses, else as text."""
    text = data.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text
