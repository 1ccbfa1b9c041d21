"""Wire codec for job envelopes and pipeline events.

Payloads are UTF-8 JSON objects. Unknown fields are ignored on decode so
older workers keep consuming payloads written by newer producers.
"""

from typing import Union

from pydantic import BaseModel, ValidationError as PydanticValidationError

from vidpipe.core.exceptions import DecodeError
from vidpipe.modules.job.models import Job

MAX_ERROR_DETAILS = 5


def encode(job: Job) -> bytes:
    """Encode a job as a queue payload."""
    return job.model_dump_json(exclude_none=True).encode("utf-8")


def decode(data: Union[bytes, str]) -> Job:
    """Decode a queue payload into a job.

    Args:
        data: Raw payload

    Returns:
        Decoded Job

    Raises:
        DecodeError: If the payload is not a valid job envelope
    """
    try:
        return Job.model_validate_json(data)
    except PydanticValidationError as e:
        raise DecodeError(f"Invalid job payload: {_summarize(e)}") from e
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(f"Invalid job payload: {e}") from e


def encode_event(event: BaseModel) -> bytes:
    """Encode a pipeline event for the processed/failed subjects."""
    return event.model_dump_json(exclude_none=True).encode("utf-8")


def _summarize(error: PydanticValidationError) -> str:
    parts = []
    for detail in error.errors()[:MAX_ERROR_DETAILS]:
        location = ".".join(str(p) for p in detail.get("loc", ())) or "payload"
        parts.append(f"{location}: {detail.get('msg')}")
    if error.error_count() > MAX_ERROR_DETAILS:
        parts.append(f"... {error.error_count() - MAX_ERROR_DETAILS} more")
    return "; ".join(parts)
