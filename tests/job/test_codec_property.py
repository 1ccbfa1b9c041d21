"""Property-based tests for the job wire codec.

**Feature: vidpipe, Property 1: Job Envelope Codec**
"""

import json

import pytest
from hypothesis import given, settings, strategies as st

from vidpipe.core.exceptions import DecodeError
from vidpipe.modules.job import codec
from vidpipe.modules.job.models import Job, JobMetadata


# Strategies for generating test data
identifier_strategy = st.text(
    alphabet=st.characters(whitelist_categories=("L", "N"), whitelist_characters="-_"),
    min_size=1,
    max_size=40,
)

quality_strategy = st.lists(
    st.sampled_from(["240p", "360p", "480p", "720p", "1080p", "1440p", "2160p"]),
    min_size=1,
    max_size=7,
    unique=True,
)

metadata_strategy = st.one_of(
    st.none(),
    st.builds(
        JobMetadata,
        title=st.one_of(st.none(), st.text(max_size=80)),
        duration=st.one_of(st.none(), st.floats(min_value=0, max_value=36000, allow_nan=False)),
        size=st.one_of(st.none(), st.integers(min_value=0, max_value=10**12)),
    ),
)

job_strategy = st.builds(
    Job,
    video_id=identifier_strategy,
    source_path=identifier_strategy.map(lambda s: f"/in/{s}.mp4"),
    output_path=identifier_strategy.map(lambda s: f"/out/{s}"),
    user_id=identifier_strategy,
    quality=quality_strategy.map(tuple),
    thumbnail_time=st.one_of(st.none(), st.just("00:00:05")),
    callback_url=st.one_of(st.none(), st.just("https://example.com/hooks/video")),
    metadata=metadata_strategy,
)


class TestJobCodec:
    """Property tests for encoding and decoding job envelopes.

    **Feature: vidpipe, Property 1: Job Envelope Codec**
    """

    @given(job=job_strategy)
    @settings(max_examples=100)
    def test_decode_restores_encoded_job(self, job: Job) -> None:
        """**Feature: vidpipe, Property 1: Job Envelope Codec**

        *For any* valid job, decoding its encoding SHALL yield an equal job.
        """
        assert codec.decode(codec.encode(job)) == job

    @given(job=job_strategy, extra=st.dictionaries(
        st.text(alphabet="abcdefghijklmnopqrstuvwxyz", min_size=3, max_size=10).filter(
            lambda k: k not in Job.model_fields
        ),
        st.integers(),
        max_size=3,
    ))
    @settings(max_examples=50)
    def test_unknown_fields_are_ignored(self, job: Job, extra: dict) -> None:
        """**Feature: vidpipe, Property 1: Job Envelope Codec**

        Payloads written by newer producers SHALL still decode.
        """
        payload = json.loads(codec.encode(job))
        payload.update(extra)

        assert codec.decode(json.dumps(payload).encode("utf-8")) == job

    def test_encoding_is_utf8_json_object(self) -> None:
        job = Job(
            video_id="v1",
            source_path="/in/v1.mp4",
            output_path="/out/v1",
            user_id="u1",
            quality=("720p", "480p"),
        )

        payload = json.loads(codec.encode(job).decode("utf-8"))

        assert payload == {
            "video_id": "v1",
            "source_path": "/in/v1.mp4",
            "output_path": "/out/v1",
            "user_id": "u1",
            "quality": ["720p", "480p"],
        }

    def test_duplicate_qualities_collapse_in_order(self) -> None:
        job = codec.decode(json.dumps({
            "video_id": "v1",
            "source_path": "/in/v1.mp4",
            "output_path": "/out/v1",
            "user_id": "u1",
            "quality": ["720p", "480p", "720p"],
        }).encode())

        assert job.quality == ("720p", "480p")


class TestPoisonPayloads:
    """Payloads that can never become a job.

    **Feature: vidpipe, Property 1: Job Envelope Codec**
    """

    @pytest.mark.parametrize("payload", [
        b"",
        b"not json",
        b"\xff\xfe\xfa",
        b"[1, 2, 3]",
        b"42",
        b'{"video_id": "v1"}',
        b'{"video_id": "v1", "source_path": "/in", "output_path": "/out", "user_id": "u", "quality": []}',
        b'{"video_id": "v1", "source_path": "/in", "output_path": "/out", "user_id": "u", "quality": "720p"}',
        b'{"video_id": 7, "source_path": "/in", "output_path": "/out", "user_id": "u", "quality": ["720p"]}',
        b'{"video_id": "", "source_path": "/in", "output_path": "/out", "user_id": "u", "quality": ["720p"]}',
    ])
    def test_invalid_payload_raises_decode_error(self, payload: bytes) -> None:
        with pytest.raises(DecodeError) as exc_info:
            codec.decode(payload)

        assert exc_info.value.reason == "poison_message"
        assert exc_info.value.message.startswith("Invalid job payload")

    @given(data=st.binary(max_size=64))
    @settings(max_examples=100)
    def test_arbitrary_bytes_never_raise_other_errors(self, data: bytes) -> None:
        """**Feature: vidpipe, Property 1: Job Envelope Codec**

        *For any* byte string, decode SHALL return a job or raise DecodeError.
        """
        try:
            result = codec.decode(data)
        except DecodeError:
            return
        assert isinstance(result, Job)
