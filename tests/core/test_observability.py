"""Tests for structured logging and pipeline metrics."""

import json
import logging

from hypothesis import given, settings, strategies as st

from vidpipe.core.logging import StructuredFormatter, correlation_id_var, correlation_scope
from vidpipe.core.metrics import DEAD_LETTERS_TOTAL, REGISTRY, get_metrics


def make_record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("vidpipe.test", logging.WARNING, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredLogging:

    @given(video_id=st.text(alphabet="abcdef0123456789", min_size=1, max_size=32))
    @settings(max_examples=50)
    def test_scope_binds_video_id_and_restores(self, video_id: str) -> None:
        """*For any* video_id, log lines inside the scope SHALL carry it as correlation ID."""
        correlation_id_var.set("outer")
        formatter = StructuredFormatter()

        with correlation_scope(video_id):
            line = json.loads(formatter.format(make_record("Rendition written")))

        assert line["correlation_id"] == video_id
        assert correlation_id_var.get() == "outer"

    def test_extra_fields_are_emitted(self) -> None:
        formatter = StructuredFormatter()

        line = json.loads(formatter.format(make_record("Callback failed", callback_url="http://hooks.test", attempt=3)))

        assert line["level"] == "WARNING"
        assert line["message"] == "Callback failed"
        assert line["extra"] == {"callback_url": "http://hooks.test", "attempt": 3}

    def test_exception_is_serialized(self) -> None:
        formatter = StructuredFormatter()
        try:
            raise RuntimeError("ffmpeg exited with code 1")
        except RuntimeError as e:
            record = make_record("Delivery crashed")
            record.exc_info = (type(e), e, e.__traceback__)

        line = json.loads(formatter.format(record))

        assert line["exception"]["type"] == "RuntimeError"
        assert line["exception"]["message"] == "ffmpeg exited with code 1"


class TestMetrics:

    def test_dead_letter_counter_is_exposed(self) -> None:
        before = REGISTRY.get_sample_value("vidpipe_dead_letters_total", {"reason": "engine_failure"}) or 0.0

        DEAD_LETTERS_TOTAL.labels(reason="engine_failure").inc()

        assert REGISTRY.get_sample_value("vidpipe_dead_letters_total", {"reason": "engine_failure"}) == before + 1
        assert b"vidpipe_dead_letters_total" in get_metrics()
