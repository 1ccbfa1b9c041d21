"""Property-based tests for retry policy and subject matching.

**Feature: vidpipe, Property 5: Retry Policy**
**Feature: vidpipe, Property 6: Subject Filtering**
"""

import pytest
from hypothesis import given, settings, strategies as st

from vidpipe.modules.queue.base import ConsumerConfig, StreamConfig, subject_matches
from vidpipe.modules.queue.policy import RetryPolicy


token_strategy = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789", min_size=1, max_size=8)
subject_strategy = st.lists(token_strategy, min_size=1, max_size=5).map(".".join)


class TestRetryPolicy:
    """**Feature: vidpipe, Property 5: Retry Policy**"""

    def test_default_is_three_deliveries_with_fixed_wait(self) -> None:
        policy = RetryPolicy()

        assert policy.max_attempts == 3
        assert [policy.calculate_delay(n) for n in (1, 2, 3)] == [30.0, 30.0, 30.0]

    @given(
        max_attempts=st.integers(min_value=1, max_value=10),
        initial_delay=st.floats(min_value=0, max_value=600, allow_nan=False),
        multiplier=st.floats(min_value=1.0, max_value=4.0, allow_nan=False),
        max_delay=st.floats(min_value=0, max_value=3600, allow_nan=False),
    )
    @settings(max_examples=100)
    def test_delay_is_non_decreasing_and_capped(
        self,
        max_attempts: int,
        initial_delay: float,
        multiplier: float,
        max_delay: float,
    ) -> None:
        """*For any* policy, redelivery waits SHALL never shrink and never exceed max_delay."""
        policy = RetryPolicy(max_attempts, initial_delay, multiplier, max_delay)
        delays = [policy.calculate_delay(n) for n in range(1, max_attempts + 1)]

        assert all(d <= max_delay for d in delays)
        assert delays == sorted(delays)
        assert policy.longest_delay == delays[-1]

    @given(max_attempts=st.integers(min_value=1, max_value=10), attempts=st.integers(min_value=0, max_value=12))
    @settings(max_examples=100)
    def test_exhausted_exactly_at_max_attempts(self, max_attempts: int, attempts: int) -> None:
        """*For any* attempt count, the policy SHALL be exhausted iff attempts >= max_attempts."""
        assert RetryPolicy(max_attempts=max_attempts).is_exhausted(attempts) == (attempts >= max_attempts)

    def test_policy_survives_serialization(self) -> None:
        policy = RetryPolicy(max_attempts=5, initial_delay=10.0, backoff_multiplier=2.0, max_delay=60.0)

        assert RetryPolicy.from_dict(policy.to_dict()) == policy

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"initial_delay": -1.0},
        {"backoff_multiplier": 0.5},
    ])
    def test_invalid_policy_is_rejected(self, kwargs) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_consumer_rejects_wait_longer_than_ack_wait(self) -> None:
        with pytest.raises(ValueError):
            ConsumerConfig(
                name="c",
                filter_subject="video.process",
                ack_wait=20.0,
                retry=RetryPolicy(initial_delay=30.0),
            )

    def test_consumer_config_survives_serialization(self) -> None:
        config = ConsumerConfig(name="c", filter_subject="video.process", ack_wait=120.0)

        assert ConsumerConfig.from_dict(config.to_dict()) == config


class TestSubjectMatching:
    """**Feature: vidpipe, Property 6: Subject Filtering**"""

    @given(subject=subject_strategy)
    @settings(max_examples=100)
    def test_literal_pattern_matches_only_itself(self, subject: str) -> None:
        """*For any* subject, a literal pattern SHALL match exactly that subject."""
        assert subject_matches(subject, subject)
        assert not subject_matches(subject, subject + ".extra")
        assert not subject_matches(subject + ".extra", subject)

    @given(prefix=token_strategy, rest=st.lists(token_strategy, min_size=1, max_size=4))
    @settings(max_examples=100)
    def test_tail_wildcard_matches_any_suffix(self, prefix: str, rest: list[str]) -> None:
        """*For any* subject below a prefix, ``prefix.>`` SHALL match it."""
        assert subject_matches(f"{prefix}.>", ".".join([prefix, *rest]))
        assert not subject_matches(f"{prefix}.>", prefix)

    @pytest.mark.parametrize("pattern,subject,expected", [
        ("video.*", "video.process", True),
        ("video.*", "video.process.retry", False),
        ("*.process", "video.process", True),
        ("video.>", "video.process.retry", True),
        ("video.process", "video.processed", False),
        (">", "video", True),
    ])
    def test_wildcards(self, pattern: str, subject: str, expected: bool) -> None:
        assert subject_matches(pattern, subject) is expected

    def test_stream_captures_declared_subjects(self) -> None:
        stream = StreamConfig(name="VIDEOS", subjects=("video.process", "video.processed"))

        assert stream.captures("video.process")
        assert not stream.captures("video.upload")
        assert stream.dead_letter_stream == "VIDEOS.DLQ"
