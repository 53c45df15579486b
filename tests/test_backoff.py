"""
Tests for the exponential backoff computation
"""

# Third Party
import pytest

# Local
from kubeloop.backoff import exponential_backoff, watch_backoff
from kubeloop.test_helpers.helpers import library_config


@pytest.mark.parametrize(
    ["failures", "expected"],
    [(-1, 0), (0, 0), (1, 1), (2, 2), (3, 4), (6, 32), (7, 64), (8, 64), (100, 64)],
)
def test_watch_backoff_defaults(failures, expected):
    assert watch_backoff(failures) == expected


def test_backoff_monotonic_and_capped():
    """The wait never decreases and never exceeds the cap, even for failure
    counts far past the point where the exponent would overflow"""
    delays = [watch_backoff(failures) for failures in range(1, 2001)]
    assert all(delay <= 64 for delay in delays)
    assert delays == sorted(delays)


def test_backoff_huge_failure_count():
    assert exponential_backoff(10**9, base=1, multiplier=2, maximum=64) == 64


def test_backoff_exponent_clamp():
    assert (
        exponential_backoff(50, base=1, multiplier=2, maximum=2**60, max_exponent=3)
        == 8
    )


def test_backoff_jitter_bounded():
    for _ in range(50):
        delay = exponential_backoff(1, base=1, multiplier=2, maximum=64, jitter=0.5)
        assert 1 <= delay <= 1.5


def test_backoff_jitter_never_exceeds_cap():
    for _ in range(50):
        delay = exponential_backoff(10, base=1, multiplier=2, maximum=64, jitter=5)
        assert delay == 64


def test_watch_backoff_uses_config():
    with library_config(
        watch={"base_backoff": "0.5s", "backoff_multiplier": 3, "max_backoff": "10s"}
    ):
        assert watch_backoff(1) == 0.5
        assert watch_backoff(2) == 1.5
        assert watch_backoff(3) == 4.5
        assert watch_backoff(4) == 10
