"""
Duration parsing, backoff and clocks.
"""

import pytest

from podscaler.utils.time_utils import ManualClock, compute_backoff, format_duration, parse_duration


@pytest.mark.parametrize("value,expected", [
    ("15s", 15.0),
    ("5m", 300.0),
    ("1h30m", 5400.0),
    ("250ms", 0.25),
    ("30", 30.0),
    (12, 12.0),
    (None, 0.0),
])
def test_parse_duration(value, expected):
    assert parse_duration(value) == pytest.approx(expected)


@pytest.mark.parametrize("bad", ["abc", "5 parsecs", "m5"])
def test_parse_duration_rejects_garbage(bad):
    with pytest.raises(ValueError):
        parse_duration(bad)


def test_format_duration():
    assert format_duration(3723) == "1h2m3s"
    assert format_duration(0) == "0s"


def test_backoff_is_capped():
    assert compute_backoff(50, base=1, factor=2, jitter=0, max_delay=30) == 30
    assert compute_backoff(1, base=1, factor=2, jitter=0) == 2


def test_manual_clock_moves_forward_only():
    c = ManualClock(start=10)
    assert c.now() == 10
    assert c.advance(5) == 15
    c.set(20)
    assert c.now() == 20
    with pytest.raises(ValueError):
        c.advance(-1)
    with pytest.raises(ValueError):
        c.set(19)
