# podscaler/utils/time_utils.py
"""
podscaler Time Utilities
------------------------

Small, dependency-free time helpers used by the control loops:
 - human duration parsing ("15s", "5m", "1h30m") used by config and manifests
 - exponential backoff for resilient loops
 - injectable clocks: controllers read time through a clock object so that
   cooldown windows can be driven deterministically (ManualClock)
"""

from __future__ import annotations

import re
import time
import random
import asyncio
from typing import Union

# -------------------------
# Human duration parsing
# -------------------------
DURATION_PATTERN = re.compile(r"(\d+\.?\d*)\s*([a-zA-Z]*)")

_UNIT_SECONDS = {
    "": 1,
    "ms": 0.001,
    "s": 1,
    "sec": 1,
    "secs": 1,
    "seconds": 1,
    "m": 60,
    "min": 60,
    "mins": 60,
    "minutes": 60,
    "h": 3600,
    "hr": 3600,
    "hours": 3600,
    "d": 86400,
    "days": 86400,
}

def parse_duration(value: Union[str, int, float, None]) -> float:
    """
    Parse durations like "30", "15s", "5m", "1h30m", "250ms" into seconds.
    Numbers are taken as seconds.
    """
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = value.strip().lower()
    matches = DURATION_PATTERN.findall(text)
    if not matches or "".join(v + u for v, u in matches) != text.replace(" ", ""):
        raise ValueError(f"Invalid duration: {value!r}")
    total = 0.0
    for val, unit in matches:
        if unit not in _UNIT_SECONDS:
            raise ValueError(f"Unknown duration unit {unit!r} in {value!r}")
        total += float(val) * _UNIT_SECONDS[unit]
    return total

def format_duration(seconds: float) -> str:
    """Format seconds into '1h2m3s'."""
    seconds = int(seconds)
    h, r = divmod(seconds, 3600)
    m, s = divmod(r, 60)
    parts = []
    if h: parts.append(f"{h}h")
    if m: parts.append(f"{m}m")
    if s or not parts: parts.append(f"{s}s")
    return "".join(parts)

# -------------------------
# Backoff
# -------------------------
def compute_backoff(attempt: int, base: float = 0.5, factor: float = 2.0, jitter: float = 0.1, max_delay: float = 30.0) -> float:
    """Compute exponential backoff with jitter."""
    delay = min(base * (factor ** attempt), max_delay)
    if jitter:
        delay *= (1.0 + (random.random() - 0.5) * jitter)
    return delay

async def async_sleep(seconds: float):
    """Sleep without blocking the loop; non-positive values just yield."""
    await asyncio.sleep(max(0.0, seconds))

# -------------------------
# Clocks
# -------------------------
class MonotonicClock:
    """Default clock for control loops."""

    def now(self) -> float:
        return time.monotonic()


class ManualClock:
    """
    Clock that only moves when told to. Used by tests and by the simulator,
    where one tick stands for a fixed amount of cluster time.
    """

    def __init__(self, start: float = 0.0):
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        if seconds < 0:
            raise ValueError("clock cannot move backwards")
        self._now += seconds
        return self._now

    def set(self, value: float) -> None:
        if value < self._now:
            raise ValueError("clock cannot move backwards")
        self._now = float(value)


__all__ = [
    "parse_duration", "format_duration", "compute_backoff", "async_sleep",
    "MonotonicClock", "ManualClock",
]
