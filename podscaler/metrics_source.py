# podscaler/metrics_source.py
"""
podscaler Metric Source & Poller
--------------------------------

A MetricSource reports {instance identity: utilization ratio}. The poller
runs it on its own timer so the controller never waits on a poll; the
controller reads whatever the last successful poll produced.

Failure model:
 - a failed poll is logged, counted, and the previous sample is kept
 - after `degraded_after` consecutive failures the poller flips to degraded;
   the controller surfaces that and holds its scaling decisions
 - identities missing from a poll are unknown, never zero
"""

from __future__ import annotations

import abc
import math
import time
import asyncio
import inspect
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, Mapping, Optional, Union

from podscaler.errors import TransientMetricError
from podscaler.metrics import PS_POLL_FAILURES, PS_POLL_LATENCY
from podscaler.models import MetricSample
from podscaler.utils.logger import get_logger, StructuredLoggerAdapter
from podscaler.utils.time_utils import MonotonicClock

LOG = get_logger("podscaler.metrics_source")


# -------------------------
# Sources
# -------------------------
class MetricSource(abc.ABC):
    """Contract: sample() -> {identity: utilization ratio}."""

    name: str = "source"

    @abc.abstractmethod
    async def sample(self) -> Dict[str, float]:
        ...


class StaticMetricSource(MetricSource):
    """
    In-memory source. Values are set by tests, the simulator, or anything
    that already has utilization numbers at hand.
    """

    name = "static"

    def __init__(self, values: Optional[Mapping[str, float]] = None):
        self._values: Dict[str, float] = dict(values or {})
        self._failures_pending = 0
        self.calls = 0

    def set(self, identity: str, utilization: float) -> None:
        self._values[identity] = float(utilization)

    def set_all(self, values: Mapping[str, float]) -> None:
        self._values = {k: float(v) for k, v in values.items()}

    def remove(self, identity: str) -> None:
        self._values.pop(identity, None)

    def clear(self) -> None:
        self._values.clear()

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` polls raise TransientMetricError."""
        self._failures_pending += count

    async def sample(self) -> Dict[str, float]:
        self.calls += 1
        if self._failures_pending > 0:
            self._failures_pending -= 1
            raise TransientMetricError("static source: injected failure")
        return dict(self._values)


class CallableMetricSource(MetricSource):
    """Adapts a plain or async callable returning a mapping."""

    def __init__(self, fn: Callable[[], Union[Mapping[str, float], Awaitable[Mapping[str, float]]]], name: str = "callable"):
        self._fn = fn
        self.name = name

    async def sample(self) -> Dict[str, float]:
        result = self._fn()
        if inspect.isawaitable(result):
            result = await result
        return dict(result)


# -------------------------
# History window
# -------------------------
class MetricHistory:
    """
    Bounded per-instance history of samples. The smoothed utilization of an
    instance is the mean of its retained window.
    """

    def __init__(self, window_size: int = 5):
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self.window_size = window_size
        self._data: Dict[str, Deque[MetricSample]] = {}

    def record(self, values: Mapping[str, float], timestamp: float) -> None:
        for identity, value in values.items():
            window = self._data.get(identity)
            if window is None:
                window = self._data[identity] = deque(maxlen=self.window_size)
            window.append(MetricSample(identity=identity, timestamp=timestamp, utilization=value))

    def prune(self, keep: Iterable[str]) -> None:
        """Forget identities that are no longer reported."""
        keep = set(keep)
        for identity in [k for k in self._data if k not in keep]:
            del self._data[identity]

    def samples(self, identity: str) -> list:
        return list(self._data.get(identity, ()))

    def smoothed(self, identity: str) -> Optional[float]:
        window = self._data.get(identity)
        if not window:
            return None
        return sum(s.utilization for s in window) / len(window)

    def identities(self) -> list:
        return sorted(self._data)

    def __len__(self) -> int:
        return len(self._data)


# -------------------------
# Poller
# -------------------------
class MetricPoller:
    """
    Polls a MetricSource on a fixed interval and keeps the latest good sample.

        poller = MetricPoller(StaticMetricSource({"web-a": 0.4}), interval=15)
        await poller.start()
        poller.latest()        # smoothed {identity: ratio}
        poller.degraded        # True after `degraded_after` consecutive failures
    """

    def __init__(self,
                 source: MetricSource,
                 interval: float = 15.0,
                 window_size: int = 5,
                 degraded_after: int = 3,
                 clock: Optional[Any] = None):
        if degraded_after < 1:
            raise ValueError("degraded_after must be >= 1")
        self.source = source
        self.interval = float(interval)
        self.degraded_after = int(degraded_after)
        self.clock = clock or MonotonicClock()
        self.history = MetricHistory(window_size=window_size)
        self.consecutive_failures = 0
        self.total_failures = 0
        self.last_error: Optional[str] = None
        self.last_success_at: Optional[float] = None
        self._latest_identities: tuple = ()
        self._degraded = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._lad = StructuredLoggerAdapter(LOG, {"component": "poller", "source": getattr(source, "name", "source")})

    # -------------------------
    # State
    # -------------------------
    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def has_sample(self) -> bool:
        return self.last_success_at is not None

    def latest(self) -> Dict[str, float]:
        """Smoothed utilization for every identity in the last good poll."""
        out: Dict[str, float] = {}
        for identity in self._latest_identities:
            value = self.history.smoothed(identity)
            if value is not None:
                out[identity] = value
        return out

    def raw_latest(self) -> Dict[str, float]:
        """Most recent (unsmoothed) value per identity in the last good poll."""
        out: Dict[str, float] = {}
        for identity in self._latest_identities:
            samples = self.history.samples(identity)
            if samples:
                out[identity] = samples[-1].utilization
        return out

    def status(self) -> Dict[str, Any]:
        return {
            "source": getattr(self.source, "name", "source"),
            "degraded": self._degraded,
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "last_error": self.last_error,
            "last_success_at": self.last_success_at,
            "instances_reporting": len(self._latest_identities),
        }

    # -------------------------
    # Polling
    # -------------------------
    async def poll_once(self) -> bool:
        """One poll. Returns True on success; failures never propagate."""
        source_name = getattr(self.source, "name", "source")
        started = time.perf_counter()
        try:
            values = await self.source.sample()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._record_failure(e)
            return False
        finally:
            PS_POLL_LATENCY.labels(source=source_name).observe(time.perf_counter() - started)

        clean = self._sanitize(values)
        now = self.clock.now()
        self.history.record(clean, now)
        self.history.prune(clean.keys())
        self._latest_identities = tuple(sorted(clean))
        self.last_success_at = now
        self.last_error = None
        if self._degraded:
            self._lad.info("Metric source recovered after %d failed polls", self.consecutive_failures)
        self.consecutive_failures = 0
        self._degraded = False
        return True

    def _sanitize(self, values: Mapping[str, Any]) -> Dict[str, float]:
        clean: Dict[str, float] = {}
        for identity, value in (values or {}).items():
            try:
                v = float(value)
            except (TypeError, ValueError):
                self._lad.debug("Dropping non-numeric sample for %s: %r", identity, value)
                continue
            if math.isnan(v) or math.isinf(v) or v < 0:
                self._lad.debug("Dropping invalid sample for %s: %r", identity, value)
                continue
            clean[str(identity)] = v
        return clean

    def _record_failure(self, exc: Exception) -> None:
        self.consecutive_failures += 1
        self.total_failures += 1
        self.last_error = f"{type(exc).__name__}: {exc}"
        PS_POLL_FAILURES.labels(source=getattr(self.source, "name", "source")).inc()
        self._lad.warning("Metric poll failed (%d consecutive); keeping previous sample: %s",
                          self.consecutive_failures, self.last_error)
        if not self._degraded and self.consecutive_failures >= self.degraded_after:
            self._degraded = True
            self._lad.error("Metric source degraded after %d consecutive failures", self.consecutive_failures)

    # -------------------------
    # Lifecycle
    # -------------------------
    async def start(self):
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        self._lad.info("Metric poller started (interval=%.1fs)", self.interval)

    async def stop(self):
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._lad.info("Metric poller stopped")

    async def _loop(self):
        while not self._stop_event.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass


__all__ = ["MetricSource", "StaticMetricSource", "CallableMetricSource", "MetricHistory", "MetricPoller"]
