"""
Metric source & poller tests: fail-soft polling, degraded signal, smoothing.
"""

import asyncio

import pytest

from podscaler.errors import TransientMetricError
from podscaler.metrics import sample_value
from podscaler.metrics_source import CallableMetricSource, MetricHistory, MetricPoller, StaticMetricSource


@pytest.mark.asyncio
async def test_poll_returns_latest(source, poller):
    source.set_all({"web-a": 0.4, "web-b": 0.6})
    assert await poller.poll_once() is True
    assert poller.latest() == {"web-a": 0.4, "web-b": 0.6}
    assert poller.has_sample


@pytest.mark.asyncio
async def test_failed_poll_keeps_previous_sample(source, poller):
    source.set_all({"web-a": 0.4})
    await poller.poll_once()
    before = sample_value("podscaler_metric_poll_failures_total", {"source": "static"}) or 0.0
    source.set_all({"web-a": 0.9})
    source.fail_next()
    assert await poller.poll_once() is False
    assert poller.latest() == {"web-a": 0.4}
    assert poller.consecutive_failures == 1
    assert "TransientMetricError" in poller.last_error
    assert sample_value("podscaler_metric_poll_failures_total", {"source": "static"}) == before + 1


@pytest.mark.asyncio
async def test_degraded_after_threshold_and_recovers(source, poller):
    source.set_all({"web-a": 0.4})
    source.fail_next(3)
    await poller.poll_once()
    await poller.poll_once()
    assert not poller.degraded
    await poller.poll_once()
    assert poller.degraded
    assert poller.status()["consecutive_failures"] == 3

    assert await poller.poll_once() is True
    assert not poller.degraded
    assert poller.consecutive_failures == 0
    assert poller.total_failures == 3


@pytest.mark.asyncio
async def test_any_exception_is_a_failed_poll(clock):
    def broken():
        raise RuntimeError("scrape timeout")

    poller = MetricPoller(CallableMetricSource(broken, name="broken"), degraded_after=1, clock=clock)
    assert await poller.poll_once() is False
    assert poller.degraded
    assert "RuntimeError" in poller.last_error


@pytest.mark.asyncio
async def test_absent_identities_are_dropped(source, poller):
    source.set_all({"web-a": 0.4, "web-b": 0.6})
    await poller.poll_once()
    source.set_all({"web-a": 0.5})
    await poller.poll_once()
    assert poller.latest() == {"web-a": 0.5}
    assert poller.history.identities() == ["web-a"]


@pytest.mark.asyncio
async def test_invalid_values_are_dropped(source, poller):
    source._values = {"a": float("nan"), "b": -0.1, "c": "high", "d": 0.3, "e": float("inf")}
    await poller.poll_once()
    assert poller.latest() == {"d": 0.3}


@pytest.mark.asyncio
async def test_smoothing_over_window(source, clock):
    poller = MetricPoller(source, window_size=3, clock=clock)
    for v in (0.2, 0.4, 0.6, 0.8):
        source.set("web-a", v)
        await poller.poll_once()
        clock.advance(15)
    assert poller.latest()["web-a"] == pytest.approx((0.4 + 0.6 + 0.8) / 3)
    assert poller.raw_latest()["web-a"] == pytest.approx(0.8)
    assert [s.utilization for s in poller.history.samples("web-a")] == pytest.approx([0.4, 0.6, 0.8])


@pytest.mark.asyncio
async def test_async_callable_source(clock):
    async def fetch():
        return {"web-a": 0.7}

    poller = MetricPoller(CallableMetricSource(fetch), clock=clock)
    await poller.poll_once()
    assert poller.latest() == {"web-a": 0.7}


@pytest.mark.asyncio
async def test_background_loop_polls_until_stopped(clock):
    src = StaticMetricSource({"web-a": 0.5})
    poller = MetricPoller(src, interval=0.01, clock=clock)
    await poller.start()
    await asyncio.sleep(0.05)
    await poller.stop()
    assert src.calls >= 2
    calls = src.calls
    await asyncio.sleep(0.02)
    assert src.calls == calls


@pytest.mark.asyncio
async def test_static_source_injected_failure():
    src = StaticMetricSource({"a": 1.0})
    src.fail_next()
    with pytest.raises(TransientMetricError):
        await src.sample()
    assert await src.sample() == {"a": 1.0}


def test_history_validation():
    with pytest.raises(ValueError):
        MetricHistory(window_size=0)
    with pytest.raises(ValueError):
        MetricPoller(StaticMetricSource(), degraded_after=0)
