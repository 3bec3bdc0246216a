"""
Control plane wiring: registration, manifests, pushed metrics, lifecycle.
"""

import pytest

from podscaler.config import Settings
from podscaler.control_plane import ControlPlane
from podscaler.errors import PodscalerError, WorkloadNotFound
from podscaler.manifests import load_manifests
from podscaler.metrics_source import CallableMetricSource
from podscaler.models import ScaleDownPolicy, ScalingPolicy


@pytest.fixture
def settings():
    return Settings(startup_timeout=1.0, startup_retries=0, tick_interval=15)


@pytest.fixture
def plane(settings, source, runtime, clock, manifests_dir):
    cp = ControlPlane(settings, source=source, runtime=runtime, clock=clock)
    cp.register_bundle(load_manifests(manifests_dir))
    return cp


@pytest.mark.asyncio
async def test_start_brings_workloads_to_size(plane):
    await plane.start(loops=False)
    try:
        assert plane.names() == ["flask-app", "mongodb"]
        assert plane.get("mongodb").target.running_names() == ("mongodb-0",)
        assert plane.volumes.is_bound("mongodb-0")
        assert len(plane.get("flask-app").target.running_names()) == 1
        assert plane.ready
    finally:
        await plane.stop()
    assert not plane.started


@pytest.mark.asyncio
async def test_start_enforces_policy_minimum(settings, source, runtime, clock, stateless_spec):
    cp = ControlPlane(settings, source=source, runtime=runtime, clock=clock)
    cp.register_workload(stateless_spec, ScalingPolicy(target_utilization=50, min_replicas=3, max_replicas=5))
    await cp.start(loops=False)
    assert cp.get("flask-app").target.replicas == 3


@pytest.mark.asyncio
async def test_push_metrics_and_tick(plane):
    await plane.start(loops=False)
    await plane.push_metrics({"mongodb-0": 0.95})
    decisions = await plane.tick_all()
    assert decisions["mongodb"].desired == 2
    assert decisions["flask-app"].action == "hold"
    assert plane.get("mongodb").target.running_names() == ("mongodb-0", "mongodb-1")
    usage = plane.get("mongodb").target.get("mongodb-0").usage
    assert usage.cpu_millicores == 475
    assert usage.memory_bytes == 512 * 2 ** 20
    await plane.stop()


@pytest.mark.asyncio
async def test_push_metrics_needs_static_source(settings, clock):
    cp = ControlPlane(settings, source=CallableMetricSource(lambda: {}), clock=clock)
    with pytest.raises(PodscalerError):
        await cp.push_metrics({"a": 1.0})


def test_unknown_workload(plane):
    with pytest.raises(WorkloadNotFound):
        plane.get("redis")
    with pytest.raises(KeyError):
        plane.controller("redis")


def test_duplicate_registration(plane, stateless_spec):
    with pytest.raises(PodscalerError):
        plane.register_workload(stateless_spec)


def test_settings_flow_into_instance_sets(plane, settings):
    spec = plane.get("flask-app").target.spec
    assert spec.startup_timeout == settings.startup_timeout
    assert spec.max_startup_retries == 0


def test_update_policy_reaches_instance_set(plane):
    policy = plane.controller("flask-app").policy.updated(scale_down_policy=ScaleDownPolicy.LEAST_UTILIZED_FIRST)
    plane.update_policy("flask-app", policy)
    assert plane.get("flask-app").target.scale_down_policy is ScaleDownPolicy.LEAST_UTILIZED_FIRST
    assert plane.controller("flask-app").policy is policy


@pytest.mark.asyncio
async def test_from_settings_loads_manifests(manifests_dir, clock):
    cp = ControlPlane.from_settings(Settings(manifests=[str(manifests_dir)]), clock=clock)
    assert cp.names() == ["flask-app", "mongodb"]
    assert cp.controller("mongodb").policy.max_replicas == 3


@pytest.mark.asyncio
async def test_background_loops_start_and_stop(plane):
    await plane.start()
    assert plane.poller._task is not None
    assert all(plane.get(n).loop.running for n in plane.names())
    await plane.stop()
    assert all(plane.get(n).loop is None for n in plane.names())
