"""
podscaler pytest configuration
------------------------------

Shared fixtures:
 - manual clock (time only moves when a test says so)
 - static metric source and a poller over it
 - simulated runtime and volume manager
 - workload specs modelled on the bundled manifests
 - PODSCALER_* environment scrubbed for every test
"""

import os
import pathlib

import pytest

from podscaler.metrics_source import MetricPoller, StaticMetricSource
from podscaler.models import ScalingPolicy, VolumeClaimTemplate, WorkloadSpec
from podscaler.quantity import parse_bytes
from podscaler.runtime import SimulatedRuntime
from podscaler.utils.time_utils import ManualClock
from podscaler.volumes import VolumeLifecycleManager

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]


# -----------------------------------------------------------------------------
# Environment
# -----------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def clean_podscaler_env(monkeypatch):
    """Settings must not pick up the developer's shell or .env."""
    for var in list(os.environ):
        if var.startswith("PODSCALER_"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def manifests_dir() -> pathlib.Path:
    return REPO_ROOT / "manifests"


# -----------------------------------------------------------------------------
# Building blocks
# -----------------------------------------------------------------------------
@pytest.fixture
def clock():
    return ManualClock(start=1000.0)


@pytest.fixture
def source():
    return StaticMetricSource()


@pytest.fixture
def poller(source, clock):
    # window of 1: the controller sees exactly the last sample
    return MetricPoller(source, interval=15.0, window_size=1, degraded_after=3, clock=clock)


@pytest.fixture
def runtime():
    return SimulatedRuntime()


@pytest.fixture
def volumes(clock):
    return VolumeLifecycleManager(clock=clock)


@pytest.fixture
def mongo_template():
    return VolumeClaimTemplate(name="mongo-persistent-storage", capacity_bytes=parse_bytes("1Gi"), mount_path="/data/db")


@pytest.fixture
def stateful_spec(mongo_template):
    return WorkloadSpec(
        name="mongodb",
        replicas=1,
        stateful=True,
        kind="StatefulSet",
        claim_templates=(mongo_template,),
        startup_timeout=1.0,
        max_startup_retries=1,
    )


@pytest.fixture
def stateless_spec():
    return WorkloadSpec(name="flask-app", replicas=1, max_parallel=2, startup_timeout=1.0, max_startup_retries=1)


@pytest.fixture
def policy():
    return ScalingPolicy(target_utilization=50, min_replicas=1, max_replicas=10,
                         scale_up_cooldown=30.0, scale_down_cooldown=300.0)
