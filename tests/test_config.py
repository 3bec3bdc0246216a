"""
Settings loading from PODSCALER_* environment.
"""

import pytest

from podscaler.config import Settings, load_settings
from podscaler.errors import InvalidPolicyError
from podscaler.models import ScaleDownPolicy


def test_defaults():
    s = load_settings(environ={})
    assert s.poll_interval == 15.0
    assert s.degraded_after == 3
    assert s.tolerance == 0.0
    assert s.manifests == []
    assert s.k8s_enabled is False


def test_environment_values_are_parsed():
    s = load_settings(environ={
        "PODSCALER_POLL_INTERVAL": "30s",
        "PODSCALER_SCALE_DOWN_COOLDOWN": "5m",
        "PODSCALER_MAX_REPLICAS": "20",
        "PODSCALER_MANIFESTS": "a.yaml, dir/ ,",
        "PODSCALER_K8S_ENABLED": "yes",
        "PODSCALER_SCALE_DOWN_POLICY": "least_utilized_first",
        "UNRELATED": "x",
    })
    assert s.poll_interval == 30.0
    assert s.scale_down_cooldown == 300.0
    assert s.max_replicas == 20
    assert s.manifests == ["a.yaml", "dir/"]
    assert s.k8s_enabled is True
    assert s.scale_down_policy is ScaleDownPolicy.LEAST_UTILIZED_FIRST


def test_overrides_win_and_none_is_ignored():
    s = load_settings(environ={"PODSCALER_TICK_INTERVAL": "10"}, tick_interval="2s", metric_window=None)
    assert s.tick_interval == 2.0
    assert s.metric_window == 5


def test_process_environment(monkeypatch):
    monkeypatch.setenv("PODSCALER_DEGRADED_AFTER", "7")
    assert load_settings(dotenv=False).degraded_after == 7


@pytest.mark.parametrize("env", [
    {"PODSCALER_MIN_REPLICAS": "5", "PODSCALER_MAX_REPLICAS": "2"},
    {"PODSCALER_TARGET_UTILIZATION": "0"},
    {"PODSCALER_POLL_INTERVAL": "soon"},
    {"PODSCALER_PORT": "99999"},
    {"PODSCALER_SCALE_DOWN_POLICY": "random"},
])
def test_invalid_settings(env):
    with pytest.raises(InvalidPolicyError):
        load_settings(environ=env)


def test_default_policy():
    p = Settings(target_utilization=60, min_replicas=2, max_replicas=4).default_policy()
    assert (p.target_utilization, p.min_replicas, p.max_replicas) == (60, 2, 4)
