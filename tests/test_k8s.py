"""
Kubernetes adapter tests against in-memory fakes of the client APIs.
"""

from types import SimpleNamespace

import pytest
from kubernetes.client.rest import ApiException

from podscaler.errors import ManifestError, TransientMetricError
from podscaler.k8s import KubernetesMetricSource, KubernetesScaleTarget, selector_from_labels


def make_pod(name, cpu_requests=("250m",), phase="Running", ready=True, deleting=False):
    containers = [
        SimpleNamespace(resources=SimpleNamespace(requests={"cpu": c} if c else {}))
        for c in cpu_requests
    ]
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, deletion_timestamp="now" if deleting else None),
        spec=SimpleNamespace(containers=containers),
        status=SimpleNamespace(
            phase=phase,
            conditions=[SimpleNamespace(type="Ready", status="True" if ready else "False")],
        ),
    )


class FakeCore:
    def __init__(self, pods):
        self.pods = pods
        self.selectors = []

    def list_namespaced_pod(self, namespace, label_selector=""):
        self.selectors.append(label_selector)
        return SimpleNamespace(items=self.pods)


class FakeCustom:
    def __init__(self, items=None, error=None):
        self.items = items or []
        self.error = error

    def list_namespaced_custom_object(self, group, version, namespace, plural, label_selector=""):
        if self.error:
            raise self.error
        assert (group, version, plural) == ("metrics.k8s.io", "v1beta1", "pods")
        return {"items": self.items}


class FakeApps:
    def __init__(self, replicas):
        self.replicas = replicas
        self.patches = []

    def read_namespaced_deployment_scale(self, name, namespace):
        return SimpleNamespace(spec=SimpleNamespace(replicas=self.replicas))

    read_namespaced_stateful_set_scale = read_namespaced_deployment_scale

    def patch_namespaced_deployment_scale(self, name, namespace, body):
        self.patches.append(("Deployment", name, body["spec"]["replicas"]))

    def patch_namespaced_stateful_set_scale(self, name, namespace, body):
        self.patches.append(("StatefulSet", name, body["spec"]["replicas"]))


def usage(name, *cpus):
    return {"metadata": {"name": name}, "containers": [{"usage": {"cpu": c}} for c in cpus]}


def test_selector_from_labels():
    assert selector_from_labels({"tier": "db", "app": "mongodb"}) == "app=mongodb,tier=db"


@pytest.mark.asyncio
async def test_metric_source_ratio_against_requests():
    core = FakeCore([
        make_pod("web-a", ("250m",)),
        make_pod("web-b", ("100m", "100m")),
        make_pod("web-c", ("100m", None)),       # a container without request: no ratio
    ])
    custom = FakeCustom([
        usage("web-a", "200m"),
        usage("web-b", "50m", "250000000n"),
        usage("web-c", "100m"),
        usage("stranger", "1"),
    ])
    src = KubernetesMetricSource("default", "app=web", core_api=core, custom_api=custom)
    values = await src.sample()
    assert values == {"web-a": pytest.approx(0.8), "web-b": pytest.approx(1.5)}
    assert core.selectors == ["app=web"]


@pytest.mark.asyncio
async def test_metric_source_api_error_is_transient():
    src = KubernetesMetricSource("default", "", core_api=FakeCore([make_pod("p")]),
                                 custom_api=FakeCustom(error=ApiException(status=503, reason="unavailable")))
    with pytest.raises(TransientMetricError):
        await src.sample()


@pytest.mark.asyncio
async def test_scale_target_refresh_counts_ready_pods_only():
    core = FakeCore([
        make_pod("mongodb-0"),
        make_pod("mongodb-1", ready=False),
        make_pod("mongodb-2", phase="Pending"),
        make_pod("mongodb-3", deleting=True),
    ])
    target = KubernetesScaleTarget("mongodb", kind="StatefulSet", apps_api=FakeApps(4), core_api=core)
    await target.refresh()
    assert target.replicas == 4
    assert target.running_names() == ("mongodb-0",)
    assert core.selectors == ["app=mongodb"]
    assert target.describe()["running"] == ["mongodb-0"]


@pytest.mark.asyncio
async def test_scale_target_patches_the_right_subresource():
    apps = FakeApps(1)
    dep = KubernetesScaleTarget("web", apps_api=apps, core_api=FakeCore([]))
    sts = KubernetesScaleTarget("db", kind="StatefulSet", apps_api=apps, core_api=FakeCore([]))
    assert await dep.set_replicas(3) == 3
    await sts.set_replicas(2)
    assert apps.patches == [("Deployment", "web", 3), ("StatefulSet", "db", 2)]
    assert dep.replicas == 3


def test_scale_target_rejects_other_kinds():
    with pytest.raises(ManifestError):
        KubernetesScaleTarget("job", kind="Job", apps_api=FakeApps(0), core_api=FakeCore([]))
