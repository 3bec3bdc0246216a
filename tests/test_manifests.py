"""
Manifest parsing and HPA rendering.
"""

import textwrap

import pytest
import yaml

from podscaler.errors import ManifestError
from podscaler.manifests import load_manifests, parse_manifests, policy_from_hpa, render_hpa, workload_from_manifest
from podscaler.models import ScalingPolicy


def test_bundled_manifests(manifests_dir):
    bundle = load_manifests(manifests_dir)
    assert sorted(bundle.workloads) == ["flask-app", "mongodb"]
    assert "Service/flask-service" in bundle.skipped

    mongo = bundle.workloads["mongodb"]
    assert mongo.stateful and mongo.ordered
    assert mongo.kind == "StatefulSet"
    assert mongo.image == "mongo:latest"
    assert mongo.label_map == {"app": "mongodb"}
    (tpl,) = mongo.claim_templates
    assert tpl.name == "mongo-persistent-storage"
    assert tpl.capacity_bytes == 2 ** 30
    assert tpl.access_modes == ("ReadWriteOnce",)
    assert tpl.mount_path == "/data/db"
    assert mongo.requests.cpu_millicores == 500

    flask = bundle.workloads["flask-app"]
    assert not flask.stateful and not flask.ordered
    assert flask.requests.cpu_millicores == 250
    assert flask.requests.memory_bytes == 128 * 2 ** 20

    assert bundle.policy_for("flask-app") == ScalingPolicy(target_utilization=50, min_replicas=1, max_replicas=5)
    mp = bundle.policy_for("mongodb")
    assert (mp.target_utilization, mp.min_replicas, mp.max_replicas) == (70, 1, 3)
    assert (mp.scale_up_cooldown, mp.scale_down_cooldown) == (30, 300)
    assert bundle.orphan_policies() == []


def test_parallel_statefulset_is_unordered():
    doc = yaml.safe_load(textwrap.dedent("""
        apiVersion: apps/v1
        kind: StatefulSet
        metadata: {name: cache}
        spec:
          replicas: 2
          podManagementPolicy: Parallel
          template:
            spec:
              containers: [{name: c, image: redis}]
    """))
    spec = workload_from_manifest(doc)
    assert spec.stateful and not spec.ordered
    assert spec.replicas == 2
    assert spec.claim_templates == ()
    assert spec.label_map == {"app": "cache"}


@pytest.mark.parametrize("text", [
    "kind: Deployment\nmetadata: {name: x}\nspec: {template: {spec: {containers: []}}}",
    "kind: Deployment\nspec: {template: {spec: {containers: [{name: c}]}}}",
    "kind: StatefulSet\nmetadata: {name: x}\nspec:\n  template: {spec: {containers: [{name: c}]}}\n"
    "  volumeClaimTemplates: [{metadata: {name: d}, spec: {}}]",
    "kind: StatefulSet\nmetadata: {name: x}\nspec:\n  template: {spec: {containers: [{name: c}]}}\n"
    "  volumeClaimTemplates: [{metadata: {name: d}, spec: {resources: {requests: {storage: lots}}}}]",
    "kind: Deployment\nmetadata: {name: x}\nspec: {replicas: -2, template: {spec: {containers: [{name: c}]}}}",
    "- just\n- a list",
    "kind: Deployment\nmetadata: {name: x\n",
])
def test_bad_manifests_raise(text):
    with pytest.raises(ManifestError):
        parse_manifests(text)


def test_duplicate_workload_rejected():
    doc = "kind: Deployment\nmetadata: {name: x}\nspec: {template: {spec: {containers: [{name: c}]}}}\n"
    with pytest.raises(ManifestError):
        parse_manifests(doc + "---\n" + doc)


def test_hpa_v2_without_cpu_metric_uses_default_target():
    target, policy = policy_from_hpa({
        "apiVersion": "autoscaling/v2",
        "kind": "HorizontalPodAutoscaler",
        "metadata": {"name": "h"},
        "spec": {"scaleTargetRef": {"name": "web"}, "maxReplicas": 4},
    })
    assert target == "web"
    assert policy.target_utilization == 80
    assert policy.min_replicas == 1


@pytest.mark.parametrize("spec", [
    {"maxReplicas": 3},
    {"scaleTargetRef": {"name": "web"}},
    {"scaleTargetRef": {"name": "web"}, "minReplicas": 5, "maxReplicas": 2},
    {"scaleTargetRef": {"name": "web"}, "maxReplicas": 2, "targetCPUUtilizationPercentage": 0},
])
def test_invalid_hpa(spec):
    with pytest.raises(ManifestError):
        policy_from_hpa({"apiVersion": "autoscaling/v1", "kind": "HorizontalPodAutoscaler",
                         "metadata": {"name": "h"}, "spec": spec})


def test_orphan_policy_reported():
    bundle = parse_manifests(textwrap.dedent("""
        apiVersion: autoscaling/v1
        kind: HorizontalPodAutoscaler
        metadata: {name: ghost-hpa}
        spec:
          scaleTargetRef: {name: ghost}
          maxReplicas: 3
    """))
    assert bundle.orphan_policies() == ["ghost"]


def test_render_hpa_parses_back():
    policy = ScalingPolicy(target_utilization=60, min_replicas=2, max_replicas=8,
                           scale_up_cooldown=15, scale_down_cooldown=120)
    text = render_hpa("flask-app", policy, namespace="web")
    doc = yaml.safe_load(text)
    assert doc["metadata"] == {"name": "flask-app-hpa", "namespace": "web"}
    assert doc["spec"]["scaleTargetRef"]["kind"] == "Deployment"
    target, parsed = policy_from_hpa(doc)
    assert target == "flask-app"
    assert parsed == policy


def test_load_missing_file(tmp_path):
    with pytest.raises(ManifestError):
        load_manifests(tmp_path / "nope.yaml")
