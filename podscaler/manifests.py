# podscaler/manifests.py
"""
Kubernetes manifest reader/writer.

Turns the YAML a cluster would be given into podscaler configuration:

    StatefulSet              -> WorkloadSpec(stateful=True) + VolumeClaimTemplates
    Deployment               -> WorkloadSpec(stateful=False)
    HorizontalPodAutoscaler  -> ScalingPolicy for spec.scaleTargetRef.name
                                (autoscaling/v1 and autoscaling/v2)

and renders ScalingPolicies back out as autoscaling/v2 HPA documents.
Unknown kinds (Service, ConfigMap, ...) are skipped.
"""

from __future__ import annotations

import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import yaml

from podscaler.errors import InvalidPolicyError, ManifestError
from podscaler.models import ResourceRequests, ScalingPolicy, VolumeClaimTemplate, WorkloadSpec
from podscaler.quantity import parse_bytes, parse_cpu_millicores
from podscaler.utils.logger import get_logger

LOG = get_logger("podscaler.manifests")

WORKLOAD_KINDS = ("StatefulSet", "Deployment")
HPA_KIND = "HorizontalPodAutoscaler"

# Kubernetes defaults when an HPA leaves them out
DEFAULT_HPA_TARGET = 80.0
DEFAULT_HPA_MIN = 1


@dataclass
class ManifestBundle:
    """Everything read from one or more manifest files, keyed by workload name."""
    workloads: Dict[str, WorkloadSpec] = field(default_factory=dict)
    policies: Dict[str, ScalingPolicy] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    def merge(self, other: "ManifestBundle") -> "ManifestBundle":
        for name in other.workloads:
            if name in self.workloads:
                raise ManifestError(f"workload {name!r} defined twice")
        self.workloads.update(other.workloads)
        self.policies.update(other.policies)
        self.skipped.extend(other.skipped)
        return self

    def policy_for(self, name: str) -> Optional[ScalingPolicy]:
        return self.policies.get(name)

    def orphan_policies(self) -> List[str]:
        """HPAs whose scaleTargetRef names no workload in the bundle."""
        return sorted(n for n in self.policies if n not in self.workloads)


# -------------------------
# Loading
# -------------------------
def parse_documents(text: str) -> List[Dict[str, Any]]:
    try:
        docs = [d for d in yaml.safe_load_all(text) if d is not None]
    except yaml.YAMLError as e:
        raise ManifestError(f"invalid YAML: {e}") from e
    for d in docs:
        if not isinstance(d, dict) or "kind" not in d:
            raise ManifestError(f"manifest document must be a mapping with a 'kind', got {type(d).__name__}")
    return docs


def parse_manifests(text: str) -> ManifestBundle:
    bundle = ManifestBundle()
    for doc in parse_documents(text):
        kind = doc["kind"]
        if kind in WORKLOAD_KINDS:
            spec = workload_from_manifest(doc)
            if spec.name in bundle.workloads:
                raise ManifestError(f"workload {spec.name!r} defined twice")
            bundle.workloads[spec.name] = spec
        elif kind == HPA_KIND:
            target, policy = policy_from_hpa(doc)
            bundle.policies[target] = policy
        else:
            bundle.skipped.append(f"{kind}/{_meta(doc).get('name', '?')}")
    return bundle


def load_manifests(paths: Union[str, pathlib.Path, Iterable[Union[str, pathlib.Path]]]) -> ManifestBundle:
    """Read files (or every *.yaml / *.yml in a directory) into one bundle."""
    if isinstance(paths, (str, pathlib.Path)):
        paths = [paths]
    bundle = ManifestBundle()
    for p in paths:
        p = pathlib.Path(p)
        files = sorted(list(p.glob("*.yaml")) + list(p.glob("*.yml"))) if p.is_dir() else [p]
        for f in files:
            try:
                text = f.read_text(encoding="utf-8")
            except OSError as e:
                raise ManifestError(f"cannot read manifest {f}: {e}") from e
            try:
                bundle.merge(parse_manifests(text))
            except ManifestError as e:
                raise ManifestError(f"{f}: {e}") from e
            LOG.info("Loaded manifests from %s", f)
    return bundle


# -------------------------
# Workloads
# -------------------------
def _meta(doc: Dict[str, Any]) -> Dict[str, Any]:
    return doc.get("metadata") or {}


def _requests_of(containers: List[Dict[str, Any]]) -> ResourceRequests:
    cpu = 0
    mem = 0
    for c in containers:
        req = ((c.get("resources") or {}).get("requests") or {})
        if "cpu" in req:
            cpu += parse_cpu_millicores(req["cpu"])
        if "memory" in req:
            mem += parse_bytes(req["memory"])
    return ResourceRequests(cpu_millicores=cpu, memory_bytes=mem)


def _claim_templates(spec: Dict[str, Any], containers: List[Dict[str, Any]], workload: str) -> Tuple[VolumeClaimTemplate, ...]:
    mounts: Dict[str, str] = {}
    for c in containers:
        for m in c.get("volumeMounts") or []:
            mounts.setdefault(m.get("name"), m.get("mountPath"))
    out = []
    for tpl in spec.get("volumeClaimTemplates") or []:
        name = _meta(tpl).get("name")
        if not name:
            raise ManifestError(f"{workload}: volumeClaimTemplate without metadata.name")
        tspec = tpl.get("spec") or {}
        storage = ((tspec.get("resources") or {}).get("requests") or {}).get("storage")
        if storage is None:
            raise ManifestError(f"{workload}: volumeClaimTemplate {name} has no resources.requests.storage")
        out.append(VolumeClaimTemplate(
            name=name,
            capacity_bytes=parse_bytes(storage),
            access_modes=tuple(tspec.get("accessModes") or ("ReadWriteOnce",)),
            storage_class=tspec.get("storageClassName"),
            mount_path=mounts.get(name),
        ))
    return tuple(out)


def workload_from_manifest(doc: Dict[str, Any]) -> WorkloadSpec:
    kind = doc.get("kind")
    if kind not in WORKLOAD_KINDS:
        raise ManifestError(f"expected one of {WORKLOAD_KINDS}, got {kind!r}")
    meta = _meta(doc)
    name = meta.get("name")
    if not name:
        raise ManifestError(f"{kind} without metadata.name")
    spec = doc.get("spec") or {}
    pod = (spec.get("template") or {}).get("spec") or {}
    containers = pod.get("containers") or []
    if not containers:
        raise ManifestError(f"{kind}/{name}: pod template has no containers")
    labels = (spec.get("selector") or {}).get("matchLabels") \
        or ((spec.get("template") or {}).get("metadata") or {}).get("labels") \
        or {"app": name}
    stateful = kind == "StatefulSet"
    try:
        return WorkloadSpec(
            name=name,
            replicas=int(spec.get("replicas", 1)),
            stateful=stateful,
            # podManagementPolicy: Parallel drops the ordering guarantee
            ordered=stateful and spec.get("podManagementPolicy", "OrderedReady") != "Parallel",
            kind=kind,
            namespace=meta.get("namespace", "default"),
            image=containers[0].get("image"),
            labels=tuple(sorted((str(k), str(v)) for k, v in labels.items())),
            requests=_requests_of(containers),
            claim_templates=_claim_templates(spec, containers, name) if stateful else (),
        )
    except ManifestError:
        raise
    except (InvalidPolicyError, ValueError, TypeError) as e:
        raise ManifestError(f"{kind}/{name}: {e}") from e


# -------------------------
# HorizontalPodAutoscaler
# -------------------------
def _v2_cpu_target(spec: Dict[str, Any]) -> Optional[float]:
    for m in spec.get("metrics") or []:
        if m.get("type") != "Resource":
            continue
        res = m.get("resource") or {}
        if res.get("name") != "cpu":
            continue
        # v2: resource.target.averageUtilization; v2beta1: resource.targetAverageUtilization
        target = res.get("target") or {}
        value = target.get("averageUtilization", res.get("targetAverageUtilization"))
        if value is not None:
            return float(value)
    return None


def _stabilization(behavior: Dict[str, Any], direction: str) -> Optional[float]:
    window = (behavior.get(direction) or {}).get("stabilizationWindowSeconds")
    return float(window) if window is not None else None


def policy_from_hpa(doc: Dict[str, Any]) -> Tuple[str, ScalingPolicy]:
    """Returns (scale target name, policy)."""
    name = _meta(doc).get("name", "?")
    spec = doc.get("spec") or {}
    target_ref = (spec.get("scaleTargetRef") or {}).get("name")
    if not target_ref:
        raise ManifestError(f"HPA {name}: spec.scaleTargetRef.name is required")
    if "maxReplicas" not in spec:
        raise ManifestError(f"HPA {name}: spec.maxReplicas is required")

    api_version = str(doc.get("apiVersion", "autoscaling/v2"))
    if api_version == "autoscaling/v1":
        target = spec.get("targetCPUUtilizationPercentage")
        target = float(target) if target is not None else None
    else:
        target = _v2_cpu_target(spec)
    if target is None:
        target = DEFAULT_HPA_TARGET

    kwargs: Dict[str, Any] = {}
    behavior = spec.get("behavior") or {}
    up = _stabilization(behavior, "scaleUp")
    down = _stabilization(behavior, "scaleDown")
    if up is not None:
        kwargs["scale_up_cooldown"] = up
    if down is not None:
        kwargs["scale_down_cooldown"] = down
    try:
        policy = ScalingPolicy(
            target_utilization=target,
            min_replicas=int(spec.get("minReplicas", DEFAULT_HPA_MIN)),
            max_replicas=int(spec["maxReplicas"]),
            **kwargs,
        )
    except (TypeError, ValueError) as e:
        raise ManifestError(f"HPA {name}: {e}") from e
    return target_ref, policy


def render_hpa(workload: str,
               policy: ScalingPolicy,
               kind: str = "Deployment",
               namespace: str = "default") -> str:
    """autoscaling/v2 HPA manifest for a workload and policy."""
    hpa = {
        "apiVersion": "autoscaling/v2",
        "kind": HPA_KIND,
        "metadata": {"name": f"{workload}-hpa", "namespace": namespace},
        "spec": {
            "scaleTargetRef": {"apiVersion": "apps/v1", "kind": kind, "name": workload},
            "minReplicas": policy.min_replicas,
            "maxReplicas": policy.max_replicas,
            "metrics": [{
                "type": "Resource",
                "resource": {
                    "name": "cpu",
                    "target": {"type": "Utilization", "averageUtilization": int(round(policy.target_utilization))},
                },
            }],
            "behavior": {
                "scaleUp": {"stabilizationWindowSeconds": int(policy.scale_up_cooldown)},
                "scaleDown": {"stabilizationWindowSeconds": int(policy.scale_down_cooldown)},
            },
        },
    }
    return yaml.safe_dump(hpa, sort_keys=False)


__all__ = [
    "ManifestBundle", "parse_documents", "parse_manifests", "load_manifests",
    "workload_from_manifest", "policy_from_hpa", "render_hpa",
]
