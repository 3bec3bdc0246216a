# podscaler/k8s.py
"""
Kubernetes adapters
-------------------

Lets the controller run against a real cluster instead of the in-process
instance set:

 - KubernetesMetricSource: PodMetrics from metrics.k8s.io/v1beta1, turned
   into CPU utilization ratios against each pod's CPU requests (the same
   ratio the HorizontalPodAutoscaler uses)
 - KubernetesScaleTarget: reads and patches the scale subresource of a
   Deployment or StatefulSet and lists its pods by label selector

The kubernetes client is synchronous; calls are pushed to a worker thread so
the event loop (and the metric poller) never block on the API server.
Claims for StatefulSets are handled by the cluster's own controllers here,
so the VolumeLifecycleManager is not involved.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Tuple

from kubernetes import client as k8s_client, config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from podscaler.errors import ManifestError, TransientMetricError
from podscaler.metrics_source import MetricSource
from podscaler.quantity import parse_cpu_millicores
from podscaler.utils.logger import get_logger

LOG = get_logger("podscaler.k8s")

METRICS_GROUP = "metrics.k8s.io"
METRICS_VERSION = "v1beta1"


def load_kube_config(context: Optional[str] = None) -> str:
    """In-cluster service account first, then the local kubeconfig (e.g. minikube)."""
    try:
        k8s_config.load_incluster_config()
        LOG.info("Loaded in-cluster Kubernetes config")
        return "incluster"
    except ConfigException:
        k8s_config.load_kube_config(context=context)
        LOG.info("Loaded local kubeconfig (context=%s)", context or "current")
        return "kubeconfig"


def selector_from_labels(labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def _pod_cpu_request_millis(pod) -> Optional[int]:
    total = 0
    for c in pod.spec.containers or []:
        requests = (c.resources.requests if c.resources else None) or {}
        if "cpu" not in requests:
            # HPA semantics: a pod missing a request has no utilization
            return None
        total += parse_cpu_millicores(requests["cpu"])
    return total or None


def _pod_is_ready(pod) -> bool:
    if pod.metadata.deletion_timestamp is not None or pod.status.phase != "Running":
        return False
    for cond in pod.status.conditions or []:
        if cond.type == "Ready":
            return cond.status == "True"
    return False


class KubernetesMetricSource(MetricSource):
    """CPU utilization ratio per pod: sum(container usage) / sum(container requests)."""

    name = "kubernetes"

    def __init__(self,
                 namespace: str,
                 label_selector: str,
                 core_api: Optional[Any] = None,
                 custom_api: Optional[Any] = None):
        self.namespace = namespace
        self.label_selector = label_selector
        self.core_api = core_api or k8s_client.CoreV1Api()
        self.custom_api = custom_api or k8s_client.CustomObjectsApi()

    async def sample(self) -> Dict[str, float]:
        try:
            return await asyncio.to_thread(self._sample_blocking)
        except ApiException as e:
            raise TransientMetricError(f"metrics API error {e.status}: {e.reason}") from e

    def _sample_blocking(self) -> Dict[str, float]:
        pods = self.core_api.list_namespaced_pod(self.namespace, label_selector=self.label_selector)
        requests = {}
        for pod in pods.items:
            millis = _pod_cpu_request_millis(pod)
            if millis:
                requests[pod.metadata.name] = millis
        metrics = self.custom_api.list_namespaced_custom_object(
            METRICS_GROUP, METRICS_VERSION, self.namespace, "pods", label_selector=self.label_selector,
        )
        out: Dict[str, float] = {}
        for item in metrics.get("items", []):
            name = item.get("metadata", {}).get("name")
            if name not in requests:
                continue
            usage = sum(parse_cpu_millicores(c.get("usage", {}).get("cpu", "0")) for c in item.get("containers", []))
            out[name] = usage / requests[name]
        return out


class KubernetesScaleTarget:
    """
    Scale target backed by the scale subresource. `replicas` and
    `running_names()` reflect the last refresh().
    """

    def __init__(self,
                 name: str,
                 kind: str = "Deployment",
                 namespace: str = "default",
                 label_selector: str = "",
                 apps_api: Optional[Any] = None,
                 core_api: Optional[Any] = None):
        if kind not in ("Deployment", "StatefulSet"):
            raise ManifestError(f"cannot scale kind {kind!r}; expected Deployment or StatefulSet")
        self.name = name
        self.kind = kind
        self.namespace = namespace
        self.label_selector = label_selector or f"app={name}"
        self.apps_api = apps_api or k8s_client.AppsV1Api()
        self.core_api = core_api or k8s_client.CoreV1Api()
        self._replicas = 0
        self._running: Tuple[str, ...] = ()

    @property
    def replicas(self) -> int:
        return self._replicas

    def running_names(self) -> Tuple[str, ...]:
        return self._running

    async def refresh(self) -> None:
        await asyncio.to_thread(self._refresh_blocking)

    def _refresh_blocking(self) -> None:
        if self.kind == "Deployment":
            scale = self.apps_api.read_namespaced_deployment_scale(self.name, self.namespace)
        else:
            scale = self.apps_api.read_namespaced_stateful_set_scale(self.name, self.namespace)
        self._replicas = int(scale.spec.replicas or 0)
        pods = self.core_api.list_namespaced_pod(self.namespace, label_selector=self.label_selector)
        self._running = tuple(sorted(p.metadata.name for p in pods.items if _pod_is_ready(p)))

    async def set_replicas(self, replicas: int) -> int:
        body = {"spec": {"replicas": int(replicas)}}
        if self.kind == "Deployment":
            await asyncio.to_thread(self.apps_api.patch_namespaced_deployment_scale, self.name, self.namespace, body)
        else:
            await asyncio.to_thread(self.apps_api.patch_namespaced_stateful_set_scale, self.name, self.namespace, body)
        LOG.info("Patched %s/%s replicas=%d", self.kind, self.name, replicas)
        self._replicas = int(replicas)
        return self._replicas

    def describe(self) -> Dict[str, Any]:
        return {
            "workload": self.name,
            "kind": self.kind,
            "namespace": self.namespace,
            "replicas": self._replicas,
            "running": list(self._running),
        }


__all__ = ["load_kube_config", "selector_from_labels", "KubernetesMetricSource", "KubernetesScaleTarget"]
