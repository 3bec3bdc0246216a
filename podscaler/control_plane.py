# podscaler/control_plane.py
"""
podscaler Control Plane
-----------------------

Wires the pieces together for a set of workloads:

    MetricSource -> MetricPoller (one, shared) -> AutoscalingController (one per workload)
                                                      -> scale target (instance set or k8s)
    VolumeLifecycleManager (one, shared by every stateful instance set)

and owns the background loops: the poller task plus one ResilientLoop per
controller ticking on settings.tick_interval.

The API and the CLI both build a ControlPlane; the API keeps it on
app.state.control_plane.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from podscaler.autoscaler import AutoscalingController, ResilientLoop, ScalingDecision
from podscaler.config import Settings
from podscaler.errors import PodscalerError, WorkloadNotFound
from podscaler.instances import WorkloadInstanceSet
from podscaler.manifests import ManifestBundle, load_manifests
from podscaler.metrics_source import MetricPoller, MetricSource, StaticMetricSource
from podscaler.models import ScalingPolicy, WorkloadSpec
from podscaler.runtime import InstanceRuntime, SimulatedRuntime
from podscaler.utils.logger import get_logger
from podscaler.utils.time_utils import MonotonicClock
from podscaler.volumes import VolumeLifecycleManager

LOG = get_logger("podscaler.control_plane")


@dataclass
class ManagedWorkload:
    spec: WorkloadSpec
    target: Any
    controller: AutoscalingController
    loop: Optional[ResilientLoop] = None


class ControlPlane:
    def __init__(self,
                 settings: Optional[Settings] = None,
                 source: Optional[MetricSource] = None,
                 runtime: Optional[InstanceRuntime] = None,
                 volumes: Optional[VolumeLifecycleManager] = None,
                 clock: Optional[Any] = None):
        self.settings = settings or Settings()
        self.clock = clock or MonotonicClock()
        self.source = source or StaticMetricSource()
        self.runtime = runtime or SimulatedRuntime()
        self.volumes = volumes or VolumeLifecycleManager(clock=self.clock)
        self.poller = MetricPoller(
            self.source,
            interval=self.settings.poll_interval,
            window_size=self.settings.metric_window,
            degraded_after=self.settings.degraded_after,
            clock=self.clock,
        )
        self._workloads: Dict[str, ManagedWorkload] = {}
        self._started = False

    # -------------------------
    # Registration
    # -------------------------
    def register_workload(self,
                          spec: WorkloadSpec,
                          policy: Optional[ScalingPolicy] = None,
                          target: Optional[Any] = None) -> AutoscalingController:
        """
        Manage a workload. Without an explicit target an in-process
        WorkloadInstanceSet is built on the shared runtime and volumes.
        """
        if spec.name in self._workloads:
            raise PodscalerError(f"workload {spec.name!r} is already registered")
        policy = policy or self.settings.default_policy()
        if target is None:
            spec = dataclasses.replace(
                spec,
                max_parallel=self.settings.max_parallel,
                startup_timeout=self.settings.startup_timeout,
                max_startup_retries=self.settings.startup_retries,
            )
            target = WorkloadInstanceSet(
                spec,
                self.runtime,
                volumes=self.volumes if spec.stateful else None,
                clock=self.clock,
                scale_down_policy=policy.scale_down_policy,
                utilization_fn=self.poller.latest,
            )
        controller = AutoscalingController(target, self.poller, policy,
                                           clock=self.clock, history_size=self.settings.history_size)
        self._workloads[spec.name] = ManagedWorkload(spec=spec, target=target, controller=controller)
        LOG.info("Registered workload %s (%s, stateful=%s) policy=%s",
                 spec.name, spec.kind, spec.stateful, policy.to_dict())
        return controller

    def register_bundle(self, bundle: ManifestBundle) -> List[str]:
        for name in bundle.orphan_policies():
            LOG.warning("HPA targets %s which is not in the loaded manifests; ignored", name)
        for spec in bundle.workloads.values():
            self.register_workload(spec, bundle.policy_for(spec.name))
        return sorted(bundle.workloads)

    @classmethod
    def from_settings(cls,
                      settings: Settings,
                      source: Optional[MetricSource] = None,
                      runtime: Optional[InstanceRuntime] = None,
                      clock: Optional[Any] = None) -> "ControlPlane":
        """Build from settings: manifests are loaded; k8s_enabled swaps in cluster adapters."""
        bundle = load_manifests(settings.manifests) if settings.manifests else ManifestBundle()
        if not settings.k8s_enabled:
            plane = cls(settings, source=source, runtime=runtime, clock=clock)
            plane.register_bundle(bundle)
            return plane

        from podscaler.k8s import KubernetesMetricSource, KubernetesScaleTarget, load_kube_config, selector_from_labels
        load_kube_config()
        plane = cls(settings, source=source or KubernetesMetricSource(settings.k8s_namespace, ""), clock=clock)
        for spec in bundle.workloads.values():
            target = KubernetesScaleTarget(spec.name, kind=spec.kind, namespace=settings.k8s_namespace,
                                           label_selector=selector_from_labels(spec.label_map))
            plane.register_workload(spec, bundle.policy_for(spec.name), target=target)
        return plane

    # -------------------------
    # Lookup
    # -------------------------
    def names(self) -> List[str]:
        return sorted(self._workloads)

    def get(self, name: str) -> ManagedWorkload:
        try:
            return self._workloads[name]
        except KeyError:
            raise WorkloadNotFound(name)

    def controller(self, name: str) -> AutoscalingController:
        return self.get(name).controller

    @property
    def started(self) -> bool:
        return self._started

    @property
    def ready(self) -> bool:
        return self._started and not self.poller.degraded

    # -------------------------
    # Operations
    # -------------------------
    def update_policy(self, name: str, policy: ScalingPolicy) -> ScalingPolicy:
        wl = self.get(name)
        if isinstance(wl.target, WorkloadInstanceSet):
            wl.target.scale_down_policy = policy.scale_down_policy
        return wl.controller.update_policy(policy)

    async def push_metrics(self, values: Mapping[str, float], replace: bool = False) -> bool:
        """
        Feed samples into an in-memory source and poll once. Without
        `replace`, identities not mentioned keep their previous value.
        """
        if not isinstance(self.source, StaticMetricSource):
            raise PodscalerError(f"metric source {self.source.name!r} does not accept pushed samples")
        if replace:
            self.source.set_all(values)
        else:
            for identity, value in values.items():
                self.source.set(identity, value)
        return await self.poller.poll_once()

    async def tick_all(self) -> Dict[str, ScalingDecision]:
        out = {}
        for name in self.names():
            out[name] = await self.controller(name).tick()
        return out

    # -------------------------
    # Lifecycle
    # -------------------------
    async def start(self, loops: bool = True) -> None:
        """Bring workloads to their declared size, clamp to policy, start polling and ticking."""
        if self._started:
            return
        for name in self.names():
            wl = self._workloads[name]
            if isinstance(wl.target, WorkloadInstanceSet):
                await wl.target.start()
            await wl.controller.enforce_bounds()
        if loops:
            await self.poller.start()
            for name in self.names():
                wl = self._workloads[name]
                wl.loop = ResilientLoop(f"autoscaler:{name}", wl.controller.tick, self.settings.tick_interval)
                await wl.loop.start()
        self._started = True
        LOG.info("Control plane started with %d workloads", len(self._workloads))

    async def stop(self) -> None:
        for wl in self._workloads.values():
            if wl.loop is not None:
                await wl.loop.stop()
                wl.loop = None
        await self.poller.stop()
        self._started = False
        LOG.info("Control plane stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "started": self._started,
            "ready": self.ready,
            "metrics": self.poller.status(),
            "claims": self.volumes.stats(),
            "workloads": {name: self._workloads[name].controller.status() for name in self.names()},
        }


__all__ = ["ControlPlane", "ManagedWorkload"]
