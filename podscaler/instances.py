# podscaler/instances.py
"""
podscaler Workload Instance Set
-------------------------------

Creates and destroys instances of one workload until the live count matches
the requested replica count.

Behaviour:
 - stateful workloads get stable identities `<workload>-<ordinal>` and one
   claim per volumeClaimTemplate; ordered ones start instance k+1 only after
   instance k is Running, and scale down highest ordinal first
 - stateless workloads get `<workload>-<suffix>` identities and are created
   in parallel, bounded by spec.max_parallel
 - stateless scale-down order follows ScaleDownPolicy:
     newest_first          highest creation sequence first
     least_utilized_first  non-running first, then lowest utilization,
                           unknown utilization last, ties newest first
 - a start that exceeds spec.startup_timeout is retried up to
   spec.max_startup_retries times; after that the instance is marked Failed,
   torn down, and one replacement is attempted
 - set_replicas() only records the target; the reconcile loop re-reads it
   between steps, so a newer request supersedes pending work while in-flight
   creations finish or are torn down (claims released) before being dropped
"""

from __future__ import annotations

import math
import uuid
import asyncio
import itertools
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

from podscaler.errors import InstanceStartupError, InstanceStartupTimeout, InvalidPolicyError
from podscaler.metrics import PS_INSTANCES, PS_REPLICAS, PS_STARTUP_FAILURES
from podscaler.models import InstancePhase, ResourceUsage, ScaleDownPolicy, WorkloadInstance, WorkloadSpec
from podscaler.runtime import InstanceRuntime
from podscaler.utils.logger import get_logger, StructuredLoggerAdapter
from podscaler.utils.time_utils import MonotonicClock
from podscaler.volumes import VolumeLifecycleManager

LOG = get_logger("podscaler.instances")

UtilizationFn = Callable[[], Mapping[str, float]]


class WorkloadInstanceSet:
    """
    Replica set for one workload.

        iset = WorkloadInstanceSet(spec, SimulatedRuntime(), volumes=VolumeLifecycleManager())
        await iset.set_replicas(3)
        iset.running_names()   # ('mongodb-0', 'mongodb-1', 'mongodb-2')
    """

    def __init__(self,
                 spec: WorkloadSpec,
                 runtime: InstanceRuntime,
                 volumes: Optional[VolumeLifecycleManager] = None,
                 clock: Optional[Any] = None,
                 scale_down_policy: ScaleDownPolicy = ScaleDownPolicy.NEWEST_FIRST,
                 utilization_fn: Optional[UtilizationFn] = None,
                 failed_history: int = 50):
        if spec.claim_templates and volumes is None:
            raise InvalidPolicyError(f"workload {spec.name} declares claim templates but no volume manager was given")
        self.spec = spec
        self.runtime = runtime
        self.volumes = volumes
        self.clock = clock or MonotonicClock()
        self.scale_down_policy = ScaleDownPolicy(scale_down_policy)
        self.utilization_fn = utilization_fn
        self._instances: Dict[str, WorkloadInstance] = {}
        self._target = 0
        self._seq = itertools.count(1)
        self._lock = asyncio.Lock()
        self._sem = asyncio.Semaphore(spec.max_parallel)
        self.failed: Deque[Dict[str, Any]] = deque(maxlen=failed_history)
        self._lad = StructuredLoggerAdapter(LOG, {"component": "instances", "workload": spec.name})

    # -------------------------
    # Read-only views
    # -------------------------
    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def target(self) -> int:
        return self._target

    @property
    def replicas(self) -> int:
        """Live instances: Pending or Running."""
        return len(self._live())

    def instances(self) -> List[WorkloadInstance]:
        return sorted(self._instances.values(), key=self._order_key)

    def get(self, name: str) -> Optional[WorkloadInstance]:
        return self._instances.get(name)

    def running_names(self) -> Tuple[str, ...]:
        return tuple(i.name for i in self.instances() if i.phase == InstancePhase.RUNNING)

    def _live(self) -> List[WorkloadInstance]:
        return [i for i in self._instances.values() if i.phase in (InstancePhase.PENDING, InstancePhase.RUNNING)]

    async def refresh(self) -> None:
        """
        Update the usage snapshot of every Running instance: CPU from the
        latest utilization sample times the CPU request, memory from the
        runtime. Instances without a new sample keep their previous value.
        """
        util = dict(self.utilization_fn() if self.utilization_fn else {})
        for inst in self._instances.values():
            if inst.phase != InstancePhase.RUNNING:
                continue
            ratio = util.get(inst.name)
            cpu = inst.usage.cpu_millicores if ratio is None else int(round(ratio * self.spec.requests.cpu_millicores))
            memory = self.runtime.memory_bytes(inst, self.spec)
            inst.usage = ResourceUsage(
                cpu_millicores=cpu,
                memory_bytes=inst.usage.memory_bytes if memory is None else memory,
            )

    @staticmethod
    def _order_key(inst: WorkloadInstance):
        return (inst.ordinal if inst.ordinal is not None else math.inf, inst.seq)

    # -------------------------
    # Scaling commands
    # -------------------------
    async def set_replicas(self, replicas: int) -> int:
        """Record the target and reconcile towards it. Returns the live count."""
        if replicas < 0:
            raise ValueError(f"replicas must be >= 0, got {replicas}")
        self._target = int(replicas)
        return await self.reconcile()

    async def start(self) -> int:
        """Bring the set to the replica count declared by the workload spec."""
        return await self.set_replicas(self.spec.replicas)

    async def reconcile(self) -> int:
        async with self._lock:
            while True:
                target = self._target
                live = self._live()
                if len(live) < target:
                    created = await self._scale_up_step(target - len(live))
                    if created == 0:
                        self._lad.warning("Scale-up stalled at %d/%d live instances", len(self._live()), target)
                        break
                elif len(live) > target:
                    await self._scale_down_step(len(live) - target)
                else:
                    break
            self._update_metrics()
            return self.replicas

    # -------------------------
    # Scale up
    # -------------------------
    async def _scale_up_step(self, missing: int) -> int:
        if self.spec.ordered:
            inst = await self._create_with_replacement(self._next_ordinal())
            return 1 if inst else 0
        batch = min(missing, self.spec.max_parallel)
        ordinals: List[Optional[int]] = []
        for _ in range(batch):
            ordinal = self._next_ordinal(reserved=ordinals) if self.spec.stateful else None
            ordinals.append(ordinal)
        # every sibling settles (Running, or torn down) before an error leaves the lock
        results = await asyncio.gather(*(self._bounded_create(o) for o in ordinals), return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        created = sum(1 for r in results if isinstance(r, WorkloadInstance))
        self._lad.info("Created %d/%d instances in parallel batch", created, batch)
        if errors:
            if len(errors) > 1:
                self._lad.error("%d creations in the batch failed; raising the first: %s", len(errors), errors[0])
            raise errors[0]
        return created

    async def _bounded_create(self, ordinal: Optional[int]) -> Optional[WorkloadInstance]:
        async with self._sem:
            return await self._create_with_replacement(ordinal)

    def _next_ordinal(self, reserved: Optional[List[Optional[int]]] = None) -> Optional[int]:
        if not self.spec.stateful:
            return None
        used = {i.ordinal for i in self._instances.values()}
        used.update(o for o in (reserved or []) if o is not None)
        for ordinal in itertools.count(0):
            if ordinal not in used:
                return ordinal

    def _identity(self, ordinal: Optional[int]) -> str:
        if ordinal is not None:
            return f"{self.spec.name}-{ordinal}"
        while True:
            name = f"{self.spec.name}-{uuid.uuid4().hex[:5]}"
            if name not in self._instances:
                return name

    async def _create_with_replacement(self, ordinal: Optional[int]) -> Optional[WorkloadInstance]:
        inst = await self._create_instance(ordinal)
        if inst is not None:
            return inst
        self._lad.warning("Attempting replacement for failed instance slot (ordinal=%s)", ordinal)
        return await self._create_instance(ordinal)

    async def _create_instance(self, ordinal: Optional[int]) -> Optional[WorkloadInstance]:
        """
        Create one instance and wait for it to be Running. Returns None when
        startup failed after all retries (the failure is recorded).
        Storage conflicts propagate: they need an operator.
        """
        inst = WorkloadInstance(
            name=self._identity(ordinal),
            workload=self.spec.name,
            seq=next(self._seq),
            ordinal=ordinal,
            phase=InstancePhase.PENDING,
            created_at=self.clock.now(),
        )
        self._instances[inst.name] = inst
        try:
            if self.spec.stateful:
                for tpl in self.spec.claim_templates:
                    inst.claims[tpl.name] = await self.volumes.attach(inst.name, tpl)
            await self._start_with_retries(inst)
        except (InstanceStartupTimeout, InstanceStartupError) as e:
            inst.phase = InstancePhase.FAILED
            inst.last_error = str(e)
            self.failed.append({"name": inst.name, "ordinal": ordinal, "error": str(e),
                                "restarts": inst.restarts, "at": self.clock.now()})
            self._lad.error("Instance %s failed to start: %s", inst.name, e)
            await self._teardown(inst)
            return None
        except BaseException:
            # cancelled or fatal: release what was acquired before giving up
            await asyncio.shield(self._teardown(inst))
            raise
        inst.phase = InstancePhase.RUNNING
        self._lad.info("Instance %s Running", inst.name)
        return inst

    async def _start_with_retries(self, inst: WorkloadInstance) -> None:
        attempts = 1 + max(0, self.spec.max_startup_retries)
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                await asyncio.wait_for(self.runtime.start(inst, self.spec), timeout=self.spec.startup_timeout)
                return
            except asyncio.TimeoutError:
                last_error = InstanceStartupTimeout(inst.name, self.spec.startup_timeout, attempt)
                PS_STARTUP_FAILURES.labels(workload=self.spec.name, reason="timeout").inc()
            except InstanceStartupError as e:
                last_error = e
                PS_STARTUP_FAILURES.labels(workload=self.spec.name, reason="error").inc()
            if attempt < attempts:
                inst.restarts += 1
                self._lad.warning("Start attempt %d/%d for %s failed (%s); retrying",
                                  attempt, attempts, inst.name, last_error)
        raise last_error

    # -------------------------
    # Scale down
    # -------------------------
    def removal_candidates(self, count: int) -> List[WorkloadInstance]:
        """Deterministic choice of which live instances go first."""
        live = self._live()
        if self.spec.stateful:
            ordered = sorted(live, key=lambda i: i.ordinal, reverse=True)
        elif self.scale_down_policy == ScaleDownPolicy.LEAST_UTILIZED_FIRST:
            util = dict(self.utilization_fn() if self.utilization_fn else {})

            def key(i: WorkloadInstance):
                running = i.phase == InstancePhase.RUNNING
                known = i.name in util
                return (running, not known, util.get(i.name, 0.0), -i.seq)
            ordered = sorted(live, key=key)
        else:
            ordered = sorted(live, key=lambda i: i.seq, reverse=True)
        return ordered[:max(0, count)]

    async def _scale_down_step(self, excess: int) -> None:
        if self.spec.ordered:
            victim = self.removal_candidates(1)[0]
            await self._destroy(victim)
            return
        victims = self.removal_candidates(excess)

        async def _bounded(inst):
            async with self._sem:
                await self._destroy(inst)
        await asyncio.gather(*(_bounded(v) for v in victims))

    async def _destroy(self, inst: WorkloadInstance) -> None:
        inst.phase = InstancePhase.TERMINATING
        self._lad.info("Terminating instance %s", inst.name)
        await self._teardown(inst)

    async def _teardown(self, inst: WorkloadInstance) -> None:
        """Stop the instance, release its claims and forget it."""
        try:
            await self.runtime.stop(inst, self.spec)
        except Exception:
            self._lad.exception("Runtime stop failed for %s; releasing claims anyway", inst.name)
        finally:
            if self.volumes is not None and self.spec.stateful:
                await self.volumes.detach(inst.name)
            if self._instances.get(inst.name) is inst:
                del self._instances[inst.name]

    # -------------------------
    # Metrics & serialization
    # -------------------------
    def _update_metrics(self):
        PS_REPLICAS.labels(workload=self.spec.name).set(self.replicas)
        counts = {phase: 0 for phase in InstancePhase}
        for inst in self._instances.values():
            counts[inst.phase] += 1
        for phase, n in counts.items():
            PS_INSTANCES.labels(workload=self.spec.name, phase=phase.value).set(n)

    def describe(self) -> Dict[str, Any]:
        return {
            "workload": self.spec.name,
            "kind": self.spec.kind,
            "stateful": self.spec.stateful,
            "ordered": self.spec.ordered,
            "target": self._target,
            "replicas": self.replicas,
            "instances": [
                {
                    "name": i.name,
                    "phase": i.phase.value,
                    "ordinal": i.ordinal,
                    "restarts": i.restarts,
                    "usage": {"cpu_millicores": i.usage.cpu_millicores, "memory_bytes": i.usage.memory_bytes},
                    "claims": sorted(c.name for c in i.claims.values()),
                }
                for i in self.instances()
            ],
            "recent_failures": list(self.failed)[-10:],
        }


__all__ = ["WorkloadInstanceSet"]
