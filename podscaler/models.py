# podscaler/models.py
"""
podscaler domain model
----------------------

Plain dataclasses shared by the metric source, the volume lifecycle manager,
the instance set and the autoscaling controller. API schemas live in
podscaler.api.schemas; these objects never leave the process as-is.
"""

from __future__ import annotations

import enum
import dataclasses
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from podscaler.errors import InvalidPolicyError, ScalingBoundsViolation


# -------------------------
# Enums
# -------------------------
class InstancePhase(str, enum.Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    TERMINATING = "Terminating"
    FAILED = "Failed"


class ControllerState(str, enum.Enum):
    STABLE = "Stable"
    SCALING_UP = "ScalingUp"
    SCALING_DOWN = "ScalingDown"
    COOLDOWN = "Cooldown"


class ScaleDownPolicy(str, enum.Enum):
    """
    Which stateless instances go first on scale-down.
    Stateful workloads ignore this and always remove the highest ordinal.
    """
    NEWEST_FIRST = "newest_first"
    LEAST_UTILIZED_FIRST = "least_utilized_first"


class ClaimPhase(str, enum.Enum):
    BOUND = "Bound"
    RELEASED = "Released"


# -------------------------
# Resources
# -------------------------
@dataclass
class ResourceUsage:
    cpu_millicores: int = 0
    memory_bytes: int = 0


@dataclass(frozen=True)
class ResourceRequests:
    cpu_millicores: int = 0
    memory_bytes: int = 0


# -------------------------
# Storage
# -------------------------
@dataclass(frozen=True)
class VolumeClaimTemplate:
    """One entry of a StatefulSet's volumeClaimTemplates."""
    name: str
    capacity_bytes: int
    access_modes: Tuple[str, ...] = ("ReadWriteOnce",)
    storage_class: Optional[str] = None
    mount_path: Optional[str] = None

    def claim_name(self, identity: str) -> str:
        # StatefulSet convention: <template>-<pod name>
        return f"{self.name}-{identity}"


@dataclass(frozen=True)
class StorageClaim:
    """
    Binding between an instance slot and a backing volume.
    Frozen: capacity never changes after creation; rebinding produces a new record.
    """
    name: str
    identity: str
    volume_id: str
    capacity_bytes: int
    access_modes: Tuple[str, ...] = ("ReadWriteOnce",)
    storage_class: Optional[str] = None
    phase: ClaimPhase = ClaimPhase.BOUND
    created_at: float = 0.0

    def with_phase(self, phase: ClaimPhase) -> "StorageClaim":
        return dataclasses.replace(self, phase=phase)


# -------------------------
# Instances
# -------------------------
@dataclass
class WorkloadInstance:
    name: str
    workload: str
    seq: int
    ordinal: Optional[int] = None
    phase: InstancePhase = InstancePhase.PENDING
    created_at: float = 0.0
    usage: ResourceUsage = field(default_factory=ResourceUsage)
    claims: Dict[str, StorageClaim] = field(default_factory=dict)
    restarts: int = 0
    last_error: Optional[str] = None

    @property
    def stateful(self) -> bool:
        return self.ordinal is not None

    @property
    def running(self) -> bool:
        return self.phase == InstancePhase.RUNNING

    @property
    def claim(self) -> Optional[StorageClaim]:
        """The first claim, for the common single-template case."""
        return next(iter(self.claims.values()), None)


# -------------------------
# Scaling policy
# -------------------------
@dataclass(frozen=True)
class ScalingPolicy:
    """
    target_utilization is a percentage in (0, 100]; utilization samples are
    ratios (0.8 == 80%). Cooldowns are seconds and apply per direction.
    """
    target_utilization: float
    min_replicas: int = 1
    max_replicas: int = 10
    scale_up_cooldown: float = 15.0
    scale_down_cooldown: float = 300.0
    tolerance: float = 0.0
    scale_down_policy: ScaleDownPolicy = ScaleDownPolicy.NEWEST_FIRST

    def __post_init__(self):
        if not (0 < self.target_utilization <= 100):
            raise InvalidPolicyError(f"target_utilization must be in (0, 100], got {self.target_utilization}")
        if self.min_replicas < 0:
            raise InvalidPolicyError(f"min_replicas must be >= 0, got {self.min_replicas}")
        if self.min_replicas > self.max_replicas:
            raise InvalidPolicyError(f"min_replicas ({self.min_replicas}) > max_replicas ({self.max_replicas})")
        if self.scale_up_cooldown < 0 or self.scale_down_cooldown < 0:
            raise InvalidPolicyError("cooldown windows must be >= 0")
        if not (0 <= self.tolerance < 1):
            raise InvalidPolicyError(f"tolerance must be in [0, 1), got {self.tolerance}")
        if not isinstance(self.scale_down_policy, ScaleDownPolicy):
            try:
                object.__setattr__(self, "scale_down_policy", ScaleDownPolicy(self.scale_down_policy))
            except ValueError:
                raise InvalidPolicyError(f"unknown scale_down_policy {self.scale_down_policy!r}")

    def clamp(self, replicas: int) -> int:
        return max(self.min_replicas, min(self.max_replicas, replicas))

    def check_bounds(self, replicas: int) -> int:
        """Strict variant of clamp(): raise instead of clamping."""
        if replicas < self.min_replicas or replicas > self.max_replicas:
            raise ScalingBoundsViolation(replicas, self.min_replicas, self.max_replicas)
        return replicas

    def updated(self, **changes) -> "ScalingPolicy":
        """Copy with changes; the copy is validated like a new policy."""
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, object]:
        d = dataclasses.asdict(self)
        d["scale_down_policy"] = self.scale_down_policy.value
        return d


# -------------------------
# Workload spec
# -------------------------
@dataclass(frozen=True)
class WorkloadSpec:
    """
    Static description of a workload.
      - stateful: stable identities (<name>-<ordinal>) and one claim per template
      - ordered: instance k+1 is not created before instance k is Running
      - max_parallel: creation concurrency for unordered workloads
    """
    name: str
    replicas: int = 1
    stateful: bool = False
    ordered: Optional[bool] = None
    kind: str = "Deployment"
    namespace: str = "default"
    image: Optional[str] = None
    labels: Tuple[Tuple[str, str], ...] = ()
    requests: ResourceRequests = ResourceRequests()
    claim_templates: Tuple[VolumeClaimTemplate, ...] = ()
    max_parallel: int = 4
    startup_timeout: float = 60.0
    max_startup_retries: int = 3

    def __post_init__(self):
        if not self.name:
            raise InvalidPolicyError("workload name must not be empty")
        if self.replicas < 0:
            raise InvalidPolicyError(f"replicas must be >= 0, got {self.replicas}")
        if self.max_parallel < 1:
            raise InvalidPolicyError("max_parallel must be >= 1")
        if self.claim_templates and not self.stateful:
            raise InvalidPolicyError(f"workload {self.name} declares claim templates but is not stateful")
        if self.ordered is None:
            object.__setattr__(self, "ordered", self.stateful)

    @property
    def label_map(self) -> Dict[str, str]:
        return dict(self.labels)


# -------------------------
# Metrics & snapshots
# -------------------------
@dataclass(frozen=True)
class MetricSample:
    identity: str
    timestamp: float
    utilization: float


@dataclass(frozen=True)
class ClusterSnapshot:
    """Immutable view of one workload, read once per controller tick."""
    workload: str
    taken_at: float
    replicas: int
    running: Tuple[str, ...]
    utilization: Mapping[str, float]
    degraded: bool = False

    def eligible_utilization(self) -> Dict[str, float]:
        """Utilization of Running instances that reported a value."""
        return {name: self.utilization[name] for name in self.running if name in self.utilization}


__all__ = [
    "InstancePhase", "ControllerState", "ScaleDownPolicy", "ClaimPhase",
    "ResourceUsage", "ResourceRequests", "VolumeClaimTemplate", "StorageClaim",
    "WorkloadInstance", "ScalingPolicy", "WorkloadSpec", "MetricSample", "ClusterSnapshot",
]
