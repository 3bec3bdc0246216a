# podscaler/errors.py
"""
Exception hierarchy for podscaler.

How each error is handled:
 - TransientMetricError: a metric poll failed; keep the previous sample and retry next tick
 - StorageBindingConflict: fatal, needs operator intervention (never resolved silently)
 - ScalingBoundsViolation: the controller clamps, logs and continues
 - InstanceStartupTimeout: retried a bounded number of times, then the instance is marked failed and replaced
"""

from __future__ import annotations

from typing import Optional


class PodscalerError(Exception):
    """Base exception for podscaler."""
    pass


class InvalidPolicyError(PodscalerError, ValueError):
    """A ScalingPolicy (or workload spec) breaks its invariants."""
    pass


class ManifestError(PodscalerError, ValueError):
    """A Kubernetes manifest could not be turned into podscaler configuration."""
    pass


class WorkloadNotFound(PodscalerError, KeyError):
    """No workload with the given name is registered."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"workload {self.name!r} is not registered"


class TransientMetricError(PodscalerError):
    """A metric poll failed. Retried on the next poll."""
    pass


class StorageBindingConflict(PodscalerError):
    """A claim binding would be violated. Requires operator intervention."""

    def __init__(self, message: str, identity: Optional[str] = None, claim: Optional[str] = None):
        super().__init__(message)
        self.identity = identity
        self.claim = claim


class CapacityMismatchError(StorageBindingConflict):
    """Reattach requested a capacity different from the one the claim was created with."""

    def __init__(self, identity: str, claim: str, existing: int, requested: int):
        super().__init__(
            f"claim {claim} for {identity} has capacity {existing} bytes; requested {requested} bytes",
            identity=identity,
            claim=claim,
        )
        self.existing = existing
        self.requested = requested


class ScalingBoundsViolation(PodscalerError):
    """A requested replica count fell outside [min, max]."""

    def __init__(self, requested: int, minimum: int, maximum: int):
        super().__init__(f"requested {requested} replicas outside bounds [{minimum}, {maximum}]")
        self.requested = requested
        self.minimum = minimum
        self.maximum = maximum

    @property
    def clamped(self) -> int:
        return max(self.minimum, min(self.maximum, self.requested))


class InstanceStartupTimeout(PodscalerError):
    """An instance did not reach Running within the startup timeout."""

    def __init__(self, identity: str, timeout: float, attempt: int = 1):
        super().__init__(f"instance {identity} not Running after {timeout:.2f}s (attempt {attempt})")
        self.identity = identity
        self.timeout = timeout
        self.attempt = attempt


class InstanceStartupError(PodscalerError):
    """The runtime reported a failed start for an instance."""
    pass


__all__ = [
    "PodscalerError",
    "InvalidPolicyError",
    "ManifestError",
    "WorkloadNotFound",
    "TransientMetricError",
    "StorageBindingConflict",
    "CapacityMismatchError",
    "ScalingBoundsViolation",
    "InstanceStartupTimeout",
    "InstanceStartupError",
]
