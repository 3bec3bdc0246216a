# podscaler/api/schemas.py
"""Request/response bodies for the HTTP API."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from podscaler.models import ScaleDownPolicy, ScalingPolicy


class PolicyUpdate(BaseModel):
    """
    Partial policy update; omitted fields keep their current value.
    Example:
    {
      "target_utilization": 60,
      "min_replicas": 2,
      "max_replicas": 8,
      "scale_down_cooldown": 120
    }
    """
    target_utilization: Optional[float] = Field(None, description="Target utilization percent, (0, 100]")
    min_replicas: Optional[int] = None
    max_replicas: Optional[int] = None
    scale_up_cooldown: Optional[float] = Field(None, description="Seconds between scale-ups")
    scale_down_cooldown: Optional[float] = Field(None, description="Seconds between scale-downs")
    tolerance: Optional[float] = None
    scale_down_policy: Optional[ScaleDownPolicy] = None

    def apply_to(self, policy: ScalingPolicy) -> ScalingPolicy:
        changes = self.model_dump(exclude_none=True)
        return policy.updated(**changes) if changes else policy


class ScaleRequest(BaseModel):
    replicas: int = Field(..., ge=0)
    reason: Optional[str] = None


class MetricsPush(BaseModel):
    """Per-instance utilization ratios, e.g. {"values": {"mongodb-0": 0.8}}."""
    values: Dict[str, float]

    @field_validator("values")
    @classmethod
    def check_values(cls, v):
        for identity, ratio in v.items():
            if ratio < 0:
                raise ValueError(f"utilization for {identity} must be >= 0")
        return v


class DecisionOut(BaseModel):
    workload: str
    at: float
    action: str
    state: str
    current: int
    desired: int
    raw_desired: Optional[int] = None
    utilization: Optional[float] = None
    reporting: int = 0
    reason: str = ""
    applied: bool = False
    achieved: Optional[int] = None


class ClaimOut(BaseModel):
    name: str
    identity: str
    volume_id: str
    capacity_bytes: int
    capacity: str
    access_modes: List[str]
    storage_class: Optional[str] = None
    phase: str


class WorkloadSummary(BaseModel):
    workload: str
    state: str
    replicas: int
    degraded: bool
    halted: bool
    policy: Dict[str, Any]
