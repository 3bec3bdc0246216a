# podscaler/config.py
"""
Runtime configuration.

Every knob is an environment variable with the PODSCALER_ prefix; a .env file
in the working directory is loaded first. Values are validated by a pydantic
model so a bad deployment fails at startup instead of mid-tick.

    PODSCALER_POLL_INTERVAL        metric poll period (duration, default 15s)
    PODSCALER_TICK_INTERVAL        controller tick period (default 15s)
    PODSCALER_DEGRADED_AFTER       consecutive failed polls before degraded (3)
    PODSCALER_METRIC_WINDOW        samples kept per instance for smoothing (5)
    PODSCALER_HISTORY_SIZE         decisions kept per workload (500)
    PODSCALER_TARGET_UTILIZATION   default target % when no HPA is given (50)
    PODSCALER_MIN_REPLICAS / PODSCALER_MAX_REPLICAS
    PODSCALER_SCALE_UP_COOLDOWN / PODSCALER_SCALE_DOWN_COOLDOWN (durations)
    PODSCALER_TOLERANCE            (0, off; 0.1 gives HPA-style damping)
    PODSCALER_SCALE_DOWN_POLICY    newest_first | least_utilized_first
    PODSCALER_MAX_PARALLEL         stateless creation concurrency (4)
    PODSCALER_STARTUP_TIMEOUT      (duration, default 60s)
    PODSCALER_STARTUP_RETRIES      (3)
    PODSCALER_MANIFESTS            comma separated files/directories
    PODSCALER_K8S_ENABLED          drive a real cluster instead of the simulator
    PODSCALER_K8S_NAMESPACE        (default)
    PODSCALER_HOST / PODSCALER_PORT
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from podscaler.errors import InvalidPolicyError
from podscaler.models import ScaleDownPolicy, ScalingPolicy
from podscaler.utils.time_utils import parse_duration

ENV_PREFIX = "PODSCALER_"

_TRUE = ("1", "true", "yes", "on")


class Settings(BaseModel):
    poll_interval: float = Field(15.0, gt=0)
    tick_interval: float = Field(15.0, gt=0)
    degraded_after: int = Field(3, ge=1)
    metric_window: int = Field(5, ge=1)
    history_size: int = Field(500, ge=1)

    target_utilization: float = Field(50.0, gt=0, le=100)
    min_replicas: int = Field(1, ge=0)
    max_replicas: int = Field(10, ge=0)
    scale_up_cooldown: float = Field(15.0, ge=0)
    scale_down_cooldown: float = Field(300.0, ge=0)
    tolerance: float = Field(0.0, ge=0, lt=1)
    scale_down_policy: ScaleDownPolicy = ScaleDownPolicy.NEWEST_FIRST

    max_parallel: int = Field(4, ge=1)
    startup_timeout: float = Field(60.0, gt=0)
    startup_retries: int = Field(3, ge=0)

    manifests: List[str] = Field(default_factory=list)
    k8s_enabled: bool = False
    k8s_namespace: str = "default"

    host: str = "0.0.0.0"
    port: int = Field(8000, ge=1, le=65535)

    @field_validator("poll_interval", "tick_interval", "scale_up_cooldown",
                     "scale_down_cooldown", "startup_timeout", mode="before")
    @classmethod
    def _durations(cls, v):
        if isinstance(v, str):
            return parse_duration(v)
        return v

    @field_validator("manifests", mode="before")
    @classmethod
    def _split_paths(cls, v):
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v

    @field_validator("k8s_enabled", mode="before")
    @classmethod
    def _flag(cls, v):
        if isinstance(v, str):
            return v.strip().lower() in _TRUE
        return v

    @model_validator(mode="after")
    def _bounds(self):
        if self.min_replicas > self.max_replicas:
            raise ValueError(f"min_replicas ({self.min_replicas}) > max_replicas ({self.max_replicas})")
        return self

    def default_policy(self) -> ScalingPolicy:
        """Policy for workloads that have no HPA manifest."""
        return ScalingPolicy(
            target_utilization=self.target_utilization,
            min_replicas=self.min_replicas,
            max_replicas=self.max_replicas,
            scale_up_cooldown=self.scale_up_cooldown,
            scale_down_cooldown=self.scale_down_cooldown,
            tolerance=self.tolerance,
            scale_down_policy=self.scale_down_policy,
        )


def _from_environ(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name in Settings.model_fields:
        key = ENV_PREFIX + name.upper()
        if key in environ and environ[key] != "":
            values[name] = environ[key]
    return values


def load_settings(environ: Optional[Mapping[str, str]] = None,
                  dotenv: bool = True,
                  **overrides: Any) -> Settings:
    """
    Build Settings from the environment (plus .env) and explicit overrides.
    Raises InvalidPolicyError with every validation problem listed.
    """
    if environ is None:
        if dotenv:
            load_dotenv()
        environ = os.environ
    values = _from_environ(environ)
    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return Settings(**values)
    except (ValidationError, ValueError) as e:
        raise InvalidPolicyError(f"invalid podscaler settings: {e}") from e


__all__ = ["Settings", "load_settings", "ENV_PREFIX"]
