# podscaler/metrics.py
"""
podscaler Prometheus metrics
----------------------------

All collectors live on one CollectorRegistry so the API can expose them at
/metrics and tests can read them back without touching the process-wide
default registry.
"""

from __future__ import annotations

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client.exposition import CONTENT_TYPE_LATEST


# -----------------------------------------------------------------------------
# Prometheus metric definitions (central registry)
# -----------------------------------------------------------------------------
PROM_REGISTRY = CollectorRegistry(auto_describe=False)

# Controller
PS_REPLICAS = Gauge("podscaler_replicas", "Current replica count", ["workload"], registry=PROM_REGISTRY)
PS_DESIRED_REPLICAS = Gauge("podscaler_desired_replicas", "Last computed desired replica count", ["workload"], registry=PROM_REGISTRY)
PS_UTILIZATION = Gauge("podscaler_utilization_ratio", "Mean utilization across running instances", ["workload"], registry=PROM_REGISTRY)
PS_DECISIONS = Counter("podscaler_decisions_total", "Autoscaling decisions", ["workload", "action"], registry=PROM_REGISTRY)
PS_BOUNDS_CLAMPED = Counter("podscaler_bounds_clamped_total", "Desired replica counts clamped to policy bounds", ["workload"], registry=PROM_REGISTRY)
PS_DEGRADED = Gauge("podscaler_metrics_degraded", "1 when the metric source has failed too many consecutive polls", ["workload"], registry=PROM_REGISTRY)

# Metric source
PS_POLL_FAILURES = Counter("podscaler_metric_poll_failures_total", "Failed metric polls", ["source"], registry=PROM_REGISTRY)
PS_POLL_LATENCY = Histogram("podscaler_metric_poll_seconds", "Metric poll latency", ["source"], buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10), registry=PROM_REGISTRY)

# Instances & storage
PS_INSTANCES = Gauge("podscaler_instances", "Instances by phase", ["workload", "phase"], registry=PROM_REGISTRY)
PS_STARTUP_FAILURES = Counter("podscaler_instance_startup_failures_total", "Instance start attempts that failed or timed out", ["workload", "reason"], registry=PROM_REGISTRY)
PS_CLAIMS_BOUND = Gauge("podscaler_claims_bound", "Storage claims currently bound to an instance", registry=PROM_REGISTRY)
PS_CLAIMS_TOTAL = Gauge("podscaler_claims_total", "Storage claims known to the volume manager", registry=PROM_REGISTRY)


def render_latest() -> bytes:
    """Prometheus text exposition of the podscaler registry."""
    return generate_latest(PROM_REGISTRY)


def sample_value(name: str, labels: Optional[dict] = None) -> Optional[float]:
    """Read one sample back from the registry (None if absent)."""
    return PROM_REGISTRY.get_sample_value(name, labels or {})


__all__ = [
    "PROM_REGISTRY", "CONTENT_TYPE_LATEST",
    "PS_REPLICAS", "PS_DESIRED_REPLICAS", "PS_UTILIZATION", "PS_DECISIONS", "PS_BOUNDS_CLAMPED",
    "PS_DEGRADED", "PS_POLL_FAILURES", "PS_POLL_LATENCY", "PS_INSTANCES", "PS_STARTUP_FAILURES",
    "PS_CLAIMS_BOUND", "PS_CLAIMS_TOTAL",
    "render_latest", "sample_value",
]
