# podscaler/autoscaler.py
"""
podscaler Autoscaling Controller
--------------------------------

One controller per workload. Each tick:
 1. reads an immutable ClusterSnapshot (replicas, Running instances, the
    poller's latest smoothed utilization, degraded flag)
 2. averages utilization over Running instances that reported a value
 3. desired = ceil(current * utilization*100 / target), clamped to [min, max]
    (an optional `tolerance` band around 1.0 keeps the current count; off by default)
 4. applies the change through the scale target's idempotent set_replicas()
 5. enforces a per-direction cooldown after every action

State machine per workload: Stable -> ScalingUp/ScalingDown -> Cooldown -> Stable.

Holds (no action, state unchanged):
 - no Running instance reported a metric (includes an empty metric map)
 - the metric source is degraded
 - the controller was halted by a StorageBindingConflict (needs resume())

Scale-down victim choice is delegated to the instance set:
stateful → highest ordinal first; stateless → ScalingPolicy.scale_down_policy
(newest_first by default).
"""

from __future__ import annotations

import math
import asyncio
from collections import deque
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from podscaler.errors import ScalingBoundsViolation, StorageBindingConflict
from podscaler.metrics import PS_BOUNDS_CLAMPED, PS_DECISIONS, PS_DEGRADED, PS_DESIRED_REPLICAS, PS_UTILIZATION
from podscaler.metrics_source import MetricPoller
from podscaler.models import ClusterSnapshot, ControllerState, ScalingPolicy
from podscaler.utils.logger import get_logger, StructuredLoggerAdapter
from podscaler.utils.time_utils import MonotonicClock, async_sleep, compute_backoff, format_duration

LOG = get_logger("podscaler.autoscaler")

ACTION_SCALE_UP = "scale_up"
ACTION_SCALE_DOWN = "scale_down"
ACTION_STEADY = "steady"
ACTION_HOLD = "hold"
ACTION_MANUAL = "manual"

# ceil() guard against float noise such as 2 * 0.6 * 100 / 60 == 2.0000000000000004
_ROUND_DIGITS = 9


# ---------------------------------------------------------------------
# Desired replica computation
# ---------------------------------------------------------------------
def compute_desired_replicas(current: int, utilization: float, policy: ScalingPolicy) -> Tuple[int, int]:
    """
    Returns (raw, clamped): the unclamped proportional count and the same
    count clamped to the policy bounds.
    """
    if current <= 0:
        return current, policy.clamp(current)
    ratio = (utilization * 100.0) / policy.target_utilization
    if abs(ratio - 1.0) <= policy.tolerance:
        raw = current
    else:
        raw = int(math.ceil(round(current * ratio, _ROUND_DIGITS)))
    return raw, policy.clamp(raw)


def _live_count(reported: Optional[int], requested: int) -> int:
    """Count a scale target reports after set_replicas(); None means it reached `requested`."""
    return requested if reported is None else int(reported)


# ---------------------------------------------------------------------
# Decisions & history
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ScalingDecision:
    workload: str
    at: float
    action: str
    state: ControllerState
    current: int
    desired: int
    raw_desired: Optional[int] = None
    utilization: Optional[float] = None
    reporting: int = 0
    reason: str = ""
    applied: bool = False
    achieved: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        return d


class ScalingHistory:
    """Bounded per-decision history for audit and the API."""
    def __init__(self, maxlen: int = 500):
        self._entries: Deque[ScalingDecision] = deque(maxlen=maxlen)

    def add(self, decision: ScalingDecision):
        self._entries.append(decision)

    def summary(self) -> Dict[str, int]:
        out = {ACTION_SCALE_UP: 0, ACTION_SCALE_DOWN: 0, ACTION_STEADY: 0, ACTION_HOLD: 0, ACTION_MANUAL: 0}
        for e in self._entries:
            out[e.action] = out.get(e.action, 0) + 1
        out["total"] = len(self._entries)
        return out

    def recent(self, n: int = 10) -> List[ScalingDecision]:
        if n <= 0:
            return []
        return list(self._entries)[-n:]

    def applied(self) -> List[ScalingDecision]:
        return [e for e in self._entries if e.applied]

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------
class AutoscalingController:
    """
    Drives one scale target (a WorkloadInstanceSet or a KubernetesScaleTarget)
    from a MetricPoller. Decisions for one workload are strictly sequential.
    """

    def __init__(self,
                 target: Any,
                 poller: MetricPoller,
                 policy: ScalingPolicy,
                 clock: Optional[Any] = None,
                 history_size: int = 500):
        self.target = target
        self.poller = poller
        self.policy = policy
        self.clock = clock or MonotonicClock()
        self.state = ControllerState.STABLE
        self.history = ScalingHistory(maxlen=history_size)
        self.last_scale_up_at: Optional[float] = None
        self.last_scale_down_at: Optional[float] = None
        self.last_decision: Optional[ScalingDecision] = None
        self.halted_reason: Optional[str] = None
        self._tick_lock = asyncio.Lock()
        self._lad = StructuredLoggerAdapter(LOG, {"component": "autoscaler", "workload": self.name})

    @property
    def name(self) -> str:
        return self.target.name

    @property
    def degraded(self) -> bool:
        return self.poller.degraded

    @property
    def halted(self) -> bool:
        return self.halted_reason is not None

    # -------------------------
    # Policy
    # -------------------------
    def update_policy(self, policy: ScalingPolicy) -> ScalingPolicy:
        old, self.policy = self.policy, policy
        self._lad.info("Policy updated: %s -> %s", old.to_dict(), policy.to_dict())
        return policy

    def resume(self) -> None:
        """Operator acknowledgement after a storage binding conflict."""
        if self.halted_reason:
            self._lad.warning("Resuming controller halted by: %s", self.halted_reason)
        self.halted_reason = None

    # -------------------------
    # Snapshot & evaluation
    # -------------------------
    async def snapshot(self) -> ClusterSnapshot:
        refresh = getattr(self.target, "refresh", None)
        if refresh is not None:
            await refresh()
        return ClusterSnapshot(
            workload=self.name,
            taken_at=self.clock.now(),
            replicas=self.target.replicas,
            running=tuple(self.target.running_names()),
            utilization=dict(self.poller.latest()),
            degraded=self.poller.degraded,
        )

    def _remaining(self, direction: str, now: float) -> float:
        if direction == ACTION_SCALE_UP:
            last, window = self.last_scale_up_at, self.policy.scale_up_cooldown
        else:
            last, window = self.last_scale_down_at, self.policy.scale_down_cooldown
        if last is None:
            return 0.0
        return max(0.0, window - (now - last))

    def _cooling(self, direction: str, now: float) -> bool:
        return self._remaining(direction, now) > 0

    def cooldown_remaining(self, direction: str) -> float:
        return self._remaining(direction, self.clock.now())

    def _idle_state(self, now: float) -> ControllerState:
        if self._cooling(ACTION_SCALE_UP, now) or self._cooling(ACTION_SCALE_DOWN, now):
            return ControllerState.COOLDOWN
        return ControllerState.STABLE

    def evaluate(self, snap: ClusterSnapshot) -> ScalingDecision:
        """Pure decision for one snapshot; nothing is applied."""
        now = snap.taken_at
        current = snap.replicas
        base = dict(workload=snap.workload, at=now, current=current)

        if self.halted:
            return ScalingDecision(action=ACTION_HOLD, state=self.state, desired=current,
                                   reason=f"halted: {self.halted_reason}", **base)
        if snap.degraded:
            return ScalingDecision(action=ACTION_HOLD, state=self.state, desired=current,
                                   reason="metric source degraded", **base)
        eligible = snap.eligible_utilization()
        if not eligible:
            return ScalingDecision(action=ACTION_HOLD, state=self.state, desired=current,
                                   reason="no running instance reported metrics", **base)

        utilization = sum(eligible.values()) / len(eligible)
        raw, desired = compute_desired_replicas(current, utilization, self.policy)
        metrics = dict(raw_desired=raw, utilization=utilization, reporting=len(eligible))

        if raw != desired:
            reason = str(ScalingBoundsViolation(raw, self.policy.min_replicas, self.policy.max_replicas))
        else:
            reason = ""

        if desired == current:
            return ScalingDecision(action=ACTION_STEADY, state=self._idle_state(now), desired=desired,
                                   reason=reason or "within target", **metrics, **base)

        direction = ACTION_SCALE_UP if desired > current else ACTION_SCALE_DOWN
        if self._cooling(direction, now):
            return ScalingDecision(action=ACTION_HOLD, state=ControllerState.COOLDOWN, desired=desired,
                                   reason=f"{direction} cooldown active ({format_duration(math.ceil(self._remaining(direction, now)))} left)",
                                   **metrics, **base)
        state = ControllerState.SCALING_UP if direction == ACTION_SCALE_UP else ControllerState.SCALING_DOWN
        return ScalingDecision(action=direction, state=state, desired=desired,
                               reason=reason or f"utilization {utilization:.3f} vs target {self.policy.target_utilization:g}%",
                               **metrics, **base)

    # -------------------------
    # Tick
    # -------------------------
    async def tick(self) -> ScalingDecision:
        """One control-loop iteration. Never runs concurrently with itself."""
        async with self._tick_lock:
            snap = await self.snapshot()
            decision = self.evaluate(snap)
            PS_DEGRADED.labels(workload=self.name).set(1 if snap.degraded else 0)
            if decision.utilization is not None:
                PS_UTILIZATION.labels(workload=self.name).set(decision.utilization)
            PS_DESIRED_REPLICAS.labels(workload=self.name).set(decision.desired)
            if decision.raw_desired is not None and decision.raw_desired != decision.desired:
                PS_BOUNDS_CLAMPED.labels(workload=self.name).inc()
                self._lad.warning("Clamped desired replicas: %s", decision.reason)
            if snap.degraded:
                self._lad.warning("Metric source degraded; holding at %d replicas", snap.replicas)

            if decision.action in (ACTION_SCALE_UP, ACTION_SCALE_DOWN):
                decision = await self._apply(decision)
            else:
                self.state = decision.state
                self._lad.debug("No action (%s): %s", decision.action, decision.reason)

            PS_DECISIONS.labels(workload=self.name, action=decision.action).inc()
            self.history.add(decision)
            self.last_decision = decision
            return decision

    async def _apply(self, decision: ScalingDecision) -> ScalingDecision:
        self.state = decision.state
        self._lad.info("%s %d -> %d (%s)", decision.action, decision.current, decision.desired, decision.reason)
        try:
            achieved = _live_count(await self.target.set_replicas(decision.desired), decision.desired)
        except StorageBindingConflict as e:
            self.halted_reason = str(e)
            self.state = ControllerState.STABLE
            self._lad.error("Storage binding conflict; controller halted until resumed: %s", e)
            raise
        if achieved == decision.current:
            # nothing moved: no cooldown, the next tick tries again
            self._lad.warning("%s to %d made no progress; still at %d", decision.action, decision.desired, achieved)
            self.state = self._idle_state(self.clock.now())
            return ScalingDecision(**{**asdict(decision), "state": self.state, "achieved": achieved})
        if achieved != decision.desired:
            self._lad.warning("%s reached %d of %d desired replicas", decision.action, achieved, decision.desired)
        now = self.clock.now()
        if achieved > decision.current:
            self.last_scale_up_at = now
        else:
            self.last_scale_down_at = now
        self.state = ControllerState.COOLDOWN
        return ScalingDecision(**{**asdict(decision), "state": ControllerState.COOLDOWN,
                                  "applied": True, "achieved": achieved})

    async def manual_scale(self, replicas: int, reason: str = "manual") -> ScalingDecision:
        """Operator scale request; clamped to policy bounds and serialized with ticks."""
        async with self._tick_lock:
            now = self.clock.now()
            current = self.target.replicas
            desired = self.policy.clamp(replicas)
            if desired != replicas:
                self._lad.warning("Manual scale clamped: %s", ScalingBoundsViolation(replicas, self.policy.min_replicas, self.policy.max_replicas))
                PS_BOUNDS_CLAMPED.labels(workload=self.name).inc()
            achieved = _live_count(await self.target.set_replicas(desired), desired)
            if achieved > current:
                self.last_scale_up_at = now
            elif achieved < current:
                self.last_scale_down_at = now
            self.state = self._idle_state(now)
            decision = ScalingDecision(workload=self.name, at=now, action=ACTION_MANUAL, state=self.state,
                                       current=current, desired=desired, raw_desired=replicas,
                                       reason=reason, applied=achieved != current, achieved=achieved)
            PS_DECISIONS.labels(workload=self.name, action=ACTION_MANUAL).inc()
            self.history.add(decision)
            self.last_decision = decision
            return decision

    async def enforce_bounds(self) -> int:
        """Bring the replica count inside [min, max] without looking at metrics."""
        async with self._tick_lock:
            refresh = getattr(self.target, "refresh", None)
            if refresh is not None:
                await refresh()
            current = self.target.replicas
            clamped = self.policy.clamp(current)
            if clamped != current:
                self._lad.warning("Replica count %d outside policy bounds; setting %d", current, clamped)
                await self.target.set_replicas(clamped)
            return clamped

    def status(self) -> Dict[str, Any]:
        return {
            "workload": self.name,
            "state": self.state.value,
            "replicas": self.target.replicas,
            "policy": self.policy.to_dict(),
            "degraded": self.degraded,
            "halted": self.halted,
            "halted_reason": self.halted_reason,
            "cooldown_remaining": {
                ACTION_SCALE_UP: self.cooldown_remaining(ACTION_SCALE_UP),
                ACTION_SCALE_DOWN: self.cooldown_remaining(ACTION_SCALE_DOWN),
            },
            "last_decision": self.last_decision.to_dict() if self.last_decision else None,
            "history": self.history.summary(),
            "metrics": self.poller.status(),
        }


# ---------------------------------------------------------------------
# Resilient background loop
# ---------------------------------------------------------------------
class ResilientLoop:
    """Runs an async callable on an interval with backoff on unexpected errors."""
    def __init__(self, label: str, func: Callable[[], Awaitable[Any]], interval: float):
        self.label = label
        self.func = func
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        LOG.info("ResilientLoop '%s' started (interval=%.1fs)", self.label, self.interval)

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            LOG.info("ResilientLoop '%s' stopped", self.label)

    async def _loop(self):
        attempt = 0
        while self._running:
            try:
                await self.func()
                attempt = 0
                await async_sleep(self.interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                attempt += 1
                delay = compute_backoff(attempt, base=2, factor=1.5, max_delay=max(30.0, self.interval))
                LOG.exception("Loop '%s' error (%s); retrying in %.2fs", self.label, e, delay)
                await async_sleep(delay)


__all__ = [
    "compute_desired_replicas",
    "ScalingDecision",
    "ScalingHistory",
    "AutoscalingController",
    "ResilientLoop",
    "ACTION_SCALE_UP",
    "ACTION_SCALE_DOWN",
    "ACTION_STEADY",
    "ACTION_HOLD",
    "ACTION_MANUAL",
]
