# podscaler/runtime.py
"""
Instance runtimes.

The instance set does not run containers itself; it asks an InstanceRuntime
to start an instance and waits until the runtime reports it Running. The
container runtime and scheduler are external collaborators, so the only
runtime shipped here is SimulatedRuntime: an in-process stand-in with
configurable startup latency and injectable hangs/failures, used by the
simulator and the tests.
"""

from __future__ import annotations

import abc
import asyncio
from typing import Dict, List, Optional, Set, Tuple

from podscaler.errors import InstanceStartupError
from podscaler.models import WorkloadInstance, WorkloadSpec
from podscaler.utils.logger import get_logger

LOG = get_logger("podscaler.runtime")

_ANY = "*"


class InstanceRuntime(abc.ABC):
    """Contract used by WorkloadInstanceSet."""

    @abc.abstractmethod
    async def start(self, instance: WorkloadInstance, spec: WorkloadSpec) -> None:
        """Return once the instance is Running; raise InstanceStartupError on failure."""

    @abc.abstractmethod
    async def stop(self, instance: WorkloadInstance, spec: WorkloadSpec) -> None:
        """Return once the instance is gone."""

    def memory_bytes(self, instance: WorkloadInstance, spec: WorkloadSpec) -> Optional[int]:
        """Resident memory of a Running instance, or None when the runtime cannot tell."""
        return None


class SimulatedRuntime(InstanceRuntime):
    """
    In-process runtime.
      - startup_delay / stop_delay: seconds spent "starting"/"stopping"
      - hang_next(identity): the next start of identity never completes
      - fail_next(identity): the next start of identity raises InstanceStartupError
      - set_memory(identity, n): reported resident memory (default: the memory request)
    Identity "*" matches any instance.
    """

    def __init__(self, startup_delay: float = 0.0, stop_delay: float = 0.0):
        self.startup_delay = float(startup_delay)
        self.stop_delay = float(stop_delay)
        self.active: Set[str] = set()
        self.events: List[Tuple[str, str]] = []     # (event, identity) in order
        self.max_concurrent_starts = 0
        self._starting = 0
        self._hangs: Dict[str, int] = {}
        self._failures: Dict[str, int] = {}
        self._delays: Dict[str, float] = {}
        self._memory: Dict[str, int] = {}

    # -------------------------
    # Fault injection
    # -------------------------
    def hang_next(self, identity: str = _ANY, times: int = 1) -> None:
        self._hangs[identity] = self._hangs.get(identity, 0) + times

    def fail_next(self, identity: str = _ANY, times: int = 1) -> None:
        self._failures[identity] = self._failures.get(identity, 0) + times

    def set_delay(self, identity: str, seconds: float) -> None:
        self._delays[identity] = float(seconds)

    def set_memory(self, identity: str, memory_bytes: int) -> None:
        self._memory[identity] = int(memory_bytes)

    def _take(self, table: Dict[str, int], identity: str) -> bool:
        for key in (identity, _ANY):
            if table.get(key, 0) > 0:
                table[key] -= 1
                return True
        return False

    # -------------------------
    # Runtime contract
    # -------------------------
    async def start(self, instance: WorkloadInstance, spec: WorkloadSpec) -> None:
        name = instance.name
        self._starting += 1
        self.max_concurrent_starts = max(self.max_concurrent_starts, self._starting)
        self.events.append(("starting", name))
        try:
            if self._take(self._hangs, name):
                LOG.debug("simulated hang for %s", name)
                await asyncio.Event().wait()
            delay = self._delays.get(name, self.startup_delay)
            # always yield so concurrent starts interleave
            await asyncio.sleep(delay)
            if self._take(self._failures, name):
                self.events.append(("failed", name))
                raise InstanceStartupError(f"simulated start failure for {name}")
            self.active.add(name)
            self.events.append(("running", name))
        finally:
            self._starting -= 1

    async def stop(self, instance: WorkloadInstance, spec: WorkloadSpec) -> None:
        if self.stop_delay:
            await asyncio.sleep(self.stop_delay)
        self.active.discard(instance.name)
        self.events.append(("stopped", instance.name))

    def memory_bytes(self, instance: WorkloadInstance, spec: WorkloadSpec) -> Optional[int]:
        if instance.name not in self.active:
            return None
        return self._memory.get(instance.name, spec.requests.memory_bytes)

    def order_of(self, event: str) -> List[str]:
        return [name for ev, name in self.events if ev == event]


__all__ = ["InstanceRuntime", "SimulatedRuntime"]
