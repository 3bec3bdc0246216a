# podscaler/volumes.py
"""
podscaler Volume Lifecycle Manager
----------------------------------

Binds durable storage to stateful instance slots the way a StatefulSet's
volumeClaimTemplates do:

 - claim name is `<template>-<identity>` (e.g. mongo-persistent-storage-mongodb-0)
 - attach() for an identity that already holds a claim returns that claim
 - detach() releases the binding only; the backing volume and its data stay,
   so a recreated instance with the same identity reattaches to the same data
 - capacity is fixed when a claim is created; a different capacity on
   reattach is a CapacityMismatchError, never resolved silently
 - a claim belongs to one slot for life; delete_claim() is the only way to
   reclaim it and is refused while the claim is bound

Usage:
    mgr = VolumeLifecycleManager(default_template=VolumeClaimTemplate("data", parse_bytes("1Gi")))
    claim = await mgr.attach("mongodb-0")
    await mgr.write("mongodb-0", "users", b"...")
    await mgr.detach("mongodb-0")
    again = await mgr.attach("mongodb-0")      # same claim, same volume, data intact
"""

from __future__ import annotations

import uuid
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from podscaler.errors import CapacityMismatchError, StorageBindingConflict
from podscaler.metrics import PS_CLAIMS_BOUND, PS_CLAIMS_TOTAL
from podscaler.models import ClaimPhase, StorageClaim, VolumeClaimTemplate
from podscaler.quantity import format_bytes
from podscaler.utils.logger import get_logger, StructuredLoggerAdapter
from podscaler.utils.time_utils import MonotonicClock

LOG = get_logger("podscaler.volumes")
LAD = StructuredLoggerAdapter(LOG, {"component": "volumes"})


@dataclass
class BackingVolume:
    """The storage behind a claim. Outlives every binding to it."""
    volume_id: str
    capacity_bytes: int
    access_modes: Tuple[str, ...]
    storage_class: Optional[str]
    created_at: float
    data: Dict[str, Any] = field(default_factory=dict)


class VolumeLifecycleManager:
    """
    In-process claim/volume registry. All mutations go through one asyncio
    lock so concurrent instance creation cannot double-provision a slot.
    """

    def __init__(self,
                 default_template: Optional[VolumeClaimTemplate] = None,
                 clock: Optional[Any] = None,
                 retain_on_delete: bool = False):
        self.default_template = default_template
        self.clock = clock or MonotonicClock()
        self.retain_on_delete = retain_on_delete
        self._lock = asyncio.Lock()
        self._claims: Dict[str, StorageClaim] = {}          # claim name -> claim
        self._volumes: Dict[str, BackingVolume] = {}        # volume id -> volume
        self._by_identity: Dict[str, List[str]] = {}        # identity -> claim names

    # -------------------------
    # Attach / detach
    # -------------------------
    async def attach(self,
                     identity: str,
                     template: Optional[VolumeClaimTemplate] = None,
                     capacity_bytes: Optional[int] = None) -> StorageClaim:
        """
        Return the claim bound to `identity` for `template`, creating it
        (and its backing volume) on first attach.
        """
        tpl = template or self.default_template
        if tpl is None:
            raise ValueError("attach() needs a claim template (none given and no default configured)")
        requested = int(capacity_bytes) if capacity_bytes is not None else tpl.capacity_bytes
        if requested <= 0:
            raise ValueError(f"claim capacity must be positive, got {requested}")
        name = tpl.claim_name(identity)

        async with self._lock:
            existing = self._claims.get(name)
            if existing is not None:
                claim = self._rebind(existing, identity, requested)
            else:
                claim = self._provision(name, identity, tpl, requested)
            names = self._by_identity.setdefault(identity, [])
            if name not in names:
                names.append(name)
            self._update_metrics()
            return claim

    def _rebind(self, existing: StorageClaim, identity: str, requested: int) -> StorageClaim:
        if existing.identity != identity:
            raise StorageBindingConflict(
                f"claim {existing.name} belongs to {existing.identity}, not {identity}",
                identity=identity, claim=existing.name,
            )
        if existing.capacity_bytes != requested:
            raise CapacityMismatchError(identity, existing.name, existing.capacity_bytes, requested)
        if existing.volume_id not in self._volumes:
            raise StorageBindingConflict(
                f"claim {existing.name} points at missing volume {existing.volume_id}",
                identity=identity, claim=existing.name,
            )
        if existing.phase == ClaimPhase.BOUND:
            return existing
        claim = existing.with_phase(ClaimPhase.BOUND)
        self._claims[claim.name] = claim
        LAD.info("Reattached claim %s to %s (volume %s)", claim.name, identity, claim.volume_id)
        return claim

    def _provision(self, name: str, identity: str, tpl: VolumeClaimTemplate, capacity: int) -> StorageClaim:
        now = self.clock.now()
        volume = BackingVolume(
            volume_id=f"pv-{uuid.uuid4().hex[:12]}",
            capacity_bytes=capacity,
            access_modes=tuple(tpl.access_modes),
            storage_class=tpl.storage_class,
            created_at=now,
        )
        self._volumes[volume.volume_id] = volume
        claim = StorageClaim(
            name=name,
            identity=identity,
            volume_id=volume.volume_id,
            capacity_bytes=capacity,
            access_modes=tuple(tpl.access_modes),
            storage_class=tpl.storage_class,
            phase=ClaimPhase.BOUND,
            created_at=now,
        )
        self._claims[name] = claim
        LAD.info("Provisioned claim %s (%s) for %s on volume %s",
                 name, format_bytes(capacity), identity, volume.volume_id)
        return claim

    async def attach_all(self, identity: str, templates: Tuple[VolumeClaimTemplate, ...]) -> Dict[str, StorageClaim]:
        """Attach one claim per template; returns {template name: claim}."""
        out: Dict[str, StorageClaim] = {}
        for tpl in templates:
            out[tpl.name] = await self.attach(identity, tpl)
        return out

    async def detach(self, identity: str) -> List[StorageClaim]:
        """
        Release every claim bound to `identity`. Storage is untouched.
        Detaching an identity with no bound claims is a no-op.
        """
        released: List[StorageClaim] = []
        async with self._lock:
            for name in self._by_identity.get(identity, []):
                claim = self._claims.get(name)
                if claim is None or claim.phase == ClaimPhase.RELEASED:
                    continue
                claim = claim.with_phase(ClaimPhase.RELEASED)
                self._claims[name] = claim
                released.append(claim)
                LAD.info("Released claim %s from %s (volume %s retained)", name, identity, claim.volume_id)
            self._update_metrics()
        return released

    async def delete_claim(self, claim_name: str) -> Optional[StorageClaim]:
        """
        Explicit reclamation of a released claim. Bound claims cannot be
        deleted. The backing volume is deleted unless retain_on_delete.
        """
        async with self._lock:
            claim = self._claims.get(claim_name)
            if claim is None:
                return None
            if claim.phase == ClaimPhase.BOUND:
                raise StorageBindingConflict(
                    f"claim {claim_name} is bound to {claim.identity}; detach it first",
                    identity=claim.identity, claim=claim_name,
                )
            del self._claims[claim_name]
            names = self._by_identity.get(claim.identity, [])
            if claim_name in names:
                names.remove(claim_name)
            if not names:
                self._by_identity.pop(claim.identity, None)
            if not self.retain_on_delete:
                self._volumes.pop(claim.volume_id, None)
            LAD.warning("Deleted claim %s (volume %s %s)", claim_name, claim.volume_id,
                        "retained" if self.retain_on_delete else "deleted")
            self._update_metrics()
            return claim

    # -------------------------
    # Queries
    # -------------------------
    def get_claim(self, identity: str, template_name: Optional[str] = None) -> Optional[StorageClaim]:
        for name in self._by_identity.get(identity, []):
            claim = self._claims.get(name)
            if claim is None:
                continue
            if template_name is None or name == f"{template_name}-{identity}":
                return claim
        return None

    def claims_for(self, identity: str) -> List[StorageClaim]:
        return [self._claims[n] for n in self._by_identity.get(identity, []) if n in self._claims]

    def list_claims(self) -> List[StorageClaim]:
        return [self._claims[n] for n in sorted(self._claims)]

    def is_bound(self, identity: str) -> bool:
        return any(c.phase == ClaimPhase.BOUND for c in self.claims_for(identity))

    def volume_for(self, claim: StorageClaim) -> BackingVolume:
        try:
            return self._volumes[claim.volume_id]
        except KeyError:
            raise StorageBindingConflict(f"claim {claim.name} has no backing volume", identity=claim.identity, claim=claim.name)

    # -------------------------
    # Data access (through the bound claim)
    # -------------------------
    async def write(self, identity: str, key: str, value: Any, template_name: Optional[str] = None) -> None:
        claim = self._bound_claim(identity, template_name)
        self.volume_for(claim).data[key] = value

    async def read(self, identity: str, key: str, default: Any = None, template_name: Optional[str] = None) -> Any:
        claim = self._bound_claim(identity, template_name)
        return self.volume_for(claim).data.get(key, default)

    def _bound_claim(self, identity: str, template_name: Optional[str]) -> StorageClaim:
        claim = self.get_claim(identity, template_name)
        if claim is None or claim.phase != ClaimPhase.BOUND:
            raise StorageBindingConflict(f"{identity} has no bound claim", identity=identity)
        return claim

    def stats(self) -> Dict[str, int]:
        bound = sum(1 for c in self._claims.values() if c.phase == ClaimPhase.BOUND)
        return {"claims": len(self._claims), "bound": bound, "released": len(self._claims) - bound, "volumes": len(self._volumes)}

    def _update_metrics(self):
        s = self.stats()
        PS_CLAIMS_TOTAL.set(s["claims"])
        PS_CLAIMS_BOUND.set(s["bound"])


__all__ = ["VolumeLifecycleManager", "BackingVolume"]
