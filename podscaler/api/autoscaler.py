# podscaler/api/autoscaler.py
"""
Autoscaler API

Read and steer the per-workload controllers:
- list workloads and their controller status
- decision history (audit trail)
- policy updates (validated; invalid policies are rejected with 422)
- on-demand tick and manual scale (bounds-clamped)
- resume after a storage binding conflict
- storage claims known to the volume manager
- push utilization samples when running against the in-memory source

Domain errors map to HTTP as:
    WorkloadNotFound       -> 404
    InvalidPolicyError     -> 422
    StorageBindingConflict -> 409
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from podscaler.api.schemas import ClaimOut, DecisionOut, MetricsPush, PolicyUpdate, ScaleRequest, WorkloadSummary
from podscaler.control_plane import ControlPlane
from podscaler.errors import InvalidPolicyError, PodscalerError, StorageBindingConflict, WorkloadNotFound
from podscaler.quantity import format_bytes
from podscaler.utils.logger import get_logger

LOG = get_logger("podscaler.api.autoscaler")

router = APIRouter(prefix="/autoscaler", tags=["autoscaler"])


def get_control_plane(request: Request) -> ControlPlane:
    plane = getattr(request.app.state, "control_plane", None)
    if plane is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="control plane not initialized")
    return plane


def _http_error(exc: PodscalerError) -> HTTPException:
    if isinstance(exc, WorkloadNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidPolicyError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, StorageBindingConflict):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


# -------------------------------
# Workloads
# -------------------------------
@router.get("/workloads", response_model=List[WorkloadSummary])
async def list_workloads(plane: ControlPlane = Depends(get_control_plane)):
    out = []
    for name in plane.names():
        ctl = plane.controller(name)
        out.append(WorkloadSummary(
            workload=name,
            state=ctl.state.value,
            replicas=ctl.target.replicas,
            degraded=ctl.degraded,
            halted=ctl.halted,
            policy=ctl.policy.to_dict(),
        ))
    return out


@router.get("/workloads/{name}")
async def get_workload(name: str, plane: ControlPlane = Depends(get_control_plane)) -> Dict[str, Any]:
    try:
        wl = plane.get(name)
    except WorkloadNotFound as e:
        raise _http_error(e)
    out = wl.controller.status()
    describe = getattr(wl.target, "describe", None)
    if describe is not None:
        out["target"] = describe()
    return out


@router.get("/workloads/{name}/history", response_model=List[DecisionOut])
async def get_history(name: str,
                      limit: int = Query(50, ge=1, le=1000),
                      applied_only: bool = Query(False),
                      plane: ControlPlane = Depends(get_control_plane)):
    try:
        ctl = plane.controller(name)
    except WorkloadNotFound as e:
        raise _http_error(e)
    entries = ctl.history.applied()[-limit:] if applied_only else ctl.history.recent(limit)
    return [DecisionOut(**d.to_dict()) for d in entries]


@router.put("/workloads/{name}/policy")
async def update_policy(name: str, payload: PolicyUpdate, plane: ControlPlane = Depends(get_control_plane)):
    try:
        ctl = plane.controller(name)
        policy = payload.apply_to(ctl.policy)
        plane.update_policy(name, policy)
    except PodscalerError as e:
        raise _http_error(e)
    LOG.info("Policy for %s updated via API", name)
    return {"ok": True, "workload": name, "policy": policy.to_dict()}


@router.post("/workloads/{name}/tick", response_model=DecisionOut)
async def tick(name: str, plane: ControlPlane = Depends(get_control_plane)):
    try:
        decision = await plane.controller(name).tick()
    except PodscalerError as e:
        raise _http_error(e)
    return DecisionOut(**decision.to_dict())


@router.post("/workloads/{name}/scale", response_model=DecisionOut)
async def manual_scale(name: str, req: ScaleRequest, plane: ControlPlane = Depends(get_control_plane)):
    try:
        decision = await plane.controller(name).manual_scale(req.replicas, reason=req.reason or "manual (api)")
    except PodscalerError as e:
        raise _http_error(e)
    return DecisionOut(**decision.to_dict())


@router.post("/workloads/{name}/resume")
async def resume(name: str, plane: ControlPlane = Depends(get_control_plane)):
    try:
        ctl = plane.controller(name)
    except WorkloadNotFound as e:
        raise _http_error(e)
    was = ctl.halted_reason
    ctl.resume()
    return {"ok": True, "workload": name, "was_halted": was is not None, "reason": was}


# -------------------------------
# Storage & metrics
# -------------------------------
@router.get("/claims", response_model=List[ClaimOut])
async def list_claims(identity: Optional[str] = Query(None), plane: ControlPlane = Depends(get_control_plane)):
    claims = plane.volumes.claims_for(identity) if identity else plane.volumes.list_claims()
    return [
        ClaimOut(
            name=c.name,
            identity=c.identity,
            volume_id=c.volume_id,
            capacity_bytes=c.capacity_bytes,
            capacity=format_bytes(c.capacity_bytes),
            access_modes=list(c.access_modes),
            storage_class=c.storage_class,
            phase=c.phase.value,
        )
        for c in claims
    ]


@router.post("/metrics")
async def push_metrics(payload: MetricsPush, plane: ControlPlane = Depends(get_control_plane)):
    try:
        ok = await plane.push_metrics(payload.values)
    except PodscalerError as e:
        raise _http_error(e)
    return {"ok": ok, "instances": len(payload.values), "degraded": plane.poller.degraded}


@router.get("/status")
async def control_plane_status(plane: ControlPlane = Depends(get_control_plane)):
    return plane.status()
