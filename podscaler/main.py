# podscaler/main.py
"""
podscaler HTTP service (FastAPI)

 - /healthz         liveness
 - /readyz          readiness (503 until the control plane runs, or while metrics are degraded)
 - /metrics         Prometheus exposition of the podscaler registry
 - /autoscaler/...  see podscaler.api.autoscaler

The control plane is built from Settings on startup (manifests, k8s switch)
unless one is handed to create_app(), and is stopped on shutdown.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from podscaler.api.autoscaler import router as autoscaler_router
from podscaler.config import Settings, load_settings
from podscaler.control_plane import ControlPlane
from podscaler.metrics import CONTENT_TYPE_LATEST, render_latest
from podscaler.utils.logger import configure_logging, get_logger

LOG = get_logger("podscaler.main")

APP_TITLE = os.getenv("PODSCALER_APP_TITLE", "podscaler")
APP_VERSION = os.getenv("PODSCALER_VERSION", "0.1.0")
APP_DESC = "podscaler: resource-aware autoscaling controller and stateful volume lifecycle manager"


def create_app(plane: Optional[ControlPlane] = None,
               settings: Optional[Settings] = None,
               start_loops: bool = True) -> FastAPI:
    """
    Build the FastAPI app. With start_loops=False workloads are brought to
    size but nothing ticks in the background (ticks come from the API).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cp = plane
        if cp is None:
            cp = ControlPlane.from_settings(settings or load_settings())
        app.state.control_plane = cp
        await cp.start(loops=start_loops)
        LOG.info("podscaler API ready (%d workloads)", len(cp.names()))
        try:
            yield
        finally:
            await cp.stop()

    app = FastAPI(title=APP_TITLE, version=APP_VERSION, description=APP_DESC, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("PODSCALER_CORS_ALLOW_ORIGINS", "*").split(","),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        LOG.exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "internal_server_error"})

    @app.get("/healthz", tags=["health"])
    async def liveness_probe():
        return PlainTextResponse("OK", status_code=200)

    @app.get("/readyz", tags=["health"])
    async def readiness_probe(request: Request):
        cp: Optional[ControlPlane] = getattr(request.app.state, "control_plane", None)
        checks: Dict[str, Any] = {"app": "ok"}
        if cp is None:
            checks["control_plane"] = "missing"
            return JSONResponse(status_code=503, content={"ready": False, "checks": checks})
        checks["control_plane"] = "running" if cp.started else "stopped"
        checks["metrics"] = "degraded" if cp.poller.degraded else "ok"
        checks["workloads"] = len(cp.names())
        halted = [n for n in cp.names() if cp.controller(n).halted]
        if halted:
            checks["halted"] = halted
        ready = cp.ready
        return JSONResponse(status_code=200 if ready else 503, content={"ready": ready, "checks": checks})

    @app.get("/metrics", tags=["metrics"])
    async def prometheus_scrape():
        return Response(content=render_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(autoscaler_router)
    return app


def run_uvicorn(settings: Optional[Settings] = None, start_loops: bool = True):
    settings = settings or load_settings()
    configure_logging()
    app = create_app(settings=settings, start_loops=start_loops)
    uvicorn.run(app, host=settings.host, port=int(settings.port), log_level="info")


__all__ = ["create_app", "run_uvicorn"]
