from __future__ import annotations

import logging

from fastapi import FastAPI

from wafplane.config import settings
from wafplane.routers import policies, rules, system
from wafplane.routers.settings import router as settings_router
from wafplane.workers.control_plane import ControlPlane

logger = logging.getLogger("wafplane.api")

app = FastAPI(
    title="wafplane control plane API",
    version="0.1.0",
    description="Reglas IP/pais, settings globales, politicas versionadas y apply de config del gateway.",
)


@app.on_event("startup")
def on_startup() -> None:
    plane = ControlPlane(settings)
    plane.bootstrap()
    app.state.control_plane = plane

    # Los tailers corren en el worker (wafplane.workers.control_loop) salvo que se pida aqui
    if settings.CONTROL_PLANE_ENABLED:
        plane.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    plane = getattr(app.state, "control_plane", None)
    if plane is not None:
        plane.stop()


# Routers
app.include_router(system.router)
app.include_router(rules.router)
app.include_router(policies.router)
app.include_router(settings_router)
