from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status

from wafplane.compiler.compiler import ApplyResult
from wafplane.core.errors import ConfigApplyError
from wafplane.workers.control_plane import ControlPlane

logger = logging.getLogger("wafplane.api")


def get_control_plane(request: Request) -> ControlPlane:
    plane = getattr(request.app.state, "control_plane", None)
    if plane is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Control plane not initialized")
    return plane


def apply_or_502(plane: ControlPlane, reason: str) -> ApplyResult:
    """
    Compila y aplica en linea. La mutacion ya quedo guardada; si el apply
    falla se reporta al caller con 502 y el gateway sigue con la config previa.
    """
    try:
        return plane.apply_now(reason=reason)
    except ConfigApplyError as e:
        logger.error("apply fallo reason=%s stage=%s: %s", reason, e.stage, e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"stage": e.stage, "message": str(e)},
        ) from e
