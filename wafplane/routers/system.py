from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from wafplane.core.timeutils import to_iso
from wafplane.routers.deps import apply_or_502, get_control_plane
from wafplane.workers.control_plane import ControlPlane

router = APIRouter(tags=["system"])


@router.get("/health")
def health_check() -> Dict[str, Any]:
    return {"status": "ok", "service": "wafplane", "version": "v1"}


@router.post("/apply")
def apply_config(plane: ControlPlane = Depends(get_control_plane)) -> Dict[str, Any]:
    res = apply_or_502(plane, "manual")
    return {
        "ok": True,
        "digest": res.digest,
        "reduced": res.reduced,
        "files": res.files,
        "applied_at": to_iso(res.applied_at),
    }
