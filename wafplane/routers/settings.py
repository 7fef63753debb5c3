from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from wafplane.db import get_db
from wafplane.routers.deps import apply_or_502, get_control_plane
from wafplane.schemas.settings import WafSettingsOut, WafSettingsPatch
from wafplane.workers.control_plane import ControlPlane

router = APIRouter(prefix="/settings", tags=["Settings"])


@router.get("", response_model=WafSettingsOut)
def get_settings(
    db: Session = Depends(get_db),
    plane: ControlPlane = Depends(get_control_plane),
):
    return WafSettingsOut(**plane.settings_service.get(db, use_cache=False).as_dict())


@router.put("", response_model=WafSettingsOut)
def put_settings(
    payload: WafSettingsPatch,
    db: Session = Depends(get_db),
    plane: ControlPlane = Depends(get_control_plane),
):
    snap = plane.settings_service.update(db, payload.model_dump(exclude_unset=True))
    apply_or_502(plane, "settings-update")
    return WafSettingsOut(**snap.as_dict())
