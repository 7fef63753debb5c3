from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from wafplane.core.errors import PolicyInvariantError
from wafplane.db import get_db
from wafplane.routers.deps import apply_or_502, get_control_plane
from wafplane.schemas.policies import (
    BindRequest,
    EffectivePolicyOut,
    PolicySetCreate,
    PolicySetOut,
    PolicyVersionCreate,
    PolicyVersionOut,
)
from wafplane.services.policy_store import PolicyStore
from wafplane.workers.control_plane import ControlPlane

router = APIRouter(prefix="/policies", tags=["Policies"])

_store = PolicyStore()


def _require_set(db: Session, policy_set_id: int):
    ps = _store.get_set(db, policy_set_id)
    if not ps:
        raise HTTPException(status_code=404, detail="Policy set not found")
    return ps


@router.get("/sets", response_model=List[PolicySetOut])
def list_sets(db: Session = Depends(get_db)):
    _store.ensure_global_set(db)
    return _store.list_sets(db)


@router.post("/sets", response_model=PolicySetOut, status_code=status.HTTP_201_CREATED)
def create_app_set(
    payload: PolicySetCreate,
    db: Session = Depends(get_db),
    plane: ControlPlane = Depends(get_control_plane),
):
    ps = _store.create_app_set(db, payload.app_id, payload.name)
    apply_or_502(plane, "policy-set-create")
    return ps


@router.get("/sets/{policy_set_id}/versions", response_model=List[PolicyVersionOut])
def list_versions(policy_set_id: int, db: Session = Depends(get_db)):
    _require_set(db, policy_set_id)
    return _store.list_versions(db, policy_set_id)


@router.post(
    "/sets/{policy_set_id}/versions",
    response_model=PolicyVersionOut,
    status_code=status.HTTP_201_CREATED,
)
def create_version(
    policy_set_id: int,
    payload: PolicyVersionCreate,
    db: Session = Depends(get_db),
    plane: ControlPlane = Depends(get_control_plane),
):
    _require_set(db, policy_set_id)
    row = _store.create_version(db, policy_set_id, payload.policy, payload.created_by, activate=payload.activate)
    if payload.activate:
        apply_or_502(plane, "policy-version-create")
    return row


@router.post("/sets/{policy_set_id}/versions/{version}/activate", response_model=PolicyVersionOut)
def activate_version(
    policy_set_id: int,
    version: int,
    db: Session = Depends(get_db),
    plane: ControlPlane = Depends(get_control_plane),
):
    _require_set(db, policy_set_id)
    if not _store.activate_version(db, policy_set_id, version):
        raise HTTPException(status_code=404, detail="Policy version not found")
    apply_or_502(plane, "policy-activate")
    return _store.get_active_version(db, policy_set_id)


@router.post("/sets/{policy_set_id}/rollback", response_model=Optional[PolicyVersionOut])
def rollback(
    policy_set_id: int,
    db: Session = Depends(get_db),
    plane: ControlPlane = Depends(get_control_plane),
):
    _require_set(db, policy_set_id)
    try:
        version = _store.rollback(db, policy_set_id)
    except PolicyInvariantError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    if version is None:
        # nada anterior: no-op
        return _store.get_active_version(db, policy_set_id)
    apply_or_502(plane, "policy-rollback")
    return _store.get_active_version(db, policy_set_id)


@router.put("/apps/{app_id}/binding", response_model=EffectivePolicyOut)
def bind_app(
    app_id: int,
    payload: BindRequest,
    db: Session = Depends(get_db),
    plane: ControlPlane = Depends(get_control_plane),
):
    _require_set(db, payload.policy_set_id)
    _store.unbind_app(db, app_id)
    _store.bind_app(db, app_id, payload.policy_set_id)
    apply_or_502(plane, "policy-bind")
    return effective(app_id=app_id, db=db)


@router.delete("/apps/{app_id}/binding", response_model=EffectivePolicyOut)
def unbind_app(
    app_id: int,
    db: Session = Depends(get_db),
    plane: ControlPlane = Depends(get_control_plane),
):
    if _store.unbind_app(db, app_id):
        apply_or_502(plane, "policy-unbind")
    return effective(app_id=app_id, db=db)


@router.get("/effective", response_model=EffectivePolicyOut)
def effective(app_id: Optional[int] = None, db: Session = Depends(get_db)):
    try:
        eff = _store.effective_policy(db, app_id)
    except PolicyInvariantError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return EffectivePolicyOut(
        app_id=app_id,
        policy_set_id=eff.policy_set.id if eff.policy_set else None,
        version=eff.active_version.version if eff.active_version else None,
        policy=eff.policy,
    )
