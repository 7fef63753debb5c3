from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from wafplane.core.errors import RuleValidationError
from wafplane.db import get_db
from wafplane.routers.deps import apply_or_502, get_control_plane
from wafplane.schemas.rules import (
    BulkDeleteRequest,
    CountryRuleCreate,
    IpRuleCreate,
    MutationOut,
    RuleOut,
    RuleUpdate,
)
from wafplane.services.rule_store import RuleStore
from wafplane.workers.control_plane import ControlPlane

router = APIRouter(prefix="/rules", tags=["Rules"])

_store = RuleStore()

KINDS = ("ip", "country")


def _check_kind(kind: str) -> str:
    if kind not in KINDS:
        raise HTTPException(status_code=404, detail="Unknown rule kind")
    return kind


def _payload(model: Any) -> Dict[str, Any]:
    return model.model_dump(exclude_unset=True)


@router.get("/{kind}", response_model=List[RuleOut])
def list_rules(kind: str, db: Session = Depends(get_db)):
    return _store.list_rules(db, _check_kind(kind))


@router.get("/{kind}/{rule_id}", response_model=RuleOut)
def get_rule(kind: str, rule_id: int, db: Session = Depends(get_db)):
    row = _store.get(db, _check_kind(kind), rule_id)
    if not row:
        raise HTTPException(status_code=404, detail="Rule not found")
    return row


def _create(kind: str, data: Dict[str, Any], db: Session, plane: ControlPlane):
    try:
        row = _store.create(db, kind, data)
    except RuleValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e
    apply_or_502(plane, f"{kind}-rule-create")
    return row


@router.post("/ip", response_model=RuleOut, status_code=status.HTTP_201_CREATED)
def create_ip_rule(
    payload: IpRuleCreate,
    db: Session = Depends(get_db),
    plane: ControlPlane = Depends(get_control_plane),
):
    return _create("ip", _payload(payload), db, plane)


@router.post("/country", response_model=RuleOut, status_code=status.HTTP_201_CREATED)
def create_country_rule(
    payload: CountryRuleCreate,
    db: Session = Depends(get_db),
    plane: ControlPlane = Depends(get_control_plane),
):
    return _create("country", _payload(payload), db, plane)


@router.put("/{kind}/{rule_id}", response_model=RuleOut)
def update_rule(
    kind: str,
    rule_id: int,
    payload: RuleUpdate,
    db: Session = Depends(get_db),
    plane: ControlPlane = Depends(get_control_plane),
):
    _check_kind(kind)
    try:
        row = _store.update(db, kind, rule_id, _payload(payload))
    except RuleValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e
    if not row:
        raise HTTPException(status_code=404, detail="Rule not found")
    apply_or_502(plane, f"{kind}-rule-update")
    return row


@router.delete("/{kind}/{rule_id}", response_model=MutationOut)
def delete_rule(
    kind: str,
    rule_id: int,
    db: Session = Depends(get_db),
    plane: ControlPlane = Depends(get_control_plane),
):
    if not _store.delete(db, _check_kind(kind), rule_id):
        raise HTTPException(status_code=404, detail="Rule not found")
    apply_or_502(plane, f"{kind}-rule-delete")
    return MutationOut(ok=True, deleted=1)


@router.post("/{kind}/bulk-delete", response_model=MutationOut)
def bulk_delete_rules(
    kind: str,
    payload: BulkDeleteRequest,
    db: Session = Depends(get_db),
    plane: ControlPlane = Depends(get_control_plane),
):
    n = _store.delete_many(db, _check_kind(kind), payload.ids)
    if n:
        apply_or_502(plane, f"{kind}-rule-bulk-delete")
    return MutationOut(ok=True, deleted=n)
