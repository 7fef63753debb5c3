from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class PolicySetOut(BaseModel):
    id: int
    scope: str
    app_id: Optional[int] = None
    name: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PolicySetCreate(BaseModel):
    app_id: int = Field(..., ge=1)
    name: Optional[str] = Field(default=None, max_length=128)


class PolicyVersionOut(BaseModel):
    id: int
    policy_set_id: int
    version: int
    policy_json: Dict[str, Any]
    created_by: Optional[str] = None
    created_at: datetime
    is_active: bool

    class Config:
        from_attributes = True


class PolicyVersionCreate(BaseModel):
    # se normaliza antes de guardarse: llaves desconocidas se descartan
    policy: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = Field(default=None, max_length=128)
    activate: bool = True


class BindRequest(BaseModel):
    policy_set_id: int = Field(..., ge=1)


class EffectivePolicyOut(BaseModel):
    app_id: Optional[int] = None
    policy_set_id: Optional[int] = None
    version: Optional[int] = None
    policy: Dict[str, Any]
