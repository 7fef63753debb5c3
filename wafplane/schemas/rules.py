from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class RuleBase(BaseModel):
    enabled: bool = True
    action: Literal["allow", "deny"] = "deny"
    note: Optional[str] = Field(default=None, max_length=255)


class IpRuleCreate(RuleBase):
    ip_cidr: str = Field(..., max_length=64)
    expires_at: Optional[datetime] = None
    # atajo: <= 0 o null = permanente
    expires_in_days: Optional[int] = None


class CountryRuleCreate(RuleBase):
    country_code: str = Field(..., max_length=8)
    expires_at: Optional[datetime] = None
    expires_in_days: Optional[int] = None


class RuleUpdate(BaseModel):
    enabled: Optional[bool] = None
    action: Optional[Literal["allow", "deny"]] = None
    note: Optional[str] = Field(default=None, max_length=255)
    ip_cidr: Optional[str] = Field(default=None, max_length=64)
    country_code: Optional[str] = Field(default=None, max_length=8)
    expires_at: Optional[datetime] = None
    expires_in_days: Optional[int] = None


class RuleOut(BaseModel):
    id: int
    enabled: bool
    action: str
    subject: str
    note: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime
    modified_at: datetime

    class Config:
        from_attributes = True


class BulkDeleteRequest(BaseModel):
    ids: List[int] = Field(default_factory=list, max_length=10_000)


class MutationOut(BaseModel):
    """Respuesta de mutaciones: el cambio queda guardado aunque el apply falle."""
    ok: bool = True
    deleted: Optional[int] = None
