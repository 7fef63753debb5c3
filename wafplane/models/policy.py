# wafplane/models/policy.py
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from wafplane.db import Base
from wafplane.models._types import JSONType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PolicySet(Base):
    __tablename__ = "waf_policy_sets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scope = Column(String(16), nullable=False)  # global | app
    app_id = Column(Integer, nullable=True, index=True)
    name = Column(String(128), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    versions = relationship("PolicyVersion", back_populates="policy_set", passive_deletes=True)

    __table_args__ = (Index("ix_waf_policy_sets_scope_app", "scope", "app_id"),)


class PolicyVersion(Base):
    __tablename__ = "waf_policy_versions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    policy_set_id = Column(Integer, ForeignKey("waf_policy_sets.id", ondelete="CASCADE"), nullable=False)
    version = Column(Integer, nullable=False)

    # Siempre normalizado antes de persistir
    policy_json = Column(JSONType, nullable=False)

    created_by = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    is_active = Column(Boolean, nullable=False, default=False)

    policy_set = relationship("PolicySet", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("policy_set_id", "version", name="uq_waf_policy_versions_set_version"),
        Index("ix_waf_policy_versions_set_active", "policy_set_id", "is_active"),
    )


class PolicyBinding(Base):
    """App -> policy set. La ultima binding habilitada gana."""
    __tablename__ = "waf_policy_bindings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_id = Column(Integer, nullable=False)
    policy_set_id = Column(Integer, ForeignKey("waf_policy_sets.id", ondelete="CASCADE"), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (Index("ix_waf_policy_bindings_app_enabled", "app_id", "enabled"),)
