# wafplane/models/rules.py
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String

from wafplane.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _RuleColumns:
    id = Column(Integer, primary_key=True, autoincrement=True)

    enabled = Column(Boolean, nullable=False, default=True)
    action = Column(String(8), nullable=False, default="deny")  # allow | deny

    note = Column(String(255), nullable=True)
    # NULL = permanente
    expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    modified_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class IpRule(_RuleColumns, Base):
    __tablename__ = "waf_ip_rules"

    ip_cidr = Column(String(64), nullable=False)

    __table_args__ = (
        Index("ix_waf_ip_rules_enabled_action", "enabled", "action"),
        # lookup "ultimo deny para el sujeto" del ban engine
        Index("ix_waf_ip_rules_ip_cidr_action", "ip_cidr", "action"),
    )

    @property
    def subject(self) -> str:
        return self.ip_cidr

    def __repr__(self) -> str:
        return f"<IpRule id={self.id} {self.action} {self.ip_cidr} enabled={self.enabled}>"


class CountryRule(_RuleColumns, Base):
    __tablename__ = "waf_country_rules"

    country_code = Column(String(2), nullable=False)

    __table_args__ = (
        Index("ix_waf_country_rules_enabled_action", "enabled", "action"),
        Index("ix_waf_country_rules_country_action", "country_code", "action"),
    )

    @property
    def subject(self) -> str:
        return self.country_code

    def __repr__(self) -> str:
        return f"<CountryRule id={self.id} {self.action} {self.country_code} enabled={self.enabled}>"
