# wafplane/models/events.py
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, String, Text

from wafplane.db import Base
from wafplane.models._types import JSONType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AttackEvent(Base):
    """Evento normalizado del attack log del gateway."""
    __tablename__ = "waf_attack_events"

    id = Column(Integer, primary_key=True, autoincrement=True)

    attack_type = Column(String(16), nullable=False)
    ip = Column(String(64), nullable=False)
    host = Column(String(255), nullable=True)
    method = Column(String(16), nullable=True)
    uri = Column(Text, nullable=True)
    status = Column(Integer, nullable=True)
    user_agent = Column(Text, nullable=True)
    referer = Column(Text, nullable=True)
    authenticated = Column(Integer, nullable=False, default=0)

    country_code = Column(String(8), nullable=True)

    # sha256 de (type, ip, ts, host, uri): evita duplicados al re-ingerir un rango
    fingerprint = Column(String(64), nullable=False, unique=True)

    occurred_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_waf_attack_events_occurred_at", "occurred_at"),
        Index("ix_waf_attack_events_type_occurred_at", "attack_type", "occurred_at"),
        Index("ix_waf_attack_events_ip_occurred_at", "ip", "occurred_at"),
    )

    def __repr__(self) -> str:
        return f"<AttackEvent id={self.id} type={self.attack_type} ip={self.ip}>"


class ThreatEvent(Base):
    """Evento de web threat controls (log secundario)."""
    __tablename__ = "waf_threat_events"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    ts = Column(DateTime(timezone=True), nullable=False)
    app_id = Column(Integer, nullable=True)
    route_id = Column(Integer, nullable=True)
    category = Column(String(16), nullable=False)
    rule_id = Column(String(64), nullable=False)
    action = Column(String(8), nullable=False)
    reason = Column(String(255), nullable=False)
    src_ip = Column(String(45), nullable=True)
    request_id = Column(String(64), nullable=True)
    meta = Column(JSONType, nullable=True)

    fingerprint = Column(String(64), nullable=False, unique=True)

    __table_args__ = (
        Index("ix_waf_threat_events_ts", "ts"),
        Index("ix_waf_threat_events_app_ts", "app_id", "ts"),
        Index("ix_waf_threat_events_category_ts", "category", "ts"),
    )
