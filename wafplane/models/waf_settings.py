from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, Text

from wafplane.db import Base

SETTINGS_ID = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WafSettings(Base):
    """
    Fila singleton (id=1). Los valores se guardan "crudos";
    el clamp se aplica al leer y al escribir en SettingsService.
    """
    __tablename__ = "waf_settings"

    id = Column(Integer, primary_key=True)

    bot_defense_enabled = Column(Boolean, nullable=False, default=False)
    ddos_enabled = Column(Boolean, nullable=False, default=False)
    sqli_enabled = Column(Boolean, nullable=False, default=False)
    auth_bypass_enabled = Column(Boolean, nullable=False, default=True)

    log_retention_days = Column(Integer, nullable=False, default=30)

    # DDoS
    ddos_rate_rps = Column(Integer, nullable=False, default=10)
    ddos_burst = Column(Integer, nullable=False, default=50)
    ddos_conn_limit = Column(Integer, nullable=False, default=30)

    # Bot (tokens separados por newline; NULL = lista por default)
    bot_ua_tokens = Column(Text, nullable=True)
    bot_path_tokens = Column(Text, nullable=True)

    # SQL shield
    sqli_threshold = Column(Integer, nullable=False, default=8)
    sqli_max_body = Column(Integer, nullable=False, default=65536)
    sqli_probe_min_score = Column(Integer, nullable=False, default=3)
    sqli_probe_ban_score = Column(Integer, nullable=False, default=20)
    sqli_probe_window_sec = Column(Integer, nullable=False, default=30)

    # Auto-ban: failed login (override dedicado)
    authfail_threshold = Column(Integer, nullable=False, default=5)
    authfail_window_sec = Column(Integer, nullable=False, default=180)
    authfail_ban_hours = Column(Integer, nullable=False, default=24)

    # Auto-ban: resto de tipos
    autoban_threshold = Column(Integer, nullable=False, default=5)
    autoban_window_sec = Column(Integer, nullable=False, default=180)
    autoban_ban_hours = Column(Integer, nullable=False, default=24)

    # Rangos de proxies confiables (CIDR por newline). Los refresca el worker;
    # cualquier proceso que compile lee los mismos.
    trusted_proxy_ranges = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    modified_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
