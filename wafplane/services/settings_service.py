# wafplane/services/settings_service.py
from __future__ import annotations

import time
from dataclasses import dataclass, fields
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from wafplane.core.clamp import clamp_int
from wafplane.core.enums import LOG_RETENTION_DAYS_ALLOWED
from wafplane.models.waf_settings import SETTINGS_ID, WafSettings


DEFAULT_BOT_UA_TOKENS = "curl\nwget\npython-requests\nlibwww-perl\nnikto\nsqlmap"
DEFAULT_BOT_PATH_TOKENS = "wp-login.php\nxmlrpc.php"

# campo -> (min, max, fallback)
INT_RANGES: Dict[str, Tuple[int, int, int]] = {
    "ddos_rate_rps": (1, 10000, 10),
    "ddos_burst": (0, 100000, 50),
    "ddos_conn_limit": (1, 100000, 30),
    "sqli_threshold": (1, 1000, 8),
    "sqli_max_body": (0, 1048576, 65536),
    "sqli_probe_min_score": (0, 1000, 3),
    "sqli_probe_ban_score": (1, 100000, 20),
    "sqli_probe_window_sec": (1, 600, 30),
    "authfail_threshold": (1, 1000, 5),
    "authfail_window_sec": (5, 3600, 180),
    "authfail_ban_hours": (1, 8760, 24),
    "autoban_threshold": (1, 1000, 5),
    "autoban_window_sec": (5, 3600, 180),
    "autoban_ban_hours": (1, 8760, 24),
}

BOOL_DEFAULTS: Dict[str, bool] = {
    "bot_defense_enabled": False,
    "ddos_enabled": False,
    "sqli_enabled": False,
    "auth_bypass_enabled": True,
}

TEXT_FIELDS = ("bot_ua_tokens", "bot_path_tokens")

LOG_RETENTION_FALLBACK = 30


def clamp_retention_days(value: Any) -> int:
    n = clamp_int(value, 0, 10_000, LOG_RETENTION_FALLBACK)
    return n if n in LOG_RETENTION_DAYS_ALLOWED else LOG_RETENTION_FALLBACK


def coerce_bool(value: Any, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return fallback
    s = str(value).strip().lower()
    if s in ("1", "true", "yes", "y", "on", "enabled"):
        return True
    if s in ("0", "false", "no", "n", "off", "disabled"):
        return False
    return fallback


@dataclass(frozen=True)
class GlobalSettings:
    bot_defense_enabled: bool = False
    ddos_enabled: bool = False
    sqli_enabled: bool = False
    auth_bypass_enabled: bool = True
    log_retention_days: int = 30

    ddos_rate_rps: int = 10
    ddos_burst: int = 50
    ddos_conn_limit: int = 30

    bot_ua_tokens: str = DEFAULT_BOT_UA_TOKENS
    bot_path_tokens: str = DEFAULT_BOT_PATH_TOKENS

    sqli_threshold: int = 8
    sqli_max_body: int = 65536
    sqli_probe_min_score: int = 3
    sqli_probe_ban_score: int = 20
    sqli_probe_window_sec: int = 30

    authfail_threshold: int = 5
    authfail_window_sec: int = 180
    authfail_ban_hours: int = 24

    autoban_threshold: int = 5
    autoban_window_sec: int = 180
    autoban_ban_hours: int = 24

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def snapshot_from_values(values: Dict[str, Any]) -> GlobalSettings:
    """Construye el snapshot aplicando clamp/fallback campo por campo."""
    data: Dict[str, Any] = {}
    for name, (lo, hi, fb) in INT_RANGES.items():
        data[name] = clamp_int(values.get(name), lo, hi, fb)
    for name, fb in BOOL_DEFAULTS.items():
        data[name] = coerce_bool(values.get(name), fb)
    data["log_retention_days"] = clamp_retention_days(values.get("log_retention_days"))

    ua = values.get("bot_ua_tokens")
    path = values.get("bot_path_tokens")
    data["bot_ua_tokens"] = ua if isinstance(ua, str) else DEFAULT_BOT_UA_TOKENS
    data["bot_path_tokens"] = path if isinstance(path, str) else DEFAULT_BOT_PATH_TOKENS
    return GlobalSettings(**data)


def _row_values(row: WafSettings) -> Dict[str, Any]:
    names = list(INT_RANGES) + list(BOOL_DEFAULTS) + list(TEXT_FIELDS) + ["log_retention_days"]
    return {n: getattr(row, n) for n in names}


class SettingsService:
    """
    Lectura/Escritura del singleton de settings con cache (por proceso)
    para no golpear DB en cada evento del tailer. Cache por default: 5s.
    """
    def __init__(self, ttl_seconds: int = 5) -> None:
        self.ttl_seconds = int(ttl_seconds)
        self._cached: Optional[GlobalSettings] = None
        self._expires_at: float = 0.0

    def _now(self) -> float:
        return time.monotonic()

    def _get_or_create_row(self, db: Session) -> WafSettings:
        row = db.get(WafSettings, SETTINGS_ID)
        if row:
            return row
        row = WafSettings(id=SETTINGS_ID)
        db.add(row)
        db.flush()
        return row

    def get(self, db: Session, *, use_cache: bool = True) -> GlobalSettings:
        now = self._now()
        if use_cache and self._cached is not None and self._expires_at >= now:
            return self._cached

        row = self._get_or_create_row(db)
        db.commit()
        snap = snapshot_from_values(_row_values(row))
        self._cached = snap
        self._expires_at = now + self.ttl_seconds
        return snap

    def update(self, db: Session, patch: Dict[str, Any]) -> GlobalSettings:
        """Patch parcial. Llaves desconocidas se ignoran; numericos se clampean al escribir."""
        row = self._get_or_create_row(db)
        if isinstance(patch, dict):
            for k, v in patch.items():
                if v is None and k not in TEXT_FIELDS:
                    continue
                if k in INT_RANGES:
                    lo, hi, _ = INT_RANGES[k]
                    setattr(row, k, clamp_int(v, lo, hi, getattr(row, k)))
                elif k in BOOL_DEFAULTS:
                    setattr(row, k, coerce_bool(v, bool(getattr(row, k))))
                elif k == "log_retention_days":
                    row.log_retention_days = clamp_retention_days(v)
                elif k in TEXT_FIELDS:
                    setattr(row, k, v if isinstance(v, str) else None)
        db.commit()

        # invalida cache local
        self._cached = None
        return self.get(db, use_cache=False)

    # -------------------------
    # Trusted proxy ranges
    # -------------------------

    def get_trusted_ranges(self, db: Session) -> List[str]:
        """Sin cache: el compiler siempre renderiza lo ultimo persistido."""
        row = self._get_or_create_row(db)
        db.commit()
        raw = row.trusted_proxy_ranges or ""
        return [r for r in raw.splitlines() if r.strip()]

    def set_trusted_ranges(self, db: Session, ranges: Iterable[str]) -> bool:
        """Guarda la lista (dedupe + orden). Devuelve True si cambio algo."""
        value = "\n".join(sorted({str(r).strip() for r in ranges if str(r).strip()}))
        row = self._get_or_create_row(db)
        if (row.trusted_proxy_ranges or "") == value:
            db.commit()
            return False
        row.trusted_proxy_ranges = value or None
        db.commit()
        return True
