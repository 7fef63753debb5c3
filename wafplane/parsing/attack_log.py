# wafplane/parsing/attack_log.py
from __future__ import annotations

import json
from typing import Any, Optional

from wafplane.core.enums import OFFENSE_TYPES
from wafplane.core.net import canonical_ip
from wafplane.core.timeutils import parse_iso_timestamp
from wafplane.parsing.types import NormalizedEvent


def _opt_str(v: Any) -> Optional[str]:
    return v if isinstance(v, str) else None


def _opt_status(v: Any) -> Optional[int]:
    # bool es int en Python: no cuenta como status
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    if isinstance(v, float) and v != int(v):
        return None
    return int(v)


def _is_authenticated(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return v == 1
    return v == "1"


class AttackLogParser:
    """
    Una linea = un objeto JSON del attack log del gateway:
      {"ts": ISO-8601, "ip": "...", "type": "sqli|ddos|bot|authfail", "host", "method", "uri",
       "status", "ua", "ref", "auth"}
    Una linea que no pasa la validacion regresa None (se descarta, no se reintenta).
    """

    def parse_line(self, line: str) -> Optional[NormalizedEvent]:
        s = (line or "").strip()
        if not s:
            return None
        try:
            obj = json.loads(s)
        except ValueError:
            return None
        if not isinstance(obj, dict):
            return None

        offense = obj.get("type")
        if not isinstance(offense, str) or offense not in OFFENSE_TYPES:
            return None

        # canonica: la misma IP escrita distinto comparte ventana y regla
        ip = canonical_ip(obj.get("ip"))
        if ip is None:
            return None

        ts = parse_iso_timestamp(obj.get("ts"))
        if ts is None:
            return None

        return NormalizedEvent(
            timestamp=ts,
            source_address=ip,
            offense_type=offense,
            host=_opt_str(obj.get("host")),
            method=_opt_str(obj.get("method")),
            uri=_opt_str(obj.get("uri")),
            status_code=_opt_status(obj.get("status")),
            user_agent=_opt_str(obj.get("ua")),
            referer=_opt_str(obj.get("ref")),
            authenticated=_is_authenticated(obj.get("auth")),
        )
