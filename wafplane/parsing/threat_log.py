# wafplane/parsing/threat_log.py
from __future__ import annotations

import json
from typing import Any, Optional

from wafplane.core.enums import THREAT_ACTIONS, THREAT_CATEGORIES
from wafplane.core.timeutils import parse_iso_timestamp, utcnow
from wafplane.parsing.types import ThreatControlEvent


def _opt_int(v: Any) -> Optional[int]:
    if v is None or isinstance(v, bool):
        return None
    try:
        return int(str(v).strip(), 10)
    except (TypeError, ValueError):
        return None


def _opt_trunc(v: Any, limit: int) -> Optional[str]:
    return v[:limit] if isinstance(v, str) else None


class ThreatLogParser:
    """Eventos de web threat controls (inbound/browser/outbound) emitidos por el hook del gateway."""

    def parse_line(self, line: str) -> Optional[ThreatControlEvent]:
        s = (line or "").strip()
        if not s:
            return None
        try:
            obj = json.loads(s)
        except ValueError:
            return None
        if not isinstance(obj, dict):
            return None

        category = str(obj.get("category") or "")
        rule_id = str(obj.get("rule_id") or "")
        action = str(obj.get("action") or "")
        reason = str(obj.get("reason") or "")

        if category not in THREAT_CATEGORIES:
            return None
        if not rule_id or len(rule_id) > 64:
            return None
        if action not in THREAT_ACTIONS:
            return None
        if not reason:
            return None

        # ts opcional: si falta o no parsea se usa "ahora"
        ts = parse_iso_timestamp(obj.get("ts")) or utcnow()
        meta = obj.get("meta")

        return ThreatControlEvent(
            ts=ts,
            category=category,
            rule_id=rule_id,
            action=action,
            reason=reason[:255],
            app_id=_opt_int(obj.get("app_id")),
            route_id=_opt_int(obj.get("route_id")),
            src_ip=_opt_trunc(obj.get("src_ip"), 45),
            request_id=_opt_trunc(obj.get("request_id"), 64),
            meta=meta if isinstance(meta, dict) else None,
        )
