# wafplane/parsing/types.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from wafplane.core.dedupe import attack_dedupe_key, compute_fingerprint


@dataclass
class NormalizedEvent:
    timestamp: datetime
    source_address: str
    offense_type: str

    host: Optional[str] = None
    method: Optional[str] = None
    uri: Optional[str] = None
    status_code: Optional[int] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    authenticated: bool = False

    def dedupe_key(self) -> Tuple[str, ...]:
        return attack_dedupe_key(
            offense_type=self.offense_type,
            source_address=self.source_address,
            timestamp=self.timestamp,
            host=self.host,
            uri=self.uri,
        )

    @property
    def fingerprint(self) -> str:
        return compute_fingerprint(self.dedupe_key())


@dataclass
class ThreatControlEvent:
    ts: datetime
    category: str
    rule_id: str
    action: str
    reason: str

    app_id: Optional[int] = None
    route_id: Optional[int] = None
    src_ip: Optional[str] = None
    request_id: Optional[str] = None
    meta: Optional[Dict[str, Any]] = field(default=None)

    def dedupe_key(self) -> Tuple[str, ...]:
        return (
            self.ts.isoformat(),
            self.category,
            self.rule_id,
            self.action,
            self.src_ip or "",
            self.request_id or "",
            str(self.app_id or ""),
            str(self.route_id or ""),
            self.reason,
        )

    @property
    def fingerprint(self) -> str:
        return compute_fingerprint(self.dedupe_key())
