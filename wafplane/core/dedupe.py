from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Optional, Tuple

from wafplane.core.timeutils import ensure_utc


def attack_dedupe_key(
    *,
    offense_type: str,
    source_address: str,
    timestamp: Optional[datetime],
    host: Optional[str],
    uri: Optional[str],
) -> Tuple[str, str, str, str, str]:
    ts = ensure_utc(timestamp)
    return (
        (offense_type or "").strip(),
        (source_address or "").strip(),
        ts.isoformat() if ts else "",
        (host or "").strip(),
        (uri or "").strip(),
    )


def compute_fingerprint(key: Tuple[str, ...]) -> str:
    payload = "|".join(key)
    return hashlib.sha256(payload.encode("utf-8", errors="ignore")).hexdigest()
