# wafplane/core/timeutils.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite regresa datetimes naive aunque la columna sea timezone=True
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso_timestamp(value: object) -> Optional[datetime]:
    """
    Parsea un timestamp ISO-8601 del log del gateway y lo regresa en UTC.
    A diferencia de un parser "tolerante", aqui un valor no parseable regresa None:
    la linea se descarta.
    """
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not s:
        return None
    # fromisoformat no acepta "Z" en versiones viejas de Python
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return ensure_utc(dt)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    dt = ensure_utc(dt)
    return dt.isoformat() if dt else None
