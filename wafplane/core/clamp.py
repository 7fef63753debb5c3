from __future__ import annotations

from typing import Any, Iterable


def clamp_int(value: Any, lo: int, hi: int, fallback: int) -> int:
    """Clamp con fallback: un valor invalido no se rechaza, se reemplaza."""
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, float):
        if value != value:  # NaN
            return fallback
        n = int(value)
    else:
        try:
            n = int(str(value).strip(), 10)
        except (TypeError, ValueError):
            return fallback
    return min(hi, max(lo, n))


def normalize_choice(value: Any, allowed: Iterable[str], fallback: str) -> str:
    s = str(value if value is not None else "").strip().lower()
    return s if s in allowed else fallback
