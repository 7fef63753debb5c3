# wafplane/core/net.py
from __future__ import annotations

import ipaddress
import re
from typing import Iterable, List, Optional, Union

IpNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

CIDR_CHARS_RE = re.compile(r"^[0-9a-fA-F:./]+$")
DOTTED_QUAD_RE = re.compile(r"^\d+\.\d+\.\d+\.\d+$")
COUNTRY_RE = re.compile(r"^[A-Z]{2}$")


def canonical_ip(value: object) -> Optional[str]:
    """Forma canonica de una IP (2001:DB8::01 -> 2001:db8::1) o None si no es IP."""
    if not isinstance(value, str) or not value:
        return None
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


def _normalize_ip_literal(ip: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(ip))
    except ValueError:
        pass

    # 10.01.01.11 -> 10.1.1.11 (la gente pega IPs con ceros a la izquierda)
    if DOTTED_QUAD_RE.match(ip):
        octets = [int(x, 10) for x in ip.split(".")]
        if all(0 <= n <= 255 for n in octets):
            return ".".join(str(n) for n in octets)
    return None


def sanitize_cidr(value: object) -> Optional[str]:
    """
    IP o CIDR "sano" o None. Se respeta lo que el usuario escribio
    (no se fuerza strict=False sobre los host bits), solo se normaliza la IP.
    """
    v = str(value if value is not None else "").strip()
    if not v or not CIDR_CHARS_RE.match(v):
        return None

    parts = v.split("/")
    if len(parts) > 2:
        return None

    ip = _normalize_ip_literal(parts[0])
    if not ip:
        return None

    if len(parts) == 1:
        return ip

    try:
        prefix = int(parts[1], 10)
    except ValueError:
        return None
    max_prefix = 32 if ipaddress.ip_address(ip).version == 4 else 128
    if prefix < 0 or prefix > max_prefix:
        return None
    return f"{ip}/{prefix}"


def sanitize_country_code(value: object) -> Optional[str]:
    v = str(value if value is not None else "").strip().upper()
    if not COUNTRY_RE.match(v):
        return None
    return v


def to_network(subject: Optional[str]) -> Optional[IpNetwork]:
    if not subject:
        return None
    try:
        return ipaddress.ip_network(subject, strict=False)
    except ValueError:
        return None


def network_covers(outer: Optional[str], inner: Optional[str]) -> bool:
    """True si la red `outer` contiene por completo a `inner` (misma familia)."""
    a = to_network(outer)
    b = to_network(inner)
    if a is None or b is None or a.version != b.version:
        return False
    return b.subnet_of(a)  # type: ignore[arg-type]


def dedupe_sorted(values: Iterable[Optional[str]]) -> List[str]:
    return sorted({v for v in values if v})
