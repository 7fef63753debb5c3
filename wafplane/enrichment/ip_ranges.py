# wafplane/enrichment/ip_ranges.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

import requests

from wafplane.core.net import sanitize_cidr

logger = logging.getLogger("wafplane.enrichment")

CLOUDFLARE_V4_URL = "https://www.cloudflare.com/ips-v4"
CLOUDFLARE_V6_URL = "https://www.cloudflare.com/ips-v6"

# Fallback offline (deployments sin salida a Internet)
CLOUDFLARE_FALLBACK_RANGES = [
    # IPv4
    "173.245.48.0/20",
    "103.21.244.0/22",
    "103.22.200.0/22",
    "103.31.4.0/22",
    "141.101.64.0/18",
    "108.162.192.0/18",
    "190.93.240.0/20",
    "188.114.96.0/20",
    "197.234.240.0/22",
    "198.41.128.0/17",
    "162.158.0.0/15",
    "104.16.0.0/13",
    "104.24.0.0/14",
    "172.64.0.0/13",
    "131.0.72.0/22",
    # IPv6
    "2400:cb00::/32",
    "2606:4700::/32",
    "2803:f800::/32",
    "2405:b500::/32",
    "2405:8100::/32",
    "2a06:98c0::/29",
    "2c0f:f248::/32",
]


@dataclass
class IpRangesResult:
    ranges: List[str]
    from_fallback: bool


def parse_range_lines(text: str) -> List[str]:
    out: List[str] = []
    for line in (text or "").splitlines():
        cidr = sanitize_cidr(line)
        if cidr and "/" in cidr:
            out.append(cidr)
    return out


class IpRangesFetcher:
    """
    Descarga best-effort de rangos de CDN confiables (para real_ip).
    Timeouts de connect/read y tope de redirects: nunca bloquea el siguiente tick.
    """

    def __init__(
        self,
        *,
        urls: Iterable[str] = (CLOUDFLARE_V4_URL, CLOUDFLARE_V6_URL),
        connect_timeout: float = 3.0,
        read_timeout: float = 10.0,
        max_redirects: int = 3,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.urls = list(urls)
        self.timeout = (float(connect_timeout), float(read_timeout))
        self.session = session or requests.Session()
        self.session.max_redirects = int(max_redirects)

    def _fetch_url(self, url: str) -> str:
        logger.info("Fetching %s", url)
        resp = self.session.get(url, timeout=self.timeout, allow_redirects=True)
        resp.raise_for_status()
        return resp.text

    def fetch(self) -> IpRangesResult:
        ranges: List[str] = []
        try:
            for url in self.urls:
                ranges.extend(parse_range_lines(self._fetch_url(url)))
        except requests.RequestException as e:
            logger.warning("Fallo descargando IP ranges (%s); se usa fallback", e)
            return IpRangesResult(ranges=list(CLOUDFLARE_FALLBACK_RANGES), from_fallback=True)

        if not ranges:
            return IpRangesResult(ranges=list(CLOUDFLARE_FALLBACK_RANGES), from_fallback=True)
        return IpRangesResult(ranges=sorted(set(ranges)), from_fallback=False)
