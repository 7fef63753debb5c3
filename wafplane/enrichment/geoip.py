# wafplane/enrichment/geoip.py
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from ipaddress import ip_address
from pathlib import Path
from typing import Dict, Optional

import geoip2.database
import geoip2.errors

logger = logging.getLogger("wafplane.enrichment")

MAXMIND_COUNTRY_DB = "GeoLite2-Country.mmdb"
IP2LOCATION_COUNTRY_DB = "IP2Location-Country.mmdb"

ENRICH_CACHE_TTL = 86400  # seconds
ENRICH_CACHE_MAX = 200000


@dataclass(frozen=True)
class GeoIpSources:
    """Que DBs de pais existen en GEOIP_DIR (el compiler decide que includes emitir)."""
    maxmind: Optional[str] = None
    ip2location: Optional[str] = None

    @property
    def any(self) -> bool:
        return bool(self.maxmind or self.ip2location)


def detect_sources(geoip_dir: str) -> GeoIpSources:
    d = Path(geoip_dir or "")
    mm = d / MAXMIND_COUNTRY_DB
    ip2 = d / IP2LOCATION_COUNTRY_DB
    return GeoIpSources(
        maxmind=str(mm) if mm.is_file() else None,
        ip2location=str(ip2) if ip2.is_file() else None,
    )


@dataclass
class _CacheEntry:
    ts: float
    value: Optional[str]


class GeoIpResolver:
    """
    Lookup de pais por IP (MaxMind). Best effort:
      - sin DB o IP privada -> None
      - reader lazy, se reabre si cambia el path
    """

    def __init__(self, db_path: Optional[str]) -> None:
        self.db_path = db_path or ""
        self._reader: Optional[geoip2.database.Reader] = None
        self._loaded_path: Optional[str] = None
        self._cache: Dict[str, _CacheEntry] = {}

    def _open_reader(self) -> Optional[geoip2.database.Reader]:
        if self._reader is not None and self._loaded_path == self.db_path:
            return self._reader
        self.close()

        p = Path(self.db_path)
        if not self.db_path or not p.is_file():
            return None
        try:
            self._reader = geoip2.database.Reader(str(p))
            self._loaded_path = self.db_path
        except (OSError, ValueError, RuntimeError) as e:
            logger.warning("No se pudo abrir GeoIP DB %s: %s", p, e)
            self._reader = None
        return self._reader

    def close(self) -> None:
        if self._reader is not None:
            try:
                self._reader.close()
            except OSError:
                pass
        self._reader = None
        self._loaded_path = None

    def _cache_get(self, ip: str) -> Optional[_CacheEntry]:
        ent = self._cache.get(ip)
        if ent and (time.time() - ent.ts) > ENRICH_CACHE_TTL:
            self._cache.pop(ip, None)
            return None
        return ent

    def _cache_set(self, ip: str, value: Optional[str]) -> None:
        # naive eviction: si crece demasiado, tira ~10% de las mas viejas
        if len(self._cache) >= ENRICH_CACHE_MAX:
            for k in list(self._cache.keys())[: max(1, ENRICH_CACHE_MAX // 10)]:
                self._cache.pop(k, None)
        self._cache[ip] = _CacheEntry(ts=time.time(), value=value)

    def country_code(self, ip: Optional[str]) -> Optional[str]:
        if not ip:
            return None
        try:
            addr = ip_address(ip)
        except ValueError:
            return None
        if not addr.is_global:
            return None

        cached = self._cache_get(ip)
        if cached is not None:
            return cached.value

        reader = self._open_reader()
        if reader is None:
            return None

        cc: Optional[str] = None
        try:
            cc = reader.country(ip).country.iso_code
        except (geoip2.errors.GeoIP2Error, ValueError):
            cc = None
        self._cache_set(ip, cc)
        return cc


def default_country_db_path(geoip_dir: str, override: Optional[str] = None) -> str:
    return override or os.path.join(geoip_dir, MAXMIND_COUNTRY_DB)
