# wafplane/services/tailer.py
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from wafplane.core.enums import ThreatAction, ThreatCategory
from wafplane.core.timeutils import ensure_utc, utcnow
from wafplane.db import SessionLocal
from wafplane.enrichment.geoip import GeoIpResolver
from wafplane.models.events import AttackEvent, ThreatEvent
from wafplane.models.ingest_cursor import IngestCursor
from wafplane.parsing.attack_log import AttackLogParser
from wafplane.parsing.threat_log import ThreatLogParser
from wafplane.parsing.types import NormalizedEvent, ThreatControlEvent
from wafplane.services.ban_engine import BanEngine
from wafplane.services.settings_service import SettingsService

logger = logging.getLogger("wafplane.tailer")

DEFAULT_MAX_READ_BYTES = 4 * 1024 * 1024
FINGERPRINT_CHUNK = 500

SessionFactory = Callable[[], Session]


# -------------------------
# Resultados
# -------------------------

@dataclass
class IngestResult:
    inserted: int = 0
    cursor_advanced: bool = False
    config_affecting: bool = False


@dataclass
class SinkResult:
    inserted: int = 0
    config_affecting: bool = False


@dataclass(frozen=True)
class CursorState:
    inode: int
    offset: int


# -------------------------
# Cursor stores
# -------------------------

class CursorStore(Protocol):
    def load(self, log_path: str) -> Optional[CursorState]:
        ...

    def save(self, log_path: str, state: CursorState) -> None:
        ...


class DbCursorStore:
    """Cursor en tabla waf_ingest_cursors (una fila por log_path)."""

    def __init__(self, session_factory: SessionFactory = SessionLocal) -> None:
        self.session_factory = session_factory

    def load(self, log_path: str) -> Optional[CursorState]:
        db = self.session_factory()
        try:
            row = db.get(IngestCursor, log_path)
            if row is None:
                return None
            return CursorState(inode=int(row.inode or 0), offset=int(row.byte_offset or 0))
        finally:
            db.close()

    def save(self, log_path: str, state: CursorState) -> None:
        db = self.session_factory()
        try:
            row = db.get(IngestCursor, log_path)
            if row is None:
                row = IngestCursor(log_path=log_path)
                db.add(row)
            row.inode = int(state.inode)
            row.byte_offset = int(state.offset)
            row.modified_at = utcnow()
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()


class SidecarCursorStore:
    """
    Cursor en un archivo JSON al lado del log: {"inode": n, "offset": n}.
    Escritura atomica (tmp + rename).
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    def load(self, log_path: str) -> Optional[CursorState]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        try:
            return CursorState(inode=int(data.get("inode") or 0), offset=max(0, int(data.get("offset") or 0)))
        except (TypeError, ValueError):
            return None

    def save(self, log_path: str, state: CursorState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps({"inode": int(state.inode), "offset": int(state.offset)})
        fd, tmp = tempfile.mkstemp(prefix=".cursor-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


# -------------------------
# Sinks
# -------------------------

class EventSink(Protocol):
    def consume(self, lines: List[str]) -> SinkResult:
        ...


def _existing_fingerprints(db: Session, column, fingerprints: Iterable[str]) -> Set[str]:
    fps = list(fingerprints)
    found: Set[str] = set()
    for i in range(0, len(fps), FINGERPRINT_CHUNK):
        chunk = fps[i : i + FINGERPRINT_CHUNK]
        found.update(db.execute(select(column).where(column.in_(chunk))).scalars().all())
    return found


def _retention_sweep(db: Session, column, days: int, now: datetime) -> int:
    """Best effort: borra eventos mas viejos que la retencion configurada."""
    cutoff = now - timedelta(days=int(days))
    try:
        res = db.execute(delete(column.class_).where(column < cutoff))
        db.commit()
        return int(res.rowcount or 0)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("retention sweep fallo (%s): %s", column.class_.__tablename__, e)
        return 0


class AttackEventSink:
    """
    Attack log del gateway:
      1) parse + dedupe en el batch por (type, ip, ts, host, uri)
      2) insert uno por uno (fallos se loguean y se saltan)
      3) ban engine sobre los eventos retenidos, en orden de log
      4) retention sweep
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory = SessionLocal,
        settings_service: Optional[SettingsService] = None,
        ban_engine: Optional[BanEngine] = None,
        geoip: Optional[GeoIpResolver] = None,
        parser: Optional[AttackLogParser] = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings_service = settings_service or SettingsService()
        self.ban_engine = ban_engine or BanEngine()
        self.geoip = geoip
        self.parser = parser or AttackLogParser()

    def _parse_batch(self, lines: List[str]) -> List[NormalizedEvent]:
        seen: Set[Tuple[str, ...]] = set()
        out: List[NormalizedEvent] = []
        for line in lines:
            ev = self.parser.parse_line(line)
            if ev is None:
                continue
            key = ev.dedupe_key()
            if key in seen:
                continue
            seen.add(key)
            out.append(ev)
        return out

    def _to_row(self, ev: NormalizedEvent) -> AttackEvent:
        cc = self.geoip.country_code(ev.source_address) if self.geoip else None
        return AttackEvent(
            attack_type=ev.offense_type,
            ip=ev.source_address,
            host=ev.host,
            method=ev.method,
            uri=ev.uri,
            status=ev.status_code,
            user_agent=ev.user_agent,
            referer=ev.referer,
            authenticated=1 if ev.authenticated else 0,
            country_code=cc,
            fingerprint=ev.fingerprint,
            occurred_at=ensure_utc(ev.timestamp),
        )

    def consume(self, lines: List[str]) -> SinkResult:
        events = self._parse_batch(lines)
        if not events:
            return SinkResult()

        now = utcnow()
        inserted = 0
        retained: List[NormalizedEvent] = []

        db = self.session_factory()
        try:
            already = _existing_fingerprints(db, AttackEvent.fingerprint, (e.fingerprint for e in events))

            for ev in events:
                if ev.fingerprint in already:
                    # re-ingesta del mismo rango: ya se vio (y ya paso por el engine)
                    continue
                retained.append(ev)
                db.add(self._to_row(ev))
                try:
                    db.commit()
                    inserted += 1
                except IntegrityError:
                    db.rollback()
                    retained.pop()
                except SQLAlchemyError as e:
                    db.rollback()
                    logger.warning("insert attack event fallo ip=%s type=%s: %s", ev.source_address, ev.offense_type, e)

            settings = self.settings_service.get(db)
            bans = self.ban_engine.process(db, retained, settings, now=now)
            _retention_sweep(db, AttackEvent.occurred_at, settings.log_retention_days, now)
        finally:
            db.close()

        if bans:
            logger.info("batch attack log: inserted=%s bans_changed=%s", inserted, len(bans))
        return SinkResult(inserted=inserted, config_affecting=bool(bans))


def is_config_affecting_threat(ev: ThreatControlEvent) -> bool:
    return ev.category == ThreatCategory.INBOUND.value and ev.action == ThreatAction.BLOCK.value


class ThreatEventSink:
    """Log secundario (web threat controls). inbound+block marca el batch como config-affecting."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory = SessionLocal,
        settings_service: Optional[SettingsService] = None,
        parser: Optional[ThreatLogParser] = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings_service = settings_service or SettingsService()
        self.parser = parser or ThreatLogParser()

    def consume(self, lines: List[str]) -> SinkResult:
        events: Dict[str, ThreatControlEvent] = {}
        for line in lines:
            ev = self.parser.parse_line(line)
            if ev is not None:
                events.setdefault(ev.fingerprint, ev)
        if not events:
            return SinkResult()

        inserted = 0
        affecting = False
        db = self.session_factory()
        try:
            already = _existing_fingerprints(db, ThreatEvent.fingerprint, events.keys())
            for fp, ev in events.items():
                if fp in already:
                    continue
                db.add(
                    ThreatEvent(
                        ts=ensure_utc(ev.ts),
                        app_id=ev.app_id,
                        route_id=ev.route_id,
                        category=ev.category,
                        rule_id=ev.rule_id,
                        action=ev.action,
                        reason=ev.reason,
                        src_ip=ev.src_ip,
                        request_id=ev.request_id,
                        meta=ev.meta,
                        fingerprint=fp,
                    )
                )
                try:
                    db.commit()
                except SQLAlchemyError as e:
                    db.rollback()
                    if not isinstance(e, IntegrityError):
                        logger.warning("insert threat event fallo rule_id=%s: %s", ev.rule_id, e)
                    continue
                inserted += 1
                if is_config_affecting_threat(ev):
                    affecting = True

            settings = self.settings_service.get(db)
            _retention_sweep(db, ThreatEvent.ts, settings.log_retention_days, utcnow())
        finally:
            db.close()

        return SinkResult(inserted=inserted, config_affecting=affecting)


# -------------------------
# Tailer
# -------------------------

class LogTailer:
    """
    Lectura incremental de un log append-only.

    Orden por poll:
      stat -> reset por rotacion/truncado -> leer ventana (max_read_bytes)
      -> persistir cursor -> sink.consume(lineas)

    El cursor se persiste ANTES de los side effects: un crash a mitad de batch
    puede perder ese batch, nunca reprocesa desde el inicio.
    """

    def __init__(
        self,
        log_path: str,
        cursor_store: CursorStore,
        sink: EventSink,
        *,
        max_read_bytes: int = DEFAULT_MAX_READ_BYTES,
        name: Optional[str] = None,
    ) -> None:
        self.log_path = str(log_path)
        self.cursor_store = cursor_store
        self.sink = sink
        self.max_read_bytes = max(1, int(max_read_bytes))
        self.name = name or os.path.basename(self.log_path)

    def _read_range(self, start: int, end: int) -> bytes:
        with open(self.log_path, "rb") as f:
            f.seek(start)
            return f.read(end - start)

    def poll(self) -> IngestResult:
        try:
            st = os.stat(self.log_path)
        except FileNotFoundError:
            return IngestResult()
        except OSError as e:
            logger.warning("[%s] stat fallo: %s", self.name, e)
            return IngestResult()

        inode = int(st.st_ino)
        size = int(st.st_size)

        try:
            stored = self.cursor_store.load(self.log_path)
        except (OSError, SQLAlchemyError) as e:
            logger.warning("[%s] no se pudo leer cursor: %s", self.name, e)
            return IngestResult()

        prev_offset = stored.offset if stored else 0
        offset = prev_offset
        if stored is None or stored.inode != inode or size < offset:
            # rotacion / truncado
            offset = 0

        read_len = size - offset
        if read_len <= 0:
            if stored != CursorState(inode=inode, offset=offset):
                self._save(CursorState(inode=inode, offset=offset))
            return IngestResult()

        read_start = offset
        if read_len > self.max_read_bytes:
            # catch-up: se prefiere frescura sobre completitud
            read_start = size - self.max_read_bytes
            logger.info("[%s] saltando %s bytes viejos", self.name, read_start - offset)

        # byte previo a la ventana: dice si el primer fragmento es una linea completa
        cut_mid_line = False
        try:
            if read_start > offset:
                cut_mid_line = self._read_range(read_start - 1, read_start) != b"\n"
            data = self._read_range(read_start, size)
        except OSError as e:
            logger.warning("[%s] read fallo: %s", self.name, e)
            return IngestResult()

        last_nl = data.rfind(b"\n")
        if last_nl < 0:
            if read_start == offset:
                # solo hay una linea parcial: esperar al siguiente poll
                return IngestResult()
            new_offset = size
            lines_blob = b""
        else:
            new_offset = read_start + last_nl + 1
            lines_blob = data[: last_nl + 1]

        raw_lines = lines_blob.split(b"\n")[:-1] if lines_blob else []
        if cut_mid_line and raw_lines:
            # el primer fragmento puede ser la cola de una linea cortada
            raw_lines = raw_lines[1:]

        new_state = CursorState(inode=inode, offset=new_offset)
        if not self._save(new_state):
            return IngestResult()

        lines = [b.decode("utf-8", errors="replace") for b in raw_lines]
        res = self.sink.consume(lines) if lines else SinkResult()

        return IngestResult(
            inserted=res.inserted,
            cursor_advanced=(stored is None or new_state != stored),
            config_affecting=res.config_affecting,
        )

    def _save(self, state: CursorState) -> bool:
        try:
            self.cursor_store.save(self.log_path, state)
            return True
        except (OSError, SQLAlchemyError) as e:
            logger.warning("[%s] no se pudo persistir cursor: %s", self.name, e)
            return False
