# wafplane/workers/control_plane.py
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wafplane.compiler.compiler import ApplyResult, PolicyCompiler
from wafplane.config import Settings, settings as default_settings
from wafplane.core.enums import OffenseType
from wafplane.core.errors import ConfigApplyError
from wafplane.db import SessionLocal
from wafplane.enrichment.geoip import GeoIpResolver, default_country_db_path
from wafplane.enrichment.ip_ranges import IpRangesFetcher
from wafplane.gateway.nginx import Gateway, NginxGateway
from wafplane.services.ban_engine import BanEngine
from wafplane.services.policy_store import PolicyStore
from wafplane.services.rule_store import RuleStore
from wafplane.services.settings_service import SettingsService
from wafplane.services.tailer import (
    AttackEventSink,
    DbCursorStore,
    IngestResult,
    LogTailer,
    SidecarCursorStore,
    ThreatEventSink,
)

logger = logging.getLogger("wafplane.control")


class PeriodicTask:
    """
    Tarea a intervalo fijo en su propio thread.
    Guard de reentrancia: si un tick sigue corriendo, el siguiente se salta (no se encola).
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        fn: Callable[[], object],
        *,
        initial_delay: float = 0.0,
    ) -> None:
        self.name = name
        self.interval_seconds = max(0.05, float(interval_seconds))
        self.initial_delay = max(0.0, float(initial_delay))
        self.fn = fn
        self._running = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.skipped = 0

    def run_once(self) -> bool:
        if not self._running.acquire(blocking=False):
            self.skipped += 1
            logger.debug("[%s] tick saltado: sigue procesando", self.name)
            return False
        try:
            self.fn()
            self.runs += 1
        except Exception:
            # la tarea no muere: se reintenta en el siguiente tick
            logger.exception("[%s] tick fallo", self.name)
        finally:
            self._running.release()
        return True

    def _loop(self) -> None:
        if self._stop.wait(self.initial_delay):
            return
        while not self._stop.is_set():
            self.run_once()
            if self._stop.wait(self.interval_seconds):
                break

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"wafplane-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        self._thread = None

    @property
    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())


class ReloadThrottle:
    """Como mucho un apply por intervalo, sin importar cuantos bans cayeron."""

    def __init__(self, min_interval_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.min_interval_seconds = float(min_interval_seconds)
        self.clock = clock
        self._lock = threading.Lock()
        self._pending: List[str] = []
        self._last_done: Optional[float] = None

    def request(self, reason: str) -> None:
        with self._lock:
            if reason not in self._pending:
                self._pending.append(reason)

    @property
    def pending(self) -> bool:
        with self._lock:
            return bool(self._pending)

    def ready(self) -> bool:
        with self._lock:
            if not self._pending:
                return False
            if self._last_done is None:
                return True
            return (self.clock() - self._last_done) >= self.min_interval_seconds

    def take_if_ready(self) -> Optional[str]:
        """
        Si toca, consume los motivos pendientes y marca el inicio del intervalo.
        Chequeo y consumo van bajo el mismo lock: dos ticks simultaneos no aplican dos veces.
        """
        with self._lock:
            if not self._pending:
                return None
            if self._last_done is not None and (self.clock() - self._last_done) < self.min_interval_seconds:
                return None
            reasons = ",".join(self._pending)
            self._pending = []
            self._last_done = self.clock()
            return reasons

    def mark_applied(self) -> None:
        with self._lock:
            self._last_done = self.clock()


class ControlPlane:
    """
    Instancia unica del loop de control: tailers -> ban engine -> rule store -> compiler -> gateway.
    Se construye una vez al arrancar y se pasa por referencia (sin singletons de modulo).

    Restriccion de despliegue: una sola instancia con tasks corriendo. Dos procesos
    contarian dos veces los mismos eventos. El API arma otra instancia solo para
    apply_now; ambas compilan desde la misma DB y el apply se serializa con flock.
    """

    def __init__(
        self,
        cfg: Optional[Settings] = None,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        gateway: Optional[Gateway] = None,
        ip_ranges_fetcher: Optional[IpRangesFetcher] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cfg = cfg or default_settings
        cfg = self.cfg
        self.session_factory = session_factory

        self.settings_service = SettingsService()
        self.rule_store = RuleStore()
        self.policy_store = PolicyStore()
        self.ban_engine = BanEngine(
            self.rule_store,
            autoban={
                OffenseType.DDOS.value: cfg.AUTOBAN_DDOS,
                OffenseType.AUTHFAIL.value: cfg.AUTOBAN_AUTHFAIL,
                OffenseType.BOT.value: cfg.AUTOBAN_BOT,
                OffenseType.SQLI.value: cfg.AUTOBAN_SQLI,
            },
        )
        self.geoip = GeoIpResolver(default_country_db_path(cfg.GEOIP_DIR, cfg.GEOIP_COUNTRY_DB_PATH))

        self.gateway: Gateway = gateway or NginxGateway(
            test_cmd=cfg.GATEWAY_TEST_CMD,
            reload_cmd=cfg.GATEWAY_RELOAD_CMD,
            timeout_seconds=cfg.GATEWAY_TIMEOUT_SECONDS,
        )
        self.compiler = PolicyCompiler(
            config_dir=cfg.CONFIG_DIR,
            gateway=self.gateway,
            geoip_dir=cfg.GEOIP_DIR,
            sqli_lua_path=cfg.SQLI_LUA_PATH,
            session_factory=session_factory,
            settings_service=self.settings_service,
            rule_store=self.rule_store,
            policy_store=self.policy_store,
            lock_timeout_seconds=cfg.APPLY_LOCK_TIMEOUT_SECONDS,
        )
        self.throttle = ReloadThrottle(cfg.RELOAD_MIN_INTERVAL_SECONDS, clock=clock)

        self.attack_tailer = LogTailer(
            cfg.ATTACK_LOG_PATH,
            DbCursorStore(session_factory),
            AttackEventSink(
                session_factory=session_factory,
                settings_service=self.settings_service,
                ban_engine=self.ban_engine,
                geoip=self.geoip,
            ),
            max_read_bytes=cfg.MAX_READ_BYTES,
            name="attack-log",
        )
        self.threat_tailer = LogTailer(
            cfg.THREAT_LOG_PATH,
            SidecarCursorStore(cfg.THREAT_CURSOR_PATH),
            ThreatEventSink(session_factory=session_factory, settings_service=self.settings_service),
            max_read_bytes=cfg.MAX_READ_BYTES,
            name="threat-log",
        )

        self.ip_ranges_fetcher = ip_ranges_fetcher
        if self.ip_ranges_fetcher is None and cfg.IP_RANGES_ENABLED:
            self.ip_ranges_fetcher = IpRangesFetcher(
                connect_timeout=cfg.HTTP_CONNECT_TIMEOUT,
                read_timeout=cfg.HTTP_READ_TIMEOUT,
                max_redirects=cfg.HTTP_MAX_REDIRECTS,
            )

        self.tasks: List[PeriodicTask] = []

    # -------------------------
    # Bootstrap
    # -------------------------

    def bootstrap(self) -> None:
        """Seed idempotente: fila de settings y policy set global."""
        db = self.session_factory()
        try:
            self.settings_service.get(db, use_cache=False)
            self.policy_store.ensure_global_set(db)
        finally:
            db.close()

    # -------------------------
    # Ticks
    # -------------------------

    def poll_attack_log(self) -> IngestResult:
        res = self.attack_tailer.poll()
        if res.config_affecting:
            self.request_apply("auto-ban")
        return res

    def poll_threat_log(self) -> IngestResult:
        res = self.threat_tailer.poll()
        if res.config_affecting:
            self.request_apply("threat-block")
        return res

    def request_apply(self, reason: str) -> None:
        self.throttle.request(reason)
        self.apply_if_due()

    def apply_if_due(self) -> Optional[ApplyResult]:
        reason = self.throttle.take_if_ready()
        if reason is None:
            return None
        try:
            return self.compiler.apply(reason=reason)
        except ConfigApplyError as e:
            # background: se loguea, queda la config previa
            logger.error("apply en background fallo stage=%s: %s", e.stage, e)
            return None

    def apply_now(self, reason: str = "admin") -> ApplyResult:
        """Apply sincrono para acciones administrativas; el error sube al caller."""
        result = self.compiler.apply(reason=reason)
        self.throttle.mark_applied()
        return result

    def reload_tick(self) -> Optional[ApplyResult]:
        """
        Aplica cambios pendientes y recompila si lo que hay en disco ya no es el render
        actual (ej. un ban vencido sale del mapa sin ningun evento nuevo, o un archivo
        quedo pisado).
        """
        result = self.apply_if_due()
        if result is not None:
            return result

        try:
            synced = self.compiler.in_sync()
        except (SQLAlchemyError, OSError) as e:
            logger.warning("no se pudo comparar la config en disco: %s", e)
            return None

        if synced:
            return None
        try:
            result = self.compiler.apply(reason="drift")
            self.throttle.mark_applied()
            return result
        except ConfigApplyError as e:
            logger.error("apply por drift fallo stage=%s: %s", e.stage, e)
            return None

    def refresh_ip_ranges(self) -> bool:
        if self.ip_ranges_fetcher is None:
            return False
        res = self.ip_ranges_fetcher.fetch()
        db = self.session_factory()
        try:
            changed = self.settings_service.set_trusted_ranges(db, res.ranges)
        finally:
            db.close()
        if not changed:
            return False
        logger.info("trusted ranges actualizados n=%s fallback=%s", len(set(res.ranges)), res.from_fallback)
        self.request_apply("ip-ranges")
        return True

    # -------------------------
    # Lifecycle
    # -------------------------

    def build_tasks(self) -> List[PeriodicTask]:
        cfg = self.cfg
        delay = cfg.STARTUP_DELAY_SECONDS
        tasks = [
            PeriodicTask("attack-tailer", cfg.ATTACK_POLL_SECONDS, self.poll_attack_log, initial_delay=delay),
            PeriodicTask("threat-tailer", cfg.THREAT_POLL_SECONDS, self.poll_threat_log, initial_delay=delay),
            PeriodicTask("reload", cfg.RELOAD_POLL_SECONDS, self.reload_tick, initial_delay=delay),
        ]
        if self.ip_ranges_fetcher is not None:
            tasks.append(
                PeriodicTask("ip-ranges", cfg.IP_RANGES_REFRESH_SECONDS, self.refresh_ip_ranges, initial_delay=delay)
            )
        return tasks

    def start(self) -> None:
        if self.tasks:
            return
        self.bootstrap()
        self.tasks = self.build_tasks()
        for t in self.tasks:
            t.start()
        logger.info("control plane iniciado tasks=%s", [t.name for t in self.tasks])

    def stop(self) -> None:
        for t in self.tasks:
            t.stop()
        self.tasks = []
        self.geoip.close()
        logger.info("control plane detenido")
