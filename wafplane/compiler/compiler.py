# wafplane/compiler/compiler.py
from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wafplane.compiler.builders import (
    CompileInputs,
    ConfigArtifacts,
    RuleEntry,
    compile_artifacts,
    is_managed_policy_file,
)
from wafplane.core.errors import ConfigApplyError, GatewayError
from wafplane.core.timeutils import to_iso, utcnow
from wafplane.db import SessionLocal
from wafplane.enrichment.geoip import detect_sources
from wafplane.gateway.nginx import Gateway
from wafplane.services.policy_store import PolicyStore
from wafplane.services.rule_store import RuleStore
from wafplane.services.settings_service import SettingsService

logger = logging.getLogger("wafplane.compiler")

SessionFactory = Callable[[], Session]

# vive en CONFIG_DIR; el punto inicial lo deja fuera de los archivos gestionados
APPLY_LOCK_NAME = ".wafplane-apply.lock"


def write_atomic(path: Path, contents: str) -> None:
    """tmp en el mismo directorio + rename: nunca deja un archivo a medias."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(contents)
        os.replace(tmp, path)
    except OSError:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class ApplyLock:
    """
    flock exclusivo sobre un archivo: serializa apply entre procesos (API y worker).
    Se intenta sin bloquear hasta `timeout_seconds`; despues ConfigApplyError("lock").
    """

    def __init__(self, path: Path, timeout_seconds: float = 60.0, poll_seconds: float = 0.05) -> None:
        self.path = path
        self.timeout_seconds = float(timeout_seconds)
        self.poll_seconds = float(poll_seconds)
        self._fd: Optional[int] = None

    def __enter__(self) -> "ApplyLock":
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise ConfigApplyError("lock", str(e)) from e

        deadline = time.monotonic() + self.timeout_seconds
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise ConfigApplyError("lock", f"timeout esperando {self.path}") from None
                time.sleep(self.poll_seconds)
        self._fd = fd
        return self

    def __exit__(self, *exc) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


@dataclass
class ApplyResult:
    digest: str
    reduced: bool
    files: List[str]
    applied_at: datetime


class PolicyCompiler:
    """
    Unico escritor de la config del gateway.

    apply() = gather -> compile -> write -> test [-> render reducido -> test] -> apply.
    Todo bajo dos locks: uno de thread y un flock en config_dir compartido entre
    procesos. Dos triggers nunca intercalan escrituras parciales.
    Si el test final falla se restauran los archivos previos.
    """

    def __init__(
        self,
        *,
        config_dir: str,
        gateway: Gateway,
        geoip_dir: str,
        sqli_lua_path: str,
        session_factory: SessionFactory = SessionLocal,
        settings_service: Optional[SettingsService] = None,
        rule_store: Optional[RuleStore] = None,
        policy_store: Optional[PolicyStore] = None,
        lock_timeout_seconds: float = 60.0,
    ) -> None:
        self.config_dir = Path(config_dir)
        self.gateway = gateway
        self.geoip_dir = geoip_dir
        self.sqli_lua_path = sqli_lua_path
        self.session_factory = session_factory
        self.settings_service = settings_service or SettingsService()
        self.rule_store = rule_store or RuleStore()
        self.policy_store = policy_store or PolicyStore()

        self.last_applied_digest: Optional[str] = None
        self.last_result: Optional[ApplyResult] = None
        self._lock = threading.Lock()
        self.lock_timeout_seconds = lock_timeout_seconds

    # -------------------------
    # Inputs
    # -------------------------

    def gather(self, db: Session, now: Optional[datetime] = None) -> CompileInputs:
        now = now or utcnow()
        settings = self.settings_service.get(db, use_cache=False)

        ip_rules = [RuleEntry(subject=r.ip_cidr, action=r.action) for r in self.rule_store.effective(db, "ip", now)]
        country_rules = [
            RuleEntry(subject=r.country_code, action=r.action) for r in self.rule_store.effective(db, "country", now)
        ]

        global_policy = self.policy_store.effective_policy(db, None).policy
        app_policies: Dict[int, dict] = {}
        for app_id in self.policy_store.bound_app_ids(db):
            app_policies[app_id] = self.policy_store.effective_policy(db, app_id).policy

        return CompileInputs(
            settings=settings,
            ip_rules=ip_rules,
            country_rules=country_rules,
            global_policy=global_policy,
            app_policies=app_policies,
            geoip=detect_sources(self.geoip_dir),
            trusted_ranges=self.settings_service.get_trusted_ranges(db),
            config_dir=str(self.config_dir),
            sqli_lua_path=self.sqli_lua_path,
        )

    def _load_inputs(self, now: Optional[datetime] = None) -> CompileInputs:
        db = self.session_factory()
        try:
            return self.gather(db, now)
        finally:
            db.close()

    def compile(self, now: Optional[datetime] = None, *, reduced: bool = False) -> ConfigArtifacts:
        inputs = self._load_inputs(now)
        return compile_artifacts(inputs, reduced=reduced, meta={"generated_at": to_iso(now or utcnow())})

    def current_digest(self, now: Optional[datetime] = None) -> str:
        return self.compile(now).digest

    def in_sync(self, now: Optional[datetime] = None) -> bool:
        """
        True si lo que hay en disco es el render actual (completo, o reducido cuando
        hay fuente geoip secundaria). Se mide contra disco y no contra el ultimo
        apply de este proceso: otro proceso pudo escribir despues.
        """
        inputs = self._load_inputs(now)
        full = compile_artifacts(inputs)
        if self._stale_policy_files(full):
            return False
        if self._snapshot(sorted(full.files)) == full.files:
            return True
        if not inputs.geoip.ip2location:
            return False
        reduced = compile_artifacts(inputs, reduced=True)
        return self._snapshot(sorted(reduced.files)) == reduced.files

    # -------------------------
    # Archivos
    # -------------------------

    def _stale_policy_files(self, artifacts: ConfigArtifacts) -> List[str]:
        if not self.config_dir.is_dir():
            return []
        return sorted(
            p.name
            for p in self.config_dir.iterdir()
            if p.is_file() and is_managed_policy_file(p.name) and p.name not in artifacts.files
        )

    def _snapshot(self, names: Sequence[str]) -> Dict[str, Optional[str]]:
        snap: Dict[str, Optional[str]] = {}
        for name in names:
            p = self.config_dir / name
            try:
                snap[name] = p.read_text(encoding="utf-8")
            except FileNotFoundError:
                snap[name] = None
        return snap

    def _write(self, artifacts: ConfigArtifacts, stale: Sequence[str]) -> None:
        for name, body in artifacts.files.items():
            write_atomic(self.config_dir / name, body)
        for name in stale:
            (self.config_dir / name).unlink(missing_ok=True)

    def _restore(self, snapshot: Dict[str, Optional[str]]) -> None:
        for name, body in snapshot.items():
            p = self.config_dir / name
            try:
                if body is None:
                    p.unlink(missing_ok=True)
                else:
                    write_atomic(p, body)
            except OSError as e:
                logger.error("no se pudo restaurar %s: %s", p, e)

    # -------------------------
    # Apply
    # -------------------------

    def apply(self, reason: str = "", now: Optional[datetime] = None) -> ApplyResult:
        with self._lock, ApplyLock(self.config_dir / APPLY_LOCK_NAME, self.lock_timeout_seconds):
            return self._apply_locked(reason, now)

    def _apply_locked(self, reason: str, now: Optional[datetime]) -> ApplyResult:
        now = now or utcnow()
        try:
            inputs = self._load_inputs(now)
        except (SQLAlchemyError, OSError) as e:
            raise ConfigApplyError("gather", str(e)) from e

        meta = {"generated_at": to_iso(now), "reason": reason}
        artifacts = compile_artifacts(inputs, meta=meta)
        # el digest comparable es siempre el del render completo
        full_digest = artifacts.digest
        stale = self._stale_policy_files(artifacts)
        snapshot = self._snapshot(sorted(set(artifacts.files) | set(stale)))

        try:
            self._write(artifacts, stale)
        except OSError as e:
            self._restore(snapshot)
            raise ConfigApplyError("write", str(e)) from e

        try:
            self.gateway.test()
        except GatewayError as first:
            if not inputs.geoip.ip2location:
                self._restore(snapshot)
                raise ConfigApplyError("test", str(first)) from first

            logger.warning("test fallo (%s); reintentando sin fuente geoip secundaria", first)
            artifacts = compile_artifacts(inputs, reduced=True, meta=meta)
            try:
                self._write(artifacts, stale)
                self.gateway.test()
            except (OSError, GatewayError) as second:
                self._restore(snapshot)
                raise ConfigApplyError("test", str(second)) from second

        try:
            self.gateway.apply_configuration(artifacts)
        except GatewayError as e:
            self._restore(snapshot)
            raise ConfigApplyError("apply", str(e)) from e

        self.last_applied_digest = full_digest
        self.last_result = ApplyResult(
            digest=artifacts.digest,
            reduced=artifacts.reduced,
            files=sorted(artifacts.files),
            applied_at=now,
        )
        logger.info(
            "config aplicada reason=%s digest=%s reduced=%s files=%s",
            reason or "-",
            artifacts.digest[:12],
            artifacts.reduced,
            len(artifacts.files),
        )
        return self.last_result
