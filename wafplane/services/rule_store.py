# wafplane/services/rule_store.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Type, Union

from sqlalchemy import delete
from sqlalchemy.orm import Session

from wafplane.core.enums import RuleAction
from wafplane.core.errors import RuleValidationError
from wafplane.core.net import network_covers, sanitize_cidr, sanitize_country_code
from wafplane.core.timeutils import ensure_utc, utcnow
from wafplane.models.rules import CountryRule, IpRule

logger = logging.getLogger("wafplane.rules")

RuleModel = Union[IpRule, CountryRule]

# nota que se pone a los deny creados por el ban engine
AUTO_BAN_NOTE = "Auto-ban: {offense}"


def is_effective(rule: RuleModel, now: Optional[datetime] = None) -> bool:
    """enabled y (sin expiracion o expira en el futuro)."""
    if not rule.enabled:
        return False
    exp = ensure_utc(rule.expires_at)
    if exp is None:
        return True
    return exp > ensure_utc(now or utcnow())


def compute_expires_at(expires_in_days: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    if expires_in_days in (None, "", 0):
        return None
    try:
        days = int(str(expires_in_days).strip(), 10)
    except (TypeError, ValueError):
        return None
    if days <= 0:
        return None
    return (now or utcnow()) + timedelta(days=days)


def _normalize_action(value: Any) -> str:
    return RuleAction.ALLOW.value if str(value or "").strip().lower() == "allow" else RuleAction.DENY.value


@dataclass
class BanOutcome:
    """Resultado de upsert_auto_ban. `changed` = la membresia efectiva del deny cambio."""
    changed: bool
    rule_id: Optional[int] = None
    reason: str = ""


class RuleStore:
    """
    CRUD de reglas IP y de pais. Toda mutacion de reglas pasa por aqui
    (ban engine y acciones administrativas).
    """

    # -----------------------
    # Helpers por tipo
    # -----------------------

    @staticmethod
    def _model(kind: str) -> Type[RuleModel]:
        if kind == "ip":
            return IpRule
        if kind == "country":
            return CountryRule
        raise ValueError(f"kind no soportado: {kind}")

    @staticmethod
    def _sanitize_subject(kind: str, value: Any) -> str:
        if kind == "ip":
            cidr = sanitize_cidr(value)
            if not cidr:
                raise RuleValidationError("Invalid CIDR/IP value")
            return cidr
        cc = sanitize_country_code(value)
        if not cc:
            raise RuleValidationError("Invalid country code")
        return cc

    @staticmethod
    def _subject_column(kind: str) -> str:
        return "ip_cidr" if kind == "ip" else "country_code"

    # -----------------------
    # CRUD
    # -----------------------

    def list_rules(self, db: Session, kind: str) -> List[RuleModel]:
        model = self._model(kind)
        return (
            db.query(model)
            .order_by(model.enabled.desc(), model.id.desc())
            .all()
        )

    def get(self, db: Session, kind: str, rule_id: int) -> Optional[RuleModel]:
        return db.get(self._model(kind), int(rule_id))

    def create(self, db: Session, kind: str, data: Dict[str, Any]) -> RuleModel:
        model = self._model(kind)
        subject = self._sanitize_subject(kind, data.get(self._subject_column(kind)))

        expires_at = ensure_utc(data.get("expires_at")) if data.get("expires_at") else compute_expires_at(
            data.get("expires_in_days")
        )
        row = model(
            enabled=data.get("enabled") is not False,
            action=_normalize_action(data.get("action")),
            note=data.get("note"),
            expires_at=expires_at,
        )
        setattr(row, self._subject_column(kind), subject)
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    def update(self, db: Session, kind: str, rule_id: int, data: Dict[str, Any]) -> Optional[RuleModel]:
        row = self.get(db, kind, rule_id)
        if not row:
            return None

        col = self._subject_column(kind)
        if isinstance(data.get("enabled"), bool):
            row.enabled = data["enabled"]
        if isinstance(data.get("action"), str):
            row.action = _normalize_action(data["action"])
        if isinstance(data.get(col), str):
            setattr(row, col, self._sanitize_subject(kind, data[col]))
        if "note" in data:
            row.note = data.get("note")
        if "expires_at" in data:
            row.expires_at = ensure_utc(data.get("expires_at")) if data.get("expires_at") else None
        if "expires_in_days" in data:
            row.expires_at = compute_expires_at(data.get("expires_in_days"))
        row.modified_at = utcnow()

        db.commit()
        db.refresh(row)
        return row

    def delete(self, db: Session, kind: str, rule_id: int) -> bool:
        row = self.get(db, kind, rule_id)
        if not row:
            return False
        db.delete(row)
        db.commit()
        return True

    def delete_many(self, db: Session, kind: str, ids: Iterable[int]) -> int:
        model = self._model(kind)
        wanted = [int(x) for x in ids]
        if not wanted:
            return 0
        res = db.execute(delete(model).where(model.id.in_(wanted)))
        db.commit()
        return int(res.rowcount or 0)

    # -----------------------
    # Lecturas para compiler / ban engine
    # -----------------------

    def effective(self, db: Session, kind: str, now: Optional[datetime] = None) -> List[RuleModel]:
        model = self._model(kind)
        now = now or utcnow()
        rows = db.query(model).filter(model.enabled.is_(True)).all()
        return [r for r in rows if is_effective(r, now)]

    def latest_deny(self, db: Session, subject: str, *, for_update: bool = False) -> Optional[IpRule]:
        q = (
            db.query(IpRule)
            .filter(IpRule.ip_cidr == subject, IpRule.action == RuleAction.DENY.value)
            .order_by(IpRule.id.desc())
        )
        if for_update:
            q = q.with_for_update()
        return q.first()

    def allow_covers(self, db: Session, ip: str, now: Optional[datetime] = None) -> Optional[IpRule]:
        """Regla allow efectiva cuya red contiene a `ip` (match exacto incluido)."""
        for r in self.effective(db, "ip", now):
            if r.action != RuleAction.ALLOW.value:
                continue
            if r.ip_cidr == ip or network_covers(r.ip_cidr, ip):
                return r
        return None

    # -----------------------
    # Upsert del ban engine
    # -----------------------

    def upsert_auto_ban(
        self,
        db: Session,
        *,
        ip: str,
        offense: str,
        ban_until: datetime,
        now: Optional[datetime] = None,
    ) -> BanOutcome:
        """
        Read-modify-write en una sola transaccion:
          - allow efectivo que cubre la IP -> no-op (allow gana)
          - sin deny previo -> crea uno con expires_at = ban_until
          - deny permanente -> se queda permanente, solo enabled=True
          - deny temporal -> expires_at solo se mueve hacia adelante
        """
        now = now or utcnow()
        ban_until = ensure_utc(ban_until)

        try:
            allow = self.allow_covers(db, ip, now)
            if allow:
                logger.info("auto-ban omitido: allow rule id=%s cubre ip=%s (%s)", allow.id, ip, offense)
                db.rollback()
                return BanOutcome(changed=False, rule_id=None, reason="allow_wins")

            deny = self.latest_deny(db, ip, for_update=True)
            if deny is None:
                row = IpRule(
                    enabled=True,
                    action=RuleAction.DENY.value,
                    ip_cidr=ip,
                    note=AUTO_BAN_NOTE.format(offense=offense),
                    expires_at=ban_until,
                    created_at=now,
                    modified_at=now,
                )
                db.add(row)
                db.commit()
                logger.info("auto-ban creado ip=%s type=%s until=%s", ip, offense, ban_until.isoformat())
                return BanOutcome(changed=True, rule_id=row.id, reason="created")

            current = ensure_utc(deny.expires_at)
            was_enabled = bool(deny.enabled)

            if current is None:
                # Permanente: se queda permanente. Un trigger nuevo lo puede re-habilitar.
                deny.enabled = True
                if not was_enabled:
                    deny.modified_at = now
                db.commit()
                return BanOutcome(changed=not was_enabled, rule_id=deny.id, reason="permanent")

            should_extend = current < ban_until
            if not should_extend and was_enabled:
                db.rollback()
                return BanOutcome(changed=False, rule_id=deny.id, reason="unchanged")

            deny.enabled = True
            if not deny.note:
                deny.note = AUTO_BAN_NOTE.format(offense=offense)
            if should_extend:
                deny.expires_at = ban_until
            deny.modified_at = now
            db.commit()

            changed = should_extend or not was_enabled
            if should_extend:
                logger.info("auto-ban extendido ip=%s type=%s until=%s", ip, offense, ban_until.isoformat())
            # Re-habilitar un deny temporal ya vencido no lo vuelve efectivo
            return BanOutcome(changed=changed, rule_id=deny.id, reason="extended" if should_extend else "reenabled")
        except Exception:
            db.rollback()
            raise
