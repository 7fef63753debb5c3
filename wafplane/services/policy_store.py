# wafplane/services/policy_store.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from wafplane.core.enums import PolicyScope
from wafplane.core.errors import PolicyInvariantError
from wafplane.core.timeutils import utcnow
from wafplane.models.policy import PolicyBinding, PolicySet, PolicyVersion
from wafplane.services.policy_normalizer import default_policy, normalize_policy

logger = logging.getLogger("wafplane.policy")

DEFAULT_CREATED_BY = "system"
GLOBAL_SET_NAME = "Global Default"


@dataclass
class EffectivePolicy:
    policy_set: Optional[PolicySet]
    active_version: Optional[PolicyVersion]
    policy: Dict[str, Any]


class PolicyStore:
    """
    Sets de politicas versionados (uno global, opcionalmente uno por app).
    Invariante: a lo mas una version activa por set.
    """

    # ----------------------------
    # Sets
    # ----------------------------

    def ensure_global_set(self, db: Session) -> int:
        row = (
            db.query(PolicySet)
            .filter(PolicySet.scope == PolicyScope.GLOBAL.value)
            .order_by(PolicySet.id.asc())
            .first()
        )
        if row:
            return int(row.id)

        now = utcnow()
        ps = PolicySet(scope=PolicyScope.GLOBAL.value, app_id=None, name=GLOBAL_SET_NAME, created_at=now, updated_at=now)
        db.add(ps)
        db.flush()
        db.add(
            PolicyVersion(
                policy_set_id=ps.id,
                version=1,
                policy_json=default_policy(),
                created_by=DEFAULT_CREATED_BY,
                created_at=now,
                is_active=True,
            )
        )
        db.commit()
        logger.info("policy set global creado id=%s (v1 = default)", ps.id)
        return int(ps.id)

    def get_set(self, db: Session, policy_set_id: int) -> Optional[PolicySet]:
        return db.get(PolicySet, int(policy_set_id))

    def list_sets(self, db: Session) -> List[PolicySet]:
        return db.query(PolicySet).order_by(PolicySet.id.asc()).all()

    def create_app_set(self, db: Session, app_id: int, name: Optional[str] = None) -> PolicySet:
        """Crea un set scope=app y lo enlaza a la app (binding habilitado)."""
        now = utcnow()
        ps = PolicySet(
            scope=PolicyScope.APP.value,
            app_id=int(app_id),
            name=(name or f"App {int(app_id)}")[:128],
            created_at=now,
            updated_at=now,
        )
        db.add(ps)
        db.flush()
        db.add(PolicyBinding(app_id=int(app_id), policy_set_id=ps.id, enabled=True, created_at=now))
        db.commit()
        return ps

    def bind_app(self, db: Session, app_id: int, policy_set_id: int) -> PolicyBinding:
        b = PolicyBinding(app_id=int(app_id), policy_set_id=int(policy_set_id), enabled=True, created_at=utcnow())
        db.add(b)
        db.commit()
        return b

    def unbind_app(self, db: Session, app_id: int) -> int:
        res = db.execute(
            update(PolicyBinding)
            .where(PolicyBinding.app_id == int(app_id), PolicyBinding.enabled.is_(True))
            .values(enabled=False)
        )
        db.commit()
        return int(res.rowcount or 0)

    def bound_set_id(self, db: Session, app_id: int) -> Optional[int]:
        row = (
            db.query(PolicyBinding)
            .filter(PolicyBinding.app_id == int(app_id), PolicyBinding.enabled.is_(True))
            .order_by(PolicyBinding.id.desc())
            .first()
        )
        return int(row.policy_set_id) if row else None

    def bound_app_ids(self, db: Session) -> List[int]:
        rows = db.query(PolicyBinding.app_id).filter(PolicyBinding.enabled.is_(True)).distinct().all()
        return sorted(int(r[0]) for r in rows)

    # ----------------------------
    # Versiones
    # ----------------------------

    def list_versions(self, db: Session, policy_set_id: int) -> List[PolicyVersion]:
        return (
            db.query(PolicyVersion)
            .filter(PolicyVersion.policy_set_id == int(policy_set_id))
            .order_by(PolicyVersion.version.desc())
            .all()
        )

    def get_active_version(self, db: Session, policy_set_id: int) -> Optional[PolicyVersion]:
        rows = (
            db.query(PolicyVersion)
            .filter(PolicyVersion.policy_set_id == int(policy_set_id), PolicyVersion.is_active.is_(True))
            .all()
        )
        if len(rows) > 1:
            raise PolicyInvariantError(
                f"policy set {policy_set_id} tiene {len(rows)} versiones activas: "
                + ", ".join(str(r.version) for r in sorted(rows, key=lambda r: r.version))
            )
        return rows[0] if rows else None

    def _latest_version_number(self, db: Session, policy_set_id: int) -> int:
        v = (
            db.query(func.max(PolicyVersion.version))
            .filter(PolicyVersion.policy_set_id == int(policy_set_id))
            .scalar()
        )
        return int(v or 0)

    def create_version(
        self,
        db: Session,
        policy_set_id: int,
        policy_json: Any,
        created_by: Optional[str] = None,
        *,
        activate: bool = True,
    ) -> PolicyVersion:
        if self.get_set(db, policy_set_id) is None:
            raise LookupError(f"policy set {policy_set_id} no existe")

        try:
            next_ver = self._latest_version_number(db, policy_set_id) + 1
            normalized = normalize_policy(policy_json)

            if activate:
                db.execute(
                    update(PolicyVersion)
                    .where(PolicyVersion.policy_set_id == int(policy_set_id), PolicyVersion.is_active.is_(True))
                    .values(is_active=False)
                )

            row = PolicyVersion(
                policy_set_id=int(policy_set_id),
                version=next_ver,
                policy_json=normalized,
                created_by=str(created_by or DEFAULT_CREATED_BY)[:128],
                created_at=utcnow(),
                is_active=bool(activate),
            )
            db.add(row)
            self._touch_set(db, policy_set_id)
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info("policy set=%s version=%s creada (activa=%s)", policy_set_id, next_ver, bool(activate))
        return row

    def activate_version(self, db: Session, policy_set_id: int, version: int) -> bool:
        row = (
            db.query(PolicyVersion)
            .filter(PolicyVersion.policy_set_id == int(policy_set_id), PolicyVersion.version == int(version))
            .first()
        )
        if not row:
            return False

        try:
            db.execute(
                update(PolicyVersion)
                .where(PolicyVersion.policy_set_id == int(policy_set_id), PolicyVersion.id != row.id)
                .values(is_active=False)
            )
            row.is_active = True
            self._touch_set(db, policy_set_id)
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info("policy set=%s version=%s activada", policy_set_id, version)
        return True

    def rollback(self, db: Session, policy_set_id: int) -> Optional[int]:
        """Activa la version mas alta < la activa. Regresa la version activada o None (no-op)."""
        active = self.get_active_version(db, policy_set_id)
        if not active:
            return None
        prev = (
            db.query(PolicyVersion)
            .filter(
                PolicyVersion.policy_set_id == int(policy_set_id),
                PolicyVersion.version < active.version,
            )
            .order_by(PolicyVersion.version.desc())
            .first()
        )
        if not prev:
            return None
        self.activate_version(db, policy_set_id, prev.version)
        return int(prev.version)

    def _touch_set(self, db: Session, policy_set_id: int) -> None:
        ps = db.get(PolicySet, int(policy_set_id))
        if ps:
            ps.updated_at = utcnow()

    # ----------------------------
    # Politica efectiva
    # ----------------------------

    def effective_policy(self, db: Session, app_id: Optional[int] = None) -> EffectivePolicy:
        """
        set enlazado a la app (si tiene version activa)
          -> set global (version activa)
          -> DEFAULT_POLICY
        El caller nunca recibe "sin politica".
        """
        global_id = self.ensure_global_set(db)

        if app_id is not None:
            bound = self.bound_set_id(db, app_id)
            if bound is not None:
                active = self.get_active_version(db, bound)
                if active is not None:
                    return EffectivePolicy(
                        policy_set=self.get_set(db, bound),
                        active_version=active,
                        policy=normalize_policy(active.policy_json),
                    )

        active = self.get_active_version(db, global_id)
        if active is not None:
            return EffectivePolicy(
                policy_set=self.get_set(db, global_id),
                active_version=active,
                policy=normalize_policy(active.policy_json),
            )

        return EffectivePolicy(policy_set=self.get_set(db, global_id), active_version=None, policy=default_policy())
