# wafplane/services/ban_engine.py
from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wafplane.core.enums import OffenseType
from wafplane.core.timeutils import ensure_utc, utcnow
from wafplane.parsing.types import NormalizedEvent
from wafplane.services.rule_store import BanOutcome, RuleStore
from wafplane.services.settings_service import GlobalSettings

logger = logging.getLogger("wafplane.ban")

MIN_WINDOW_SECONDS = 5

# flood/DDoS: el rate limit (429) ya frena la fuente; auto-ban es opt-in.
DEFAULT_AUTOBAN: Dict[str, bool] = {
    OffenseType.SQLI.value: True,
    OffenseType.DDOS.value: False,
    OffenseType.BOT.value: True,
    OffenseType.AUTHFAIL.value: True,
}

# cada cuantos eventos se barren las keys con ventana vacia
EVICT_EVERY_EVENTS = 1000

WindowKey = Tuple[str, str]


@dataclass(frozen=True)
class BanPolicy:
    threshold: int
    window_seconds: int
    ban_hours: int
    enabled: bool = True

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=max(MIN_WINDOW_SECONDS, int(self.window_seconds)))

    @property
    def ban_duration(self) -> timedelta:
        return timedelta(hours=int(self.ban_hours))


@dataclass
class Decision:
    should_ban: bool
    count: int = 0
    reason: str = ""


class SlidingWindowCounter:
    """
    Ventanas en memoria por (offense_type, ip). No se persiste:
    un restart olvida los conteos parciales.
    """

    def __init__(self) -> None:
        self._windows: Dict[WindowKey, Deque[datetime]] = defaultdict(deque)

    def __len__(self) -> int:
        return len(self._windows)

    def hit(self, key: WindowKey, ts: datetime, window: timedelta) -> int:
        dq = self._windows[key]
        dq.append(ts)

        cutoff = ts - window
        while dq and dq[0] < cutoff:
            dq.popleft()
        return len(dq)

    def count(self, key: WindowKey) -> int:
        dq = self._windows.get(key)
        return len(dq) if dq else 0

    def evict_idle(self, now: datetime, max_window: timedelta) -> int:
        """Tira keys cuya ventana ya quedo vacia respecto a `now`."""
        cutoff = now - max_window
        stale = [k for k, dq in self._windows.items() if not dq or dq[-1] < cutoff]
        for k in stale:
            self._windows.pop(k, None)
        return len(stale)

    def clear(self) -> None:
        self._windows.clear()


class BanEngine:
    def __init__(
        self,
        rule_store: Optional[RuleStore] = None,
        *,
        autoban: Optional[Mapping[str, bool]] = None,
    ) -> None:
        self.rule_store = rule_store or RuleStore()
        self.autoban: Dict[str, bool] = dict(DEFAULT_AUTOBAN)
        if autoban:
            self.autoban.update({str(k): bool(v) for k, v in autoban.items()})
        self.counter = SlidingWindowCounter()
        self._since_evict = 0

    def policy_for(self, offense_type: str, settings: GlobalSettings) -> BanPolicy:
        enabled = self.autoban.get(offense_type, True)
        if offense_type == OffenseType.AUTHFAIL.value:
            return BanPolicy(
                threshold=settings.authfail_threshold,
                window_seconds=settings.authfail_window_sec,
                ban_hours=settings.authfail_ban_hours,
                enabled=enabled,
            )
        return BanPolicy(
            threshold=settings.autoban_threshold,
            window_seconds=settings.autoban_window_sec,
            ban_hours=settings.autoban_ban_hours,
            enabled=enabled,
        )

    def evaluate(self, event: NormalizedEvent, policy: BanPolicy) -> Decision:
        # trafico autenticado nunca cuenta para auto-ban
        if event.authenticated:
            return Decision(should_ban=False, reason="authenticated")
        if not policy.enabled:
            return Decision(should_ban=False, reason="exempt")

        key = (event.offense_type, event.source_address)
        ts = ensure_utc(event.timestamp)
        count = self.counter.hit(key, ts, policy.window)
        if count >= int(policy.threshold):
            return Decision(should_ban=True, count=count, reason="threshold")
        return Decision(should_ban=False, count=count, reason="below_threshold")

    def _maybe_evict(self, settings: GlobalSettings, now: datetime) -> None:
        self._since_evict += 1
        if self._since_evict < EVICT_EVERY_EVENTS:
            return
        self._since_evict = 0
        max_window = max(
            self.policy_for(t.value, settings).window for t in OffenseType
        )
        dropped = self.counter.evict_idle(now, max_window)
        if dropped:
            logger.debug("ban windows evicted=%s remaining=%s", dropped, len(self.counter))

    def process(
        self,
        db: Session,
        events: Iterable[NormalizedEvent],
        settings: GlobalSettings,
        now: Optional[datetime] = None,
    ) -> List[BanOutcome]:
        """
        Evalua cada evento en orden de log y hace upsert del deny cuando cruza el threshold.
        Errores por evento se loguean y no cortan el batch.
        Devuelve solo los outcomes que cambiaron membresia efectiva.
        """
        now = now or utcnow()
        changed: List[BanOutcome] = []

        for ev in events:
            policy = self.policy_for(ev.offense_type, settings)
            decision = self.evaluate(ev, policy)
            self._maybe_evict(settings, ensure_utc(ev.timestamp))
            if not decision.should_ban:
                continue

            ban_until = now + policy.ban_duration
            try:
                outcome = self.rule_store.upsert_auto_ban(
                    db, ip=ev.source_address, offense=ev.offense_type, ban_until=ban_until, now=now
                )
            except SQLAlchemyError as e:
                logger.warning("auto-ban fallo ip=%s type=%s: %s", ev.source_address, ev.offense_type, e)
                continue

            if outcome.changed:
                changed.append(outcome)
        return changed
