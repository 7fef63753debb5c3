# wafplane/core/enums.py
from enum import Enum
from typing import FrozenSet


class OffenseType(str, Enum):
    SQLI = "sqli"
    DDOS = "ddos"
    BOT = "bot"
    AUTHFAIL = "authfail"


OFFENSE_TYPES: FrozenSet[str] = frozenset(t.value for t in OffenseType)


class RuleAction(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class PolicyScope(str, Enum):
    GLOBAL = "global"
    APP = "app"


# ---------------------------------------------------------------------
# Log secundario (web threat controls)
# ---------------------------------------------------------------------
class ThreatCategory(str, Enum):
    INBOUND = "inbound"
    BROWSER = "browser"
    OUTBOUND = "outbound"


class ThreatAction(str, Enum):
    ALLOW = "allow"
    LOG = "log"
    BLOCK = "block"


THREAT_CATEGORIES: FrozenSet[str] = frozenset(c.value for c in ThreatCategory)
THREAT_ACTIONS: FrozenSet[str] = frozenset(a.value for a in ThreatAction)

LOG_RETENTION_DAYS_ALLOWED = (30, 60, 90, 180)
