# wafplane/models/__init__.py

from wafplane.models.rules import IpRule, CountryRule
from wafplane.models.waf_settings import WafSettings
from wafplane.models.events import AttackEvent, ThreatEvent
from wafplane.models.ingest_cursor import IngestCursor
from wafplane.models.policy import PolicySet, PolicyVersion, PolicyBinding


__all__ = [
    "IpRule",
    "CountryRule",
    "WafSettings",
    "AttackEvent",
    "ThreatEvent",
    "IngestCursor",
    "PolicySet",
    "PolicyVersion",
    "PolicyBinding",
]
