from datetime import datetime, timedelta, timezone

import pytest

from wafplane.core.errors import RuleValidationError
from wafplane.core.timeutils import ensure_utc
from wafplane.models.rules import IpRule
from wafplane.services.rule_store import RuleStore, compute_expires_at, is_effective

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestRuleStoreCrud:
    def setup_method(self):
        self.store = RuleStore()

    def test_create_ip_rule_normalizes_subject(self, db):
        row = self.store.create(db, "ip", {"ip_cidr": " 10.01.02.03 ", "action": "DENY", "note": "manual"})
        assert row.id is not None
        assert row.ip_cidr == "10.1.2.3"
        assert row.subject == "10.1.2.3"
        assert row.action == "deny"
        assert row.enabled is True
        assert row.expires_at is None

    def test_create_country_rule(self, db):
        row = self.store.create(db, "country", {"country_code": "cn", "action": "allow"})
        assert row.country_code == "CN"
        assert row.action == "allow"

    def test_invalid_subject_rejected(self, db):
        with pytest.raises(RuleValidationError):
            self.store.create(db, "ip", {"ip_cidr": "10.0.0.0/99"})
        with pytest.raises(RuleValidationError):
            self.store.create(db, "country", {"country_code": "XXX"})

    def test_unknown_kind(self, db):
        with pytest.raises(ValueError):
            self.store.list_rules(db, "asn")

    def test_update(self, db):
        row = self.store.create(db, "ip", {"ip_cidr": "192.0.2.1"})
        updated = self.store.update(db, "ip", row.id, {"enabled": False, "action": "allow", "ip_cidr": "192.0.2.0/24"})
        assert updated.enabled is False
        assert updated.action == "allow"
        assert updated.ip_cidr == "192.0.2.0/24"

    def test_update_missing_returns_none(self, db):
        assert self.store.update(db, "ip", 999, {"enabled": False}) is None

    def test_update_rejects_bad_subject(self, db):
        row = self.store.create(db, "ip", {"ip_cidr": "192.0.2.1"})
        with pytest.raises(RuleValidationError):
            self.store.update(db, "ip", row.id, {"ip_cidr": "nope"})

    def test_delete_and_delete_many(self, db):
        ids = [self.store.create(db, "ip", {"ip_cidr": f"192.0.2.{i}"}).id for i in range(1, 5)]
        assert self.store.delete(db, "ip", ids[0]) is True
        assert self.store.delete(db, "ip", ids[0]) is False
        assert self.store.delete_many(db, "ip", ids[1:]) == 3
        assert self.store.list_rules(db, "ip") == []
        assert self.store.delete_many(db, "ip", []) == 0


class TestEffectiveRules:
    def setup_method(self):
        self.store = RuleStore()

    def test_disabled_and_expired_are_not_effective(self, db):
        self.store.create(db, "ip", {"ip_cidr": "192.0.2.1"})
        self.store.create(db, "ip", {"ip_cidr": "192.0.2.2", "enabled": False})
        self.store.create(db, "ip", {"ip_cidr": "192.0.2.3", "expires_at": NOW - timedelta(minutes=1)})
        self.store.create(db, "ip", {"ip_cidr": "192.0.2.4", "expires_at": NOW + timedelta(hours=1)})

        subjects = sorted(r.ip_cidr for r in self.store.effective(db, "ip", NOW))
        assert subjects == ["192.0.2.1", "192.0.2.4"]

    def test_is_effective_handles_naive_datetimes(self):
        rule = IpRule(enabled=True, action="deny", ip_cidr="192.0.2.1", expires_at=datetime(2026, 5, 1, 13, 0))
        assert is_effective(rule, NOW)
        assert not is_effective(rule, NOW + timedelta(hours=2))

    def test_compute_expires_at(self):
        assert compute_expires_at(None, NOW) is None
        assert compute_expires_at(0, NOW) is None
        assert compute_expires_at("-3", NOW) is None
        assert compute_expires_at(7, NOW) == NOW + timedelta(days=7)

    def test_allow_covers_by_containment(self, db):
        self.store.create(db, "ip", {"ip_cidr": "203.0.113.0/24", "action": "allow"})
        assert self.store.allow_covers(db, "203.0.113.77", NOW) is not None
        assert self.store.allow_covers(db, "198.51.100.1", NOW) is None


class TestUpsertAutoBan:
    def setup_method(self):
        self.store = RuleStore()

    def test_creates_temporary_deny(self, db):
        until = NOW + timedelta(hours=24)
        out = self.store.upsert_auto_ban(db, ip="198.51.100.7", offense="authfail", ban_until=until, now=NOW)
        assert out.changed is True
        assert out.reason == "created"

        row = self.store.get(db, "ip", out.rule_id)
        assert row.action == "deny"
        assert ensure_utc(row.expires_at) == until
        assert row.note == "Auto-ban: authfail"

    def test_expiry_only_moves_forward(self, db):
        first = NOW + timedelta(hours=24)
        out = self.store.upsert_auto_ban(db, ip="198.51.100.7", offense="bot", ban_until=first, now=NOW)

        shorter = self.store.upsert_auto_ban(
            db, ip="198.51.100.7", offense="bot", ban_until=NOW + timedelta(hours=1), now=NOW
        )
        assert shorter.changed is False
        assert ensure_utc(self.store.get(db, "ip", out.rule_id).expires_at) == first

        longer_until = NOW + timedelta(hours=30)
        longer = self.store.upsert_auto_ban(db, ip="198.51.100.7", offense="bot", ban_until=longer_until, now=NOW)
        assert longer.changed is True
        assert longer.reason == "extended"
        assert ensure_utc(self.store.get(db, "ip", out.rule_id).expires_at) == longer_until
        assert len(self.store.list_rules(db, "ip")) == 1

    def test_permanent_deny_stays_permanent(self, db):
        row = self.store.create(db, "ip", {"ip_cidr": "198.51.100.8", "enabled": False})
        out = self.store.upsert_auto_ban(
            db, ip="198.51.100.8", offense="sqli", ban_until=NOW + timedelta(hours=24), now=NOW
        )
        assert out.changed is True
        assert out.reason == "permanent"
        refreshed = self.store.get(db, "ip", row.id)
        assert refreshed.enabled is True
        assert refreshed.expires_at is None

    def test_allow_wins(self, db):
        self.store.create(db, "ip", {"ip_cidr": "203.0.113.0/24", "action": "allow"})
        out = self.store.upsert_auto_ban(
            db, ip="203.0.113.5", offense="bot", ban_until=NOW + timedelta(hours=24), now=NOW
        )
        assert out.changed is False
        assert out.reason == "allow_wins"
        assert [r.action for r in self.store.list_rules(db, "ip")] == ["allow"]
