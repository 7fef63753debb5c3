import json
from datetime import datetime, timezone

from wafplane.parsing.attack_log import AttackLogParser
from wafplane.parsing.threat_log import ThreatLogParser


def _line(**fields):
    base = {
        "ts": "2026-03-01T10:00:00Z",
        "ip": "198.51.100.10",
        "type": "sqli",
        "host": "shop.example.com",
        "method": "GET",
        "uri": "/search?q=1%27%20or%201=1",
        "status": 403,
        "ua": "sqlmap/1.7",
        "ref": "-",
        "auth": 0,
    }
    base.update(fields)
    return json.dumps(base)


class TestAttackLogParser:
    def setup_method(self):
        self.parser = AttackLogParser()

    def test_valid_line(self):
        ev = self.parser.parse_line(_line())
        assert ev is not None
        assert ev.offense_type == "sqli"
        assert ev.source_address == "198.51.100.10"
        assert ev.timestamp == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
        assert ev.status_code == 403
        assert ev.user_agent == "sqlmap/1.7"
        assert ev.authenticated is False

    def test_rejects_unknown_type(self):
        assert self.parser.parse_line(_line(type="xss")) is None

    def test_rejects_bad_ip(self):
        assert self.parser.parse_line(_line(ip="not-an-ip")) is None
        assert self.parser.parse_line(_line(ip=None)) is None

    def test_ip_is_canonicalized(self):
        a = self.parser.parse_line(_line(ip="2001:DB8::0001"))
        b = self.parser.parse_line(_line(ip="2001:db8::1"))
        assert a.source_address == "2001:db8::1"
        assert a.source_address == b.source_address
        assert a.fingerprint == b.fingerprint

    def test_rejects_bad_timestamp(self):
        assert self.parser.parse_line(_line(ts="ayer")) is None

    def test_rejects_garbage(self):
        assert self.parser.parse_line("") is None
        assert self.parser.parse_line("{not json") is None
        assert self.parser.parse_line("[1, 2, 3]") is None

    def test_authenticated_flag(self):
        assert self.parser.parse_line(_line(auth="1")).authenticated is True
        assert self.parser.parse_line(_line(auth=1)).authenticated is True
        assert self.parser.parse_line(_line(auth=True)).authenticated is True
        assert self.parser.parse_line(_line(auth="0")).authenticated is False

    def test_optional_fields_wrong_type(self):
        ev = self.parser.parse_line(_line(status=True, host=12, ua=None))
        assert ev.status_code is None
        assert ev.host is None
        assert ev.user_agent is None


class TestThreatLogParser:
    def setup_method(self):
        self.parser = ThreatLogParser()

    def _obj(self, **fields):
        base = {
            "ts": "2026-03-01T10:00:00Z",
            "category": "inbound",
            "rule_id": "inbound.method_not_allowed",
            "action": "block",
            "reason": "method TRACE not allowed",
            "app_id": "7",
            "route_id": 3,
            "src_ip": "203.0.113.9",
            "request_id": "abc123",
            "meta": {"method": "TRACE"},
        }
        base.update(fields)
        return json.dumps(base)

    def test_valid_line(self):
        ev = self.parser.parse_line(self._obj())
        assert ev.category == "inbound"
        assert ev.action == "block"
        assert ev.app_id == 7
        assert ev.route_id == 3
        assert ev.meta == {"method": "TRACE"}

    def test_missing_ts_defaults_to_now(self):
        ev = self.parser.parse_line(self._obj(ts=None))
        assert ev is not None
        assert ev.ts.tzinfo is not None

    def test_rejects_invalid_enums(self):
        assert self.parser.parse_line(self._obj(category="dns")) is None
        assert self.parser.parse_line(self._obj(action="quarantine")) is None

    def test_rejects_missing_required(self):
        assert self.parser.parse_line(self._obj(rule_id="")) is None
        assert self.parser.parse_line(self._obj(rule_id="x" * 65)) is None
        assert self.parser.parse_line(self._obj(reason="")) is None

    def test_truncates_long_fields(self):
        ev = self.parser.parse_line(self._obj(reason="r" * 400, request_id="q" * 100))
        assert len(ev.reason) == 255
        assert len(ev.request_id) == 64

    def test_non_dict_meta_dropped(self):
        ev = self.parser.parse_line(self._obj(meta=["a"]))
        assert ev.meta is None
