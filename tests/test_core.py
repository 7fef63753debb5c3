from datetime import datetime, timedelta, timezone

from wafplane.core.clamp import clamp_int, normalize_choice
from wafplane.core.dedupe import attack_dedupe_key, compute_fingerprint
from wafplane.core.net import canonical_ip, dedupe_sorted, network_covers, sanitize_cidr, sanitize_country_code
from wafplane.core.timeutils import ensure_utc, parse_iso_timestamp


class TestClamp:
    def test_clamps_into_range(self):
        assert clamp_int(999999, 1, 10000, 10) == 10000
        assert clamp_int(-4, 1, 10000, 10) == 1
        assert clamp_int("25", 1, 100, 10) == 25

    def test_invalid_falls_back(self):
        assert clamp_int(None, 1, 100, 7) == 7
        assert clamp_int("abc", 1, 100, 7) == 7
        assert clamp_int(True, 1, 100, 7) == 7
        assert clamp_int(float("nan"), 1, 100, 7) == 7

    def test_normalize_choice(self):
        assert normalize_choice(" ENFORCE ", ("off", "monitor", "enforce"), "monitor") == "enforce"
        assert normalize_choice("bogus", ("off", "monitor"), "monitor") == "monitor"
        assert normalize_choice(None, ("off",), "off") == "off"


class TestNet:
    def test_sanitize_cidr(self):
        assert sanitize_cidr(" 10.0.0.1 ") == "10.0.0.1"
        assert sanitize_cidr("10.01.01.11") == "10.1.1.11"
        assert sanitize_cidr("192.168.0.0/16") == "192.168.0.0/16"
        assert sanitize_cidr("2001:db8::/32") == "2001:db8::/32"

    def test_sanitize_cidr_rejects(self):
        assert sanitize_cidr("") is None
        assert sanitize_cidr("10.0.0.0/33") is None
        assert sanitize_cidr("10.0.0.1; include /etc/passwd") is None
        assert sanitize_cidr("1.2.3.4/8/9") is None
        assert sanitize_cidr("999.1.1.1") is None

    def test_country_code(self):
        assert sanitize_country_code("mx") == "MX"
        assert sanitize_country_code("MEX") is None
        assert sanitize_country_code("") is None

    def test_network_covers(self):
        assert network_covers("203.0.113.0/24", "203.0.113.7")
        assert network_covers("10.0.0.0/8", "10.1.0.0/16")
        assert not network_covers("10.1.0.0/16", "10.0.0.0/8")
        assert not network_covers("10.0.0.0/8", "2001:db8::1")

    def test_canonical_ip(self):
        assert canonical_ip("2001:DB8:0:0::1") == "2001:db8::1"
        assert canonical_ip("192.0.2.1") == "192.0.2.1"
        assert canonical_ip("192.0.2.1/32") is None
        assert canonical_ip("") is None
        assert canonical_ip(42) is None

    def test_dedupe_sorted(self):
        assert dedupe_sorted(["b", None, "a", "b", ""]) == ["a", "b"]


class TestTimeutils:
    def test_parse_z_suffix(self):
        dt = parse_iso_timestamp("2026-03-01T10:00:00Z")
        assert dt == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_parse_offset_converted_to_utc(self):
        dt = parse_iso_timestamp("2026-03-01T10:00:00-06:00")
        assert dt == datetime(2026, 3, 1, 16, 0, tzinfo=timezone.utc)

    def test_parse_invalid(self):
        assert parse_iso_timestamp("yesterday") is None
        assert parse_iso_timestamp(12345) is None
        assert parse_iso_timestamp("") is None

    def test_ensure_utc_naive(self):
        naive = datetime(2026, 1, 1, 12, 0)
        assert ensure_utc(naive).tzinfo == timezone.utc
        assert ensure_utc(None) is None


class TestDedupe:
    def test_same_event_same_fingerprint(self):
        ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
        k1 = attack_dedupe_key(offense_type="bot", source_address="1.2.3.4", timestamp=ts, host="h", uri="/x")
        k2 = attack_dedupe_key(
            offense_type="bot",
            source_address=" 1.2.3.4 ",
            timestamp=ts.astimezone(timezone(timedelta(hours=-6))),
            host="h",
            uri="/x",
        )
        assert compute_fingerprint(k1) == compute_fingerprint(k2)

    def test_different_uri_different_fingerprint(self):
        ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
        k1 = attack_dedupe_key(offense_type="bot", source_address="1.2.3.4", timestamp=ts, host="h", uri="/x")
        k2 = attack_dedupe_key(offense_type="bot", source_address="1.2.3.4", timestamp=ts, host="h", uri="/y")
        assert compute_fingerprint(k1) != compute_fingerprint(k2)
