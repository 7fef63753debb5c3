from unittest.mock import Mock

import geoip2.database
import geoip2.errors
import pytest
import requests

from wafplane.enrichment.geoip import (
    IP2LOCATION_COUNTRY_DB,
    MAXMIND_COUNTRY_DB,
    GeoIpResolver,
    default_country_db_path,
    detect_sources,
)
from wafplane.enrichment.ip_ranges import CLOUDFLARE_FALLBACK_RANGES, IpRangesFetcher, parse_range_lines


class TestGeoIpSources:
    def test_detect_sources(self, tmp_path):
        assert detect_sources(str(tmp_path)).any is False

        (tmp_path / MAXMIND_COUNTRY_DB).write_bytes(b"")
        src = detect_sources(str(tmp_path))
        assert src.maxmind == str(tmp_path / MAXMIND_COUNTRY_DB)
        assert src.ip2location is None

        (tmp_path / IP2LOCATION_COUNTRY_DB).write_bytes(b"")
        assert detect_sources(str(tmp_path)).ip2location is not None

    def test_default_path(self):
        assert default_country_db_path("/geo") == f"/geo/{MAXMIND_COUNTRY_DB}"
        assert default_country_db_path("/geo", "/custom.mmdb") == "/custom.mmdb"


class TestGeoIpResolver:
    def test_no_database(self, tmp_path):
        resolver = GeoIpResolver(str(tmp_path / "missing.mmdb"))
        assert resolver.country_code("8.8.8.8") is None

    def test_non_global_addresses_skipped(self):
        resolver = GeoIpResolver(None)
        assert resolver.country_code("10.0.0.1") is None
        assert resolver.country_code("127.0.0.1") is None
        assert resolver.country_code("not-an-ip") is None
        assert resolver.country_code(None) is None

    def _resolver_with_reader(self, tmp_path, monkeypatch, reader):
        db_path = tmp_path / MAXMIND_COUNTRY_DB
        db_path.write_bytes(b"")
        monkeypatch.setattr(geoip2.database, "Reader", Mock(return_value=reader))
        return GeoIpResolver(str(db_path))

    def test_lookup_is_cached(self, tmp_path, monkeypatch):
        reader = Mock()
        reader.country.return_value.country.iso_code = "US"
        resolver = self._resolver_with_reader(tmp_path, monkeypatch, reader)

        assert resolver.country_code("8.8.8.8") == "US"
        assert resolver.country_code("8.8.8.8") == "US"
        assert reader.country.call_count == 1

    def test_address_not_found(self, tmp_path, monkeypatch):
        reader = Mock()
        reader.country.side_effect = geoip2.errors.AddressNotFoundError("not found")
        resolver = self._resolver_with_reader(tmp_path, monkeypatch, reader)
        assert resolver.country_code("8.8.4.4") is None

    def test_close(self, tmp_path, monkeypatch):
        reader = Mock()
        reader.country.return_value.country.iso_code = "DE"
        resolver = self._resolver_with_reader(tmp_path, monkeypatch, reader)
        resolver.country_code("1.1.1.1")
        resolver.close()
        reader.close.assert_called_once()


class TestIpRangesFetcher:
    def setup_method(self):
        self.session = Mock()
        self.fetcher = IpRangesFetcher(
            urls=["https://cdn.example/v4", "https://cdn.example/v6"],
            connect_timeout=2,
            read_timeout=4,
            max_redirects=1,
            session=self.session,
        )

    def _response(self, text):
        resp = Mock(text=text)
        resp.raise_for_status = Mock()
        return resp

    def test_parse_range_lines(self):
        assert parse_range_lines("1.2.3.0/24\n\n1.2.3.4\nbad\n2400:cb00::/32\n") == ["1.2.3.0/24", "2400:cb00::/32"]

    def test_fetch_success(self):
        self.session.get.side_effect = [
            self._response("173.245.48.0/20\n103.21.244.0/22\n"),
            self._response("2400:cb00::/32\n"),
        ]
        res = self.fetcher.fetch()
        assert res.from_fallback is False
        assert res.ranges == ["103.21.244.0/22", "173.245.48.0/20", "2400:cb00::/32"]
        assert self.session.max_redirects == 1
        self.session.get.assert_any_call("https://cdn.example/v4", timeout=(2.0, 4.0), allow_redirects=True)

    def test_network_error_uses_fallback(self):
        self.session.get.side_effect = requests.ConnectionError("offline")
        res = self.fetcher.fetch()
        assert res.from_fallback is True
        assert res.ranges == CLOUDFLARE_FALLBACK_RANGES

    def test_http_error_uses_fallback(self):
        resp = self._response("")
        resp.raise_for_status.side_effect = requests.HTTPError("503")
        self.session.get.return_value = resp
        assert self.fetcher.fetch().from_fallback is True

    def test_empty_body_uses_fallback(self):
        self.session.get.return_value = self._response("<html>captive portal</html>")
        assert self.fetcher.fetch().from_fallback is True


@pytest.mark.parametrize("ip", ["8.8.8.8", "2001:4860:4860::8888"])
def test_resolver_without_db_never_raises(ip):
    assert GeoIpResolver("").country_code(ip) is None
