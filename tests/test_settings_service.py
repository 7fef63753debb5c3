from wafplane.services.settings_service import (
    DEFAULT_BOT_UA_TOKENS,
    GlobalSettings,
    SettingsService,
    clamp_retention_days,
    snapshot_from_values,
)


class TestSnapshot:
    def test_defaults(self):
        snap = snapshot_from_values({})
        assert snap == GlobalSettings()

    def test_out_of_range_values_are_clamped(self):
        snap = snapshot_from_values(
            {
                "ddos_rate_rps": 0,
                "ddos_burst": 10**9,
                "authfail_window_sec": 1,
                "autoban_ban_hours": 99999,
                "sqli_threshold": "abc",
            }
        )
        assert snap.ddos_rate_rps == 1
        assert snap.ddos_burst == 100000
        assert snap.authfail_window_sec == 5
        assert snap.autoban_ban_hours == 8760
        assert snap.sqli_threshold == 8

    def test_retention_only_allowed_values(self):
        assert clamp_retention_days(90) == 90
        assert clamp_retention_days("180") == 180
        assert clamp_retention_days(45) == 30
        assert clamp_retention_days(None) == 30


class TestSettingsService:
    def setup_method(self):
        self.service = SettingsService(ttl_seconds=0)

    def test_get_creates_singleton(self, db):
        snap = self.service.get(db)
        assert snap.auth_bypass_enabled is True
        assert snap.bot_defense_enabled is False
        assert snap.bot_ua_tokens == DEFAULT_BOT_UA_TOKENS

    def test_update_partial_patch(self, db):
        snap = self.service.update(db, {"bot_defense_enabled": "on", "ddos_rate_rps": 250})
        assert snap.bot_defense_enabled is True
        assert snap.ddos_rate_rps == 250
        # lo que no viene en el patch no cambia
        assert snap.ddos_burst == 50

    def test_update_clamps_instead_of_rejecting(self, db):
        snap = self.service.update(db, {"authfail_threshold": 0, "log_retention_days": 45})
        assert snap.authfail_threshold == 1
        assert snap.log_retention_days == 30

    def test_update_ignores_unknown_keys(self, db):
        snap = self.service.update(db, {"does_not_exist": 1, "sqli_enabled": True})
        assert snap.sqli_enabled is True
        assert "does_not_exist" not in snap.as_dict()

    def test_text_fields_reset_to_default(self, db):
        self.service.update(db, {"bot_ua_tokens": "evilbot"})
        assert self.service.get(db, use_cache=False).bot_ua_tokens == "evilbot"
        snap = self.service.update(db, {"bot_ua_tokens": None})
        assert snap.bot_ua_tokens == DEFAULT_BOT_UA_TOKENS

    def test_cache_is_invalidated_on_update(self, db):
        service = SettingsService(ttl_seconds=60)
        assert service.get(db).ddos_enabled is False
        service.update(db, {"ddos_enabled": True})
        assert service.get(db).ddos_enabled is True

    def test_trusted_ranges_roundtrip(self, db):
        assert self.service.get_trusted_ranges(db) == []
        assert self.service.set_trusted_ranges(db, ["2400:cb00::/32", "173.245.48.0/20", "173.245.48.0/20", " "]) is True
        assert self.service.get_trusted_ranges(db) == ["173.245.48.0/20", "2400:cb00::/32"]
        # mismo conjunto en otro orden: sin cambios
        assert self.service.set_trusted_ranges(db, ["2400:cb00::/32", "173.245.48.0/20"]) is False

    def test_trusted_ranges_are_not_a_settings_field(self, db):
        self.service.set_trusted_ranges(db, ["173.245.48.0/20"])
        self.service.update(db, {"trusted_proxy_ranges": "10.0.0.0/8"})
        assert self.service.get_trusted_ranges(db) == ["173.245.48.0/20"]
        assert "trusted_proxy_ranges" not in self.service.get(db).as_dict()
