import pytest
from fastapi.testclient import TestClient

from wafplane.db import get_db
from wafplane.main import app


@pytest.fixture
def client(plane, session_factory):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.state.control_plane = plane
    # sin `with`: no corre el startup (que armaria un ControlPlane con la DB real)
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.control_plane = None


class TestSystemApi:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"

    def test_manual_apply(self, client, gateway):
        r = client.post("/apply")
        assert r.status_code == 200
        body = r.json()
        assert body["ok"] is True
        assert len(body["digest"]) == 64
        assert "waf_http.conf" in body["files"]
        assert gateway.calls == ["test", "reload"]

    def test_without_control_plane(self, client):
        app.state.control_plane = None
        assert client.post("/apply").status_code == 503


class TestRulesApi:
    def test_create_list_update_delete(self, client, gateway):
        r = client.post("/rules/ip", json={"ip_cidr": "10.01.0.1", "note": "scanner"})
        assert r.status_code == 201
        rule = r.json()
        assert rule["subject"] == "10.1.0.1"
        assert rule["action"] == "deny"
        assert gateway.calls.count("reload") == 1

        listed = client.get("/rules/ip").json()
        assert [x["id"] for x in listed] == [rule["id"]]

        r = client.put(f"/rules/ip/{rule['id']}", json={"enabled": False})
        assert r.status_code == 200
        assert r.json()["enabled"] is False

        assert client.delete(f"/rules/ip/{rule['id']}").json() == {"ok": True, "deleted": 1}
        assert client.delete(f"/rules/ip/{rule['id']}").status_code == 404
        assert gateway.calls.count("reload") == 3

    def test_invalid_subject_is_422(self, client, gateway):
        r = client.post("/rules/ip", json={"ip_cidr": "10.0.0.0/40"})
        assert r.status_code == 422
        r = client.post("/rules/country", json={"country_code": "ZZZ"})
        assert r.status_code == 422
        assert gateway.calls == []

    def test_unknown_kind(self, client):
        assert client.get("/rules/asn").status_code == 404

    def test_bulk_delete(self, client):
        ids = [client.post("/rules/country", json={"country_code": cc}).json()["id"] for cc in ("CN", "RU", "KP")]
        r = client.post("/rules/country/bulk-delete", json={"ids": ids[:2]})
        assert r.json() == {"ok": True, "deleted": 2}
        assert [x["subject"] for x in client.get("/rules/country").json()] == ["KP"]

    def test_failed_apply_is_502_but_rule_is_kept(self, client, gateway):
        gateway.test_failures = 1
        r = client.post("/rules/ip", json={"ip_cidr": "192.0.2.10"})
        assert r.status_code == 502
        assert r.json()["detail"]["stage"] == "test"
        assert [x["subject"] for x in client.get("/rules/ip").json()] == ["192.0.2.10"]


class TestSettingsApi:
    def test_get_and_patch(self, client):
        r = client.get("/settings")
        assert r.status_code == 200
        assert r.json()["authfail_threshold"] == 5

        r = client.put("/settings", json={"ddos_rate_rps": 999999, "ddos_enabled": True, "log_retention_days": 7})
        assert r.status_code == 200
        body = r.json()
        assert body["ddos_rate_rps"] == 10000
        assert body["ddos_enabled"] is True
        assert body["log_retention_days"] == 30


class TestPoliciesApi:
    def test_app_set_versions_and_binding(self, client):
        sets = client.get("/policies/sets").json()
        assert [s["scope"] for s in sets] == ["global"]

        r = client.post("/policies/sets", json={"app_id": 7, "name": "Shop"})
        assert r.status_code == 201
        app_set = r.json()

        # sin version activa todavia: se usa el global
        eff = client.get("/policies/effective", params={"app_id": 7}).json()
        assert eff["policy_set_id"] == sets[0]["id"]

        r = client.post(
            f"/policies/sets/{app_set['id']}/versions",
            json={"policy": {"mode": "enforce", "junk": 1}, "created_by": "alice"},
        )
        assert r.status_code == 201
        assert r.json()["version"] == 1
        assert "junk" not in r.json()["policy_json"]

        eff = client.get("/policies/effective", params={"app_id": 7}).json()
        assert eff["policy_set_id"] == app_set["id"]
        assert eff["policy"]["mode"] == "enforce"

        r = client.delete("/policies/apps/7/binding")
        assert r.status_code == 200
        assert r.json()["policy_set_id"] == sets[0]["id"]

    def test_rollback(self, client):
        global_id = client.get("/policies/sets").json()[0]["id"]
        client.post(f"/policies/sets/{global_id}/versions", json={"policy": {"mode": "off"}})

        r = client.post(f"/policies/sets/{global_id}/rollback")
        assert r.status_code == 200
        assert r.json()["version"] == 1

        # sin version anterior: no-op
        assert client.post(f"/policies/sets/{global_id}/rollback").json()["version"] == 1

        r = client.post(f"/policies/sets/{global_id}/versions/2/activate")
        assert r.json()["version"] == 2
        assert client.post(f"/policies/sets/{global_id}/versions/9/activate").status_code == 404

    def test_unknown_set(self, client):
        assert client.get("/policies/sets/999/versions").status_code == 404
