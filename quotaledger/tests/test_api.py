"""
HTTP surface: admin subscription routes, org quota routes, error contract.
"""
import pytest
from fastapi.testclient import TestClient

ADMIN = {"X-Principal-Id": "admin-1", "X-Principal-Role": "SUPER_ADMIN"}


@pytest.fixture
def client():
    from quotaledger.main import create_app

    return TestClient(create_app())


def _start(client, org="acme", tier="L1"):
    resp = client.post(f"/v1/admin/subscriptions/{org}", json={"tier": tier}, headers=ADMIN)
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestHealth:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_readyz_reports_store(self, client):
        resp = client.get("/readyz")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "store": "InMemoryKeyValueStore"}

    def test_request_id_echoed(self, client):
        resp = client.get("/healthz", headers={"X-Request-Id": "rid-123"})
        assert resp.headers["x-request-id"] == "rid-123"

    def test_unknown_route_uses_error_contract(self, client):
        resp = client.get("/v1/nope", headers={"X-Request-Id": "rid-404"})
        assert resp.status_code == 404
        body = resp.json()
        assert body["error"]["code"] == "not_found"
        assert body["error"]["request_id"] == "rid-404"


class TestAdminSubscriptions:
    def test_requires_admin_role(self, client):
        resp = client.post("/v1/admin/subscriptions/acme", json={"tier": "L1"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

        resp = client.get(
            "/v1/admin/subscriptions/stats",
            headers={"X-Principal-Id": "u1", "X-Principal-Role": "MEMBER"},
        )
        assert resp.status_code == 403

    def test_start_and_read_current(self, client):
        created = _start(client)
        assert created["tier"] == "L1"
        assert created["status"] == "ACTIVE"
        assert created["changed_by"] == "admin-1"

        resp = client.get("/v1/admin/subscriptions/acme/current", headers=ADMIN)
        assert resp.json()["subscription"]["subscription_id"] == created["subscription_id"]

    def test_start_twice_conflicts(self, client):
        _start(client)
        resp = client.post("/v1/admin/subscriptions/acme", json={"tier": "L2"}, headers=ADMIN)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "already_exists"

    def test_unknown_tier(self, client):
        resp = client.post("/v1/admin/subscriptions/acme", json={"tier": "GOLD"}, headers=ADMIN)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "invalid_tier"

    def test_override_suspend_reactivate_history(self, client):
        _start(client)
        resp = client.post(
            "/v1/admin/subscriptions/acme/override",
            json={"tier": "L3", "reason": "Enterprise pilot"},
            headers=ADMIN,
        )
        assert resp.status_code == 200
        assert resp.json()["previous_tier"] == "L1"

        resp = client.post("/v1/admin/subscriptions/acme/suspend", json={"reason": "review"}, headers=ADMIN)
        assert resp.json()["status"] == "SUSPENDED"

        current = client.get("/v1/admin/subscriptions/acme/current", headers=ADMIN).json()
        assert current["subscription"]["tier"] == "L3"
        assert current["subscription"]["status"] == "ACTIVE"

        resp = client.post("/v1/admin/subscriptions/acme/reactivate", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["tier"] == "L3"

        history = client.get("/v1/admin/subscriptions/acme/history", headers=ADMIN).json()["history"]
        assert [r["action"] for r in history] == ["reactivated", "suspended", "tier_override", "created"]

    def test_invalid_transition_conflicts(self, client):
        _start(client)
        resp = client.post("/v1/admin/subscriptions/acme/reactivate", headers=ADMIN)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "invalid_transition"

    def test_transition_without_history_not_found(self, client):
        resp = client.post("/v1/admin/subscriptions/ghost/cancel", json={"reason": "x"}, headers=ADMIN)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_override_requires_reason(self, client):
        _start(client)
        resp = client.post("/v1/admin/subscriptions/acme/override", json={"tier": "L2"}, headers=ADMIN)
        assert resp.status_code == 422

    def test_stats(self, client):
        _start(client, "acme")
        _start(client, "globex", tier="L2")
        stats = client.get("/v1/admin/subscriptions/stats", headers=ADMIN).json()
        assert stats["total_organizations"] == 2
        assert stats["active_subscriptions"] == 2
        assert stats["by_tier"] == {"L1": 1, "L2": 1}


class TestOrgQuotas:
    def test_quota_flow_until_exceeded(self, client):
        _start(client)
        resp = client.post("/v1/orgs/acme/usage/profiling_run", json={"amount": 9})
        assert resp.status_code == 200
        assert resp.json()["runs_this_period"] == 9

        check = client.get("/v1/orgs/acme/quota/profiling_run").json()
        assert check["allowed"] is True
        assert check["remaining"] == 1
        assert check["limit"] == 10

        resp = client.post("/v1/orgs/acme/quota/profiling_run/consume")
        assert resp.status_code == 200
        assert resp.json()["usage"]["runs_this_period"] == 10

        resp = client.post("/v1/orgs/acme/quota/profiling_run/consume", headers={"X-Request-Id": "rid-q"})
        assert resp.status_code == 403
        body = resp.json()
        error = body["error"]
        assert error["code"] == "quota_exceeded"
        assert error["request_id"] == "rid-q"
        assert error["details"]["remaining"] == 0
        assert error["details"]["limit"] == 10
        assert error["details"]["resource_type"] == "profiling_run"
        assert error["details"]["reset_date"]
        assert body["detail"] == error["message"]
        assert "Upgrade subscription" in error["message"]

    def test_hard_limit_consume(self, client):
        _start(client)
        for _ in range(5):
            assert client.post("/v1/orgs/acme/quota/export/consume", json={"hard_limit": True}).status_code == 200
        resp = client.post("/v1/orgs/acme/quota/export/consume", json={"hard_limit": True})
        assert resp.status_code == 403
        assert resp.json()["error"]["details"]["limit"] == 5

    def test_no_subscription(self, client):
        resp = client.get("/v1/orgs/acme/quota/export")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "no_active_subscription"

    def test_unknown_resource_type(self, client):
        _start(client)
        resp = client.get("/v1/orgs/acme/quota/teleport")
        assert resp.status_code == 422

    def test_summary_and_usage(self, client):
        _start(client)
        client.post("/v1/orgs/acme/usage/export")
        summary = client.get("/v1/orgs/acme/quota").json()
        assert summary["subscription"]["tier"] == "L1"
        assert summary["resources"]["export"]["remaining"] == 4

        usage = client.get("/v1/orgs/acme/usage").json()
        assert usage["exports_this_period"] == 1

        history = client.get("/v1/orgs/acme/usage/history").json()
        assert len(history["records"]) == 1

    def test_usage_for_bad_period(self, client):
        resp = client.get("/v1/orgs/acme/usage", params={"period": "2026-13"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_org_header_must_match(self, client):
        _start(client)
        resp = client.get("/v1/orgs/acme/quota", headers={"X-Principal-Org": "globex"})
        assert resp.status_code == 403

        resp = client.get("/v1/orgs/acme/quota", headers={"X-Principal-Org": "acme"})
        assert resp.status_code == 200

        resp = client.get("/v1/orgs/acme/quota", headers={**ADMIN, "X-Principal-Org": "globex"})
        assert resp.status_code == 200


class TestLifespan:
    def test_shutdown_unregisters_audit_hook(self):
        from quotaledger.features.audit.service import get_audit_trail, list_audit_events
        from quotaledger.features.subscriptions.service import start_subscription
        from quotaledger.main import create_app

        with TestClient(create_app()) as client:
            _start(client)

        trail = get_audit_trail()
        trail.drain()
        assert len(list_audit_events("acme")) == 1

        # A second app cycle in the same process must not leave the old hook behind
        with TestClient(create_app()) as client:
            _start(client, "globex")
        trail.drain()
        assert len(list_audit_events("globex")) == 1

        start_subscription("initech", "L1")
        assert trail.pending() == 0
        assert list_audit_events("initech") == []
