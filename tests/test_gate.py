"""Request-level authorization: who reaches which route, and as whom."""

import time

import pytest
from fastapi.testclient import TestClient

from conftest import DEFAULT_PASSWORD
from tenantauth.api.gate import RouteRules
from tenantauth.app import app, lifespan
from tenantauth.config import reset_settings_cache
from tenantauth.service.errors import ConfigurationError
from tenantauth.service.runtime import clear_runtime


@pytest.fixture
def client():
    return TestClient(app, follow_redirects=False)


def _login(client, email, password=DEFAULT_PASSWORD, **extra):
    resp = client.post("/api/auth/login", json={"email": email, "password": password, **extra})
    assert resp.status_code == 200, resp.text
    return resp


def _error(resp):
    body = resp.json()
    assert body["status"] == "error"
    return body["error"]


class TestUnauthenticated:
    def test_api_without_token_is_401(self, client, runtime):
        resp = client.get("/api/auth/me")

        assert resp.status_code == 401
        assert _error(resp)["code"] == "unauthorized"

    def test_page_without_token_redirects_to_login(self, client, runtime):
        resp = client.get("/dashboard")

        assert resp.status_code == 303
        assert resp.headers["location"] == "/login?next=/dashboard"

    def test_login_page_and_public_endpoints_are_open(self, client, runtime):
        assert client.get("/login").status_code == 200
        assert client.get("/healthz").json()["status"] == "ok"
        assert client.post("/api/auth/refresh-token").status_code == 401

    def test_static_assets_bypass_the_gate(self, client, runtime):
        # no such file, but the gate must not redirect it
        resp = client.get("/static/app.js")

        assert resp.status_code == 404

    def test_dotted_page_path_is_gated(self, client, runtime):
        assert not RouteRules().is_static("/dashboard.html")

        resp = client.get("/dashboard.html")

        assert resp.status_code == 303
        assert resp.headers["location"] == "/login?next=/dashboard.html"

    def test_dotted_api_path_is_gated(self, client, runtime):
        assert not RouteRules().is_static("/api/admin/users/a.b")

        resp = client.get("/api/admin/users/a.b")

        assert resp.status_code == 401
        assert _error(resp)["code"] == "unauthorized"


class TestInvalidTokens:
    def test_tampered_token_reaches_handler_with_reason(self, client, runtime, make_user):
        make_user("alice@acme.test")
        _login(client, "alice@acme.test")
        token = client.cookies.get("access_token")
        client.cookies.clear()
        client.cookies.set("access_token", token[:-2] + ("AA" if token[-2:] != "AA" else "BB"))

        resp = client.get("/api/auth/me")

        assert resp.status_code == 401
        assert _error(resp)["details"] == {"reason": "signature_invalid"}

    def test_expired_token_is_reported_as_expired(self, client, runtime, make_user):
        make_user("alice@acme.test")
        _login(client, "alice@acme.test")
        runtime.codec._clock = lambda: time.time() + 3600

        resp = client.get("/api/auth/me")

        assert resp.status_code == 401
        assert _error(resp)["details"] == {"reason": "expired"}

    def test_non_ascii_bearer_token_is_401(self, client, runtime, make_user):
        make_user("alice@acme.test")
        _login(client, "alice@acme.test")
        header, payload, _ = client.cookies.get("access_token").split(".")
        client.cookies.clear()

        resp = client.get(
            "/api/auth/me",
            headers={"Authorization": f"Bearer {header}.{payload}.\u00e9\u00e9".encode("latin-1")},
        )

        assert resp.status_code == 401
        assert _error(resp)["details"] == {"reason": "malformed"}

    def test_invalid_token_on_page_redirects(self, client, runtime):
        client.cookies.set("access_token", "not.a.token")

        resp = client.get("/dashboard")

        assert resp.status_code == 303
        assert resp.headers["location"].startswith("/login")


class TestAuthenticated:
    def test_cookie_session_reaches_dashboard(self, client, runtime, make_user):
        make_user("alice@acme.test")
        _login(client, "alice@acme.test")

        resp = client.get("/dashboard")

        assert resp.status_code == 200
        assert "alice@acme.test" in resp.text

    def test_login_page_redirects_signed_in_users(self, client, runtime, make_user):
        make_user("alice@acme.test")
        _login(client, "alice@acme.test")

        resp = client.get("/login")

        assert resp.status_code == 303
        assert resp.headers["location"] == "/dashboard"

    def test_bearer_header_is_accepted(self, client, runtime, make_user):
        make_user("alice@acme.test")
        token = _login(client, "alice@acme.test").cookies.get("access_token")
        client.cookies.clear()

        resp = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})

        assert resp.status_code == 200
        assert resp.json()["data"]["email"] == "alice@acme.test"


class TestRolesAndTenants:
    def test_member_is_refused_admin_routes(self, client, runtime, make_user):
        make_user("alice@acme.test")
        _login(client, "alice@acme.test")

        api = client.post(
            "/api/admin/users", json={"email": "x@acme.test", "password": "long-enough-pw"}
        )
        page = client.get("/admin/users")

        assert api.status_code == 403
        assert page.status_code == 403
        assert _error(api)["message"] == "administrator role required"

    def test_identity_headers_from_client_are_ignored(self, client, runtime, make_user):
        admin = make_user("root@acme.test", role="admin")
        make_user("alice@acme.test")
        spoofed = {"X-User-Id": admin.id, "X-User-Role": "admin", "X-Tenant-ID": "acme"}

        assert client.get("/api/users", headers=spoofed).status_code == 401
        assert client.get("/api/auth/me", headers=spoofed).status_code == 401

        _login(client, "alice@acme.test")
        resp = client.put(
            f"/api/admin/users/{admin.id}", json={"isActive": False}, headers=spoofed
        )
        assert resp.status_code == 403
        assert runtime.store.get_user(admin.id).is_active is True

    def test_tenant_header_mismatch_is_forbidden(self, client, runtime, make_user):
        make_user("alice@acme.test")
        _login(client, "alice@acme.test")

        resp = client.get("/api/auth/me", headers={"X-Tenant-ID": "globex"})

        assert resp.status_code == 403
        assert _error(resp)["message"] == "tenant mismatch"

    def test_admin_cannot_touch_other_tenant_users(self, client, runtime, make_user):
        make_user("root@acme.test", role="admin")
        outsider = make_user("someone@globex.test", tenant_id="globex")
        _login(client, "root@acme.test")

        update = client.put(f"/api/admin/users/{outsider.id}", json={"firstName": "Hijacked"})
        listing = client.get("/api/users")

        assert update.status_code == 404
        assert runtime.store.get_user(outsider.id).first_name is None
        emails = [u["email"] for u in listing.json()["data"]["items"]]
        assert emails == ["root@acme.test"]


class TestMissingSigningSecret:
    def test_requests_get_a_generic_503(self, client, runtime, make_user, monkeypatch):
        make_user("alice@acme.test")
        _login(client, "alice@acme.test")
        monkeypatch.setenv("JWT_SECRET", "")
        clear_runtime()
        reset_settings_cache()

        protected = client.get("/api/auth/me")
        login = client.post(
            "/api/auth/login", json={"email": "alice@acme.test", "password": DEFAULT_PASSWORD}
        )

        for resp in (protected, login):
            assert resp.status_code == 503
            error = _error(resp)
            assert error["code"] == "service_unavailable"
            assert "JWT_SECRET" not in error["message"]

    async def test_startup_refuses_to_serve(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "   ")
        clear_runtime()
        reset_settings_cache()

        with pytest.raises(ConfigurationError):
            async with lifespan(app):
                pass

    async def test_short_secret_is_rejected_at_startup(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "too-short")
        clear_runtime()
        reset_settings_cache()

        with pytest.raises(ConfigurationError):
            async with lifespan(app):
                pass
