"""End-to-end tests for the HTTP layer in server.py."""
import re
import urllib.parse

import pytest
from starlette.testclient import TestClient

from grant_store import GrantStore
from oauth_settings import OAuthSettings
from server import _RateLimiter, build_services, create_app

SECRET = "server-test-signing-key-0123456789abcdef"
REDIRECT = "https://t.example/cb"


@pytest.fixture
def settings():
    return OAuthSettings(jwt_secret=SECRET)


@pytest.fixture
def services(settings, clock):
    return build_services(settings, store=GrantStore(clock))


@pytest.fixture
def http(services):
    return TestClient(create_app(services=services))


def _register(http, scopes=("read_products",), name="T", redirect_uri=REDIRECT):
    resp = http.post("/oauth/apps", json={
        "name": name, "redirect_uri": redirect_uri, "scopes": list(scopes),
    })
    assert resp.status_code == 201, resp.text
    return resp.json()["app"]


def _approval_id(page: str) -> str:
    match = re.search(r'name="approval_id" value="([^"]+)"', page)
    assert match, page
    return match.group(1)


def _authorize(http, app, scope="read_products", state="st-1", action="authorize"):
    page = http.get("/oauth/authorize", params={
        "client_id": app["client_id"],
        "redirect_uri": app["redirect_uri"],
        "scope": scope,
        "state": state,
        "response_type": "code",
    })
    assert page.status_code == 200, page.text
    resp = http.post("/oauth/authorize",
                     data={"approval_id": _approval_id(page.text), "action": action},
                     follow_redirects=False)
    assert resp.status_code == 302
    location = urllib.parse.urlparse(resp.headers["location"])
    return location, urllib.parse.parse_qs(location.query)


def _tokens(http, app, scope="read_products"):
    _, params = _authorize(http, app, scope=scope)
    resp = http.post("/oauth/token", data={
        "grant_type": "authorization_code",
        "client_id": app["client_id"],
        "client_secret": app["client_secret"],
        "code": params["code"][0],
        "redirect_uri": app["redirect_uri"],
    })
    assert resp.status_code == 200, resp.text
    return resp.json()


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Service endpoints
# ---------------------------------------------------------------------------

class TestServiceEndpoints:
    def test_health(self, http):
        resp = http.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "OK"

    def test_metadata(self, http):
        body = http.get("/.well-known/oauth-authorization-server").json()
        assert body["issuer"] == "bitcommerce-oauth-api"
        assert body["grant_types_supported"] == ["authorization_code", "refresh_token"]
        assert "read_products" in body["scopes_supported"]

    def test_security_headers(self, http):
        resp = http.get("/health")
        assert resp.headers["x-content-type-options"] == "nosniff"
        assert resp.headers["x-frame-options"] == "DENY"

    def test_rate_limit(self):
        settings = OAuthSettings(jwt_secret=SECRET, rate_limit_max_requests=3)
        http = TestClient(create_app(settings=settings))
        codes = [http.get("/oauth/apps").status_code for _ in range(4)]
        assert codes == [200, 200, 200, 429]
        assert http.get("/oauth/apps").json()["error"] == "rate_limit_exceeded"
        assert http.get("/health").status_code == 200

    def test_rate_limit_ignores_forwarded_for(self):
        settings = OAuthSettings(jwt_secret=SECRET, rate_limit_max_requests=2)
        http = TestClient(create_app(settings=settings))
        codes = [
            http.get("/oauth/apps", headers={"x-forwarded-for": f"203.0.113.{i}"}).status_code
            for i in range(10)
        ]
        assert codes[:2] == [200, 200]
        assert set(codes[2:]) == {429}


class TestRateLimiter:
    def test_window_slides(self, clock):
        limiter = _RateLimiter(max_requests=2, window=60, clock=clock)
        assert limiter.is_allowed("a")
        assert limiter.is_allowed("a")
        assert not limiter.is_allowed("a")
        assert limiter.is_allowed("b")
        clock.advance(61)
        assert limiter.is_allowed("a")

    def test_key_count_capped(self, clock):
        limiter = _RateLimiter(max_requests=5, window=60, max_keys=3, clock=clock)
        for key in ("a", "b", "c", "d", "e"):
            assert limiter.is_allowed(key)
        assert len(limiter) == 3

    def test_idle_buckets_evicted_before_active_ones(self, clock):
        limiter = _RateLimiter(max_requests=1, window=60, max_keys=2, clock=clock)
        limiter.is_allowed("idle")
        clock.advance(61)
        limiter.is_allowed("busy")
        limiter.is_allowed("new")
        assert len(limiter) == 2
        # "busy" kept its bucket, so it is still limited.
        assert not limiter.is_allowed("busy")

    def test_cleanup(self, clock):
        limiter = _RateLimiter(max_requests=1, window=60, clock=clock)
        limiter.is_allowed("a")
        limiter.is_allowed("b")
        clock.advance(61)
        assert limiter.cleanup() == 2
        assert len(limiter) == 0


# ---------------------------------------------------------------------------
# App registration
# ---------------------------------------------------------------------------

class TestRegistration:
    def test_register(self, http):
        app = _register(http, scopes=["read_products", "read_orders"])
        assert app["client_id"].startswith("client_")
        assert app["client_secret"].startswith("secret_")
        assert app["scopes"] == ["read_products", "read_orders"]
        assert app["redirect_uri"] == REDIRECT

    def test_invalid_scope(self, http):
        resp = http.post("/oauth/apps", json={
            "name": "T", "redirect_uri": REDIRECT, "scopes": ["invalid_scope", "read_products"],
        })
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_scope"
        assert "Invalid scopes" in resp.json()["error_description"]

    def test_invalid_redirect_uri(self, http):
        resp = http.post("/oauth/apps", json={
            "name": "T", "redirect_uri": "not-a-valid-url", "scopes": ["read_products"],
        })
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_scopes_must_be_list(self, http):
        resp = http.post("/oauth/apps", json={
            "name": "T", "redirect_uri": REDIRECT, "scopes": "read_products",
        })
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_malformed_json(self, http):
        resp = http.post("/oauth/apps", content=b"{nope",
                         headers={"content-type": "application/json"})
        assert resp.status_code == 400

    def test_json_body_not_utf8(self, http):
        resp = http.post("/oauth/apps", content=b'{"name": "\xff"}',
                         headers={"content-type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_list_apps_hides_secrets(self, http):
        _register(http)
        body = http.get("/oauth/apps").json()
        assert body["total"] == 1
        assert "client_secret" not in body["apps"][0]

    def test_seeded_clients(self, tmp_path):
        path = tmp_path / "clients.yaml"
        path.write_text(
            "clients:\n"
            "  sample-app:\n"
            "    client_id: client_xyz123\n"
            "    client_secret: secret_abc456\n"
            "    redirect_uri: https://sampleapp.com/callback\n"
            "    scopes: [read_products, read_orders]\n"
        )
        http = TestClient(create_app(settings=OAuthSettings(jwt_secret=SECRET,
                                                            clients_file=path)))
        apps = http.get("/oauth/apps").json()["apps"]
        assert [a["client_id"] for a in apps] == ["client_xyz123"]


# ---------------------------------------------------------------------------
# Authorization endpoint
# ---------------------------------------------------------------------------

class TestAuthorizeEndpoint:
    def test_consent_page(self, http):
        app = _register(http, name="Shop <Helper>")
        resp = http.get("/oauth/authorize", params={
            "client_id": app["client_id"], "redirect_uri": REDIRECT,
            "scope": "read_products", "response_type": "code",
        })
        assert resp.status_code == 200
        assert "Authorize Application" in resp.text
        assert "Shop &lt;Helper&gt;" in resp.text
        assert "read_products" in resp.text

    def test_unknown_client(self, http):
        resp = http.get("/oauth/authorize", params={
            "client_id": "invalid-client-id", "redirect_uri": REDIRECT,
            "response_type": "code",
        })
        assert resp.json()["error"] == "invalid_client"

    def test_redirect_mismatch(self, http):
        app = _register(http)
        resp = http.get("/oauth/authorize", params={
            "client_id": app["client_id"], "redirect_uri": "https://different-app.com/callback",
            "response_type": "code",
        })
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"
        assert "mismatch" in resp.json()["error_description"]

    def test_bad_response_type(self, http):
        app = _register(http)
        resp = http.get("/oauth/authorize", params={
            "client_id": app["client_id"], "redirect_uri": REDIRECT, "response_type": "token",
        })
        assert resp.status_code == 400

    def test_approve_redirects_with_code(self, http):
        app = _register(http)
        location, params = _authorize(http, app, state="abc")
        assert f"{location.scheme}://{location.netloc}{location.path}" == REDIRECT
        assert len(params["code"][0]) == 64
        assert params["state"] == ["abc"]

    def test_deny_redirects_with_error(self, http, services):
        app = _register(http)
        _, params = _authorize(http, app, state="abc", action="deny")
        assert params["error"] == ["access_denied"]
        assert params["state"] == ["abc"]
        assert "code" not in params
        assert len(services.store.codes) == 0

    def test_approval_id_single_use(self, http):
        app = _register(http)
        page = http.get("/oauth/authorize", params={
            "client_id": app["client_id"], "redirect_uri": REDIRECT,
            "scope": "read_products", "response_type": "code",
        })
        approval_id = _approval_id(page.text)
        first = http.post("/oauth/authorize", data={"approval_id": approval_id,
                                                    "action": "authorize"},
                          follow_redirects=False)
        second = http.post("/oauth/authorize", data={"approval_id": approval_id,
                                                     "action": "authorize"},
                           follow_redirects=False)
        assert first.status_code == 302
        assert second.status_code == 400

    def test_invalid_action(self, http):
        resp = http.post("/oauth/authorize", data={"approval_id": "x" * 32, "action": "maybe"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------

class TestTokenEndpoint:
    def test_code_exchange(self, http):
        tokens = _tokens(http, _register(http))
        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == 3600
        assert tokens["scope"] == "read_products"
        assert tokens["merchant_id"] == "merchant_123"
        assert tokens["refresh_token"]

    def test_code_replay(self, http):
        app = _register(http)
        _, params = _authorize(http, app)
        form = {
            "grant_type": "authorization_code",
            "client_id": app["client_id"],
            "client_secret": app["client_secret"],
            "code": params["code"][0],
            "redirect_uri": REDIRECT,
        }
        assert http.post("/oauth/token", data=form).status_code == 200
        replay = http.post("/oauth/token", data=form)
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_grant"

    def test_wrong_secret(self, http):
        app = _register(http)
        _, params = _authorize(http, app)
        resp = http.post("/oauth/token", data={
            "grant_type": "authorization_code",
            "client_id": app["client_id"],
            "client_secret": "secret_wrong",
            "code": params["code"][0],
            "redirect_uri": REDIRECT,
        })
        assert resp.status_code == 401
        assert resp.json()["error"] == "invalid_client"
        assert "secret_wrong" not in resp.text

    def test_unsupported_grant_type(self, http):
        app = _register(http)
        resp = http.post("/oauth/token", data={
            "grant_type": "password",
            "client_id": app["client_id"],
            "client_secret": app["client_secret"],
        })
        assert resp.status_code == 400
        assert resp.json()["error"] == "unsupported_grant_type"

    def test_missing_client_credentials(self, http):
        resp = http.post("/oauth/token", data={"grant_type": "authorization_code"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_json_body_not_utf8(self, http):
        resp = http.post("/oauth/token", content=b'{"grant_type": "\xff\xfe"}',
                         headers={"content-type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_refresh_grant_json_body(self, http):
        app = _register(http, scopes=["read_products", "read_orders"])
        tokens = _tokens(http, app, scope="read_orders")
        resp = http.post("/oauth/token", json={
            "grant_type": "refresh_token",
            "client_id": app["client_id"],
            "client_secret": app["client_secret"],
            "refresh_token": tokens["refresh_token"],
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["scope"] == "read_orders"
        assert "refresh_token" not in body
        assert resp.headers["cache-control"] == "no-store"

    def test_revoke(self, http):
        app = _register(http)
        tokens = _tokens(http, app)
        resp = http.post("/oauth/revoke", data={
            "client_id": app["client_id"],
            "client_secret": app["client_secret"],
            "token": tokens["access_token"],
        })
        assert resp.status_code == 200
        products = http.get("/api/v1/merchants/merchant_123/products",
                            headers=_bearer(tokens["access_token"]))
        assert products.status_code == 401
        assert products.json()["error"] == "invalid_token"
        assert products.headers["www-authenticate"].startswith("Bearer")


# ---------------------------------------------------------------------------
# Merchant resource API
# ---------------------------------------------------------------------------

class TestMerchantApi:
    def test_products_with_scope(self, http):
        tokens = _tokens(http, _register(http))
        resp = http.get("/api/v1/merchants/merchant_123/products",
                        headers=_bearer(tokens["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["total"] == 2

    def test_single_product(self, http):
        tokens = _tokens(http, _register(http))
        resp = http.get("/api/v1/merchants/merchant_123/products/product_1",
                        headers=_bearer(tokens["access_token"]))
        assert resp.json()["product"]["price"] == 29.99
        missing = http.get("/api/v1/merchants/merchant_123/products/product_9",
                           headers=_bearer(tokens["access_token"]))
        assert missing.status_code == 404

    def test_orders_without_scope(self, http):
        tokens = _tokens(http, _register(http))
        resp = http.get("/api/v1/merchants/merchant_123/orders",
                        headers=_bearer(tokens["access_token"]))
        assert resp.status_code == 403
        assert resp.json()["error"] == "insufficient_scope"

    def test_other_merchant_denied(self, http):
        tokens = _tokens(http, _register(http))
        resp = http.get("/api/v1/merchants/merchant_456/products",
                        headers=_bearer(tokens["access_token"]))
        assert resp.status_code == 403
        assert resp.json()["error"] == "access_denied"

    def test_missing_token(self, http):
        resp = http.get("/api/v1/merchants/merchant_123/products")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_invalid_token(self, http):
        resp = http.get("/api/v1/merchants/merchant_123/products", headers=_bearer("abc"))
        assert resp.status_code == 401
        assert resp.json()["error"] == "invalid_token"

    def test_summary_sections_follow_scope(self, http):
        tokens = _tokens(http, _register(http))
        body = http.get("/api/v1/merchants/merchant_123/summary",
                        headers=_bearer(tokens["access_token"])).json()
        assert body["products"] == {"count": 2, "total_value": 79.98}
        assert "orders" not in body

    def test_profile_requires_read_profile(self, http):
        app = _register(http, scopes=["read_profile"])
        tokens = _tokens(http, app, scope="read_profile")
        resp = http.get("/api/v1/merchants/merchant_123",
                        headers=_bearer(tokens["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["name"] == "Sample Store"

    def test_list_merchants_limited_to_token_owner(self, http):
        tokens = _tokens(http, _register(http))
        body = http.get("/api/v1/merchants", headers=_bearer(tokens["access_token"])).json()
        assert [m["id"] for m in body["merchants"]] == ["merchant_123"]
