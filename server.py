#!/usr/bin/env python3
"""
BitCommerce merchant OAuth server — HTTP layer over the grant engine.

Routes:
  /.well-known/oauth-authorization-server  — RFC 8414 metadata
  /oauth/apps                              — register (POST) / list (GET) applications
  /oauth/authorize                         — consent page (GET) and decision (POST)
  /oauth/token                             — authorization_code and refresh_token grants
  /oauth/revoke                            — RFC 7009 token revocation
  /api/v1/merchants/...                    — sample resource API guarded by bearer tokens
  /health                                  — liveness

Request parsing and response shaping live here; every OAuth decision is
made by authorization_engine.py / access_control.py, and their
``OAuthError`` exceptions are rendered as ``{error, error_description}``
bodies by a single exception handler.
"""

import argparse
import asyncio
import html as html_mod
import json
import logging
import re
import secrets
import time
import urllib.parse
from collections import OrderedDict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

from pydantic import BaseModel, Field, ValidationError
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp, Receive, Scope, Send

from access_control import AccessControl, Principal
from authorization_engine import AuthorizationEngine, AuthorizationRequest, construct_redirect_uri
from client_registry import ClientRegistry
from credentials import TokenSigner
from grant_store import GrantStore, TimedStore, run_sweeper
from merchant_data import MerchantDirectory
from oauth_audit import audit, configure_logging
from oauth_errors import (
    InvalidRequest,
    InvalidToken,
    MissingToken,
    OAuthError,
    ServerError,
    UnsupportedGrantType,
)
from oauth_settings import VALID_SCOPES, OAuthSettings, load_client_seeds

logger = logging.getLogger("merchant-oauth")

VERSION = "1.0.0"
PENDING_APPROVAL_TTL = 10 * 60
_APPROVAL_ID_RE = re.compile(r"^[A-Za-z0-9_-]{16,64}$")

SCOPE_DESCRIPTIONS = {
    "read_products": "Read your product catalogue",
    "read_orders": "Read your orders",
    "read_profile": "Read your store profile",
    "write_products": "Create and update products",
    "write_orders": "Create and update orders",
}


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PendingApproval:
    """An authorization request shown on the consent page, awaiting a decision."""
    approval_id: str
    request: AuthorizationRequest
    created_at: float = 0.0
    expires_at: float = 0.0


@dataclass
class Services:
    settings: OAuthSettings
    registry: ClientRegistry
    store: GrantStore
    signer: TokenSigner
    engine: AuthorizationEngine
    access: AccessControl
    directory: MerchantDirectory
    pending: TimedStore[PendingApproval]


def build_services(settings: OAuthSettings | None = None,
                   store: GrantStore | None = None,
                   directory: MerchantDirectory | None = None) -> Services:
    settings = settings or OAuthSettings.from_env()
    store = store or GrantStore()
    registry = ClientRegistry(clock=store.clock)
    signer = TokenSigner(settings.jwt_secret, settings.issuer, settings.audience)

    if settings.clients_file is not None:
        for seed in load_client_seeds(settings.clients_file):
            registry.seed(**seed)

    return Services(
        settings=settings,
        registry=registry,
        store=store,
        signer=signer,
        engine=AuthorizationEngine(registry, store, signer, settings),
        access=AccessControl(signer, store),
        directory=directory or MerchantDirectory.with_sample_data(),
        pending=TimedStore("pending_approval", store.clock),
    )


def _services(request: Request) -> Services:
    return request.app.state.services


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class AppRegistration(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    redirect_uri: str = Field(min_length=1)
    scopes: list[str]


class TokenRequest(BaseModel):
    grant_type: str = ""
    client_id: str = ""
    client_secret: str = ""
    code: str = ""
    redirect_uri: str = ""
    refresh_token: str = ""


class RevokeRequest(BaseModel):
    client_id: str = ""
    client_secret: str = ""
    token: str = ""


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg', 'invalid value')}" if loc else err.get("msg", "invalid value")


def _parse_form(body: bytes) -> dict[str, str]:
    """Parse application/x-www-form-urlencoded body, first value per key."""
    parsed = urllib.parse.parse_qs(body.decode("utf-8", errors="replace"), keep_blank_values=True)
    return {k: v[0] for k, v in parsed.items()}


async def _read_params(request: Request) -> dict[str, Any]:
    """Body parameters from either a JSON or a form-encoded request."""
    content_type = request.headers.get("content-type", "")
    body = await request.body()
    if content_type.startswith("application/json"):
        try:
            data = json.loads(body or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidRequest("Request body is not valid JSON")
        if not isinstance(data, dict):
            raise InvalidRequest("Request body must be a JSON object")
        return data
    return _parse_form(body)


def _json(data: dict[str, Any], status_code: int = 200) -> JSONResponse:
    return JSONResponse(data, status_code=status_code, headers={"cache-control": "no-store"})


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

async def _oauth_error_handler(request: Request, exc: OAuthError) -> Response:
    headers = {"cache-control": "no-store"}
    if isinstance(exc, (InvalidToken, MissingToken)):
        if isinstance(exc, InvalidToken):
            headers["www-authenticate"] = (
                f'Bearer error="{exc.error}", '
                f'error_description="{exc.description}"'
            )
        else:
            headers["www-authenticate"] = "Bearer"
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


async def _unhandled_error_handler(request: Request, exc: Exception) -> Response:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(ServerError().to_dict(), status_code=500)


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

class _RateLimiter:
    """Sliding-window counter per key, holding at most ``max_keys`` buckets.

    Buckets are kept in least-recently-used order. When a new key arrives
    and the table is full, idle buckets (nothing inside the window) are
    dropped first, then the least recently used one.
    """

    def __init__(self, max_requests: int, window: int, max_keys: int = 10_000,
                 clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window = window
        self.max_keys = max_keys
        self._clock = clock
        self._buckets: OrderedDict[str, deque[float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._buckets)

    def is_allowed(self, key: str) -> bool:
        now = self._clock()
        cutoff = now - self.window
        bucket = self._buckets.get(key)
        if bucket is None:
            if len(self._buckets) >= self.max_keys:
                self._make_room(cutoff)
            bucket = self._buckets[key] = deque()
        else:
            self._buckets.move_to_end(key)
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()
        if len(bucket) >= self.max_requests:
            return False
        bucket.append(now)
        return True

    def cleanup(self) -> int:
        """Drop buckets with no hits inside the window. Returns how many."""
        return self._evict_idle(self._clock() - self.window)

    def _evict_idle(self, cutoff: float) -> int:
        idle = [k for k, v in self._buckets.items() if not v or v[-1] <= cutoff]
        for k in idle:
            del self._buckets[k]
        return len(idle)

    def _make_room(self, cutoff: float) -> None:
        if not self._evict_idle(cutoff):
            self._buckets.popitem(last=False)


def _get_client_ip(scope: Scope) -> str:
    """Peer address of the connection.

    Forwarding headers are not read here: uvicorn's proxy-header handling
    rewrites ``scope["client"]`` only for peers in ``forwarded_allow_ips``.
    """
    client = scope.get("client")
    if client:
        return client[0]
    return "unknown"


class RateLimitMiddleware:
    """Per-IP sliding window over every path except /health."""

    EXEMPT_PATHS = {"/health"}

    def __init__(self, app: ASGIApp, max_requests: int, window: int):
        self.app = app
        self.limiter = _RateLimiter(max_requests, window)
        self._last_cleanup = time.time()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path") in self.EXEMPT_PATHS:
            await self.app(scope, receive, send)
            return

        now = time.time()
        if now - self._last_cleanup > 300:
            self.limiter.cleanup()
            self._last_cleanup = now

        client_ip = _get_client_ip(scope)
        if not self.limiter.is_allowed(client_ip):
            audit("rate_limited", ip=client_ip, path=scope.get("path"))
            response = JSONResponse(
                {"error": "rate_limit_exceeded",
                 "error_description": "Too many requests from this IP, please try again later."},
                status_code=429,
                headers={"retry-after": str(self.limiter.window)},
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)


class SecurityHeadersMiddleware:
    HEADERS = [
        (b"x-content-type-options", b"nosniff"),
        (b"x-frame-options", b"DENY"),
        (b"referrer-policy", b"no-referrer"),
        (b"content-security-policy",
         b"default-src 'self'; style-src 'self' 'unsafe-inline'; "
         b"frame-ancestors 'none'; object-src 'none'"),
    ]

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message: dict) -> None:
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                existing = {k.lower() for k, _ in message["headers"]}
                message["headers"] = list(message["headers"]) + [
                    [k, v] for k, v in self.HEADERS if k not in existing
                ]
            await send(message)

        await self.app(scope, receive, send_with_headers)


# ---------------------------------------------------------------------------
# OAuth endpoints
# ---------------------------------------------------------------------------

async def health(request: Request) -> Response:
    return JSONResponse({
        "status": "OK",
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "version": VERSION,
    })


async def metadata(request: Request) -> Response:
    """RFC 8414 — OAuth Authorization Server Metadata."""
    base = str(request.base_url).rstrip("/")
    return JSONResponse({
        "issuer": _services(request).settings.issuer,
        "authorization_endpoint": f"{base}/oauth/authorize",
        "token_endpoint": f"{base}/oauth/token",
        "revocation_endpoint": f"{base}/oauth/revoke",
        "registration_endpoint": f"{base}/oauth/apps",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "token_endpoint_auth_methods_supported": ["client_secret_post"],
        "scopes_supported": list(VALID_SCOPES),
    })


async def register_app(request: Request) -> Response:
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequest("Request body is not valid JSON")
    try:
        body = AppRegistration.model_validate(data)
    except ValidationError as e:
        raise InvalidRequest(_first_error(e))

    client = _services(request).registry.register(body.name, body.redirect_uri, body.scopes)
    app_view = client.public_view()
    app_view["client_secret"] = client.client_secret
    return _json({"message": "Application registered successfully", "app": app_view}, 201)


async def list_apps(request: Request) -> Response:
    apps = [c.public_view() for c in _services(request).registry.list_clients()]
    return JSONResponse({"apps": apps, "total": len(apps)})


async def authorize_get(request: Request) -> Response:
    services = _services(request)
    qs = request.query_params
    auth_request = services.engine.authorize(
        client_id=qs.get("client_id", ""),
        redirect_uri=qs.get("redirect_uri", ""),
        scope=qs.get("scope"),
        state=qs.get("state"),
        response_type=qs.get("response_type", ""),
    )

    approval_id = secrets.token_urlsafe(24)
    services.pending.put(approval_id, PendingApproval(approval_id, auth_request),
                         ttl=PENDING_APPROVAL_TTL)
    services.pending.sweep()

    return HTMLResponse(_authorize_page(auth_request, approval_id),
                        headers={"cache-control": "no-store"})


async def authorize_post(request: Request) -> Response:
    services = _services(request)
    form = _parse_form(await request.body())
    approval_id = form.get("approval_id", "")
    action = form.get("action", "")

    if action not in ("authorize", "deny"):
        raise InvalidRequest("action must be authorize or deny")
    if not _APPROVAL_ID_RE.match(approval_id):
        raise InvalidRequest("Unknown or expired authorization request")

    pending = services.pending.consume_once(approval_id)
    if pending is None:
        return HTMLResponse(
            _error_page("Expired", "This authorization request has expired. "
                                   "Return to the application and try again."),
            status_code=400,
        )
    auth_request = pending.request

    if action == "deny":
        denied = services.engine.deny(auth_request)
        return RedirectResponse(denied.redirect_url, status_code=302)

    # No merchant login in this deployment: consent is granted on behalf of
    # the configured demo merchant.
    code = services.engine.approve(auth_request, services.settings.demo_merchant_id)
    location = construct_redirect_uri(auth_request.redirect_uri,
                                      code=code.code, state=auth_request.state)
    return RedirectResponse(location, status_code=302)


async def token(request: Request) -> Response:
    engine = _services(request).engine
    try:
        body = TokenRequest.model_validate(await _read_params(request))
    except ValidationError as e:
        raise InvalidRequest(_first_error(e))

    if body.grant_type not in ("authorization_code", "refresh_token"):
        raise UnsupportedGrantType()
    if not body.client_id or not body.client_secret:
        raise InvalidRequest("Missing client_id or client_secret")

    if body.grant_type == "authorization_code":
        result = engine.exchange_authorization_code(
            body.client_id, body.client_secret, body.code, body.redirect_uri,
        )
    else:
        result = engine.exchange_refresh_token(
            body.client_id, body.client_secret, body.refresh_token,
        )
    return _json(result.to_dict())


async def revoke(request: Request) -> Response:
    try:
        body = RevokeRequest.model_validate(await _read_params(request))
    except ValidationError as e:
        raise InvalidRequest(_first_error(e))
    if not body.client_id or not body.client_secret:
        raise InvalidRequest("Missing client_id or client_secret")

    _services(request).engine.revoke(body.client_id, body.client_secret, body.token)
    return _json({})


# ---------------------------------------------------------------------------
# Merchant resource API
# ---------------------------------------------------------------------------

def _principal(request: Request) -> Principal:
    return _services(request).access.authenticate(request.headers.get("authorization"))


def _merchant_access(request: Request, *, all_of: list[str] | None = None,
                     any_of: list[str] | None = None) -> tuple[Principal, str]:
    """Authenticate, check scopes, then check the token owns the merchant in the path."""
    access = _services(request).access
    principal = _principal(request)
    if all_of:
        access.enforce_all(principal, all_of)
    if any_of:
        access.enforce_any(principal, any_of)
    merchant_id = request.path_params["merchant_id"]
    access.enforce_owner(principal, merchant_id)
    return principal, merchant_id


async def list_merchants(request: Request) -> Response:
    principal = _principal(request)
    directory = _services(request).directory
    # Only the merchant the token was issued for is visible.
    merchants = [m for m in directory.list_merchants() if m["id"] == principal.merchant_id]
    return JSONResponse({"merchants": merchants, "total": len(merchants)})


async def merchant_profile(request: Request) -> Response:
    _, merchant_id = _merchant_access(request, all_of=["read_profile"])
    return JSONResponse(_services(request).directory.get_merchant(merchant_id))


async def merchant_products(request: Request) -> Response:
    _, merchant_id = _merchant_access(request, all_of=["read_products"])
    directory = _services(request).directory
    merchant = directory.get_merchant(merchant_id)
    products = directory.get_products(merchant_id)
    return JSONResponse({
        "merchant": {"id": merchant["id"], "name": merchant["name"]},
        "products": products,
        "total": len(products),
    })


async def merchant_product(request: Request) -> Response:
    _, merchant_id = _merchant_access(request, all_of=["read_products"])
    directory = _services(request).directory
    merchant = directory.get_merchant(merchant_id)
    product = directory.get_product(merchant_id, request.path_params["product_id"])
    return JSONResponse({
        "merchant": {"id": merchant["id"], "name": merchant["name"]},
        "product": product,
    })


async def merchant_orders(request: Request) -> Response:
    _, merchant_id = _merchant_access(request, all_of=["read_orders"])
    directory = _services(request).directory
    merchant = directory.get_merchant(merchant_id)
    orders = directory.get_orders(merchant_id)
    return JSONResponse({
        "merchant": {"id": merchant["id"], "name": merchant["name"]},
        "orders": orders,
        "total": len(orders),
    })


async def merchant_order(request: Request) -> Response:
    _, merchant_id = _merchant_access(request, all_of=["read_orders"])
    directory = _services(request).directory
    merchant = directory.get_merchant(merchant_id)
    order = directory.get_order(merchant_id, request.path_params["order_id"])
    return JSONResponse({
        "merchant": {"id": merchant["id"], "name": merchant["name"]},
        "order": order,
    })


async def merchant_summary(request: Request) -> Response:
    principal, merchant_id = _merchant_access(request, any_of=["read_products", "read_orders"])
    return JSONResponse(_services(request).directory.summary(merchant_id, principal.scopes))


# ---------------------------------------------------------------------------
# HTML templates
# ---------------------------------------------------------------------------

_PAGE_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #f4f6f8; color: #1f2933;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }
        .card { background: #ffffff; border: 1px solid #d9e2ec; border-radius: 12px;
            padding: 2rem; max-width: 460px; width: 90%;
            box-shadow: 0 4px 24px rgba(0, 0, 0, 0.08); }
        h1 { font-size: 1.3rem; margin: 0 0 0.5rem 0; color: #0b69a3; }
        .client { color: #c2185b; font-weight: 600; }
        .details { font-size: 0.85rem; color: #52606d; word-break: break-all; }
        .perms { background: #f0f4f8; border: 1px solid #d9e2ec; border-radius: 8px;
            padding: 1rem; margin: 1rem 0; font-size: 0.9rem; }
        .perms li { margin: 0.3rem 0; }
        .buttons { display: flex; gap: 1rem; margin-top: 1.5rem; }
        button { flex: 1; padding: 0.75rem; border: none; border-radius: 8px;
            font-size: 1rem; cursor: pointer; font-weight: 600; }
        .approve { background: #0b69a3; color: #ffffff; }
        .deny { background: #d9e2ec; color: #1f2933; }
        .error { border-color: #e12d39; }
        .error h1 { color: #e12d39; }
"""


def _authorize_page(auth_request: AuthorizationRequest, approval_id: str) -> str:
    safe_name = html_mod.escape(auth_request.client_name)
    safe_client_id = html_mod.escape(auth_request.client_id)
    safe_redirect = html_mod.escape(auth_request.redirect_uri)
    safe_id = html_mod.escape(approval_id)
    if auth_request.scopes:
        perms = "\n".join(
            f"                <li><code>{html_mod.escape(s)}</code>: "
            f"{html_mod.escape(SCOPE_DESCRIPTIONS.get(s, s))}</li>"
            for s in auth_request.scopes
        )
    else:
        perms = "                <li>No specific permissions requested</li>"
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>BitCommerce — Authorize Application</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_PAGE_STYLE}</style>
</head>
<body>
    <div class="card">
        <h1>Authorize Application</h1>
        <p><span class="client">{safe_name}</span> is requesting access to your BitCommerce account.</p>
        <p class="details">Client ID: {safe_client_id}<br>Redirect URI: {safe_redirect}</p>
        <div class="perms">
            <strong>Requested Permissions:</strong>
            <ul>
{perms}
            </ul>
        </div>
        <form method="POST" action="/oauth/authorize">
            <input type="hidden" name="approval_id" value="{safe_id}">
            <div class="buttons">
                <button type="submit" name="action" value="deny" class="deny">Deny</button>
                <button type="submit" name="action" value="authorize" class="approve">Authorize</button>
            </div>
        </form>
    </div>
</body>
</html>"""


def _error_page(title: str, message: str) -> str:
    safe_title = html_mod.escape(title)
    safe_msg = html_mod.escape(message)
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>BitCommerce — {safe_title}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_PAGE_STYLE}</style>
</head>
<body>
    <div class="card error">
        <h1>{safe_title}</h1>
        <p>{safe_msg}</p>
    </div>
</body>
</html>"""


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

ROUTES = [
    Route("/health", health, methods=["GET"]),
    Route("/.well-known/oauth-authorization-server", metadata, methods=["GET"]),
    Route("/oauth/apps", register_app, methods=["POST"]),
    Route("/oauth/apps", list_apps, methods=["GET"]),
    Route("/oauth/authorize", authorize_get, methods=["GET"]),
    Route("/oauth/authorize", authorize_post, methods=["POST"]),
    Route("/oauth/token", token, methods=["POST"]),
    Route("/oauth/revoke", revoke, methods=["POST"]),
    Route("/api/v1/merchants", list_merchants, methods=["GET"]),
    Route("/api/v1/merchants/{merchant_id}", merchant_profile, methods=["GET"]),
    Route("/api/v1/merchants/{merchant_id}/profile", merchant_profile, methods=["GET"]),
    Route("/api/v1/merchants/{merchant_id}/products", merchant_products, methods=["GET"]),
    Route("/api/v1/merchants/{merchant_id}/products/{product_id}", merchant_product,
          methods=["GET"]),
    Route("/api/v1/merchants/{merchant_id}/orders", merchant_orders, methods=["GET"]),
    Route("/api/v1/merchants/{merchant_id}/orders/{order_id}", merchant_order,
          methods=["GET"]),
    Route("/api/v1/merchants/{merchant_id}/summary", merchant_summary, methods=["GET"]),
]


def create_app(settings: OAuthSettings | None = None,
               services: Services | None = None) -> Starlette:
    services = services or build_services(settings)
    settings = services.settings

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        sweeper: asyncio.Task | None = None
        if settings.sweep_interval > 0:
            sweeper = asyncio.create_task(run_sweeper(services.store, settings.sweep_interval))
            logger.info("grant store: sweeping every %ds", settings.sweep_interval)
        try:
            yield
        finally:
            if sweeper:
                sweeper.cancel()

    app = Starlette(
        routes=ROUTES,
        middleware=[
            Middleware(SecurityHeadersMiddleware),
            Middleware(RateLimitMiddleware,
                       max_requests=settings.rate_limit_max_requests,
                       window=settings.rate_limit_window),
        ],
        exception_handlers={
            OAuthError: _oauth_error_handler,
            Exception: _unhandled_error_handler,
        },
        lifespan=lifespan,
    )
    app.state.services = services
    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="BitCommerce merchant OAuth server")
    parser.add_argument("--port", type=int, default=3000)
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args()

    settings = OAuthSettings.from_env()
    configure_logging(settings.audit_log)

    import uvicorn

    app = create_app(settings)
    logger.info("merchant-oauth: starting HTTP server on %s:%d", args.host, args.port)
    config = uvicorn.Config(app, host=args.host, port=args.port, log_level="info",
                            proxy_headers=True, forwarded_allow_ips=settings.trusted_proxies)
    uvicorn.Server(config).run()
