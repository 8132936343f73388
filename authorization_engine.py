"""
authorization_engine.py — authorization-code grant lifecycle.

    REQUESTED --approve--> CODE_ISSUED --redeem--> TOKENS_ISSUED
        \\--deny--> DENIED

``authorize`` validates the incoming request and returns an
``AuthorizationRequest`` for the consent step. ``approve`` mints a
single-use code bound to client, redirect URI, scope and merchant;
``exchange_authorization_code`` redeems it exactly once for an access +
refresh token pair. ``exchange_refresh_token`` mints further access tokens
from a (reusable) refresh token.

The engine never derives the merchant identity itself: whoever drives the
consent step passes ``merchant_id`` into ``approve``.
"""

import logging
import urllib.parse
from dataclasses import dataclass, field
from typing import Any

import credentials
from client_registry import Client, ClientRegistry
from grant_store import AccessTokenRecord, AuthorizationCode, GrantStore, RefreshTokenRecord
from oauth_audit import audit, redact
from oauth_errors import (
    InvalidClient,
    InvalidGrant,
    InvalidRequest,
    InvalidScope,
    RedirectMismatch,
)
from oauth_settings import OAuthSettings, RefreshScopePolicy, parse_scopes

logger = logging.getLogger("merchant-oauth")


def construct_redirect_uri(redirect_uri_base: str, **params: str | None) -> str:
    """Append query parameters to a redirect URI, keeping any it already has."""
    parsed = urllib.parse.urlparse(redirect_uri_base)
    query = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urllib.parse.urlunparse(parsed._replace(query=urllib.parse.urlencode(query)))


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuthorizationRequest:
    """A validated authorization request awaiting the owner's decision."""
    client_id: str
    client_name: str
    redirect_uri: str
    scopes: tuple[str, ...]
    state: str

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)


@dataclass(frozen=True)
class DeniedResult:
    redirect_uri: str
    state: str
    error: str = "access_denied"
    error_description: str = "User denied authorization"

    @property
    def redirect_url(self) -> str:
        return construct_redirect_uri(
            self.redirect_uri,
            error=self.error,
            error_description=self.error_description,
            state=self.state,
        )


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    expires_in: int
    scopes: tuple[str, ...]
    merchant_id: str
    refresh_token: str | None = None
    token_type: str = "Bearer"

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
            "merchant_id": self.merchant_id,
        }
        if self.refresh_token is not None:
            body["refresh_token"] = self.refresh_token
        return body


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@dataclass
class AuthorizationEngine:
    registry: ClientRegistry
    store: GrantStore
    signer: credentials.TokenSigner
    settings: OAuthSettings = field(default_factory=OAuthSettings)

    # --- REQUESTED ---

    def authorize(self, client_id: str, redirect_uri: str, scope: str | None = None,
                  state: str | None = None,
                  response_type: str = "code") -> AuthorizationRequest:
        if not client_id or not redirect_uri:
            raise InvalidRequest("Missing redirect_uri or client_id")
        if response_type != "code":
            raise InvalidRequest('response_type must be "code"')

        client = self.registry.lookup(client_id)
        if client is None or not client.is_active:
            raise InvalidClient("Invalid client_id")
        # Exact match only; a lookalike URI is how codes get phished.
        if client.redirect_uri != redirect_uri:
            raise RedirectMismatch()

        scopes = parse_scopes(scope)
        not_granted = [s for s in scopes if s not in client.granted_scopes]
        if not_granted:
            raise InvalidScope(f"Scopes not granted to this client: {', '.join(not_granted)}")

        request = AuthorizationRequest(
            client_id=client.client_id,
            client_name=client.name,
            redirect_uri=redirect_uri,
            scopes=scopes,
            state=state or credentials.generate_state(),
        )
        audit("authorize_requested", client_id=client_id, scope=request.scope)
        return request

    # --- REQUESTED -> CODE_ISSUED | DENIED ---

    def approve(self, request: AuthorizationRequest, merchant_id: str) -> AuthorizationCode:
        if not merchant_id:
            raise InvalidRequest("merchant_id is required")
        client = self.registry.lookup(request.client_id)
        if client is None or not client.is_active:
            raise InvalidClient("Invalid client_id")

        code_value = credentials.generate_authorization_code()
        code = self.store.codes.put(code_value, AuthorizationCode(
            code=code_value,
            client_id=request.client_id,
            redirect_uri=request.redirect_uri,
            scopes=request.scopes,
            merchant_id=merchant_id,
            state=request.state,
        ), ttl=self.settings.auth_code_ttl)
        audit("authorize_approved", client_id=request.client_id, merchant_id=merchant_id,
              scope=request.scope)
        logger.info("authorize_approved: client=%s code=%s", request.client_id, redact(code_value))
        return code

    def deny(self, request: AuthorizationRequest) -> DeniedResult:
        audit("authorize_denied", client_id=request.client_id)
        return DeniedResult(redirect_uri=request.redirect_uri, state=request.state)

    # --- CODE_ISSUED -> TOKENS_ISSUED ---

    def exchange_authorization_code(self, client_id: str, client_secret: str,
                                    code: str, redirect_uri: str) -> TokenResponse:
        if not code or not redirect_uri:
            raise InvalidRequest("Missing code or redirect_uri")
        client = self.registry.authenticate(client_id, client_secret)

        record = self.store.codes.consume_once(code)
        if record is None:
            audit("code_rejected", client_id=client_id, reason="unknown_expired_or_used")
            raise InvalidGrant("Invalid or expired authorization code")
        if record.client_id != client.client_id or record.redirect_uri != redirect_uri:
            audit("code_rejected", client_id=client_id, reason="binding_mismatch")
            raise InvalidGrant("Invalid or expired authorization code")

        audit("code_redeemed", client_id=client_id, merchant_id=record.merchant_id)
        access = self._issue_access_token(client, record.merchant_id, record.scopes)

        refresh_value = credentials.generate_refresh_token()
        self.store.refresh_tokens.put(refresh_value, RefreshTokenRecord(
            token=refresh_value,
            merchant_id=record.merchant_id,
            app_id=client.app_id,
            client_id=client.client_id,
            scopes=record.scopes,
        ), ttl=self.settings.refresh_token_ttl)

        audit("token_issued", client_id=client_id, merchant_id=record.merchant_id,
              scope=record.scope, expires_in=self.settings.access_token_ttl)
        return TokenResponse(
            access_token=access.token,
            expires_in=self.settings.access_token_ttl,
            scopes=access.scopes,
            merchant_id=record.merchant_id,
            refresh_token=refresh_value,
        )

    def exchange_refresh_token(self, client_id: str, client_secret: str,
                               refresh_token: str) -> TokenResponse:
        if not refresh_token:
            raise InvalidRequest("Missing refresh_token")
        client = self.registry.authenticate(client_id, client_secret)

        record = self.store.refresh_tokens.get(refresh_token)
        if record is None or record.client_id != client.client_id:
            audit("token_rejected", client_id=client_id, kind="refresh_token")
            raise InvalidGrant("Invalid or expired refresh token")

        scopes = self.refresh_scopes(record, client)
        access = self._issue_access_token(client, record.merchant_id, scopes,
                                          app_id=record.app_id)
        audit("token_refreshed", client_id=client_id, merchant_id=record.merchant_id,
              scope=" ".join(scopes))
        return TokenResponse(
            access_token=access.token,
            expires_in=self.settings.access_token_ttl,
            scopes=access.scopes,
            merchant_id=record.merchant_id,
        )

    def refresh_scopes(self, record: RefreshTokenRecord, client: Client) -> tuple[str, ...]:
        """Scopes for an access token minted from ``record``.

        The fixed default set is narrowed to what ``client`` was registered
        for, so a refresh never widens the client's grant.
        """
        if self.settings.refresh_scope_policy is RefreshScopePolicy.DEFAULT:
            return tuple(s for s in self.settings.default_refresh_scopes
                         if s in client.granted_scopes)
        return record.scopes

    # --- revocation ---

    def revoke(self, client_id: str, client_secret: str, token: str) -> bool:
        """Delete an access or refresh token owned by the calling client.

        Unknown tokens, or tokens owned by another client, are a silent
        no-op so the endpoint cannot be used to probe for live tokens.
        """
        if not token:
            raise InvalidRequest("Missing token")
        client = self.registry.authenticate(client_id, client_secret)

        for kind, store in (("access_token", self.store.access_tokens),
                            ("refresh_token", self.store.refresh_tokens)):
            record = store.get(token)
            if record is not None and record.client_id == client.client_id:
                store.delete(token)
                audit("token_revoked", client_id=client_id, kind=kind)
                return True
        return False

    # --- internal ---

    def _issue_access_token(self, client: Client, merchant_id: str,
                            scopes: tuple[str, ...],
                            app_id: str | None = None) -> AccessTokenRecord:
        app_id = app_id or client.app_id
        token, _claims = self.signer.sign_access_token(
            merchant_id=merchant_id,
            app_id=app_id,
            client_id=client.client_id,
            scopes=scopes,
            ttl=self.settings.access_token_ttl,
        )
        record = self.store.access_tokens.put(token, AccessTokenRecord(
            token=token,
            merchant_id=merchant_id,
            app_id=app_id,
            client_id=client.client_id,
            scopes=tuple(scopes),
        ), ttl=self.settings.access_token_ttl)
        logger.info("token_issued: client=%s access=%s", client.client_id, redact(token))
        return record
