"""
access_control.py — bearer-token authentication and scope checks.

A token is accepted only when both checks pass:
  1. the JWT verifies (signature, issuer, audience, expiry), and
  2. a live record for it still exists in the grant store.
The second check is what lets a deleted record revoke a token whose
signature is still good.
"""

import logging
from dataclasses import dataclass
from typing import Iterable

from credentials import TokenSigner
from grant_store import GrantStore
from oauth_audit import audit, redact
from oauth_errors import AccessDenied, InsufficientScope, InvalidToken, MissingToken

logger = logging.getLogger("merchant-oauth")


@dataclass(frozen=True)
class Principal:
    merchant_id: str
    app_id: str
    client_id: str
    scopes: frozenset[str]

    @property
    def principal_id(self) -> str:
        return self.merchant_id


def extract_bearer_token(authorization: str | None) -> str:
    # Auth scheme names are case-insensitive (RFC 7235).
    if not authorization or authorization[:7].lower() != "bearer ":
        raise MissingToken()
    token = authorization[7:].strip()
    if not token:
        raise MissingToken()
    return token


def _as_list(scopes: str | Iterable[str]) -> list[str]:
    if isinstance(scopes, str):
        return [scopes]
    return list(scopes)


class AccessControl:
    def __init__(self, signer: TokenSigner, store: GrantStore):
        self.signer = signer
        self.store = store

    def authenticate(self, authorization: str | None) -> Principal:
        """Resolve an ``Authorization`` header value to a Principal."""
        token = extract_bearer_token(authorization)
        return self.authenticate_token(token)

    def authenticate_token(self, token: str) -> Principal:
        try:
            claims = self.signer.verify(token)
        except InvalidToken as e:
            audit("token_rejected", reason=e.description, token=redact(token))
            raise

        record = self.store.access_tokens.get(token)
        if record is None:
            audit("token_rejected", reason="not_found_or_revoked", token=redact(token))
            raise InvalidToken("Access token not found or revoked")

        if (record.merchant_id != claims["merchant_id"]
                or record.client_id != claims["client_id"]
                or record.app_id != claims["app_id"]):
            logger.warning("token record disagrees with claims: %s", redact(token))
            raise InvalidToken()

        return Principal(
            merchant_id=record.merchant_id,
            app_id=record.app_id,
            client_id=record.client_id,
            scopes=frozenset(record.scopes),
        )

    # --- decisions ---

    @staticmethod
    def require_all(principal: Principal, required_scopes: str | Iterable[str]) -> bool:
        return all(s in principal.scopes for s in _as_list(required_scopes))

    @staticmethod
    def require_any(principal: Principal, required_scopes: str | Iterable[str]) -> bool:
        return any(s in principal.scopes for s in _as_list(required_scopes))

    @staticmethod
    def authorize_resource_access(principal: Principal, resource_owner_id: str) -> bool:
        return principal.merchant_id == resource_owner_id

    # --- enforcing variants used by the route layer ---

    def enforce_all(self, principal: Principal, required_scopes: str | Iterable[str]) -> None:
        required = _as_list(required_scopes)
        if not self.require_all(principal, required):
            audit("scope_rejected", client_id=principal.client_id, required=required)
            raise InsufficientScope(required, sorted(principal.scopes))

    def enforce_any(self, principal: Principal, required_scopes: str | Iterable[str]) -> None:
        required = _as_list(required_scopes)
        if not self.require_any(principal, required):
            audit("scope_rejected", client_id=principal.client_id, required=required)
            raise InsufficientScope(
                required, sorted(principal.scopes),
                description=(f"Required one of: {', '.join(required)}. "
                             f"Available scopes: {', '.join(sorted(principal.scopes))}"),
            )

    def enforce_owner(self, principal: Principal, resource_owner_id: str) -> None:
        if not self.authorize_resource_access(principal, resource_owner_id):
            audit("owner_rejected", client_id=principal.client_id,
                  merchant_id=principal.merchant_id, requested=resource_owner_id)
            raise AccessDenied("Access denied to this merchant data")
