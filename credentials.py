"""
credentials.py — credential generation and bearer-token signing.

Identifiers and secrets come from ``secrets`` (CSPRNG). Access tokens are
HS256 JWTs carrying merchant_id / app_id / client_id / scopes plus the
standard iss / aud / iat / exp / jti claims, so they can be verified
without consulting process memory. Revocation is layered on top by the
grant store lookup in access_control.py.
"""

import hmac
import secrets
import time
from typing import Any, Callable, Iterable

import jwt

from oauth_errors import InvalidToken

JWT_ALGORITHM = "HS256"
REQUIRED_CLAIMS = ["exp", "iat", "iss", "aud", "jti", "merchant_id", "app_id", "client_id"]


# ---------------------------------------------------------------------------
# Random identifiers
# ---------------------------------------------------------------------------

def generate_app_id() -> str:
    return f"app_{secrets.token_hex(8)}"


def generate_client_id() -> str:
    # 96 bits
    return f"client_{secrets.token_hex(12)}"


def generate_client_secret() -> str:
    # 256 bits
    return f"secret_{secrets.token_urlsafe(32)}"


def generate_authorization_code() -> str:
    return secrets.token_hex(32)


def generate_state() -> str:
    return secrets.token_hex(16)


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(32)


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two secrets without leaking the matching prefix length."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# ---------------------------------------------------------------------------
# Token signing
# ---------------------------------------------------------------------------

class TokenSigner:
    """Signs and verifies access-token JWTs.

    The key is fixed at construction and never mutated afterwards, so one
    instance is shared by every request in the process.
    """

    def __init__(self, secret: str, issuer: str, audience: str,
                 clock: Callable[[], float] = time.time):
        if not secret:
            raise ValueError("Token signing key must not be empty")
        self._secret = secret
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    def sign_access_token(
        self,
        merchant_id: str,
        app_id: str,
        client_id: str,
        scopes: Iterable[str],
        ttl: int,
    ) -> tuple[str, dict[str, Any]]:
        """Mint a signed access token. Returns ``(token, claims)``."""
        now = int(self._clock())
        claims = {
            "merchant_id": merchant_id,
            "app_id": app_id,
            "client_id": client_id,
            "scopes": list(scopes),
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + ttl,
            "jti": secrets.token_hex(16),
        }
        token = jwt.encode(claims, self._secret, algorithm=JWT_ALGORITHM)
        return token, claims

    def verify(self, token: str) -> dict[str, Any]:
        """Check signature, issuer, audience and expiry.

        Raises InvalidToken on any failure; the cause is kept out of the
        exception text so callers cannot use it as an oracle.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                issuer=self.issuer,
                audience=self.audience,
                options={"require": REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError:
            raise InvalidToken("Access token expired")
        except jwt.InvalidTokenError:
            raise InvalidToken()
        if not isinstance(claims.get("scopes", []), list):
            raise InvalidToken()
        return claims
