"""
oauth_errors.py — OAuth 2.0 error taxonomy for the grant engine.

Every failure the engine can report is an ``OAuthError`` subclass carrying
the RFC 6749 / RFC 6750 ``error`` code and the HTTP status the route layer
should answer with. Descriptions are safe to return to callers: they never
contain token, code or secret material.
"""

from typing import Any


class OAuthError(Exception):
    error = "server_error"
    status_code = 500
    default_description = "Internal server error"

    def __init__(self, description: str | None = None):
        self.description = description or self.default_description
        super().__init__(self.description)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error, "error_description": self.description}


class InvalidRequest(OAuthError):
    error = "invalid_request"
    status_code = 400
    default_description = "Malformed or missing request parameter"


class InvalidScope(InvalidRequest):
    error = "invalid_scope"
    default_description = "Requested scope is invalid"


class InvalidRedirectURI(InvalidRequest):
    default_description = "Valid absolute redirect URI is required"


class RedirectMismatch(InvalidRequest):
    default_description = "Redirect URI mismatch"


class UnsupportedGrantType(InvalidRequest):
    error = "unsupported_grant_type"
    default_description = "Invalid grant_type"


class InvalidClient(OAuthError):
    error = "invalid_client"
    status_code = 401
    default_description = "Client authentication failed"


class InvalidGrant(OAuthError):
    error = "invalid_grant"
    status_code = 400
    default_description = "Invalid, expired or already used grant"


class MissingToken(OAuthError):
    error = "invalid_request"
    status_code = 401
    default_description = "Missing or invalid authorization header"


class InvalidToken(OAuthError):
    error = "invalid_token"
    status_code = 401
    default_description = "Invalid, expired or revoked access token"


class InsufficientScope(OAuthError):
    error = "insufficient_scope"
    status_code = 403
    default_description = "Token lacks the required scope"

    def __init__(self, required: list[str] | None = None,
                 available: list[str] | None = None,
                 description: str | None = None):
        self.required = list(required or [])
        self.available = list(available or [])
        if description is None and required is not None:
            description = (
                f"Required scopes: {', '.join(self.required)}. "
                f"Available scopes: {', '.join(self.available)}"
            )
        super().__init__(description)


class AccessDenied(OAuthError):
    error = "access_denied"
    status_code = 403
    default_description = "Access denied"


class NotFound(OAuthError):
    error = "not_found"
    status_code = 404
    default_description = "Resource not found"


class RateLimited(OAuthError):
    error = "rate_limit_exceeded"
    status_code = 429
    default_description = "Too many requests"


class ServerError(OAuthError):
    pass
