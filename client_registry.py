"""
client_registry.py — registered third-party applications.

A client is created once with a generated client_id/client_secret, one
exact redirect URI and a subset of the fixed scope vocabulary. After that
only ``status`` ever changes; clients are disabled, never deleted.
"""

import dataclasses
import logging
import threading
import time
import urllib.parse
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable

import credentials
from oauth_audit import audit
from oauth_errors import InvalidClient, InvalidRedirectURI, InvalidRequest, InvalidScope
from oauth_settings import VALID_SCOPES

logger = logging.getLogger("merchant-oauth")

MAX_CLIENT_NAME = 256
MAX_REDIRECT_URI = 2048


class ClientStatus(Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


@dataclass(frozen=True)
class Client:
    app_id: str
    client_id: str
    client_secret: str
    name: str
    redirect_uri: str
    granted_scopes: tuple[str, ...]
    status: ClientStatus = ClientStatus.ACTIVE
    created_at: float = 0.0

    @property
    def is_active(self) -> bool:
        return self.status is ClientStatus.ACTIVE

    def public_view(self) -> dict[str, Any]:
        """Client metadata without the secret, for listings."""
        return {
            "app_id": self.app_id,
            "client_id": self.client_id,
            "name": self.name,
            "redirect_uri": self.redirect_uri,
            "scopes": list(self.granted_scopes),
            "status": self.status.value,
            "created_at": self.created_at,
        }


def validate_scopes(requested: Iterable[str]) -> tuple[str, ...]:
    requested = list(requested)
    invalid = [s for s in requested if s not in VALID_SCOPES]
    if invalid:
        raise InvalidScope(f"Invalid scopes: {', '.join(invalid)}")
    return tuple(dict.fromkeys(requested))


def validate_redirect_uri(uri: str) -> str:
    """Require an absolute http(s) URI with a host and no fragment."""
    if not isinstance(uri, str) or not uri or len(uri) > MAX_REDIRECT_URI:
        raise InvalidRedirectURI()
    try:
        parsed = urllib.parse.urlparse(uri)
    except ValueError:
        raise InvalidRedirectURI()
    if parsed.scheme not in ("http", "https") or not parsed.netloc or not parsed.hostname:
        raise InvalidRedirectURI()
    if parsed.fragment:
        raise InvalidRedirectURI("Redirect URI must not contain a fragment")
    return uri


class ClientRegistry:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._clients: dict[str, Client] = {}
        self._lock = threading.Lock()

    def register(self, name: str, redirect_uri: str,
                 requested_scopes: Iterable[str]) -> Client:
        name = (name or "").strip()
        if not name:
            raise InvalidRequest("App name is required")
        if len(name) > MAX_CLIENT_NAME:
            raise InvalidRequest(f"App name exceeds {MAX_CLIENT_NAME} characters")
        scopes = validate_scopes(requested_scopes)
        validate_redirect_uri(redirect_uri)

        client = Client(
            app_id=credentials.generate_app_id(),
            client_id=credentials.generate_client_id(),
            client_secret=credentials.generate_client_secret(),
            name=name,
            redirect_uri=redirect_uri,
            granted_scopes=scopes,
            created_at=self._clock(),
        )
        self._insert(client)
        audit("client_registered", client_id=client.client_id, app_id=client.app_id,
              client_name=name, scopes=list(scopes))
        logger.info("client_registered: %s (%s)", client.client_id, name)
        return client

    def seed(self, name: str, client_id: str, client_secret: str, redirect_uri: str,
             scopes: Iterable[str], app_id: str | None = None) -> Client:
        """Register a client with fixed credentials (config-file seeding)."""
        client = Client(
            app_id=app_id or credentials.generate_app_id(),
            client_id=client_id,
            client_secret=client_secret,
            name=name,
            redirect_uri=validate_redirect_uri(redirect_uri),
            granted_scopes=validate_scopes(scopes),
            created_at=self._clock(),
        )
        self._insert(client)
        logger.info("client_seeded: %s (%s)", client_id, name)
        return client

    def _insert(self, client: Client) -> None:
        with self._lock:
            if client.client_id in self._clients:
                raise ValueError(f"client_id already registered: {client.client_id}")
            self._clients[client.client_id] = client

    def lookup(self, client_id: str) -> Client | None:
        with self._lock:
            return self._clients.get(client_id)

    def authenticate(self, client_id: str, client_secret: str) -> Client:
        """Return the active client whose credentials match, else InvalidClient.

        The response never says whether the id or the secret was wrong.
        """
        client = self.lookup(client_id) if client_id else None
        # Compare against a dummy when the id is unknown so both paths do the same work.
        expected = client.client_secret if client else credentials.generate_client_secret()
        secret_ok = credentials.constant_time_equals(client_secret or "", expected)
        if client is None or not secret_ok or not client.is_active:
            audit("client_auth_failed", client_id=client_id)
            raise InvalidClient()
        return client

    def validate_redirect(self, client_id: str, redirect_uri: str) -> bool:
        """Exact string equality with the registered URI; no normalization."""
        client = self.lookup(client_id)
        return client is not None and client.redirect_uri == redirect_uri

    def disable(self, client_id: str) -> Client:
        with self._lock:
            client = self._clients.get(client_id)
            if client is None:
                raise InvalidClient()
            client = dataclasses.replace(client, status=ClientStatus.DISABLED)
            self._clients[client_id] = client
        audit("client_disabled", client_id=client_id)
        return client

    def list_clients(self) -> list[Client]:
        with self._lock:
            return sorted(self._clients.values(), key=lambda c: c.created_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)
