"""
oauth_settings.py — runtime configuration for the merchant OAuth server.

All knobs come from environment variables (see ``OAuthSettings.from_env``).
Pre-registered clients can be seeded from a YAML file, in the same shape as
``clients.example.yaml``.
"""

import logging
import os
import secrets
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import yaml

logger = logging.getLogger("merchant-oauth")

# Fixed scope vocabulary. Anything else is rejected at registration.
VALID_SCOPES = (
    "read_products",
    "read_orders",
    "read_profile",
    "write_products",
    "write_orders",
)

DEFAULT_ISSUER = "bitcommerce-oauth-api"
DEFAULT_AUDIENCE = "merchant-apps"
AUTH_CODE_TTL = 10 * 60  # 10 minutes
ACCESS_TOKEN_TTL = 3600  # 1 hour
REFRESH_TOKEN_TTL = 7 * 86400  # 7 days
DEMO_MERCHANT_ID = "merchant_123"


class RefreshScopePolicy(Enum):
    INHERIT = "inherit"
    DEFAULT = "default"


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < 0:
        raise ValueError(f"{name} must be >= 0, got {value}")
    return value


def parse_scopes(raw: str | None) -> tuple[str, ...]:
    """Split a space-delimited scope string, dropping blanks and duplicates."""
    if not raw:
        return ()
    seen: dict[str, None] = {}
    for part in raw.split():
        seen.setdefault(part, None)
    return tuple(seen)


@dataclass
class OAuthSettings:
    jwt_secret: str = field(default_factory=lambda: secrets.token_urlsafe(48), repr=False)
    issuer: str = DEFAULT_ISSUER
    audience: str = DEFAULT_AUDIENCE
    auth_code_ttl: int = AUTH_CODE_TTL
    access_token_ttl: int = ACCESS_TOKEN_TTL
    refresh_token_ttl: int = REFRESH_TOKEN_TTL
    refresh_scope_policy: RefreshScopePolicy = RefreshScopePolicy.INHERIT
    default_refresh_scopes: tuple[str, ...] = ("read_products", "read_orders")
    demo_merchant_id: str = DEMO_MERCHANT_ID
    sweep_interval: int = 0
    rate_limit_window: int = 15 * 60
    rate_limit_max_requests: int = 100
    trusted_proxies: str = "127.0.0.1"
    clients_file: Path | None = None
    audit_log: Path | None = None

    def __post_init__(self) -> None:
        unknown = [s for s in self.default_refresh_scopes if s not in VALID_SCOPES]
        if unknown:
            raise ValueError(f"Invalid default refresh scopes: {', '.join(unknown)}")
        for name in ("auth_code_ttl", "access_token_ttl", "refresh_token_ttl"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "OAuthSettings":
        env = os.environ if env is None else env

        kwargs: dict[str, Any] = {}
        secret = env.get("OAUTH_JWT_SECRET")
        if secret:
            kwargs["jwt_secret"] = secret
        else:
            logger.warning("OAUTH_JWT_SECRET not set; using an ephemeral signing key "
                           "(tokens will not survive a restart)")

        policy_raw = env.get("OAUTH_REFRESH_SCOPE_POLICY", "inherit").lower()
        try:
            policy = RefreshScopePolicy(policy_raw)
        except ValueError:
            raise ValueError(
                f"Invalid OAUTH_REFRESH_SCOPE_POLICY '{policy_raw}'. "
                f"Valid options: {', '.join(p.value for p in RefreshScopePolicy)}"
            )

        if "OAUTH_DEFAULT_REFRESH_SCOPES" in env:
            kwargs["default_refresh_scopes"] = parse_scopes(env["OAUTH_DEFAULT_REFRESH_SCOPES"])
        if env.get("OAUTH_CLIENTS_FILE"):
            kwargs["clients_file"] = Path(env["OAUTH_CLIENTS_FILE"]).expanduser()
        if env.get("OAUTH_AUDIT_LOG"):
            kwargs["audit_log"] = Path(env["OAUTH_AUDIT_LOG"]).expanduser()

        return cls(
            issuer=env.get("OAUTH_ISSUER", DEFAULT_ISSUER),
            audience=env.get("OAUTH_AUDIENCE", DEFAULT_AUDIENCE),
            auth_code_ttl=_env_int(env, "OAUTH_AUTH_CODE_TTL", AUTH_CODE_TTL),
            access_token_ttl=_env_int(env, "OAUTH_ACCESS_TOKEN_TTL", ACCESS_TOKEN_TTL),
            refresh_token_ttl=_env_int(env, "OAUTH_REFRESH_TOKEN_TTL", REFRESH_TOKEN_TTL),
            refresh_scope_policy=policy,
            demo_merchant_id=env.get("OAUTH_DEMO_MERCHANT_ID", DEMO_MERCHANT_ID),
            sweep_interval=_env_int(env, "OAUTH_SWEEP_INTERVAL", 0),
            rate_limit_window=_env_int(env, "OAUTH_RATE_LIMIT_WINDOW", 15 * 60),
            rate_limit_max_requests=_env_int(env, "OAUTH_RATE_LIMIT_MAX_REQUESTS", 100),
            trusted_proxies=env.get("OAUTH_TRUSTED_PROXIES", "127.0.0.1"),
            **kwargs,
        )


def load_client_seeds(config_path: Path) -> list[dict[str, Any]]:
    """Load pre-registered client definitions from a YAML file.

    Expected shape::

        clients:
          sample-app:
            client_id: client_xyz123
            client_secret: secret_abc456
            redirect_uri: https://sampleapp.com/callback
            scopes: [read_products, read_orders]
    """
    if not config_path.exists():
        raise ValueError(f"Client seed file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "clients" not in raw:
        raise ValueError(f"Invalid client seed file: expected top-level 'clients' key in {config_path}")

    seeds: list[dict[str, Any]] = []
    for name, cfg in (raw["clients"] or {}).items():
        if not isinstance(cfg, dict):
            raise ValueError(f"Invalid client '{name}' in {config_path}: expected a mapping")
        missing = [k for k in ("client_id", "client_secret", "redirect_uri") if not cfg.get(k)]
        if missing:
            raise ValueError(
                f"Invalid client '{name}' in {config_path}: missing {', '.join(missing)}"
            )
        scopes = cfg.get("scopes", [])
        if isinstance(scopes, str):
            scopes = list(parse_scopes(scopes))
        seeds.append({
            "name": cfg.get("name", name),
            "client_id": str(cfg["client_id"]),
            "client_secret": str(cfg["client_secret"]),
            "redirect_uri": str(cfg["redirect_uri"]),
            "scopes": list(scopes),
            "app_id": cfg.get("app_id"),
        })
    return seeds
