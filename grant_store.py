"""
grant_store.py — time-bounded storage for codes, access and refresh tokens.

Each record kind lives in its own ``TimedStore``: a dict guarded by a
``threading.Lock``. The lock is held only for O(1) dict operations and
never across I/O, so the store is safe to call from request handlers
running on the event loop and from worker threads alike.

Expiry is lazy: ``get``/``consume_once`` drop a record they find past its
``expires_at``. Records that are never looked up again stay in memory
until ``sweep()`` runs; ``run_sweeper`` does that periodically when
OAUTH_SWEEP_INTERVAL is set.
"""

import asyncio
import dataclasses
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from oauth_audit import audit, redact

logger = logging.getLogger("merchant-oauth")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    scopes: tuple[str, ...]
    merchant_id: str
    state: str = ""
    created_at: float = 0.0
    expires_at: float = 0.0

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)


@dataclass(frozen=True)
class AccessTokenRecord:
    token: str
    merchant_id: str
    app_id: str
    client_id: str
    scopes: tuple[str, ...]
    created_at: float = 0.0
    expires_at: float = 0.0


@dataclass(frozen=True)
class RefreshTokenRecord:
    token: str
    merchant_id: str
    app_id: str
    client_id: str
    # Scope of the original grant, used when refreshed tokens inherit it.
    scopes: tuple[str, ...] = ()
    created_at: float = 0.0
    expires_at: float = 0.0


R = TypeVar("R")


# ---------------------------------------------------------------------------
# TimedStore
# ---------------------------------------------------------------------------

class TimedStore(Generic[R]):
    """Keyed records with an absolute expiry, safe under concurrent callers."""

    def __init__(self, kind: str, clock: Callable[[], float] = time.time):
        self.kind = kind
        self._clock = clock
        self._records: dict[str, R] = {}
        self._lock = threading.Lock()

    def put(self, key: str, record: R, ttl: float) -> R:
        """Insert ``record`` under ``key`` expiring ``ttl`` seconds from now.

        Returns the stored copy with ``created_at``/``expires_at`` stamped.
        Keys are generator-produced and never reused, so an existing key is
        treated as a programming error.
        """
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        now = self._clock()
        stamped = dataclasses.replace(record, created_at=now, expires_at=now + ttl)
        with self._lock:
            if key in self._records:
                raise ValueError(f"Duplicate {self.kind} key {redact(key)}")
            self._records[key] = stamped
        return stamped

    def get(self, key: str) -> R | None:
        now = self._clock()
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            if now > record.expires_at:
                del self._records[key]
                logger.debug("%s %s expired on lookup", self.kind, redact(key))
                return None
            return record

    def consume_once(self, key: str) -> R | None:
        """Atomically look up and remove ``key``.

        Of any number of concurrent callers racing the same key, exactly
        one receives the record; the rest get None.
        """
        now = self._clock()
        with self._lock:
            record = self._records.pop(key, None)
        if record is None or now > record.expires_at:
            return None
        return record

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    def sweep(self) -> int:
        """Drop every expired record. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, r in self._records.items() if now > r.expires_at]
            for k in expired:
                del self._records[k]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


# ---------------------------------------------------------------------------
# GrantStore
# ---------------------------------------------------------------------------

class GrantStore:
    """The three record kinds the authorization engine issues.

    Callers only ever see the frozen records returned by the store methods;
    the underlying dicts are never handed out.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.codes: TimedStore[AuthorizationCode] = TimedStore("authorization_code", clock)
        self.access_tokens: TimedStore[AccessTokenRecord] = TimedStore("access_token", clock)
        self.refresh_tokens: TimedStore[RefreshTokenRecord] = TimedStore("refresh_token", clock)

    def sweep(self) -> dict[str, int]:
        counts = {
            store.kind: store.sweep()
            for store in (self.codes, self.access_tokens, self.refresh_tokens)
        }
        if any(counts.values()):
            audit("store_swept", **counts)
            logger.info("grant store: swept %s", counts)
        return counts

    def stats(self) -> dict[str, int]:
        return {
            "authorization_codes": len(self.codes),
            "access_tokens": len(self.access_tokens),
            "refresh_tokens": len(self.refresh_tokens),
        }


async def run_sweeper(store: GrantStore, interval: float) -> None:
    """Background loop that sweeps expired records every ``interval`` seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            store.sweep()
        except Exception:
            logger.exception("grant store: periodic sweep failed")
