"""
oauth_audit.py — structured audit trail and logging setup.

Audit entries are single-line JSON objects on the ``merchant-oauth-audit``
logger so they can be shipped to a JSON-lines file separately from the
operational log.
"""

import json
import logging
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger("merchant-oauth")
audit_logger = logging.getLogger("merchant-oauth-audit")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
REDACT_PREFIX = 8


def audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry, default=str))


def redact(secret: str | None) -> str:
    """Shorten a token/code/secret so it can be logged without leaking it."""
    if not secret:
        return "none"
    return secret[:REDACT_PREFIX] + "..."


def configure_logging(audit_path: str | Path | None = None,
                      level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)

    if audit_path is None:
        return
    path = Path(audit_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
    logger.info("audit log: %s", path)
