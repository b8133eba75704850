"""Logical key layout shared by every store implementation."""

from __future__ import annotations

import secrets
import time

METADATA_NAMESPACE = "session-metadata"
STATE_NAMESPACE = "session"
LOG_NAMESPACE = "session-log"


def metadata_key(session_id: str) -> str:
    return f"{METADATA_NAMESPACE}/{session_id}"


def state_key(session_id: str) -> str:
    return f"{STATE_NAMESPACE}/{session_id}"


def log_key(session_id: str) -> str:
    return f"{LOG_NAMESPACE}/{session_id}"


def session_keys(session_id: str) -> tuple[str, str, str]:
    return metadata_key(session_id), state_key(session_id), log_key(session_id)


def new_session_id() -> str:
    return f"s_{secrets.token_urlsafe(12)}"


def new_push_id() -> str:
    """Time-prefixed unique child id; lexical order follows creation time across milliseconds."""

    return f"{int(time.time() * 1000):012x}{secrets.token_hex(5)}"
