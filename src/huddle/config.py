from __future__ import annotations

import os
from dataclasses import dataclass

from .retry import RetryPolicy


@dataclass(frozen=True)
class EngineConfig:
    txn_max_attempts: int = 25
    transient_max_attempts: int = 5
    publish_max_attempts: int = 10
    backoff_base_ms: int = 10
    backoff_max_ms: int = 1000

    def txn_policy(self) -> RetryPolicy:
        return RetryPolicy(self.txn_max_attempts, self.backoff_base_ms, self.backoff_max_ms)

    def transient_policy(self) -> RetryPolicy:
        return RetryPolicy(self.transient_max_attempts, self.backoff_base_ms, self.backoff_max_ms)

    def publish_policy(self) -> RetryPolicy:
        return RetryPolicy(self.publish_max_attempts, self.backoff_base_ms, self.backoff_max_ms)


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_int(name: str, default: int) -> int:
    parsed = _parse_non_negative_int(name, default)
    if parsed == 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def load_engine_config_from_env() -> EngineConfig:
    base_ms = _parse_non_negative_int("HUDDLE_BACKOFF_BASE_MS", 10)
    max_ms = _parse_non_negative_int("HUDDLE_BACKOFF_MAX_MS", 1000)
    return EngineConfig(
        txn_max_attempts=_parse_positive_int("HUDDLE_TXN_MAX_ATTEMPTS", 25),
        transient_max_attempts=_parse_positive_int("HUDDLE_TRANSIENT_MAX_ATTEMPTS", 5),
        publish_max_attempts=_parse_positive_int("HUDDLE_PUBLISH_MAX_ATTEMPTS", 10),
        backoff_base_ms=base_ms,
        backoff_max_ms=max(base_ms, max_ms),
    )
