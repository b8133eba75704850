from __future__ import annotations

from huddle.config import EngineConfig
from huddle.errors import StoreUnavailable
from huddle.kinds import KindCatalog, SessionKind
from huddle.store import InMemoryStore

FAST_CONFIG = EngineConfig(
    txn_max_attempts=25,
    transient_max_attempts=3,
    publish_max_attempts=10,
    backoff_base_ms=0,
    backoff_max_ms=0,
)


def place_mark(state, inputs):
    board = list(state.get("board") or [""] * 9)
    board[inputs["cell"]] = inputs["mark"]
    state["board"] = board
    return state


def make_catalog() -> KindCatalog:
    return KindCatalog(
        [
            SessionKind(kind="duel", min_members=2, max_members=2, title="Duel", authors="the table", turn_based=True, reducer=place_mark),
            SessionKind(kind="party", min_members=2, max_members=4, turn_based=True),
            SessionKind(kind="crowd", min_members=1, max_members=10),
        ]
    )


class FlakyStore(InMemoryStore):
    """Fails the first ``failures`` compare-and-set calls as if the network dropped."""

    def __init__(self, failures: int, **kwargs) -> None:
        super().__init__(**kwargs)
        self.failures = failures
        self.cas_calls = 0

    async def compare_and_set(self, key, expected_version, value):
        self.cas_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailable("simulated outage")
        return await super().compare_and_set(key, expected_version, value)


class LostAckStore(InMemoryStore):
    """Commits a write or compare-and-set, then reports the store as unreachable once.

    Arm it with ``drop_next`` set to a key prefix; the next matching commit
    lands but its acknowledgement is lost.
    """

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.drop_next: str | None = None
        self.dropped = 0

    def _lose_ack(self, key: str) -> None:
        if self.drop_next is not None and key.startswith(self.drop_next):
            self.drop_next = None
            self.dropped += 1
            raise StoreUnavailable("acknowledgement lost")

    async def write(self, key, value):
        committed = await super().write(key, value)
        self._lose_ack(key)
        return committed

    async def compare_and_set(self, key, expected_version, value):
        committed = await super().compare_and_set(key, expected_version, value)
        if committed is not None:
            self._lose_ack(key)
        return committed


async def drain(stream, count: int, timeout: float = 1.0) -> list:
    return [await stream.next(timeout=timeout) for _ in range(count)]
