from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .errors import Conflict, StoreUnavailable
from .hub import Snapshot, SubscriptionHub
from .keys import new_push_id
from .retry import RetryPolicy
from .streams import ValueStream

logger = logging.getLogger(__name__)


class _Abort:
    def __repr__(self) -> str:
        return "ABORT"


ABORT: Any = _Abort()
"""Returned from a transaction function to leave the stored value untouched."""


@dataclass(frozen=True)
class TransactionResult:
    committed: bool
    value: Any
    version: int


TransactionFn = Callable[[Any], Any]


def merge_values(stored: Any, update: Any) -> Any:
    """Apply a merge update: top-level object fields are set, ``None`` fields removed."""

    if not isinstance(stored, dict) or not isinstance(update, dict):
        return update
    merged = dict(stored)
    for field, value in update.items():
        if value is None:
            merged.pop(field, None)
        else:
            merged[field] = value
    return merged


class RemoteStore(ABC):
    """Key-addressed document store the engine is written against.

    Implementations provide versioned reads, unconditional merge/replace,
    compare-and-set, delete and change subscriptions. Transactions and
    unique-key push are built on top of those primitives here.
    """

    def __init__(self, txn_policy: RetryPolicy | None = None) -> None:
        self.txn_policy = txn_policy or RetryPolicy(max_attempts=25)

    @abstractmethod
    async def read_versioned(self, key: str) -> Snapshot:
        ...

    @abstractmethod
    async def write(self, key: str, value: Any) -> Snapshot:
        """Merge ``value`` into the stored document unconditionally."""

    @abstractmethod
    async def replace(self, key: str, value: Any) -> Snapshot:
        ...

    @abstractmethod
    async def compare_and_set(self, key: str, expected_version: int, value: Any) -> Optional[Snapshot]:
        """Commit ``value`` only if ``key`` is still at ``expected_version``.

        Returns the committed snapshot, or ``None`` when another writer got
        there first. A ``None`` value deletes the key.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def subscribe(self, key: str) -> ValueStream[Snapshot]:
        """Stream the current snapshot of ``key`` followed by every committed change."""

    async def close(self) -> None:
        return None

    async def read(self, key: str) -> Any:
        return (await self.read_versioned(key)).value

    async def push(self, parent_key: str, value: Any) -> str:
        child_id = new_push_id()
        await self.write(parent_key, {child_id: value})
        return child_id

    async def transact(
        self,
        key: str,
        fn: TransactionFn,
        *,
        policy: RetryPolicy | None = None,
    ) -> TransactionResult:
        """Atomically replace the value at ``key`` with ``fn(current)``.

        ``fn`` receives a private copy of the current value and is re-run
        against the fresh value whenever a concurrent commit wins the race.
        Exceptions raised by ``fn`` propagate immediately.
        """

        policy = policy or self.txn_policy
        attempt = 0
        while True:
            attempt += 1
            current = await self.read_versioned(key)
            proposed = fn(copy.deepcopy(current.value))
            if proposed is ABORT:
                return TransactionResult(committed=False, value=current.value, version=current.version)
            committed = await self.compare_and_set(key, current.version, proposed)
            if committed is not None:
                return TransactionResult(committed=True, value=committed.value, version=committed.version)
            if attempt >= policy.max_attempts:
                logger.warning("transaction on %s gave up after %d attempts", key, attempt)
                raise Conflict(f"transaction on {key} did not commit after {attempt} attempts")
            logger.debug("transaction on %s lost race at version %d, retrying", key, current.version)
            await policy.backoff(attempt)


class InMemoryStore(RemoteStore):
    """Process-local store with store-wide commit versions.

    ``latency_s`` is awaited at every boundary call so concurrent callers
    interleave the way remote clients do.
    """

    def __init__(self, *, latency_s: float = 0.0, txn_policy: RetryPolicy | None = None) -> None:
        super().__init__(txn_policy)
        self._latency_s = latency_s
        # deleted keys keep a tombstone so versions never go backwards
        self._docs: Dict[str, tuple[Any, int]] = {}
        self._clock = 0
        self._hub = SubscriptionHub()
        self._closed = False

    async def _round_trip(self) -> None:
        await asyncio.sleep(self._latency_s)
        if self._closed:
            raise StoreUnavailable("store is closed")

    def _current(self, key: str) -> Snapshot:
        value, version = self._docs.get(key, (None, 0))
        return Snapshot(key=key, value=copy.deepcopy(value), version=version)

    def _commit(self, key: str, value: Any) -> Snapshot:
        self._clock += 1
        stored = copy.deepcopy(value)
        self._docs[key] = (stored, self._clock)
        self._hub.broadcast(Snapshot(key=key, value=stored, version=self._clock))
        return Snapshot(key=key, value=copy.deepcopy(stored), version=self._clock)

    async def read_versioned(self, key: str) -> Snapshot:
        await self._round_trip()
        return self._current(key)

    async def write(self, key: str, value: Any) -> Snapshot:
        await self._round_trip()
        stored, _ = self._docs.get(key, (None, 0))
        return self._commit(key, merge_values(stored, value))

    async def replace(self, key: str, value: Any) -> Snapshot:
        await self._round_trip()
        return self._commit(key, value)

    async def compare_and_set(self, key: str, expected_version: int, value: Any) -> Optional[Snapshot]:
        await self._round_trip()
        _, version = self._docs.get(key, (None, 0))
        if version != expected_version:
            return None
        return self._commit(key, value)

    async def delete(self, key: str) -> None:
        await self._round_trip()
        if self._docs.get(key, (None, 0))[0] is None:
            return
        self._commit(key, None)

    async def subscribe(self, key: str) -> ValueStream[Snapshot]:
        await self._round_trip()
        return self._hub.open(self._current(key))

    def subscriber_count(self, key: str) -> int:
        return self._hub.subscriber_count(key)

    async def close(self) -> None:
        self._closed = True
        self._hub.close_all()
