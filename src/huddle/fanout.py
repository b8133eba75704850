from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .hub import Snapshot
from .store import RemoteStore
from .streams import ValueStream

logger = logging.getLogger(__name__)

Transform = Callable[[Snapshot], Any]


def _copy_value(snapshot: Snapshot) -> Any:
    return copy.deepcopy(snapshot.value)


@dataclass(eq=False)
class _Local:
    stream: ValueStream
    transform: Transform
    finish_when_absent: bool

    def deliver(self, snapshot: Snapshot) -> None:
        if snapshot.value is None and self.finish_when_absent:
            self.stream.finish()
            return
        self.stream.put(self.transform(snapshot))


@dataclass(eq=False)
class _Feed:
    key: str
    source: ValueStream[Snapshot]
    guard: Optional[ValueStream[Snapshot]] = None
    locals: List[_Local] = field(default_factory=list)
    last: Optional[Snapshot] = None
    tasks: List[asyncio.Task] = field(default_factory=list)


class SharedFeeds:
    """Multiplexes local subscribers onto one store subscription per key.

    Every local subscriber of a key sees the same snapshots in the order the
    store committed them; a snapshot older than the last one delivered is
    dropped. A feed may be guarded by another key: once the guard key is
    deleted the feed terminates and all of its local streams finish.
    """

    def __init__(self, store: RemoteStore) -> None:
        self._store = store
        self._feeds: Dict[str, _Feed] = {}
        # serializes feed creation so a key never gets two store subscriptions
        self._open_lock = asyncio.Lock()

    async def subscribe(
        self,
        key: str,
        *,
        transform: Transform = _copy_value,
        finish_when_absent: bool = False,
        guard_key: str | None = None,
    ) -> ValueStream:
        async with self._open_lock:
            feed = self._feeds.get(key)
            if feed is None:
                feed = await self._open(key, guard_key)

            local_stream: ValueStream = ValueStream(on_close=lambda stream: self._detach(feed, stream))
            local = _Local(stream=local_stream, transform=transform, finish_when_absent=finish_when_absent)
            feed.locals.append(local)
            if feed.last is not None:
                local.deliver(feed.last)
            return local_stream

    def active_keys(self) -> list[str]:
        return sorted(self._feeds)

    def local_count(self, key: str) -> int:
        feed = self._feeds.get(key)
        return len(feed.locals) if feed else 0

    async def close(self) -> None:
        for feed in list(self._feeds.values()):
            await self._terminate(feed)

    async def _open(self, key: str, guard_key: str | None) -> _Feed:
        source = await self._store.subscribe(key)
        guard = None
        if guard_key is not None:
            try:
                guard = await self._store.subscribe(guard_key)
            except BaseException:
                await source.close()
                raise
        feed = _Feed(key=key, source=source, guard=guard)
        self._feeds[key] = feed
        feed.tasks.append(asyncio.create_task(self._pump(feed)))
        if guard is not None:
            feed.tasks.append(asyncio.create_task(self._watch_guard(feed)))
        logger.debug("opened shared feed for %s", key)
        return feed

    async def _pump(self, feed: _Feed) -> None:
        async for snapshot in feed.source:
            if feed.last is not None and snapshot.version < feed.last.version:
                continue
            feed.last = snapshot
            if snapshot.value is None and feed.locals and all(local.finish_when_absent for local in feed.locals):
                break
            for local in list(feed.locals):
                local.deliver(snapshot)
        # the key is gone for every local, or the store ended the subscription
        await self._terminate(feed)

    async def _watch_guard(self, feed: _Feed) -> None:
        assert feed.guard is not None
        async for snapshot in feed.guard:
            if snapshot.value is None:
                logger.debug("guard for %s deleted, terminating feed", feed.key)
                break
        await self._terminate(feed)

    async def _detach(self, feed: _Feed, stream: ValueStream) -> None:
        feed.locals = [local for local in feed.locals if local.stream is not stream]
        if not feed.locals:
            await self._terminate(feed)

    async def _terminate(self, feed: _Feed) -> None:
        """Tear down the store subscriptions of ``feed``, then end its local streams.

        A consumer that sees its stream end can rely on the store side already
        being released.
        """

        if self._feeds.get(feed.key) is not feed:
            return
        self._feeds.pop(feed.key, None)
        current = asyncio.current_task()
        others = [task for task in feed.tasks if task is not current]
        for task in others:
            task.cancel()
        await asyncio.gather(*others, return_exceptions=True)
        await feed.source.close()
        if feed.guard is not None:
            await feed.guard.close()
        locals_, feed.locals = feed.locals, []
        for local in locals_:
            local.stream.finish()
        logger.debug("closed shared feed for %s", feed.key)
