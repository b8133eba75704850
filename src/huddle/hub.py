from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Dict, List

from .streams import ValueStream


@dataclass(frozen=True)
class Snapshot:
    """The value stored at ``key`` as of commit ``version``; ``None`` means absent."""

    key: str
    value: Any
    version: int


def _private(snapshot: Snapshot) -> Snapshot:
    return Snapshot(key=snapshot.key, value=copy.deepcopy(snapshot.value), version=snapshot.version)


class SubscriptionHub:
    """Per-key change streams for a store.

    Every open stream receives its own copy of each committed snapshot, so a
    consumer mutating a delivered value cannot affect other subscribers or the
    store. Closing the store ends every stream through :meth:`close_all`.
    """

    def __init__(self) -> None:
        self._streams: Dict[str, List[ValueStream[Snapshot]]] = {}

    def open(self, initial: Snapshot) -> ValueStream[Snapshot]:
        """Start a stream for ``initial.key`` that first yields ``initial``."""

        key = initial.key

        async def detach(stream: ValueStream[Snapshot]) -> None:
            self._discard(key, stream)

        stream: ValueStream[Snapshot] = ValueStream(on_close=detach)
        stream.put(_private(initial))
        self._streams.setdefault(key, []).append(stream)
        return stream

    def broadcast(self, snapshot: Snapshot) -> int:
        streams = list(self._streams.get(snapshot.key, []))
        for stream in streams:
            stream.put(_private(snapshot))
        return len(streams)

    def subscriber_count(self, key: str) -> int:
        return len(self._streams.get(key, []))

    def close_all(self) -> None:
        streams = [stream for group in self._streams.values() for stream in group]
        self._streams.clear()
        for stream in streams:
            stream.finish()

    def _discard(self, key: str, stream: ValueStream[Snapshot]) -> None:
        group = self._streams.get(key)
        if not group or stream not in group:
            return
        group.remove(stream)
        if not group:
            self._streams.pop(key, None)
