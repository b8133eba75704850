from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")

_END = object()


class ValueStream(Generic[T]):
    """Unbounded async stream of values fed by a producer callback.

    Producers call :meth:`put` and :meth:`finish`; consumers iterate with
    ``async for`` and release the stream with :meth:`close` (or ``async with``).
    Nothing put before ``finish`` is ever dropped.
    """

    def __init__(self, on_close: Optional[Callable[["ValueStream[T]"], Awaitable[None]]] = None) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self._finished = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def finished(self) -> bool:
        return self._finished

    def put(self, value: T) -> None:
        if self._finished:
            return
        self._queue.put_nowait(value)

    def finish(self) -> None:
        """Terminate the stream after every value already put."""

        if self._finished:
            return
        self._finished = True
        self._queue.put_nowait(_END)

    async def close(self) -> None:
        """Detach the consumer. Safe to call more than once."""

        if self._closed:
            return
        self._closed = True
        self.finish()
        if self._on_close is not None:
            on_close, self._on_close = self._on_close, None
            await on_close(self)

    async def next(self, timeout: float | None = None) -> T:
        """Return the next value, raising ``StopAsyncIteration`` once finished."""

        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _END:
            # keep the marker so repeated reads keep terminating
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> "ValueStream[T]":
        return self

    async def __anext__(self) -> T:
        return await self.next()

    async def __aenter__(self) -> "ValueStream[T]":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
