from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .channel import SessionStateChannel, State
from .config import EngineConfig
from .fanout import SharedFeeds
from .identity import IdentityProvider
from .kinds import KindCatalog
from .models import Session
from .registry import SessionRegistry
from .store import RemoteStore
from .streams import ValueStream
from .turns import TurnArbiter

logger = logging.getLogger(__name__)

StateCallback = Callable[[Optional[State]], Union[None, Awaitable[None]]]


class StateWatcher:
    """Background delivery of state changes to a callback until cancelled."""

    def __init__(self, stream: ValueStream[Optional[State]], callback: StateCallback) -> None:
        self._stream = stream
        self._callback = callback
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        async for state in self._stream:
            try:
                outcome = self._callback(state)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception:
                # one failing delivery must not stop the watcher
                logger.exception("state callback failed")

    @property
    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> None:
        await self._task

    async def cancel(self) -> None:
        await self._stream.close()
        if not self._task.done():
            self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)


class SessionHandle:
    """Everything presentation code needs for one session, bound to its id."""

    def __init__(self, engine: "SessionEngine", session_id: str) -> None:
        self._engine = engine
        self.session_id = session_id

    async def metadata(self) -> Session:
        return await self._engine.registry.get_metadata(self.session_id)

    async def members(self) -> list[str]:
        return list((await self.metadata()).members)

    async def state(self) -> Optional[State]:
        return await self._engine.channel.get_state(self.session_id)

    async def on_state_changed(self, callback: StateCallback) -> StateWatcher:
        stream = await self._engine.channel.subscribe(self.session_id)
        return StateWatcher(stream, callback)

    async def publish(self, update: State) -> None:
        await self._engine.channel.publish(self.session_id, update)

    def is_my_turn(self, state: Optional[State]) -> bool:
        return TurnArbiter.is_my_turn(state, self._engine.identity.current_id())

    async def start(self, initial_state: State | None = None) -> State:
        """Seed the state with the caller holding the first turn."""

        return await self._engine.arbiter.start(self.session_id, self._engine.identity.current_id(), initial_state)

    async def play(self, inputs: Dict[str, Any], *, observed: Optional[State] = None) -> State:
        """Run the kind's reducer over ``inputs`` as the caller's turn."""

        session = await self.metadata()
        kind = self._engine.catalog.get(session.kind)
        if kind.reducer is None:
            raise ValueError(f"session kind {kind.kind} has no reducer")
        reducer = kind.reducer
        kwargs = {} if observed is None else {"observed": observed}
        return await self._engine.arbiter.take_turn(
            self.session_id,
            self._engine.identity.current_id(),
            lambda state: reducer(state, inputs),
            **kwargs,
        )


class SessionEngine:
    """Wires the registry, state channel and turn arbiter over one store."""

    def __init__(
        self,
        store: RemoteStore,
        identity: IdentityProvider,
        catalog: KindCatalog,
        config: EngineConfig | None = None,
    ) -> None:
        self.store = store
        self.identity = identity
        self.catalog = catalog
        self.config = config or EngineConfig()
        self.feeds = SharedFeeds(store)
        self.registry = SessionRegistry(store, catalog, self.config, feeds=self.feeds)
        self.channel = SessionStateChannel(store, self.registry, self.config, feeds=self.feeds)
        self.arbiter = TurnArbiter(self.registry, self.channel)

    async def create(self, kind: str) -> SessionHandle:
        session = await self.registry.create(kind, self.identity.current_id())
        return self.handle(session.session_id)

    async def join(self, session_id: str) -> SessionHandle:
        await self.registry.join(session_id, self.identity.current_id())
        return self.handle(session_id)

    async def leave(self, session_id: str) -> None:
        await self.registry.leave(session_id, self.identity.current_id())

    async def destroy(self, session_id: str) -> None:
        await self.registry.destroy(session_id, self.identity.current_id())

    def handle(self, session_id: str) -> SessionHandle:
        return SessionHandle(self, session_id)

    async def close(self) -> None:
        await self.feeds.close()
