from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, Optional

from .config import EngineConfig
from .errors import Conflict, SessionNotFound
from .fanout import SharedFeeds
from .hub import Snapshot
from .keys import log_key, metadata_key, new_push_id, state_key
from .models import LogEntry, ordered_log
from .registry import SessionRegistry
from .retry import retry_transient
from .store import ABORT, RemoteStore
from .streams import ValueStream

logger = logging.getLogger(__name__)

State = Dict[str, Any]
Recompute = Callable[[Optional[State]], State]
Compare = Callable[[Optional[State], Optional[State]], bool]

_UNSENT: Any = object()


def _log_from_snapshot(snapshot: Snapshot) -> list[LogEntry]:
    return ordered_log(snapshot.value)


class SessionStateChannel:
    """Propagates application-defined state for sessions.

    ``publish`` is a merge for independently owned fields. Anything that must
    not overwrite a concurrent writer, turn-based moves in particular, goes
    through ``publish_exclusive``.
    """

    def __init__(
        self,
        store: RemoteStore,
        registry: SessionRegistry,
        config: EngineConfig | None = None,
        *,
        feeds: SharedFeeds | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._config = config or EngineConfig()
        self._feeds = feeds or SharedFeeds(store)

    async def subscribe(self, session_id: str) -> ValueStream[Optional[State]]:
        """Stream the current state document, then every committed change.

        Local subscribers share one store subscription; all of them finish
        when the session is destroyed.
        """

        await self._registry.get_metadata(session_id)
        return await self._feeds.subscribe(state_key(session_id), guard_key=metadata_key(session_id))

    async def get_state(self, session_id: str) -> Optional[State]:
        await self._registry.get_metadata(session_id)
        return await self._store.read(state_key(session_id))

    async def publish(self, session_id: str, partial_update: State) -> None:
        """Merge ``partial_update`` into the state document, keeping fields not mentioned."""

        if not isinstance(partial_update, dict):
            raise TypeError("partial_update must be a dict")
        await self._registry.get_metadata(session_id)
        await retry_transient(
            lambda: self._store.write(state_key(session_id), partial_update),
            self._config.transient_policy(),
            what=f"publish {session_id}",
        )
        await self._reap_if_destroyed(session_id, state_key(session_id))

    async def replace_state(self, session_id: str, value: State) -> None:
        """Overwrite the whole state document; for explicit application resets only."""

        await self._registry.get_metadata(session_id)
        await retry_transient(
            lambda: self._store.replace(state_key(session_id), value),
            self._config.transient_policy(),
            what=f"replace {session_id}",
        )
        await self._reap_if_destroyed(session_id, state_key(session_id))

    async def publish_exclusive(
        self,
        session_id: str,
        expected_current: Optional[State],
        new_value: State,
        *,
        recompute: Recompute | None = None,
        compare: Compare | None = None,
    ) -> State:
        """Replace the state only while it still matches ``expected_current``.

        On a mismatch ``recompute`` is handed the fresh value and its result
        becomes the new candidate. Without ``recompute``, or once the publish
        retry budget is spent, :class:`Conflict` is raised and the stored state
        is left at the last committed value. Errors raised by ``recompute``
        propagate unchanged.
        """

        await self._registry.get_metadata(session_id)
        matches = compare or (lambda stored, expected: stored == expected)
        policy = self._config.publish_policy()
        expected = expected_current
        candidate = new_value
        mismatches = 0
        attempts = 0
        sent: Any = _UNSENT

        def apply(current: Optional[State]) -> Any:
            nonlocal expected, candidate, mismatches, sent
            if attempts > 1 and sent is not _UNSENT and current == sent:
                # the previous attempt committed but its acknowledgement was lost
                return ABORT
            if not matches(current, expected):
                mismatches += 1
                if recompute is None:
                    raise Conflict(f"state of session {session_id} changed since it was observed")
                if mismatches >= policy.max_attempts:
                    raise Conflict(
                        f"state of session {session_id} kept changing after {mismatches} recomputes"
                    )
                logger.debug("state of %s moved on, recomputing (%d)", session_id, mismatches)
                candidate = recompute(copy.deepcopy(current))
                expected = current
            sent = copy.deepcopy(candidate)
            return candidate

        async def commit():
            nonlocal attempts
            attempts += 1
            return await self._store.transact(state_key(session_id), apply, policy=self._config.txn_policy())

        result = await retry_transient(
            commit,
            self._config.transient_policy(),
            what=f"publish_exclusive {session_id}",
        )
        await self._reap_if_destroyed(session_id, state_key(session_id))
        return result.value

    async def append_log(self, session_id: str, entry: State) -> str:
        """Write an immutable log entry under a fresh child id and return the id.

        ``entry["ts"]`` is the ordering key readers sort by.
        """

        if not isinstance(entry, dict) or not isinstance(entry.get("ts"), int):
            raise ValueError("log entries must be dicts with an integer 'ts'")
        await self._registry.get_metadata(session_id)
        # the id is fixed before retrying so a lost acknowledgement cannot duplicate the entry
        entry_id = new_push_id()
        await retry_transient(
            lambda: self._store.write(log_key(session_id), {entry_id: entry}),
            self._config.transient_policy(),
            what=f"append_log {session_id}",
        )
        await self._reap_if_destroyed(session_id, log_key(session_id))
        return entry_id

    async def read_log(self, session_id: str) -> list[LogEntry]:
        await self._registry.get_metadata(session_id)
        return ordered_log(await self._store.read(log_key(session_id)))

    async def subscribe_log(self, session_id: str) -> ValueStream[list[LogEntry]]:
        await self._registry.get_metadata(session_id)
        return await self._feeds.subscribe(
            log_key(session_id),
            transform=_log_from_snapshot,
            guard_key=metadata_key(session_id),
        )

    async def _reap_if_destroyed(self, session_id: str, key: str) -> None:
        # a destroy that lands between the existence check and the write
        # would otherwise leave an orphaned document behind
        if await self._store.read(metadata_key(session_id)) is not None:
            return
        await self._store.delete(key)
        raise SessionNotFound(session_id)
