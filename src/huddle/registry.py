from __future__ import annotations

import logging
from typing import Any, Dict

from .config import EngineConfig
from .errors import PermissionDenied, SessionFull, SessionNotFound
from .fanout import SharedFeeds
from .hub import Snapshot
from .keys import metadata_key, new_session_id, session_keys
from .kinds import KindCatalog
from .models import Session, _now_ms
from .retry import retry_transient
from .store import ABORT, RemoteStore
from .streams import ValueStream

logger = logging.getLogger(__name__)


def _session_from_snapshot(snapshot: Snapshot) -> Session:
    return Session.from_dict(snapshot.value)


class SessionRegistry:
    """Owns session metadata and every roster mutation.

    The roster is only ever changed through the store's transaction
    primitive, so concurrent joiners can neither duplicate an entry nor push
    a session past its kind's member cap.
    """

    def __init__(
        self,
        store: RemoteStore,
        catalog: KindCatalog,
        config: EngineConfig | None = None,
        *,
        feeds: SharedFeeds | None = None,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._config = config or EngineConfig()
        self._feeds = feeds or SharedFeeds(store)

    async def create(self, kind: str, creator_id: str) -> Session:
        self._catalog.get(kind)
        session = Session(
            session_id=new_session_id(),
            kind=kind,
            creator_id=creator_id,
            members=[creator_id],
            created_at_ms=_now_ms(),
        )
        # a fresh id cannot be contended, so a plain write is enough
        await retry_transient(
            lambda: self._store.replace(metadata_key(session.session_id), session.to_dict()),
            self._config.transient_policy(),
            what=f"create {session.session_id}",
        )
        logger.info("created %s session %s for %s", kind, session.session_id, creator_id)
        return session

    async def join(self, session_id: str, member_id: str) -> Session:
        def add_member(current: Dict[str, Any] | None) -> Any:
            if current is None:
                raise SessionNotFound(session_id)
            session = Session.from_dict(current)
            if session.is_member(member_id):
                return ABORT
            kind = self._catalog.get(session.kind)
            if len(session.members) >= kind.max_members:
                raise SessionFull(session_id, kind.max_members)
            session.members.append(member_id)
            return session.to_dict()

        result = await retry_transient(
            lambda: self._store.transact(metadata_key(session_id), add_member, policy=self._config.txn_policy()),
            self._config.transient_policy(),
            what=f"join {session_id}",
        )
        if result.committed:
            logger.debug("%s joined %s", member_id, session_id)
        return Session.from_dict(result.value)

    async def leave(self, session_id: str, member_id: str) -> Session | None:
        def remove_member(current: Dict[str, Any] | None) -> Any:
            if current is None:
                return ABORT
            session = Session.from_dict(current)
            if not session.is_member(member_id):
                return ABORT
            session.members = [member for member in session.members if member != member_id]
            return session.to_dict()

        result = await retry_transient(
            lambda: self._store.transact(metadata_key(session_id), remove_member, policy=self._config.txn_policy()),
            self._config.transient_policy(),
            what=f"leave {session_id}",
        )
        if result.value is None:
            return None
        if result.committed:
            logger.debug("%s left %s", member_id, session_id)
        return Session.from_dict(result.value)

    async def destroy(self, session_id: str, requester_id: str) -> None:
        """Remove the session metadata, then its state and log documents.

        A retry after a lost acknowledgement finds the metadata already gone
        and still finishes the cleanup.
        """

        attempts = 0

        def remove_session(current: Dict[str, Any] | None) -> Any:
            if current is None:
                if attempts > 1:
                    return ABORT
                raise SessionNotFound(session_id)
            if not Session.from_dict(current).is_creator(requester_id):
                raise PermissionDenied(f"only the creator may destroy session {session_id}")
            return None

        async def remove():
            nonlocal attempts
            attempts += 1
            return await self._store.transact(metadata_key(session_id), remove_session, policy=self._config.txn_policy())

        policy = self._config.transient_policy()
        await retry_transient(remove, policy, what=f"destroy {session_id}")
        _, state, log = session_keys(session_id)
        for key in (state, log):
            await retry_transient(lambda key=key: self._store.delete(key), policy, what=f"delete {key}")
        logger.info("destroyed session %s", session_id)

    async def get_metadata(self, session_id: str) -> Session:
        value = await retry_transient(
            lambda: self._store.read(metadata_key(session_id)),
            self._config.transient_policy(),
            what=f"read {session_id}",
        )
        if value is None:
            raise SessionNotFound(session_id)
        return Session.from_dict(value)

    async def subscribe_metadata(self, session_id: str) -> ValueStream[Session]:
        """Stream the current roster and every later change.

        The stream finishes once the session is destroyed.
        """

        await self.get_metadata(session_id)
        return await self._feeds.subscribe(
            metadata_key(session_id),
            transform=_session_from_snapshot,
            finish_when_absent=True,
        )
