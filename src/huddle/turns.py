from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, Optional, Sequence

from .channel import SessionStateChannel
from .errors import NoOtherMember, TurnLost
from .models import TURN_HOLDER_FIELD
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

State = Dict[str, Any]
Move = Callable[[State], State]

_UNSET: Any = object()


class TurnArbiter:
    """Turn policy for turn-disciplined sessions.

    A move is only ever committed with compare-and-commit against the state
    the mover observed. An unconditional write here would silently clobber an
    opponent's move that landed first.
    """

    def __init__(self, registry: SessionRegistry, channel: SessionStateChannel) -> None:
        self._registry = registry
        self._channel = channel

    @staticmethod
    def is_my_turn(state: Optional[State], self_id: str) -> bool:
        return bool(state) and state.get(TURN_HOLDER_FIELD) == self_id

    @staticmethod
    def next_holder(members: Sequence[str], current_holder: str | None) -> str:
        """Member who moves after ``current_holder``, cycling in join order."""

        if len(members) < 2:
            raise NoOtherMember("at least two members are needed to pass the turn")
        if current_holder not in members:
            return members[0]
        index = list(members).index(current_holder)
        return members[(index + 1) % len(members)]

    async def start(self, session_id: str, first_holder: str, initial_state: State | None = None) -> State:
        """Seed the state of a turn-disciplined session; only succeeds on an empty document."""

        session = await self._registry.get_metadata(session_id)
        if not session.is_member(first_holder):
            raise ValueError(f"{first_holder} is not a member of session {session_id}")
        state = dict(initial_state or {})
        state[TURN_HOLDER_FIELD] = first_holder
        return await self._channel.publish_exclusive(session_id, None, state)

    async def take_turn(
        self,
        session_id: str,
        self_id: str,
        move: Move,
        *,
        observed: Optional[State] = _UNSET,
    ) -> State:
        """Apply ``move`` as ``self_id``'s turn and hand the turn to the next member.

        ``observed`` is the last state the caller saw; when omitted the
        current state is read. If another publish lands first the move is
        recomputed from the fresh state, and :class:`TurnLost` is raised once
        the turn is no longer ours.
        """

        members = (await self._registry.get_metadata(session_id)).members
        if observed is _UNSET:
            observed = await self._channel.get_state(session_id)

        def build(state: Optional[State]) -> State:
            if not self.is_my_turn(state, self_id):
                holder = state.get(TURN_HOLDER_FIELD) if state else None
                raise TurnLost(f"turn in session {session_id} is held by {holder}, not {self_id}")
            updated = move(copy.deepcopy(state))
            updated[TURN_HOLDER_FIELD] = self.next_holder(members, self_id)
            return updated

        candidate = build(observed)
        committed = await self._channel.publish_exclusive(session_id, observed, candidate, recompute=build)
        logger.debug("%s moved in %s; turn passes to %s", self_id, session_id, committed.get(TURN_HOLDER_FIELD))
        return committed
