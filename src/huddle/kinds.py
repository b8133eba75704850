from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

from .errors import UnknownKind
from .models import Session

Reducer = Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]


@dataclass(frozen=True)
class SessionKind:
    """Static description of an activity that sessions can run.

    ``reducer`` is a pure function ``(state, inputs) -> state`` used by
    :meth:`huddle.engine.SessionHandle.play`.
    """

    kind: str
    min_members: int = 1
    max_members: int = 2
    title: str = ""
    description: str = ""
    authors: str = ""
    turn_based: bool = False
    reducer: Optional[Reducer] = None

    def __post_init__(self) -> None:
        if self.min_members < 1:
            raise ValueError("min_members must be at least 1")
        if self.max_members < self.min_members:
            raise ValueError("max_members must be >= min_members")

    def is_full(self, session: Session) -> bool:
        return len(session.members) >= self.max_members

    def can_start(self, session: Session, member_id: str) -> bool:
        return session.is_member(member_id) and len(session.members) >= self.min_members

    def roster_summary(self, session: Session) -> str:
        return f"{len(session.members)}/{self.max_members} members waiting to start"

    def byline(self) -> str:
        return f"This activity was designed and built by {self.authors}" if self.authors else ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionKind":
        return cls(
            kind=str(data["kind"]),
            min_members=int(data.get("min_members", 1)),
            max_members=int(data.get("max_members", 2)),
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            authors=str(data.get("authors", "")),
            turn_based=bool(data.get("turn_based", False)),
        )


class KindCatalog:
    """Registry of the session kinds an application supports."""

    def __init__(self, kinds: Iterable[SessionKind] = ()) -> None:
        self._kinds: Dict[str, SessionKind] = {}
        for kind in kinds:
            self.register(kind)

    def register(self, kind: SessionKind) -> SessionKind:
        if kind.kind in self._kinds:
            raise ValueError(f"session kind already registered: {kind.kind}")
        self._kinds[kind.kind] = kind
        return kind

    def get(self, kind: str) -> SessionKind:
        try:
            return self._kinds[kind]
        except KeyError:
            raise UnknownKind(kind) from None

    def __contains__(self, kind: object) -> bool:
        return kind in self._kinds

    def kinds(self) -> list[str]:
        return sorted(self._kinds)
