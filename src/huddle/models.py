from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

TURN_HOLDER_FIELD = "activeTurnHolder"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Session:
    """Metadata for one shared activity: who created it and who has joined."""

    session_id: str
    kind: str
    creator_id: str
    members: List[str] = field(default_factory=list)
    created_at_ms: int = 0

    def is_member(self, member_id: str) -> bool:
        return member_id in self.members

    def is_creator(self, member_id: str) -> bool:
        return member_id == self.creator_id

    def subtitle(self, creator_name: str | None = None) -> str:
        """Describe when and by whom the session was created, in UTC."""

        created = datetime.fromtimestamp(self.created_at_ms / 1000, tz=timezone.utc)
        return f"Created on {created.strftime('%A, %B %d, %Y %H:%M:%S')} UTC by {creator_name or self.creator_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.session_id,
            "kind": self.kind,
            "creatorId": self.creator_id,
            "members": list(self.members),
            "createdAt": self.created_at_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            session_id=str(data["id"]),
            kind=str(data["kind"]),
            creator_id=str(data["creatorId"]),
            members=[str(member) for member in data.get("members") or []],
            created_at_ms=int(data.get("createdAt") or 0),
        )


@dataclass(frozen=True)
class LogEntry:
    entry_id: str
    ts: int
    body: Dict[str, Any]


def ordered_log(raw: Dict[str, Any] | None) -> list[LogEntry]:
    """Order log children by their caller-supplied timestamp, then by entry id.

    Arrival order is never used: independently connected writers can commit
    out of timestamp order.
    """

    if not raw:
        return []
    entries = []
    for entry_id, body in raw.items():
        if not isinstance(body, dict):
            continue
        entries.append(LogEntry(entry_id=entry_id, ts=int(body.get("ts", 0)), body=body))
    entries.sort(key=lambda entry: (entry.ts, entry.entry_id))
    return entries
