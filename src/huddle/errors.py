from __future__ import annotations


class SyncError(Exception):
    """Base class for every error the engine surfaces to callers."""

    code = "sync_error"


class SessionNotFound(SyncError):
    code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"session {session_id} does not exist")


class SessionFull(SyncError):
    code = "session_full"

    def __init__(self, session_id: str, max_members: int) -> None:
        self.session_id = session_id
        self.max_members = max_members
        super().__init__(f"session {session_id} already has {max_members} members")


class PermissionDenied(SyncError):
    code = "permission_denied"


class Conflict(SyncError):
    """Optimistic-concurrency retries were exhausted without a commit."""

    code = "conflict"


class TurnLost(SyncError):
    code = "turn_lost"


class NoOtherMember(SyncError):
    code = "no_other_member"


class Unauthenticated(SyncError):
    code = "unauthenticated"


class StoreUnavailable(SyncError):
    """The remote store could not confirm an operation."""

    code = "store_unavailable"


class UnknownKind(SyncError):
    code = "unknown_kind"

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"unknown session kind: {kind}")

