"""Session synchronization engine: rosters, shared state and turn-taking over a remote store."""

from .channel import SessionStateChannel
from .config import EngineConfig, load_engine_config_from_env
from .engine import SessionEngine, SessionHandle, StateWatcher
from .errors import (
    Conflict,
    NoOtherMember,
    PermissionDenied,
    SessionFull,
    SessionNotFound,
    StoreUnavailable,
    SyncError,
    TurnLost,
    Unauthenticated,
    UnknownKind,
)
from .identity import IdentityProvider, StaticIdentity
from .kinds import KindCatalog, SessionKind
from .models import LogEntry, Session
from .registry import SessionRegistry
from .store import ABORT, InMemoryStore, RemoteStore, TransactionResult
from .streams import ValueStream
from .turns import TurnArbiter

__all__ = [
    "ABORT",
    "Conflict",
    "EngineConfig",
    "IdentityProvider",
    "InMemoryStore",
    "KindCatalog",
    "LogEntry",
    "NoOtherMember",
    "PermissionDenied",
    "RemoteStore",
    "Session",
    "SessionEngine",
    "SessionFull",
    "SessionHandle",
    "SessionKind",
    "SessionNotFound",
    "SessionRegistry",
    "SessionStateChannel",
    "StateWatcher",
    "StaticIdentity",
    "StoreUnavailable",
    "SyncError",
    "TransactionResult",
    "TurnArbiter",
    "TurnLost",
    "Unauthenticated",
    "UnknownKind",
    "ValueStream",
    "load_engine_config_from_env",
]
