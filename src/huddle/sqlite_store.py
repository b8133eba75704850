from __future__ import annotations

import copy
import json
import sqlite3
from typing import Any, Optional

from .errors import StoreUnavailable
from .hub import Snapshot, SubscriptionHub
from .retry import RetryPolicy
from .sqlite_backend import SQLiteBackend
from .store import RemoteStore, merge_values
from .streams import ValueStream

_SKIP: Any = object()


def _decode(value_json: str | None) -> Any:
    if value_json is None:
        return None
    return json.loads(value_json)


class SQLiteStore(RemoteStore):
    """Durable store backed by SQLite; change notifications are process-local."""

    def __init__(self, backend: SQLiteBackend, *, txn_policy: RetryPolicy | None = None) -> None:
        super().__init__(txn_policy)
        self._backend = backend
        self._hub = SubscriptionHub()

    def _select(self, cursor: sqlite3.Cursor, key: str) -> tuple[Any, int]:
        row = cursor.execute("SELECT value_json, version FROM documents WHERE key=?", (key,)).fetchone()
        if row is None:
            return None, 0
        return _decode(row[0]), int(row[1])

    def _store_row(self, cursor: sqlite3.Cursor, key: str, value: Any) -> int:
        cursor.execute("UPDATE commit_clock SET last_version = last_version + 1 WHERE id = 1")
        version = int(cursor.execute("SELECT last_version FROM commit_clock WHERE id = 1").fetchone()[0])
        value_json = None if value is None else json.dumps(value, separators=(",", ":"), sort_keys=True)
        cursor.execute(
            """
            INSERT INTO documents (key, value_json, version) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, version = excluded.version
            """,
            (key, value_json, version),
        )
        return version

    def _mutate(self, key: str, mutate) -> Optional[Snapshot]:
        """Run ``mutate(current, version)`` inside one immediate transaction.

        ``mutate`` returns the value to store, or the ``_SKIP`` marker to
        commit nothing.
        """

        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                current, version = self._select(cursor, key)
                proposed = mutate(current, version)
                if proposed is _SKIP:
                    conn.rollback()
                    return None
                new_version = self._store_row(cursor, key, proposed)
                conn.commit()
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.rollback()
                raise StoreUnavailable(f"sqlite error on {key}: {exc}") from exc
            except Exception:
                if conn.in_transaction:
                    conn.rollback()
                raise
            finally:
                cursor.close()
        self._hub.broadcast(Snapshot(key=key, value=proposed, version=new_version))
        return Snapshot(key=key, value=copy.deepcopy(proposed), version=new_version)

    async def read_versioned(self, key: str) -> Snapshot:
        with self._backend.lock:
            cursor = self._backend.connection.cursor()
            try:
                value, version = self._select(cursor, key)
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"sqlite error on {key}: {exc}") from exc
            finally:
                cursor.close()
        return Snapshot(key=key, value=value, version=version)

    async def write(self, key: str, value: Any) -> Snapshot:
        return self._mutate(key, lambda current, _version: merge_values(current, value))

    async def replace(self, key: str, value: Any) -> Snapshot:
        return self._mutate(key, lambda _current, _version: value)

    async def compare_and_set(self, key: str, expected_version: int, value: Any) -> Optional[Snapshot]:
        return self._mutate(key, lambda _current, version: value if version == expected_version else _SKIP)

    async def delete(self, key: str) -> None:
        self._mutate(key, lambda current, _version: None if current is not None else _SKIP)

    async def subscribe(self, key: str) -> ValueStream[Snapshot]:
        return self._hub.open(await self.read_versioned(key))

    def subscriber_count(self, key: str) -> int:
        return self._hub.subscriber_count(key)

    async def close(self) -> None:
        self._hub.close_all()
        self._backend.close()

