from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import WSMsgType

from .errors import StoreUnavailable
from .hub import Snapshot
from .retry import RetryPolicy
from .store import RemoteStore
from .streams import ValueStream

logger = logging.getLogger(__name__)


def _snapshot(body: Dict[str, Any]) -> Snapshot:
    return Snapshot(key=str(body["key"]), value=body.get("value"), version=int(body["version"]))


class HttpRemoteStore(RemoteStore):
    """RemoteStore client for the aiohttp store server.

    Primitives are JSON POSTs; subscriptions share one WebSocket connection.
    Transport failures and 5xx responses surface as :class:`StoreUnavailable`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 10.0,
        txn_policy: RetryPolicy | None = None,
    ) -> None:
        super().__init__(txn_policy)
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._ws_lock = asyncio.Lock()
        self._reader_task: Optional[asyncio.Task] = None
        self._streams: Dict[str, ValueStream[Snapshot]] = {}
        self._next_sub = 0

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self._http().post(self._url(path), json=payload) as response:
                if response.status >= 500:
                    raise StoreUnavailable(f"{path} returned {response.status}")
                body = await response.json()
                if response.status >= 400:
                    raise ValueError(f"{path} rejected request: {body.get('message')}")
                return body
        except aiohttp.ClientError as exc:
            raise StoreUnavailable(f"{path} failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(f"{path} timed out") from exc

    async def read_versioned(self, key: str) -> Snapshot:
        return _snapshot(await self._post("/v1/store/read", {"key": key}))

    async def write(self, key: str, value: Any) -> Snapshot:
        return _snapshot(await self._post("/v1/store/write", {"key": key, "value": value}))

    async def replace(self, key: str, value: Any) -> Snapshot:
        return _snapshot(await self._post("/v1/store/replace", {"key": key, "value": value}))

    async def compare_and_set(self, key: str, expected_version: int, value: Any) -> Optional[Snapshot]:
        body = await self._post(
            "/v1/store/cas",
            {"key": key, "expected_version": expected_version, "value": value},
        )
        if not body.get("committed"):
            return None
        return _snapshot(body)

    async def delete(self, key: str) -> None:
        await self._post("/v1/store/delete", {"key": key})

    async def subscribe(self, key: str) -> ValueStream[Snapshot]:
        ws = await self._ensure_ws()
        self._next_sub += 1
        sub_id = f"sub-{self._next_sub}"
        stream: ValueStream[Snapshot] = ValueStream(on_close=lambda _: self._unsubscribe(sub_id))
        self._streams[sub_id] = stream
        try:
            await ws.send_json({"v": 1, "t": "store.subscribe", "id": sub_id, "body": {"sub_id": sub_id, "key": key}})
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            self._streams.pop(sub_id, None)
            raise StoreUnavailable(f"subscribe to {key} failed: {exc}") from exc
        return stream

    async def _ensure_ws(self) -> aiohttp.ClientWebSocketResponse:
        async with self._ws_lock:
            if self._ws is None or self._ws.closed:
                try:
                    self._ws = await self._http().ws_connect(self._url("/v1/ws"))
                except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    raise StoreUnavailable(f"websocket connect failed: {exc}") from exc
                self._reader_task = asyncio.create_task(self._read_frames(self._ws))
            return self._ws

    async def _read_frames(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type != WSMsgType.TEXT:
                    if msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                        break
                    continue
                frame = msg.json()
                frame_type = frame.get("t")
                body = frame.get("body") or {}
                if frame_type == "store.value":
                    stream = self._streams.get(body.get("sub_id"))
                    if stream is not None:
                        stream.put(_snapshot(body))
                elif frame_type == "store.ended":
                    stream = self._streams.pop(body.get("sub_id"), None)
                    if stream is not None:
                        stream.finish()
                elif frame_type == "error":
                    logger.warning("store server error for %s: %s", frame.get("id"), body.get("message"))
                    stream = self._streams.pop(frame.get("id"), None)
                    if stream is not None:
                        stream.finish()
        finally:
            # subscribers see the end of their stream rather than a silent stall
            for stream in self._streams.values():
                stream.finish()
            self._streams.clear()

    async def _unsubscribe(self, sub_id: str) -> None:
        self._streams.pop(sub_id, None)
        ws = self._ws
        if ws is None or ws.closed:
            return
        try:
            await ws.send_json({"v": 1, "t": "store.unsubscribe", "body": {"sub_id": sub_id}})
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            logger.debug("unsubscribe %s not delivered: %s", sub_id, exc)

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None
