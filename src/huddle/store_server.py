"""aiohttp transport exposing a :class:`RemoteStore` to remote engine clients."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from aiohttp import WSMsgType, web

from .errors import StoreUnavailable
from .hub import Snapshot
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteStore
from .store import InMemoryStore, RemoteStore
from .streams import ValueStream

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(self, *, store: RemoteStore) -> None:
        self.store = store


RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"code": "invalid_request", "message": message}, status=400)


def _unavailable(message: str) -> web.Response:
    return web.json_response({"code": "store_unavailable", "message": message}, status=503)


def _snapshot_body(snapshot: Snapshot) -> Dict[str, Any]:
    return {"key": snapshot.key, "value": snapshot.value, "version": snapshot.version}


async def _read_body(request: web.Request) -> Dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    if not isinstance(body, dict):
        return None
    key = body.get("key")
    if not isinstance(key, str) or not key:
        return None
    return body


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_read(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_body(request)
    if body is None:
        return _invalid_request("key required")
    try:
        snapshot = await runtime.store.read_versioned(body["key"])
    except StoreUnavailable as exc:
        return _unavailable(str(exc))
    return web.json_response(_snapshot_body(snapshot))


async def handle_write(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_body(request)
    if body is None or "value" not in body:
        return _invalid_request("key and value required")
    try:
        snapshot = await runtime.store.write(body["key"], body["value"])
    except StoreUnavailable as exc:
        return _unavailable(str(exc))
    return web.json_response(_snapshot_body(snapshot))


async def handle_replace(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_body(request)
    if body is None or "value" not in body:
        return _invalid_request("key and value required")
    try:
        snapshot = await runtime.store.replace(body["key"], body["value"])
    except StoreUnavailable as exc:
        return _unavailable(str(exc))
    return web.json_response(_snapshot_body(snapshot))


async def handle_compare_and_set(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_body(request)
    if body is None or "value" not in body:
        return _invalid_request("key and value required")
    expected_version = body.get("expected_version")
    if not isinstance(expected_version, int) or isinstance(expected_version, bool) or expected_version < 0:
        return _invalid_request("expected_version must be a non-negative integer")
    try:
        snapshot = await runtime.store.compare_and_set(body["key"], expected_version, body["value"])
    except StoreUnavailable as exc:
        return _unavailable(str(exc))
    if snapshot is None:
        return web.json_response({"committed": False})
    return web.json_response({"committed": True, **_snapshot_body(snapshot)})


async def handle_delete(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_body(request)
    if body is None:
        return _invalid_request("key required")
    try:
        await runtime.store.delete(body["key"])
    except StoreUnavailable as exc:
        return _unavailable(str(exc))
    return web.json_response({"status": "ok"})


def create_app(
    *,
    store: RemoteStore | None = None,
    db_path: str | None = None,
    ping_interval_s: float = 30,
    max_msg_size: int = 1_048_576,
) -> web.Application:
    if store is None:
        store = SQLiteStore(SQLiteBackend(db_path)) if db_path is not None else InMemoryStore()

    app = web.Application()
    app[RUNTIME_KEY] = Runtime(store=store)
    app[WS_CONFIG_KEY] = {"ping_interval_s": ping_interval_s, "max_msg_size": max_msg_size}
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/store/read", handle_read)
    app.router.add_post("/v1/store/write", handle_write)
    app.router.add_post("/v1/store/replace", handle_replace)
    app.router.add_post("/v1/store/cas", handle_compare_and_set)
    app.router.add_post("/v1/store/delete", handle_delete)
    app.router.add_get("/v1/ws", websocket_handler)

    async def close_store(_: web.Application) -> None:
        await store.close()

    app.on_cleanup.append(close_store)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"], heartbeat=ws_config["ping_interval_s"])
    await ws.prepare(request)

    outbound: asyncio.Queue[dict | None] = asyncio.Queue()
    streams: Dict[str, ValueStream[Snapshot]] = {}
    pumps: Dict[str, asyncio.Task] = {}

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            return

    async def pump(sub_id: str, stream: ValueStream[Snapshot]) -> None:
        async for snapshot in stream:
            outbound.put_nowait({"v": 1, "t": "store.value", "body": {"sub_id": sub_id, **_snapshot_body(snapshot)}})
        outbound.put_nowait({"v": 1, "t": "store.ended", "body": {"sub_id": sub_id}})

    async def unsubscribe(sub_id: str) -> None:
        stream = streams.pop(sub_id, None)
        task = pumps.pop(sub_id, None)
        if stream is not None:
            await stream.close()
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    writer_task = asyncio.create_task(writer())
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    outbound.put_nowait(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    outbound.put_nowait(_error_frame("invalid_request", "unsupported version"))
                    continue

                frame_type = frame.get("t")
                request_id = frame.get("id")
                body = frame.get("body") or {}

                if frame_type == "ping":
                    outbound.put_nowait({"v": 1, "t": "pong", "id": request_id})
                elif frame_type == "store.subscribe":
                    sub_id = body.get("sub_id")
                    key = body.get("key")
                    if not isinstance(sub_id, str) or not isinstance(key, str) or not key:
                        outbound.put_nowait(_error_frame("invalid_request", "sub_id and key required", request_id=request_id))
                        continue
                    if sub_id in streams:
                        outbound.put_nowait(_error_frame("invalid_request", "sub_id already in use", request_id=request_id))
                        continue
                    try:
                        stream = await runtime.store.subscribe(key)
                    except StoreUnavailable as exc:
                        outbound.put_nowait(_error_frame("store_unavailable", str(exc), request_id=request_id))
                        continue
                    streams[sub_id] = stream
                    pumps[sub_id] = asyncio.create_task(pump(sub_id, stream))
                elif frame_type == "store.unsubscribe":
                    sub_id = body.get("sub_id")
                    if isinstance(sub_id, str):
                        await unsubscribe(sub_id)
                else:
                    outbound.put_nowait(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        for sub_id in list(streams):
            await unsubscribe(sub_id)
        outbound.put_nowait(None)
        await asyncio.gather(writer_task, return_exceptions=True)

    return ws
