"""Command line entry points: run a store server or replay JSON frames through the engine."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, Iterable, TextIO

from aiohttp import web

from .channel import SessionStateChannel
from .config import load_engine_config_from_env
from .errors import SyncError
from .kinds import KindCatalog, SessionKind
from .logsetup import setup_logging
from .models import Session
from .registry import SessionRegistry
from .store import InMemoryStore
from .store_server import create_app
from .turns import TurnArbiter


_FRAME_TYPES = frozenset(
    {
        "kind.register",
        "session.create",
        "session.join",
        "session.leave",
        "session.destroy",
        "state.publish",
        "turn.start",
        "turn.take",
        "log.append",
        "log.read",
    }
)


def _session_event(ref: str, session: Session) -> Dict[str, Any]:
    return {
        "t": "session",
        "ref": ref,
        "kind": session.kind,
        "creator_id": session.creator_id,
        "members": list(session.members),
    }


async def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Process JSON frames through an engine over an in-memory store and emit events.

    Sessions are addressed by a caller-chosen ``ref`` since real session ids
    are random.
    """

    config = load_engine_config_from_env()
    store = InMemoryStore(txn_policy=config.txn_policy())
    catalog = KindCatalog()
    registry = SessionRegistry(store, catalog, config)
    channel = SessionStateChannel(store, registry, config)
    arbiter = TurnArbiter(registry, channel)
    refs: Dict[str, str] = {}

    def emit(message: Dict[str, Any]) -> None:
        output.write(json.dumps(message, sort_keys=True) + "\n")

    def session_id_for(body: Dict[str, Any]) -> str:
        ref = body.get("ref")
        if ref not in refs:
            raise ValueError(f"unknown session ref: {ref}")
        return refs[ref]

    for index, frame in enumerate(frames):
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        if frame_type not in _FRAME_TYPES:
            raise ValueError(f"unsupported frame type: {frame_type}")
        try:
            if frame_type == "kind.register":
                kind = catalog.register(SessionKind.from_dict(body))
                emit({"t": "kind", "kind": kind.kind, "min_members": kind.min_members, "max_members": kind.max_members})
            elif frame_type == "session.create":
                session = await registry.create(body["kind"], body["member_id"])
                refs[body["ref"]] = session.session_id
                emit(_session_event(body["ref"], session))
            elif frame_type == "session.join":
                session = await registry.join(session_id_for(body), body["member_id"])
                emit(_session_event(body["ref"], session))
            elif frame_type == "session.leave":
                session = await registry.leave(session_id_for(body), body["member_id"])
                if session is not None:
                    emit(_session_event(body["ref"], session))
            elif frame_type == "session.destroy":
                await registry.destroy(session_id_for(body), body["member_id"])
                emit({"t": "destroyed", "ref": body["ref"]})
            elif frame_type == "state.publish":
                session_id = session_id_for(body)
                await channel.publish(session_id, body["update"])
                emit({"t": "state", "ref": body["ref"], "state": await channel.get_state(session_id)})
            elif frame_type == "turn.start":
                state = await arbiter.start(session_id_for(body), body["member_id"], body.get("state"))
                emit({"t": "state", "ref": body["ref"], "state": state})
            elif frame_type == "turn.take":
                update = body.get("update") or {}
                state = await arbiter.take_turn(
                    session_id_for(body),
                    body["member_id"],
                    lambda current: {**current, **update},
                )
                emit({"t": "state", "ref": body["ref"], "state": state})
            elif frame_type == "log.append":
                session_id = session_id_for(body)
                entry_id = await channel.append_log(session_id, body["entry"])
                emit({"t": "log.appended", "ref": body["ref"], "entry_id": entry_id})
            else:  # log.read
                entries = await channel.read_log(session_id_for(body))
                emit({"t": "log", "ref": body["ref"], "entries": [entry.body for entry in entries]})
        except SyncError as exc:
            emit({"t": "error", "frame": index, "code": exc.code, "message": str(exc)})
        except KeyError as exc:
            emit({"t": "error", "frame": index, "code": "invalid_request", "message": f"missing field: {exc.args[0]}"})
        except ValueError as exc:
            emit({"t": "error", "frame": index, "code": "invalid_request", "message": str(exc)})


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    if args.file is None:
        frames = _load_frames(sys.stdin)
    else:
        with args.file:
            frames = _load_frames(args.file)
    asyncio.run(simulate(frames, output))
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    app = create_app(db_path=args.db, ping_interval_s=args.ping_interval)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="huddle session engine")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay JSON frames through the engine")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp store server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between websocket heartbeat pings",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")

    args = parser.parse_args(argv)
    setup_logging(debug=args.debug)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
