import asyncio
import unittest

from aiohttp.test_utils import TestClient, TestServer

from huddle.engine import SessionEngine
from huddle.errors import SessionFull, StoreUnavailable
from huddle.http_store import HttpRemoteStore
from huddle.identity import StaticIdentity
from huddle.models import TURN_HOLDER_FIELD
from huddle.store import InMemoryStore
from huddle.store_server import create_app

from tests.engine_util import FAST_CONFIG, make_catalog


class StoreServerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backing = InMemoryStore()
        self.app = create_app(store=self.backing, ping_interval_s=3600)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()
        self.base_url = str(self.server.make_url("/"))
        self.remote = HttpRemoteStore(self.base_url, txn_policy=FAST_CONFIG.txn_policy())

    async def asyncTearDown(self):
        await self.remote.close()
        await self.client.close()
        await self.server.close()

    async def test_health(self):
        resp = await self.client.get("/healthz")

        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "ok")

    async def test_primitives_round_trip_over_http(self):
        created = await self.remote.replace("k", {"a": 1})
        merged = await self.remote.write("k", {"b": 2, "a": None})

        self.assertEqual(merged.value, {"b": 2})
        self.assertGreater(merged.version, created.version)
        self.assertIsNone(await self.remote.compare_and_set("k", created.version, {"c": 3}))
        swapped = await self.remote.compare_and_set("k", merged.version, {"c": 3})
        self.assertEqual(swapped.value, {"c": 3})

        await self.remote.delete("k")
        self.assertIsNone(await self.remote.read("k"))
        self.assertIsNone(await self.backing.read("k"))

    async def test_transaction_over_http(self):
        await self.remote.replace("counter", 0)

        results = await asyncio.gather(*(self.remote.transact("counter", lambda n: n + 1) for _ in range(5)))

        self.assertTrue(all(result.committed for result in results))
        self.assertEqual(await self.backing.read("counter"), 5)

    async def test_subscribe_over_websocket(self):
        await self.backing.replace("k", {"n": 0})
        stream = await self.remote.subscribe("k")

        initial = await stream.next(timeout=2)
        await self.remote.write("k", {"n": 1})
        change = await stream.next(timeout=2)
        await stream.close()

        self.assertEqual(initial.value, {"n": 0})
        self.assertEqual(change.value, {"n": 1})
        self.assertGreater(change.version, initial.version)

        for _ in range(100):
            if self.backing.subscriber_count("k") == 0:
                break
            await asyncio.sleep(0.01)
        self.assertEqual(self.backing.subscriber_count("k"), 0)

    async def test_invalid_requests_are_rejected(self):
        missing_key = await self.client.post("/v1/store/read", json={})
        bad_version = await self.client.post("/v1/store/cas", json={"key": "k", "value": 1, "expected_version": "x"})
        not_json = await self.client.post("/v1/store/write", data="nope")

        self.assertEqual(missing_key.status, 400)
        self.assertEqual((await missing_key.json())["code"], "invalid_request")
        self.assertEqual(bad_version.status, 400)
        self.assertEqual(not_json.status, 400)

    async def test_websocket_rejects_unknown_frames(self):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json({"v": 1, "t": "store.teleport", "id": "r1", "body": {}})
        error = await ws.receive_json()
        await ws.send_json({"v": 1, "t": "ping", "id": "p1"})
        pong = await ws.receive_json()
        await ws.close()

        self.assertEqual(error["t"], "error")
        self.assertEqual(error["id"], "r1")
        self.assertEqual(error["body"]["code"], "invalid_request")
        self.assertEqual(pong, {"v": 1, "t": "pong", "id": "p1"})

    async def test_closed_backing_store_reports_unavailable(self):
        await self.backing.close()

        resp = await self.client.post("/v1/store/read", json={"key": "k"})
        self.assertEqual(resp.status, 503)
        with self.assertRaises(StoreUnavailable):
            await self.remote.read("k")

    async def test_engines_play_over_http(self):
        alice_store = HttpRemoteStore(self.base_url, txn_policy=FAST_CONFIG.txn_policy())
        bob_store = HttpRemoteStore(self.base_url, txn_policy=FAST_CONFIG.txn_policy())
        catalog = make_catalog()
        alice = SessionEngine(alice_store, StaticIdentity("alice"), catalog, FAST_CONFIG)
        bob = SessionEngine(bob_store, StaticIdentity("bob"), catalog, FAST_CONFIG)
        carol = SessionEngine(self.remote, StaticIdentity("carol"), catalog, FAST_CONFIG)
        try:
            alice_handle = await alice.create("duel")
            bob_handle = await bob.join(alice_handle.session_id)
            with self.assertRaises(SessionFull):
                await carol.join(alice_handle.session_id)

            turns = []
            bob_turn = asyncio.Event()

            def on_change(state):
                if bob_handle.is_my_turn(state):
                    turns.append(state)
                    bob_turn.set()

            watcher = await bob_handle.on_state_changed(on_change)
            await alice_handle.start({"board": [""] * 9})
            await alice_handle.play({"cell": 0, "mark": "X"})
            await asyncio.wait_for(bob_turn.wait(), 2)
            await watcher.cancel()

            self.assertEqual(turns[-1]["board"][0], "X")
            self.assertEqual(turns[-1][TURN_HOLDER_FIELD], "bob")
        finally:
            await alice.close()
            await bob.close()
            await carol.close()
            await alice_store.close()
            await bob_store.close()


class UnreachableStoreTests(unittest.IsolatedAsyncioTestCase):
    async def test_connection_failure_is_unavailable(self):
        server = TestServer(create_app(store=InMemoryStore()))
        await server.start_server()
        base_url = str(server.make_url("/"))
        await server.close()

        remote = HttpRemoteStore(base_url, timeout_s=2)
        try:
            with self.assertRaises(StoreUnavailable):
                await remote.read("k")
            with self.assertRaises(StoreUnavailable):
                await remote.subscribe("k")
        finally:
            await remote.close()


if __name__ == "__main__":
    unittest.main()
