import asyncio
import unittest

from huddle.errors import PermissionDenied, SessionFull, SessionNotFound, StoreUnavailable, UnknownKind
from huddle.fanout import SharedFeeds
from huddle.keys import log_key, metadata_key, state_key
from huddle.registry import SessionRegistry
from huddle.store import InMemoryStore

from tests.engine_util import FAST_CONFIG, FlakyStore, LostAckStore, make_catalog


class SessionRegistryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = InMemoryStore(txn_policy=FAST_CONFIG.txn_policy())
        self.catalog = make_catalog()
        self.registry = SessionRegistry(self.store, self.catalog, FAST_CONFIG)

    async def test_create_registers_creator_as_first_member(self):
        session = await self.registry.create("duel", "alice")

        stored = await self.store.read(metadata_key(session.session_id))
        self.assertEqual(stored["members"], ["alice"])
        self.assertEqual(stored["creatorId"], "alice")
        self.assertEqual(stored["kind"], "duel")
        self.assertGreater(stored["createdAt"], 0)

    async def test_create_rejects_unknown_kind(self):
        with self.assertRaises(UnknownKind):
            await self.registry.create("chess", "alice")

    async def test_join_stops_at_member_cap(self):
        session = await self.registry.create("duel", "alice")
        await self.registry.join(session.session_id, "bob")

        with self.assertRaises(SessionFull):
            await self.registry.join(session.session_id, "carol")

        roster = await self.registry.get_metadata(session.session_id)
        self.assertEqual(roster.members, ["alice", "bob"])
        self.assertTrue(self.catalog.get("duel").is_full(roster))

    async def test_join_is_idempotent(self):
        session = await self.registry.create("party", "alice")
        first = await self.registry.join(session.session_id, "bob")
        again = await self.registry.join(session.session_id, "bob")

        self.assertEqual(first.members, ["alice", "bob"])
        self.assertEqual(again.members, ["alice", "bob"])

    async def test_join_missing_session(self):
        with self.assertRaises(SessionNotFound):
            await self.registry.join("s_missing", "bob")

    async def test_concurrent_joins_respect_cap(self):
        session = await self.registry.create("party", "alice")
        joiners = ["bob", "carol", "dave", "erin", "frank"]

        outcomes = await asyncio.gather(
            *(self.registry.join(session.session_id, member) for member in joiners),
            return_exceptions=True,
        )

        failures = [outcome for outcome in outcomes if isinstance(outcome, Exception)]
        self.assertEqual(len(failures), 2)
        self.assertTrue(all(isinstance(outcome, SessionFull) for outcome in failures))
        roster = await self.registry.get_metadata(session.session_id)
        self.assertEqual(len(roster.members), 4)
        self.assertEqual(len(set(roster.members)), 4)
        self.assertEqual(roster.members[0], "alice")

    async def test_leave_removes_member_and_keeps_creator(self):
        session = await self.registry.create("party", "alice")
        await self.registry.join(session.session_id, "bob")

        after = await self.registry.leave(session.session_id, "alice")

        self.assertEqual(after.members, ["bob"])
        self.assertEqual(after.creator_id, "alice")

    async def test_leave_is_noop_for_non_members_and_gone_sessions(self):
        session = await self.registry.create("party", "alice")

        unchanged = await self.registry.leave(session.session_id, "mallory")
        gone = await self.registry.leave("s_missing", "alice")

        self.assertEqual(unchanged.members, ["alice"])
        self.assertIsNone(gone)

    async def test_only_creator_may_destroy(self):
        session = await self.registry.create("duel", "alice")
        await self.registry.join(session.session_id, "bob")

        with self.assertRaises(PermissionDenied):
            await self.registry.destroy(session.session_id, "bob")
        self.assertEqual((await self.registry.get_metadata(session.session_id)).members, ["alice", "bob"])

    async def test_destroy_removes_every_session_document(self):
        session = await self.registry.create("duel", "alice")
        await self.store.write(state_key(session.session_id), {"board": []})
        await self.store.push(log_key(session.session_id), {"ts": 1})

        await self.registry.destroy(session.session_id, "alice")

        with self.assertRaises(SessionNotFound):
            await self.registry.get_metadata(session.session_id)
        self.assertIsNone(await self.store.read(state_key(session.session_id)))
        self.assertIsNone(await self.store.read(log_key(session.session_id)))
        with self.assertRaises(SessionNotFound):
            await self.registry.destroy(session.session_id, "alice")

    async def test_subscribe_metadata_follows_roster_until_destroyed(self):
        session = await self.registry.create("party", "alice")
        stream = await self.registry.subscribe_metadata(session.session_id)

        initial = await stream.next(timeout=1)
        await self.registry.join(session.session_id, "bob")
        joined = await stream.next(timeout=1)
        await self.registry.destroy(session.session_id, "alice")

        with self.assertRaises(StopAsyncIteration):
            await stream.next(timeout=1)
        await stream.close()

        self.assertEqual(initial.members, ["alice"])
        self.assertEqual(joined.members, ["alice", "bob"])

    async def test_destroy_releases_metadata_subscription(self):
        session = await self.registry.create("party", "alice")
        stream = await self.registry.subscribe_metadata(session.session_id)
        await stream.next(timeout=1)
        self.assertEqual(self.store.subscriber_count(metadata_key(session.session_id)), 1)

        await self.registry.destroy(session.session_id, "alice")
        remaining = await asyncio.wait_for(_collect(stream), 1)

        self.assertEqual(remaining, [])
        self.assertEqual(self.store.subscriber_count(metadata_key(session.session_id)), 0)

    async def test_repeated_sessions_leave_no_feeds_behind(self):
        feeds = SharedFeeds(self.store)
        registry = SessionRegistry(self.store, self.catalog, FAST_CONFIG, feeds=feeds)
        for index in range(5):
            session = await registry.create("crowd", "alice")
            stream = await registry.subscribe_metadata(session.session_id)
            await stream.next(timeout=1)
            if index % 2:
                await stream.close()
            await registry.destroy(session.session_id, "alice")
            await asyncio.wait_for(_collect(stream), 1)

        self.assertEqual(feeds.active_keys(), [])

    async def test_subscribe_metadata_requires_existing_session(self):
        with self.assertRaises(SessionNotFound):
            await self.registry.subscribe_metadata("s_missing")


class RegistryTransientFailureTests(unittest.IsolatedAsyncioTestCase):
    async def test_join_retries_through_transient_failures(self):
        store = FlakyStore(2, txn_policy=FAST_CONFIG.txn_policy())
        registry = SessionRegistry(store, make_catalog(), FAST_CONFIG)
        session = await registry.create("duel", "alice")

        joined = await registry.join(session.session_id, "bob")

        self.assertEqual(joined.members, ["alice", "bob"])
        self.assertEqual(store.cas_calls, 3)

    async def test_join_surfaces_unavailable_after_budget(self):
        store = FlakyStore(10, txn_policy=FAST_CONFIG.txn_policy())
        registry = SessionRegistry(store, make_catalog(), FAST_CONFIG)
        session = await registry.create("duel", "alice")

        with self.assertRaises(StoreUnavailable):
            await registry.join(session.session_id, "bob")

        self.assertEqual(store.cas_calls, FAST_CONFIG.transient_max_attempts)
        self.assertEqual((await registry.get_metadata(session.session_id)).members, ["alice"])


    async def test_leave_retries_through_transient_failures(self):
        store = FlakyStore(0, txn_policy=FAST_CONFIG.txn_policy())
        registry = SessionRegistry(store, make_catalog(), FAST_CONFIG)
        session = await registry.create("party", "alice")
        await registry.join(session.session_id, "bob")
        store.failures = 2

        left = await registry.leave(session.session_id, "bob")

        self.assertEqual(left.members, ["alice"])
        self.assertEqual(store.failures, 0)

    async def test_destroy_retries_through_transient_failures(self):
        store = FlakyStore(0, txn_policy=FAST_CONFIG.txn_policy())
        registry = SessionRegistry(store, make_catalog(), FAST_CONFIG)
        session = await registry.create("duel", "alice")
        store.failures = 2

        await registry.destroy(session.session_id, "alice")

        self.assertIsNone(await store.read(metadata_key(session.session_id)))
        self.assertEqual(store.failures, 0)

    async def test_destroy_finishes_cleanup_when_acknowledgement_is_lost(self):
        store = LostAckStore(txn_policy=FAST_CONFIG.txn_policy())
        registry = SessionRegistry(store, make_catalog(), FAST_CONFIG)
        session = await registry.create("duel", "alice")
        await store.write(state_key(session.session_id), {"board": []})
        await store.push(log_key(session.session_id), {"ts": 1})
        store.drop_next = metadata_key(session.session_id)

        await registry.destroy(session.session_id, "alice")

        self.assertEqual(store.dropped, 1)
        for key in (metadata_key, state_key, log_key):
            self.assertIsNone(await store.read(key(session.session_id)))


async def _collect(stream):
    return [value async for value in stream]

if __name__ == "__main__":
    unittest.main()
