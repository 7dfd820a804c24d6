import asyncio
import itertools
import unittest

from msgtrack.core.docstore import MemoryDocumentStore
from msgtrack.core.errors import ValidationError
from msgtrack.core.hub import Hub, TypingChanged
from msgtrack.core.indicators import TypingTracker
from msgtrack.core.models import PLACEHOLDER_NAME
from msgtrack.core.retry import RetryPolicy
from msgtrack.core.users import USERS, UserDirectory


class TestUserDirectory(unittest.TestCase):
    def test_register_and_resolve(self):
        async def run():
            store = MemoryDocumentStore()
            users = UserDirectory(store, RetryPolicy(base_delay=0))
            ann = await users.register("  Ann ", email="ann@example.com", user_id="u1")
            other = UserDirectory(store, RetryPolicy(base_delay=0))
            before = other.display_name("u1")
            resolved = await other.resolve("u1")
            return ann, before, resolved, other.display_name("u1")

        ann, before, resolved, after = asyncio.run(run())
        self.assertEqual(ann.display_name, "Ann")
        self.assertEqual(before, PLACEHOLDER_NAME)
        self.assertEqual(resolved, ann)
        self.assertEqual(after, "Ann")

    def test_register_requires_name(self):
        with self.assertRaises(ValidationError):
            asyncio.run(UserDirectory(MemoryDocumentStore()).register(" "))

    def test_resolve_survives_outage(self):
        async def run():
            store = MemoryDocumentStore()
            users = UserDirectory(store, RetryPolicy(max_attempts=1))
            store.offline = True
            return await users.resolve("u1")

        self.assertIsNone(asyncio.run(run()))

    def test_search_exact_first_and_limit(self):
        async def run():
            users = UserDirectory(MemoryDocumentStore(), RetryPolicy(base_delay=0))
            await users.register("Annabel", user_id="a1")
            await users.register("Ann", user_id="a2")
            await users.register("Bob", user_id="b1")
            for i in range(12):
                await users.register(f"Anna {i:02d}", user_id=f"x{i}")
            found = await users.search("ann")
            exact = await users.search("ANN", limit=3)
            return found, exact

        found, exact = asyncio.run(run())
        self.assertEqual(len(found), 10)
        self.assertEqual(exact[0].id, "a2")
        self.assertNotIn("b1", [u.id for u in found])

    def test_presence(self):
        async def run():
            store = MemoryDocumentStore()
            ticks = itertools.count(1)
            users = UserDirectory(store, RetryPolicy(base_delay=0), clock=lambda: next(ticks))
            await users.register("Ann", user_id="u1")
            await users.set_presence("u1", True)
            await users.set_presence("ghost", True)
            return await store.get(USERS, "u1"), users.get("u1")

        doc, cached = asyncio.run(run())
        self.assertTrue(doc["isOnline"])
        self.assertEqual(doc["lastSeen"], 2)
        self.assertTrue(cached.is_online)


class TestTypingTracker(unittest.TestCase):
    def test_typing_users_and_staleness(self):
        async def run():
            now = [10_000]
            hub = Hub()
            tracker = TypingTracker(MemoryDocumentStore(), hub, clock=lambda: now[0], stale_after=5000)
            sub = hub.subscribe("chat:c1")
            await tracker.set_typing("c1", "alice", True, "Alice")
            now[0] += 1
            await tracker.set_typing("c1", "bob", True)
            event = None
            while True:
                nxt = sub.get_nowait()
                if nxt is None:
                    break
                event = nxt
            both = await tracker.typing_users("c1")
            not_me = await tracker.typing_users("c1", exclude="alice")
            await tracker.set_typing("c1", "bob", False)
            now[0] += 6000
            stale = await tracker.typing_users("c1")
            return event, both, not_me, stale

        event, both, not_me, stale = asyncio.run(run())
        self.assertEqual(event, TypingChanged("c1", ("alice", "bob")))
        self.assertEqual(both, ["alice", "bob"])
        self.assertEqual(not_me, ["bob"])
        self.assertEqual(stale, [])

    def test_offline_store_is_tolerated(self):
        async def run():
            store = MemoryDocumentStore()
            tracker = TypingTracker(store, Hub())
            store.offline = True
            await tracker.set_typing("c1", "alice", True)
            return await tracker.typing_users("c1")

        self.assertEqual(asyncio.run(run()), [])


if __name__ == '__main__':
    unittest.main()
