import asyncio
import unittest

from msgtrack.core.chats import ChatRegistry
from msgtrack.core.docstore import MemoryDocumentStore
from msgtrack.core.errors import (NotAdminError, NotParticipantError, NotSignedInError, TransientStoreError,
                                  ValidationError)
from msgtrack.core.hub import Hub, MessagesUpdated, chat_topic
from msgtrack.core.indicators import TypingTracker
from msgtrack.core.messages import MESSAGES, MessageStore
from msgtrack.core.models import DeliveryState
from msgtrack.core.notify import NotificationDispatcher, PushGateway
from msgtrack.core.retry import RetryPolicy
from msgtrack.core.service import DeliveryService
from msgtrack.core.unread import UnreadCounter
from msgtrack.core.users import UserDirectory


async def eventually(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class FlakyStore(MemoryDocumentStore):
    """Memory store whose message transactions can be switched off."""

    def __init__(self):
        super().__init__()
        self.fail_messages = False

    async def transaction(self, collection, doc_id, fn):
        if self.fail_messages and collection == MESSAGES:
            raise TransientStoreError("network down")
        return await super().transaction(collection, doc_id, fn)


class RecordingGateway(PushGateway):
    def __init__(self):
        self.pushed = []

    async def push(self, recipient_id, payload):
        self.pushed.append((recipient_id, payload))


def make_device(store, gateway=None):
    retry = RetryPolicy(max_attempts=2, base_delay=0)
    hub = Hub()
    users = UserDirectory(store, retry)
    messages = MessageStore(store, hub, retry)
    return DeliveryService(
        messages=messages,
        chats=ChatRegistry(store, hub, messages, retry),
        unread=UnreadCounter(store, hub, retry),
        notifier=NotificationDispatcher(gateway or RecordingGateway(), users),
        users=users,
        typing=TypingTracker(store, hub),
    )


async def register(store, *names):
    users = UserDirectory(store)
    for name in names:
        await users.register(name.upper(), user_id=name)


class TestScenarios(unittest.TestCase):
    def test_offline_recipient_then_read(self):
        async def run():
            store = MemoryDocumentStore()
            await register(store, "x", "y")
            gateway = RecordingGateway()
            x = make_device(store, gateway)
            await x.sign_in("x")
            chat_id = await x.create_chat(["y"])
            view = await x.open_chat(chat_id)
            sent = await x.send(chat_id, "hi")

            doc = await store.get(MESSAGES, sent.id)
            self.assertEqual(doc["deliveryState"], "sent")
            self.assertEqual(doc["readBy"], [])
            self.assertEqual([r for r, _ in gateway.pushed], ["y"])

            y = make_device(store)
            await y.sign_in("y")
            summaries = await y.list_chats()
            self.assertEqual([(s.chat.id, s.title, s.unread) for s in summaries], [(chat_id, "X", 1)])

            marked = await y.view_chat(chat_id)
            self.assertEqual(marked, 1)
            doc = await store.get(MESSAGES, sent.id)
            self.assertEqual(doc["deliveryState"], "read")
            self.assertEqual(doc["readBy"], ["y"])
            self.assertEqual(y.unread_counts(), ({chat_id: 0}, 0))
            await eventually(lambda: x.history(chat_id)[0].delivery_state == DeliveryState.READ)

            chat = await x.chats.get(chat_id)
            self.assertEqual(chat.last_message.delivery_state, DeliveryState.READ)
            view.cancel()
            await x.sign_out()
            await y.sign_out()

        asyncio.run(run())

    def test_failed_send_and_manual_retry(self):
        async def run():
            store = FlakyStore()
            await register(store, "x", "y")
            x = make_device(store)
            await x.sign_in("x")
            chat_id = await x.create_chat(["y"])
            sub = x.messages.hub.subscribe(chat_topic(chat_id))

            store.fail_messages = True
            with self.assertRaises(TransientStoreError):
                await x.send(chat_id, "are you there?")
            failed = x.history(chat_id)[0]
            self.assertEqual(failed.delivery_state, DeliveryState.FAILED)
            self.assertIsNone(await store.get(MESSAGES, failed.id))

            store.fail_messages = False
            retried = await x.retry(failed.id)
            self.assertEqual(retried.delivery_state, DeliveryState.SENT)

            states = []
            while True:
                event = sub.get_nowait()
                if event is None:
                    break
                if isinstance(event, MessagesUpdated):
                    for m in event.messages:
                        if m.id == failed.id and (not states or states[-1] != m.delivery_state):
                            states.append(m.delivery_state)
            sub.cancel()
            await x.sign_out()
            return states

        self.assertEqual(asyncio.run(run()), [DeliveryState.SENDING, DeliveryState.FAILED,
                                              DeliveryState.SENDING, DeliveryState.SENT])

    def test_group_read_by_one(self):
        async def run():
            store = MemoryDocumentStore()
            await register(store, "x", "y", "z")
            x, y, z = make_device(store), make_device(store), make_device(store)
            for device, user in ((x, "x"), (y, "y"), (z, "z")):
                await device.sign_in(user)
            chat_id = await x.create_chat(["y", "z"], group_name="Trio")
            sent = await x.send(chat_id, "meeting at 3")
            await y.view_chat(chat_id)

            doc = await store.get(MESSAGES, sent.id)
            self.assertEqual(doc["readBy"], ["y"])
            self.assertEqual(doc["deliveryState"], "read")
            self.assertEqual(await z.unread.refresh("z"), {chat_id: 1})
            self.assertEqual(await y.unread.refresh("y"), {chat_id: 0})
            for device in (x, y, z):
                await device.sign_out()

        asyncio.run(run())

    def test_read_receipt_written_after_outage(self):
        async def run():
            store = FlakyStore()
            await register(store, "x", "y")
            x, y = make_device(store), make_device(store)
            await x.sign_in("x")
            await y.sign_in("y")
            chat_id = await x.create_chat(["y"])
            sent = await x.send(chat_id, "did you get this?")
            view = await y.open_chat(chat_id)

            store.fail_messages = True
            self.assertFalse(await y.mark_read(sent.id))
            self.assertEqual(y.messages.pending_receipts, {(sent.id, "y")})
            self.assertEqual((await store.get(MESSAGES, sent.id))["readBy"], [])

            store.fail_messages = False
            summaries = await y.list_chats()
            self.assertEqual([s.unread for s in summaries], [0])
            self.assertEqual(y.messages.pending_receipts, set())
            doc = await store.get(MESSAGES, sent.id)
            self.assertEqual(doc["readBy"], ["y"])
            self.assertEqual(doc["deliveryState"], "read")
            view.cancel()
            await x.sign_out()
            await y.sign_out()

        asyncio.run(run())


class TestDeliveryService(unittest.TestCase):
    def test_retry_of_sent_message_notifies_once(self):
        async def run():
            store = MemoryDocumentStore()
            await register(store, "x", "y")
            gateway = RecordingGateway()
            x = make_device(store, gateway)
            await x.sign_in("x")
            chat_id = await x.create_chat(["y"])
            sent = await x.send(chat_id, "hi")
            again = await x.retry(sent.id)
            await x.sign_out()
            return sent, again, gateway.pushed

        sent, again, pushed = asyncio.run(run())
        self.assertEqual(again.id, sent.id)
        self.assertEqual(again.delivery_state, DeliveryState.SENT)
        self.assertEqual([recipient for recipient, _ in pushed], ["y"])

    def test_requires_sign_in(self):
        async def run():
            service = make_device(MemoryDocumentStore())
            with self.assertRaises(NotSignedInError):
                await service.send("c1", "hi")
            with self.assertRaises(ValidationError):
                await service.sign_in("")

        asyncio.run(run())

    def test_send_validation(self):
        async def run():
            store = MemoryDocumentStore()
            await register(store, "x", "y", "z")
            x, z = make_device(store), make_device(store)
            await x.sign_in("x")
            await z.sign_in("z")
            chat_id = await x.create_chat(["y"])
            with self.assertRaises(ValidationError):
                await x.send(chat_id, "   ")
            with self.assertRaises(NotParticipantError):
                await z.send(chat_id, "let me in")
            self.assertEqual(await store.query(MESSAGES), [])

        asyncio.run(run())

    def test_open_chat_acknowledges_delivery(self):
        async def run():
            store = MemoryDocumentStore()
            await register(store, "x", "y")
            x, y = make_device(store), make_device(store)
            await x.sign_in("x")
            await y.sign_in("y")
            chat_id = await x.create_chat(["y"])
            await y.open_chat(chat_id)
            sent = await x.send(chat_id, "ping")

            async def delivered():
                return await store.get(MESSAGES, sent.id)

            for _ in range(200):
                doc = await delivered()
                if doc["deliveredTo"] == ["y"]:
                    break
                await asyncio.sleep(0.01)
            self.assertEqual(doc["deliveryState"], "delivered")
            self.assertEqual(doc["readBy"], [])
            await x.sign_out()
            await y.sign_out()

        asyncio.run(run())

    def test_sign_out_closes_every_listener(self):
        async def run():
            store = MemoryDocumentStore()
            await register(store, "x", "y")
            y = make_device(store)
            await y.sign_in("y")
            chat_id = await y.create_chat(["x"])
            await y.open_chat(chat_id)
            y.watch_chats()
            y.watch_unread()
            self.assertGreater(store.active_listeners, 0)
            self.assertEqual(y.open_subscriptions, 3)
            await y.sign_out()
            self.assertEqual(store.active_listeners, 0)
            self.assertEqual(y.messages.hub.subscriber_count(), 0)
            self.assertEqual(y.open_subscriptions, 0)
            self.assertIsNone(y.user_id)
            self.assertFalse((await y.users.resolve("y", refresh=True)).is_online)

        asyncio.run(run())

    def test_admin_rules(self):
        async def run():
            store = MemoryDocumentStore()
            await register(store, "x", "y", "z", "w")
            x, y = make_device(store), make_device(store)
            await x.sign_in("x")
            await y.sign_in("y")
            chat_id = await x.create_chat(["y", "z"], group_name="Team")
            with self.assertRaises(NotAdminError):
                await y.remove_participant(chat_id, "z")
            with self.assertRaises(NotAdminError):
                await y.add_participants(chat_id, ["w"])
            self.assertEqual(await x.add_participants(chat_id, ["w"]), ["w"])
            self.assertFalse(await x.remove_participant(chat_id, "z"))
            self.assertFalse(await y.leave(chat_id))
            renamed = await x.rename(chat_id, "Core")
            self.assertEqual(renamed.participants, frozenset({"x", "w"}))
            self.assertEqual(renamed.group_name, "Core")

        asyncio.run(run())

    def test_reactions_notify_others(self):
        async def run():
            store = MemoryDocumentStore()
            await register(store, "x", "y")
            gateway = RecordingGateway()
            x, y = make_device(store), make_device(store, gateway)
            await x.sign_in("x")
            await y.sign_in("y")
            chat_id = await x.create_chat(["y"])
            sent = await x.send(chat_id, "joke")
            await y.open_chat(chat_id)
            reacted = await y.react(sent.id, "😂")
            self.assertEqual(reacted.reactions, {"😂": frozenset({"y"})})
            self.assertEqual([(r, p.preview) for r, p in gateway.pushed], [("x", "reacted 😂")])
            cleared = await y.unreact(sent.id, "😂")
            self.assertEqual(cleared.reactions, {})
            await x.sign_out()
            await y.sign_out()

        asyncio.run(run())

    def test_typing(self):
        async def run():
            store = MemoryDocumentStore()
            await register(store, "x", "y")
            x = make_device(store)
            await x.sign_in("x")
            chat_id = await x.create_chat(["y"])
            await x.set_typing(chat_id, True)
            typing = await x.typing.typing_users(chat_id)
            await x.set_typing(chat_id, False)
            return typing, await x.typing.typing_users(chat_id)

        self.assertEqual(asyncio.run(run()), (["x"], []))


if __name__ == '__main__':
    unittest.main()
