import unittest

from msgtrack.core.errors import ValidationError
from msgtrack.core.models import (Chat, DeliveryState, LastMessage, Message, MessageType, PLACEHOLDER_NAME,
                                  TypingIndicator, User)


def make_message(**kw):
    fields = dict(id="m1", chat_id="c1", sender_id="x", content="hi", timestamp=1000,
                  recipients={"y", "z"})
    fields.update(kw)
    return Message(**fields)


class TestMessage(unittest.TestCase):
    def test_create_starts_sending_with_fresh_id(self):
        a = Message.create("c1", "x", "hi", {"y"})
        b = Message.create("c1", "x", "hi", {"y"})
        self.assertEqual(a.delivery_state, DeliveryState.SENDING)
        self.assertNotEqual(a.id, b.id)
        self.assertEqual(a.recipients, frozenset({"y"}))

    def test_sender_cannot_be_recipient(self):
        with self.assertRaises(ValidationError):
            make_message(recipients={"x", "y"})

    def test_read_by_must_be_recipients(self):
        with self.assertRaises(ValidationError):
            make_message(read_by={"w"})

    def test_empty_text_rejected(self):
        with self.assertRaises(ValidationError):
            make_message(content="   ")

    def test_media_message_needs_ref_or_caption(self):
        with self.assertRaises(ValidationError):
            make_message(type=MessageType.IMAGE, content="")
        msg = make_message(type="image", content="", media_ref="media/1.png")
        self.assertEqual(msg.type, MessageType.IMAGE)
        self.assertEqual(msg.preview(), "[image]")

    def test_unknown_state_rejected(self):
        with self.assertRaises(ValidationError):
            make_message(delivery_state="lost")

    def test_with_reaction_keeps_one_per_user(self):
        msg = make_message().with_reaction("y", "❤️").with_reaction("y", "👍")
        self.assertEqual(msg.reactions, {"👍": frozenset({"y"})})
        self.assertEqual(msg.reaction_of("y"), "👍")

    def test_two_reactions_for_one_user_rejected(self):
        with self.assertRaises(ValidationError):
            make_message(reactions={"👍": {"y"}, "❤️": {"y"}})

    def test_without_reaction_drops_empty_symbol(self):
        msg = make_message().with_reaction("y", "👍").without_reaction("y", "👍")
        self.assertEqual(msg.reactions, {})

    def test_document_round_trip(self):
        msg = make_message(read_by={"y"}, delivered_to={"y"}, delivery_state=DeliveryState.READ,
                           reactions={"👍": {"z"}}, reply_to="m0", sender_name="Xavier")
        doc = msg.to_document()
        self.assertEqual(doc["readBy"], ["y"])
        self.assertEqual(doc["deliveryState"], "read")
        self.assertEqual(Message.from_document("m1", doc), msg)

    def test_from_document_rejects_missing_fields(self):
        with self.assertRaises(ValidationError):
            Message.from_document("m1", {"chatId": "c1", "content": "hi"})
        with self.assertRaises(ValidationError):
            Message.from_document("m1", {"chatId": "c1", "senderId": "x", "content": "hi", "timestamp": True})

    def test_preview_truncates(self):
        msg = make_message(content="a" * 300)
        self.assertEqual(len(msg.preview()), 100)
        self.assertTrue(msg.preview().endswith("…"))


class TestChat(unittest.TestCase):
    def test_more_than_two_participants_is_group(self):
        chat = Chat(id="c1", participants={"a", "b", "c"}, group_name="Team")
        self.assertTrue(chat.is_group)

    def test_group_requires_name(self):
        with self.assertRaises(ValidationError):
            Chat(id="c1", participants={"a", "b", "c"})

    def test_direct_chat_cannot_have_name(self):
        with self.assertRaises(ValidationError):
            Chat(id="c1", participants={"a", "b"}, group_name="x")

    def test_admins_subset_of_participants(self):
        with self.assertRaises(ValidationError):
            Chat(id="c1", participants={"a", "b"}, is_group=True, group_name="g", admins={"z"})

    def test_display_name(self):
        direct = Chat(id="c1", participants={"a", "b"})
        self.assertEqual(direct.display_name("a", {"b": "Bob"}), "Bob")
        self.assertEqual(direct.display_name("a"), "b")
        group = Chat(id="c2", participants={"a", "b"}, is_group=True, group_name="Pals")
        self.assertEqual(group.display_name("a"), "Pals")
        lonely = Chat(id="c3", participants={"a"})
        self.assertEqual(lonely.display_name("a"), PLACEHOLDER_NAME)

    def test_document_round_trip_with_last_message(self):
        last = LastMessage.from_message(make_message(delivery_state=DeliveryState.SENT))
        chat = Chat(id="c1", participants={"x", "y", "z"}, group_name="G", admins={"x"}, created_by="x",
                    last_message=last, created_at=1, updated_at=2)
        self.assertEqual(Chat.from_document("c1", chat.to_document()), chat)


class TestOtherEntities(unittest.TestCase):
    def test_user_round_trip(self):
        user = User(id="u1", display_name="Ann", email="ann@example.com", is_online=True, last_seen=5)
        self.assertEqual(User.from_document("u1", user.to_document()), user)

    def test_typing_indicator_id(self):
        ind = TypingIndicator(user_id="u1", user_name="Ann", chat_id="c1", timestamp=1, is_typing=True)
        self.assertEqual(ind.id, "u1_c1")
        self.assertEqual(TypingIndicator.from_document(ind.id, ind.to_document()), ind)


if __name__ == '__main__':
    unittest.main()
