import asyncio
import contextlib
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .chats import ChatRegistry
from .errors import (NotAdminError, NotFoundError, NotParticipantError, NotSignedInError,
                     TransientStoreError, ValidationError)
from .hub import MessagesUpdated, Subscription
from .indicators import TypingTracker
from .messages import MessageStore
from .models import Chat, Message, MessageType
from .notify import NotificationDispatcher
from .unread import UnreadCounter
from .users import UserDirectory
from ..utils.logger import setup_logger

logger = setup_logger('msgtrack.service')


@dataclass(frozen=True)
class ChatSummary:
    """One row of the chat list."""
    chat: Chat
    title: str
    unread: int


class DeliveryService:
    """Client-side facade over the delivery and read-state core.

    One instance per signed-in device. Collaborators are injected; nothing
    here is global. Control flow of a send: validate -> append (optimistic)
    -> store write -> sent -> last-message pointer -> unread refresh ->
    notification fan-out.
    """

    def __init__(self, messages: MessageStore, chats: ChatRegistry, unread: UnreadCounter,
                 notifier: NotificationDispatcher, users: UserDirectory,
                 typing: Optional[TypingTracker] = None):
        """Initialize delivery service with its collaborators.

        Args:
            messages (MessageStore): Per-message state and cache
            chats (ChatRegistry): Membership and last-message pointers
            unread (UnreadCounter): Derived unread counts
            notifier (NotificationDispatcher): Push fan-out
            users (UserDirectory): Display names and presence
            typing (TypingTracker, optional): Typing indicators

        Attributes:
            user_id (Optional[str]): Signed-in user, None when signed out
            _subscriptions (Set[Subscription]): Live subscriptions torn down on sign-out
            _tasks (Set[asyncio.Task]): Background delivery-ack tasks
        """
        self.messages = messages
        self.chats = chats
        self.unread = unread
        self.notifier = notifier
        self.users = users
        self.typing = typing
        self.user_id: Optional[str] = None
        self._subscriptions: Set[Subscription] = set()
        self._tasks: Set[asyncio.Task] = set()

    # -- identity --------------------------------------------------------

    def _me(self) -> str:
        if self.user_id is None:
            raise NotSignedInError("No user is signed in")
        return self.user_id

    async def sign_in(self, user_id: str):
        """Start a session for `user_id`; a previous session is signed out first."""
        if not user_id:
            raise ValidationError("user_id must not be empty")
        if self.user_id is not None and self.user_id != user_id:
            await self.sign_out()
        self.user_id = user_id
        await self.users.resolve(user_id)
        await self.users.set_presence(user_id, True)
        logger.info(f"User {user_id} signed in")

    async def sign_out(self):
        """Hard reset: tear down every listener and forget the user."""
        user_id = self.user_id
        for sub in list(self._subscriptions):
            sub.cancel()
        self._subscriptions.clear()
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        await self.messages.close()
        self.user_id = None
        if user_id is not None:
            await self.users.set_presence(user_id, False)
            logger.info(f"User {user_id} signed out, all listeners closed")

    def _track(self, sub: Subscription) -> Subscription:
        self._subscriptions.add(sub)
        sub.on_cancel(lambda: self._subscriptions.discard(sub))
        return sub

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def open_subscriptions(self) -> int:
        return len(self._subscriptions)

    async def _member_chat(self, chat_id: str) -> Chat:
        me = self._me()
        chat = await self.chats.get(chat_id)
        if me not in chat.participants:
            raise NotParticipantError(me, chat_id)
        return chat

    # -- chats -----------------------------------------------------------

    async def create_chat(self, user_ids: Iterable[str], group_name: Optional[str] = None,
                          is_group: bool = False) -> str:
        """Start a conversation between the current user and `user_ids`."""
        me = self._me()
        participants = {me} | {u for u in user_ids if u}
        return await self.chats.create(participants, is_group=is_group or bool(group_name),
                                       group_name=group_name, created_by=me)

    async def add_participants(self, chat_id: str, user_ids: Iterable[str]) -> List[str]:
        """Add users to a group chat (admins only).

        Returns:
            List[str]: The user ids that were not already participants

        Raises:
            NotParticipantError: Current user is not in the chat
            NotAdminError: Current user is not an admin of the chat
        """
        await self._require_admin(await self._member_chat(chat_id))
        return await self.chats.add_participants(chat_id, user_ids)

    async def remove_participant(self, chat_id: str, user_id: str) -> bool:
        """Remove a participant; anyone may leave, only admins remove others."""
        chat = await self._member_chat(chat_id)
        if user_id != self._me():
            await self._require_admin(chat)
        deleted = await self.chats.remove_participant(chat_id, user_id)
        if user_id == self.user_id and not deleted:
            await self.messages.forget_chat(chat_id)
        await self._refresh_unread()
        return deleted

    async def leave(self, chat_id: str) -> bool:
        """Leave a chat; True if that deleted it."""
        return await self.remove_participant(chat_id, self._me())

    async def rename(self, chat_id: str, new_name: str) -> Chat:
        await self._member_chat(chat_id)
        return await self.chats.rename(chat_id, new_name)

    async def _require_admin(self, chat: Chat):
        me = self._me()
        if chat.admins and not chat.is_admin(me):
            raise NotAdminError(me, chat.id)

    async def list_chats(self) -> List[ChatSummary]:
        """Chat list with titles and unread counts, newest activity first.

        Raises:
            TransientStoreError: Chat list could not be loaded (retryable)
        """
        me = self._me()
        await self._flush_receipts()
        chats = await self.chats.list_for_user(me)
        counts = await self.unread.refresh(me)
        ids = set()
        for chat in chats:
            if not chat.is_group:
                ids.update(chat.other_participants(me))
        await self.users.resolve_many(ids)
        names = self.users.names()
        return [ChatSummary(chat, chat.display_name(me, names), counts.get(chat.id, 0)) for chat in chats]

    def watch_chats(self) -> Subscription:
        """Live chat list and unread updates for the current user."""
        return self._track(self.chats.subscribe_for_user(self._me()))

    def watch_unread(self) -> Subscription:
        """Live unread counts of the current user."""
        return self._track(self.unread.watch(self._me()))

    # -- messages --------------------------------------------------------

    async def send(self, chat_id: str, content: str, type: MessageType = MessageType.TEXT,
                   media_ref: Optional[str] = None, reply_to: Optional[str] = None) -> Message:
        """Send a message to a chat.

        Returns:
            Message: The message as cached after the write (state `sent`)

        Raises:
            ValidationError: Empty content, rejected before any store call
            NotParticipantError: Current user is not in the chat
            TransientStoreError: Write failed; the message stays `failed`
                and can be passed to retry()
        """
        me = self._me()
        type = MessageType(type)
        if type == MessageType.TEXT and not (content or "").strip():
            raise ValidationError("Message content must not be empty")
        chat = await self._member_chat(chat_id)
        recipients = chat.participants - {me}
        if not recipients:
            raise ValidationError(f"Chat {chat_id} has no other participants")
        message = Message.create(chat_id, me, content or "", recipients, type=type, media_ref=media_ref,
                                 reply_to=reply_to, sender_name=self.users.display_name(me))

        # Replying implies having seen what came before
        await self.messages.mark_chat_read(chat_id, me)
        await self.messages.append(message)
        sent = self.messages.find(message.id) or message
        await self._after_send(sent)
        return sent

    async def retry(self, message_id: str) -> Message:
        """Manually resend a failed message.

        A message that is not `failed` is returned unchanged and nobody is
        notified again.

        Raises:
            NotFoundError: Unknown message
            TransientStoreError: The write failed again
        """
        self._me()
        wrote = await self.messages.retry_send(message_id)
        sent = self.messages.find(message_id)
        if wrote:
            await self._after_send(sent)
        return sent

    async def _after_send(self, message: Message):
        try:
            await self.chats.touch_last_message(message.chat_id, message)
        except (TransientStoreError, NotFoundError) as e:
            logger.warning(f"Last message of chat {message.chat_id} not updated: {e}")
        await self._refresh_unread()
        await self.notifier.dispatch_message(message)

    async def _flush_receipts(self):
        if not self.messages.pending_receipts:
            return
        left = await self.messages.flush_receipts()
        if left:
            logger.warning(f"{left} read receipts still pending for {self.user_id}")
        else:
            logger.info(f"Deferred read receipts of {self.user_id} written")

    async def _refresh_unread(self) -> Dict[str, int]:
        await self._flush_receipts()
        try:
            return await self.unread.refresh(self._me())
        except TransientStoreError as e:
            logger.warning(f"Unread refresh failed: {e}")
            return self.unread.counts(self._me())

    async def open_chat(self, chat_id: str) -> Subscription:
        """Open a live view of a chat.

        Loads the history, then acknowledges delivery of every message the
        current user receives through the live listener. Cancelling the
        returned subscription closes the listener; cached messages remain.
        """
        me = self._me()
        await self._member_chat(chat_id)
        await self._flush_receipts()
        loaded = await self.messages.load(chat_id)
        await self._ack_delivered(loaded)
        view = self._track(self.messages.subscribe(chat_id))
        acks = self.messages.subscribe(chat_id)
        task = self._spawn(self._ack_loop(acks))
        view.on_cancel(acks.cancel)
        view.on_cancel(task.cancel)
        logger.info(f"User {me} opened chat {chat_id}")
        return view

    async def _ack_loop(self, sub: Subscription):
        async for event in sub:
            if isinstance(event, MessagesUpdated):
                await self._ack_delivered(event.messages)

    async def _ack_delivered(self, messages: Iterable[Message]):
        me = self.user_id
        for message in messages:
            if me in message.recipients and me not in message.delivered_to:
                try:
                    await self.messages.mark_delivered(message.id, me)
                except NotFoundError:
                    logger.debug(f"Message {message.id} vanished before delivery ack")

    def history(self, chat_id: str) -> List[Message]:
        """Cached messages of a chat, oldest first."""
        return self.messages.get(chat_id)

    async def view_chat(self, chat_id: str) -> int:
        """Mark everything in a chat as read by the current user.

        Returns:
            int: Number of messages that were unread
        """
        me = self._me()
        await self._member_chat(chat_id)
        await self._flush_receipts()
        if not self.messages.get(chat_id):
            await self.messages.load(chat_id)
        count = await self.messages.mark_chat_read(chat_id, me)
        latest = self.messages.get(chat_id)
        if count and latest:
            try:
                await self.chats.touch_last_message(chat_id, latest[-1])
            except (TransientStoreError, NotFoundError) as e:
                logger.warning(f"Last message state of chat {chat_id} not updated: {e}")
        await self._refresh_unread()
        return count

    async def mark_read(self, message_id: str) -> bool:
        """Mark one message read; False if its receipt was deferred."""
        durable = await self.messages.mark_read(message_id, self._me())
        await self._refresh_unread()
        return durable

    async def react(self, message_id: str, symbol: str) -> Message:
        """Set the current user's reaction and notify the other participants."""
        me = self._me()
        message = await self.messages.add_reaction(message_id, me, symbol)
        await self.notifier.dispatch_reaction(message, me, symbol)
        return message

    async def unreact(self, message_id: str, symbol: str) -> Message:
        return await self.messages.remove_reaction(message_id, self._me(), symbol)

    async def set_typing(self, chat_id: str, is_typing: bool):
        """Publish the typing indicator; ignored when no tracker is configured."""
        if self.typing is None:
            return
        me = self._me()
        await self.typing.set_typing(chat_id, me, is_typing, self.users.display_name(me))

    def unread_counts(self) -> Tuple[Dict[str, int], int]:
        """Cached per-chat unread counts and their total."""
        me = self._me()
        return dict(self.unread.counts(me)), self.unread.total(me)
