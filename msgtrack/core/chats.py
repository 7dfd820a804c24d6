import asyncio
import uuid
from typing import Dict, Iterable, List, Optional

from .docstore import ArrayRemove, ArrayUnion, DocumentStore, Listener, where
from .errors import NotFoundError, ValidationError
from .hub import ChatRemoved, ChatUpdated, Hub, Subscription, user_topic
from .messages import MESSAGES, MessageStore
from .models import Chat, LastMessage, Message, now_ms
from .retry import RetryPolicy
from ..utils.logger import setup_logger

logger = setup_logger('msgtrack.chats')

CHATS = "chats"


class ChatRegistry:
    """Registry for chats, their membership and last-message pointers.

    Membership changes are add/remove transforms against the live
    participant list, never replacement of a cached copy. Creating a
    one-on-one chat for a pair that already has one reuses the existing
    chat unless `reuse_direct` is False.
    """

    def __init__(self, store: DocumentStore, hub: Hub, messages: Optional[MessageStore] = None,
                 retry: Optional[RetryPolicy] = None, clock=now_ms, reuse_direct: bool = True,
                 sleep=asyncio.sleep):
        """Initialize chat registry.

        Args:
            store (DocumentStore): External document store
            hub (Hub): Event hub for chat list events
            messages (MessageStore, optional): Cache to clear on cascade deletion
            retry (RetryPolicy, optional): Backoff policy for store calls
            clock: Callable returning Unix milliseconds
            reuse_direct (bool): Reuse an existing one-on-one chat on create
            sleep: Awaitable sleep used between retries
        """
        self.store = store
        self.hub = hub
        self.messages = messages
        self.retry = retry or RetryPolicy()
        self.clock = clock
        self.reuse_direct = reuse_direct
        self.sleep = sleep
        self._cache: Dict[str, Chat] = {}

    async def _call(self, op, what: str):
        return await self.retry.run(op, what=what, sleep=self.sleep)

    def _remember(self, chat: Chat) -> Chat:
        self._cache[chat.id] = chat
        return chat

    def _announce(self, chat: Chat, user_ids: Optional[Iterable[str]] = None):
        for user_id in sorted(user_ids if user_ids is not None else chat.participants):
            self.hub.publish(user_topic(user_id), ChatUpdated(chat))

    def cached(self, chat_id: str) -> Optional[Chat]:
        """Chat from the local cache, or None if it was never loaded."""
        return self._cache.get(chat_id)

    async def get(self, chat_id: str) -> Chat:
        """Fetch a chat from the store.

        Raises:
            NotFoundError: If the chat does not exist (e.g. cascade-deleted)
        """
        data = await self._call(lambda: self.store.get(CHATS, chat_id), f"get chat {chat_id}")
        if data is None:
            self._cache.pop(chat_id, None)
            raise NotFoundError("chat", chat_id)
        return self._remember(Chat.from_document(chat_id, data))

    async def find_direct(self, user_a: str, user_b: str) -> Optional[Chat]:
        """Return the oldest one-on-one chat between two users, if any."""
        docs = await self._call(
            lambda: self.store.query(CHATS, [where("participants", "array-contains", user_a),
                                             where("isGroup", "==", False)]),
            f"find direct chat {user_a}/{user_b}")
        pair = {user_a, user_b}
        matches = [Chat.from_document(d.id, d.data) for d in docs if set(d.data.get("participants", [])) == pair]
        if not matches:
            return None
        return self._remember(min(matches, key=lambda c: (c.created_at, c.id)))

    async def create(self, participants: Iterable[str], is_group: bool = False,
                     group_name: Optional[str] = None, created_by: Optional[str] = None) -> str:
        """Create a new chat.

        Args:
            participants: User ids, at least two distinct ones
            is_group (bool): Force a group chat even for two participants
            group_name (str, optional): Required for group chats
            created_by (str, optional): Creator; becomes the first group admin

        Returns:
            str: Id of the new chat, or of the reused one-on-one chat

        Raises:
            ValidationError: Fewer than two participants, missing group name,
                or a creator who is not a participant
        """
        if isinstance(participants, str):
            raise ValidationError("participants must be a collection of user ids")
        members = {p for p in participants if p}
        if len(members) < 2:
            raise ValidationError("A chat needs at least two participants")
        is_group = is_group or len(members) > 2
        group_name = (group_name or "").strip() or None
        if is_group and not group_name:
            raise ValidationError("Group chats need a group name")
        if created_by is not None and created_by not in members:
            raise ValidationError(f"Creator {created_by} must be a participant")

        if not is_group:
            group_name = None
            if self.reuse_direct:
                a, b = sorted(members)
                existing = await self.find_direct(a, b)
                if existing is not None:
                    logger.info(f"Reusing direct chat {existing.id} for {a}/{b}")
                    return existing.id

        ts = self.clock()
        chat = Chat(
            id=uuid.uuid4().hex,
            participants=frozenset(members),
            is_group=is_group,
            group_name=group_name,
            admins=frozenset({created_by}) if is_group and created_by else frozenset(),
            created_by=created_by if is_group else None,
            created_at=ts,
            updated_at=ts,
        )
        await self._call(lambda: self.store.set(CHATS, chat.id, chat.to_document()), f"create chat {chat.id}")
        self._remember(chat)
        self._announce(chat)
        kind = f"group '{group_name}'" if is_group else "direct chat"
        logger.info(f"Created {kind} {chat.id} with {len(members)} participants")
        return chat.id

    async def add_participants(self, chat_id: str, user_ids: Iterable[str]) -> List[str]:
        """Add users to a group chat, skipping existing participants.

        Returns:
            List[str]: The users actually added

        Raises:
            NotFoundError: Unknown chat
            ValidationError: The chat is a one-on-one chat
        """
        chat = await self.get(chat_id)
        if not chat.is_group:
            raise ValidationError("Participants can only be added to group chats")
        added: List[str] = []

        def add(current):
            if current is None:
                return None
            new = sorted({u for u in user_ids if u} - set(current.get("participants", [])))
            added.extend(new)
            if not new:
                return None
            return {"participants": ArrayUnion(*new), "updatedAt": self.clock()}

        data = await self._call(lambda: self.store.transaction(CHATS, chat_id, add), f"add participants {chat_id}")
        if data is None:
            raise NotFoundError("chat", chat_id)
        chat = self._remember(Chat.from_document(chat_id, data))
        if added:
            self._announce(chat)
            logger.info(f"Added {added} to chat {chat_id}")
        return added

    async def remove_participant(self, chat_id: str, user_id: str) -> bool:
        """Remove a user from a chat.

        Removing the last participant deletes the chat and all its messages.
        If a group loses its last admin, the first remaining participant
        (sorted) is promoted.

        Returns:
            bool: True if the chat was deleted as a result

        Raises:
            NotFoundError: Unknown chat
        """
        removed = []

        def remove(current):
            if current is None:
                return None
            participants = current.get("participants", [])
            if user_id not in participants:
                return None
            removed.append(user_id)
            updates = {"participants": ArrayRemove(user_id), "updatedAt": self.clock()}
            if user_id in current.get("admins", []):
                admins = [a for a in current["admins"] if a != user_id]
                remaining = sorted(p for p in participants if p != user_id)
                if current.get("isGroup") and current.get("createdBy") and not admins and remaining:
                    updates["admins"] = [remaining[0]]
                else:
                    updates["admins"] = ArrayRemove(user_id)
            return updates

        data = await self._call(lambda: self.store.transaction(CHATS, chat_id, remove),
                                f"remove participant {chat_id}")
        if data is None:
            self._cache.pop(chat_id, None)
            raise NotFoundError("chat", chat_id)
        if not removed:
            logger.debug(f"User {user_id} is not in chat {chat_id}")
            return False

        self.hub.publish(user_topic(user_id), ChatRemoved(chat_id))
        if not data.get("participants"):
            logger.info(f"Last participant left chat {chat_id}, deleting it")
            await self.delete(chat_id)
            return True
        chat = self._remember(Chat.from_document(chat_id, data))
        self._announce(chat)
        logger.info(f"Removed {user_id} from chat {chat_id}")
        return False

    async def rename(self, chat_id: str, new_name: str) -> Chat:
        """Rename a group chat.

        Raises:
            ValidationError: Empty name or not a group chat
            NotFoundError: Unknown chat
        """
        new_name = (new_name or "").strip()
        if not new_name:
            raise ValidationError("Group name must not be empty")
        chat = await self.get(chat_id)
        if not chat.is_group:
            raise ValidationError("Only group chats can be renamed")
        await self._call(lambda: self.store.update(CHATS, chat_id, {"groupName": new_name, "updatedAt": self.clock()}),
                         f"rename chat {chat_id}")
        chat = await self.get(chat_id)
        self._announce(chat)
        logger.info(f"Chat {chat_id} renamed to '{new_name}'")
        return chat

    async def touch_last_message(self, chat_id: str, message: Message) -> bool:
        """Point the chat's last message at `message` unless a newer one is set.

        Only applied when the message's timestamp is >= the current pointer's,
        so concurrent listeners cannot move the pointer backwards.

        Returns:
            bool: True if the pointer was updated
        """
        applied = []

        def touch(current):
            if current is None:
                return None
            last = current.get("lastMessage") or {}
            if last and int(last.get("timestamp", 0)) > message.timestamp:
                return None
            applied.append(True)
            return {
                "lastMessage": LastMessage.from_message(message).to_document(),
                "updatedAt": max(int(current.get("updatedAt", 0)), self.clock(), message.timestamp),
            }

        data = await self._call(lambda: self.store.transaction(CHATS, chat_id, touch), f"touch chat {chat_id}")
        if data is None:
            raise NotFoundError("chat", chat_id)
        chat = self._remember(Chat.from_document(chat_id, data))
        if applied:
            self._announce(chat)
            logger.debug(f"Chat {chat_id} last message -> {message.id}")
        else:
            logger.debug(f"Chat {chat_id} kept newer last message over {message.id}")
        return bool(applied)

    async def delete(self, chat_id: str):
        """Delete a chat and every message in it in one batch."""
        data = await self._call(lambda: self.store.get(CHATS, chat_id), f"get chat {chat_id}")
        docs = await self._call(lambda: self.store.query(MESSAGES, [where("chatId", "==", chat_id)]),
                                f"list messages of {chat_id}")
        batch = self.store.batch()
        for doc in docs:
            batch.delete(MESSAGES, doc.id)
        batch.delete(CHATS, chat_id)
        await self._call(batch.commit, f"delete chat {chat_id}")
        self._cache.pop(chat_id, None)
        if self.messages is not None:
            await self.messages.forget_chat(chat_id)
        for user_id in sorted((data or {}).get("participants", [])):
            self.hub.publish(user_topic(user_id), ChatRemoved(chat_id))
        logger.info(f"Deleted chat {chat_id} and {len(docs)} messages")

    async def list_for_user(self, user_id: str) -> List[Chat]:
        """Chats the user participates in, most recently updated first."""
        docs = await self._call(
            lambda: self.store.query(CHATS, [where("participants", "array-contains", user_id)]),
            f"list chats for {user_id}")
        chats = []
        for doc in docs:
            try:
                chats.append(self._remember(Chat.from_document(doc.id, doc.data)))
            except ValidationError as e:
                logger.warning(f"Skipping malformed chat document {doc.id}: {e}")
        chats.sort(key=lambda c: (-c.updated_at, c.id))
        return chats

    def subscribe_for_user(self, user_id: str) -> Subscription:
        """Live chat list for a user.

        Returns:
            Subscription: Yields ChatUpdated/ChatRemoved events (plus any other
                event published on the user's topic)
        """
        listener = self.store.listen(CHATS, [where("participants", "array-contains", user_id)])
        sub = self.hub.subscribe(user_topic(user_id))
        task = asyncio.create_task(self._pump(user_id, listener))

        def stop():
            listener.cancel()
            task.cancel()

        sub.on_cancel(stop)
        return sub

    async def _pump(self, user_id: str, listener: Listener):
        known: Dict[str, Chat] = {}
        async for snapshot in listener:
            current = {}
            for doc in snapshot.documents:
                try:
                    current[doc.id] = self._remember(Chat.from_document(doc.id, doc.data))
                except ValidationError as e:
                    logger.warning(f"Skipping malformed chat document {doc.id}: {e}")
            for chat_id, chat in current.items():
                if known.get(chat_id) != chat:
                    self.hub.publish(user_topic(user_id), ChatUpdated(chat))
            for chat_id in set(known) - set(current):
                self.hub.publish(user_topic(user_id), ChatRemoved(chat_id))
            known = current
