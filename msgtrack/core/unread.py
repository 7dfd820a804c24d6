import asyncio
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .chats import CHATS
from .docstore import DocumentSnapshot, DocumentStore, Listener, where
from .errors import TransientStoreError
from .hub import Hub, Subscription, UnreadChanged, user_topic
from .messages import MESSAGES
from .retry import RetryPolicy
from ..utils.logger import setup_logger

logger = setup_logger('msgtrack.unread')


def derive_counts(user_id: str, chat_ids: Iterable[str], messages: Iterable[DocumentSnapshot]) -> Dict[str, int]:
    """Unread count per chat, computed from message documents.

    A message counts for `user_id` when it is in one of the user's chats,
    the user is one of its recipients, and the user is not in its read-by set.

    The recipient check is stricter than "not sent by the user": a message
    sent before the user joined a chat lists only the earlier members as
    recipients, and since read receipts are only accepted from recipients
    it could never leave the count.
    """
    counts = {chat_id: 0 for chat_id in chat_ids}
    for doc in messages:
        data = doc.data
        chat_id = data.get("chatId")
        if chat_id not in counts or data.get("senderId") == user_id:
            continue
        if user_id in data.get("recipients", []) and user_id not in data.get("readBy", []):
            counts[chat_id] += 1
    return counts


class UnreadCounter:
    """Per-(user, chat) unread counts, derived from stored messages.

    Counts are a cache: every refresh rebuilds them from the message
    documents instead of patching them, so concurrent senders and read
    receipts cannot make them drift.
    """

    def __init__(self, store: DocumentStore, hub: Hub, retry: Optional[RetryPolicy] = None,
                 sleep=asyncio.sleep):
        self.store = store
        self.hub = hub
        self.retry = retry or RetryPolicy()
        self.sleep = sleep
        self._counts: Dict[str, Dict[str, int]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, user_id: str) -> asyncio.Lock:
        return self._locks.setdefault(user_id, asyncio.Lock())

    async def _compute(self, user_id: str) -> Dict[str, int]:
        chats = await self.retry.run(
            lambda: self.store.query(CHATS, [where("participants", "array-contains", user_id)]),
            what=f"chats of {user_id}", sleep=self.sleep)
        chat_ids = [c.id for c in chats]
        docs = []
        if chat_ids:
            docs = await self.retry.run(
                lambda: self.store.query(MESSAGES, [where("recipients", "array-contains", user_id),
                                                    where("chatId", "in", chat_ids)]),
                what=f"unread messages of {user_id}", sleep=self.sleep)
        return derive_counts(user_id, chat_ids, docs)

    def _store(self, user_id: str, counts: Dict[str, int]):
        previous = self._counts.get(user_id)
        self._counts[user_id] = counts
        if previous != counts:
            self.hub.publish(user_topic(user_id), UnreadChanged(
                user_id, tuple(sorted(counts.items())), sum(counts.values())))

    async def refresh(self, user_id: str) -> Dict[str, int]:
        """Recompute every per-chat count and the total for a user.

        Idempotent and safe to call redundantly or concurrently.

        Returns:
            Dict[str, int]: Chat id -> unread count

        Raises:
            TransientStoreError: If the store stays unreachable after retries
        """
        async with self._lock(user_id):
            counts = await self._compute(user_id)
            self._store(user_id, counts)
        logger.debug(f"Unread for {user_id}: {sum(counts.values())} total in {len(counts)} chats")
        return dict(counts)

    async def recount(self, user_id: str, chat_id: str) -> int:
        """Rebuild a single chat's count for a user."""
        async with self._lock(user_id):
            chat = await self.retry.run(lambda: self.store.get(CHATS, chat_id),
                                        what=f"get chat {chat_id}", sleep=self.sleep)
            counts = dict(self._counts.get(user_id, {}))
            if chat is None or user_id not in chat.get("participants", []):
                counts.pop(chat_id, None)
            else:
                docs = await self.retry.run(
                    lambda: self.store.query(MESSAGES, [where("chatId", "==", chat_id),
                                                        where("recipients", "array-contains", user_id)]),
                    what=f"unread messages of {user_id} in {chat_id}", sleep=self.sleep)
                counts.update(derive_counts(user_id, [chat_id], docs))
            self._store(user_id, counts)
        return counts.get(chat_id, 0)

    def invalidate(self, user_id: str, chat_id: Optional[str] = None):
        """Forget cached counts so the next refresh rebuilds them."""
        if chat_id is None:
            self._counts.pop(user_id, None)
        else:
            self._counts.get(user_id, {}).pop(chat_id, None)

    def count(self, user_id: str, chat_id: str) -> int:
        """Cached unread count of one chat."""
        return self._counts.get(user_id, {}).get(chat_id, 0)

    def counts(self, user_id: str) -> Mapping[str, int]:
        return dict(self._counts.get(user_id, {}))

    def total(self, user_id: str) -> int:
        """Cached unread count over all chats, e.g. for an app badge."""
        return sum(self._counts.get(user_id, {}).values())

    async def reconcile(self, user_id: str) -> Dict[str, Tuple[int, int]]:
        """Compare cached counts against a fresh derivation and repair them.

        Returns:
            Dict[str, Tuple[int, int]]: Chat id -> (cached, actual) for drifted chats
        """
        async with self._lock(user_id):
            cached = dict(self._counts.get(user_id, {}))
            actual = await self._compute(user_id)
            drift = {
                chat_id: (cached.get(chat_id, 0), actual.get(chat_id, 0))
                for chat_id in set(cached) | set(actual)
                if cached.get(chat_id, 0) != actual.get(chat_id, 0)
            }
            self._store(user_id, actual)
        if drift:
            logger.warning(f"Unread counts for {user_id} drifted in {len(drift)} chats, repaired")
        return drift

    def watch(self, user_id: str) -> Subscription:
        """Live "my unread messages" subscription.

        Every change to a message addressed to the user triggers a full
        refresh. Returns a subscription on the user's topic; cancelling it
        closes the store listener.
        """
        listener = self.store.listen(MESSAGES, [where("recipients", "array-contains", user_id)])
        sub = self.hub.subscribe(user_topic(user_id))
        task = asyncio.create_task(self._pump(user_id, listener))

        def stop():
            listener.cancel()
            task.cancel()

        sub.on_cancel(stop)
        return sub

    async def _pump(self, user_id: str, listener: Listener):
        async for _ in listener:
            try:
                await self.refresh(user_id)
            except TransientStoreError as e:
                logger.warning(f"Unread refresh for {user_id} skipped: {e}")
