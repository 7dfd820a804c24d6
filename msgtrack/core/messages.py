import asyncio
import contextlib
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .delivery import FAILED, SENDING, SENT, DeliveryStateMachine
from .docstore import (ArrayRemove, ArrayUnion, DELETE_FIELD, DocumentSnapshot, DocumentStore,
                       Listener, where)
from .errors import NotFoundError, NotParticipantError, TransientStoreError, ValidationError
from .hub import Hub, MessagesUpdated, Subscription, chat_topic
from .models import DeliveryState, Message
from .retry import RetryPolicy
from ..utils.logger import setup_logger

logger = setup_logger('msgtrack.messages')

MESSAGES = "messages"


class _ChatWatch:
    """Document-store listener feeding one chat's cache, shared by subscribers."""

    def __init__(self, listener: Listener, task: asyncio.Task):
        self.listener = listener
        self.task = task
        self.refs = 0

    def stop(self):
        self.listener.cancel()
        self.task.cancel()


class MessageStore:
    """Authoritative per-message state for one client.

    Owns the in-memory cache of messages per chat; only this class mutates
    it. Every mutation is also applied to the document store, using
    field-level array transforms so concurrent writers from other devices
    merge instead of overwriting each other.
    """

    def __init__(self, store: DocumentStore, hub: Hub, retry: Optional[RetryPolicy] = None,
                 machine: Optional[DeliveryStateMachine] = None, sleep=asyncio.sleep):
        """Initialize message store.

        Args:
            store (DocumentStore): External document store
            hub (Hub): Event hub for "messages updated" events
            retry (RetryPolicy, optional): Backoff policy for store writes
            machine (DeliveryStateMachine, optional): Delivery state rules
            sleep: Awaitable sleep used between retries

        Attributes:
            _chats (Dict[str, Dict[str, Message]]): Cache, chat id -> message id -> message
            _index (Dict[str, str]): Message id -> chat id
            _pending_receipts (Set[Tuple[str, str]]): Read receipts not yet durable
            _watches (Dict[str, _ChatWatch]): Live listeners per chat
        """
        self.store = store
        self.hub = hub
        self.retry = retry or RetryPolicy()
        self.machine = machine or DeliveryStateMachine()
        self.sleep = sleep
        self._chats: Dict[str, Dict[str, Message]] = {}
        self._index: Dict[str, str] = {}
        self._pending_receipts: Set[Tuple[str, str]] = set()
        self._watches: Dict[str, _ChatWatch] = {}
        self._lock = asyncio.Lock()

    # -- cache -----------------------------------------------------------

    def get(self, chat_id: str) -> List[Message]:
        """Cached messages of a chat, oldest first (ties broken by id)."""
        return sorted(self._chats.get(chat_id, {}).values(), key=lambda m: m.sort_key)

    def find(self, message_id: str) -> Optional[Message]:
        """Cached message by id, or None if no loaded chat holds it."""
        chat_id = self._index.get(message_id)
        if chat_id is None:
            return None
        return self._chats.get(chat_id, {}).get(message_id)

    def _require(self, message_id: str) -> Message:
        message = self.find(message_id)
        if message is None:
            raise NotFoundError("message", message_id)
        return message

    def _put(self, message: Message):
        self._chats.setdefault(message.chat_id, {})[message.id] = message
        self._index[message.id] = message.chat_id

    def _publish(self, chat_id: str):
        self.hub.publish(chat_topic(chat_id), MessagesUpdated(chat_id, tuple(self.get(chat_id))))

    @property
    def pending_receipts(self) -> Set[Tuple[str, str]]:
        """(message id, user id) pairs whose read receipt is not yet stored."""
        return set(self._pending_receipts)

    # -- merging ---------------------------------------------------------

    def _merge_message(self, local: Optional[Message], remote: Message) -> Message:
        if local is None:
            return remote
        return replace(
            remote,
            read_by=(local.read_by | remote.read_by) & remote.recipients,
            delivered_to=(local.delivered_to | remote.delivered_to) & remote.recipients,
            delivery_state=self.machine.merge(local.delivery_state, remote.delivery_state),
        )

    def _merge_documents(self, chat_id: str, documents: Iterable[DocumentSnapshot],
                         complete: bool = False) -> int:
        seen = set()
        changed = 0
        for doc in documents:
            try:
                remote = Message.from_document(doc.id, doc.data)
            except ValidationError as e:
                logger.warning(f"Skipping malformed message document {doc.id}: {e}")
                continue
            if remote.chat_id != chat_id:
                continue
            seen.add(remote.id)
            local = self.find(remote.id)
            merged = self._merge_message(local, remote)
            if merged != local:
                self._put(merged)
                changed += 1
        if complete:
            # Messages that were durable but vanished from the store were deleted remotely
            for message in list(self._chats.get(chat_id, {}).values()):
                if message.id not in seen and message.delivery_state not in (SENDING, FAILED):
                    del self._chats[chat_id][message.id]
                    self._index.pop(message.id, None)
                    changed += 1
        return changed

    async def merge(self, chat_id: str, documents: Iterable[DocumentSnapshot],
                    complete: bool = False) -> int:
        """Merge immutable store snapshots into the cache.

        Args:
            chat_id (str): Chat the documents belong to
            documents: Snapshots from a query or live listener
            complete (bool): True if `documents` is the chat's full result set

        Returns:
            int: Number of cached messages added, changed or dropped

        Side Effects:
            - Publishes MessagesUpdated if anything changed
        """
        async with self._lock:
            changed = self._merge_documents(chat_id, documents, complete)
        if changed:
            self._publish(chat_id)
        return changed

    async def _merge_one(self, message_id: str, data: Optional[dict]) -> Optional[Message]:
        if data is None:
            return self.find(message_id)
        chat_id = data.get("chatId") or self._index.get(message_id)
        await self.merge(chat_id, [DocumentSnapshot(message_id, data)])
        return self.find(message_id)

    async def load(self, chat_id: str) -> List[Message]:
        """Fetch a chat's messages from the store and merge them into the cache.

        Raises:
            TransientStoreError: If the store stays unreachable after retries
        """
        docs = await self.retry.run(
            lambda: self.store.query(MESSAGES, [where("chatId", "==", chat_id)], order_by="timestamp"),
            what=f"load chat {chat_id}", sleep=self.sleep)
        await self.merge(chat_id, docs, complete=True)
        return self.get(chat_id)

    # -- sending ---------------------------------------------------------

    async def append(self, message: Message) -> str:
        """Append a new message, optimistically visible in the `sending` state.

        Args:
            message (Message): New message; recipients must already be resolved

        Returns:
            str: The message id

        Raises:
            ValidationError: If the id is already known
            TransientStoreError: If the write failed after retries; the cached
                copy is left in the `failed` state

        Side Effects:
            - Caches the message and publishes MessagesUpdated
            - Writes the message document with state `sent`
        """
        async with self._lock:
            if self.find(message.id) is not None:
                raise ValidationError(f"Message {message.id} already exists")
            self._put(replace(message, delivery_state=SENDING))
        self._publish(message.chat_id)
        logger.info(f"Appending message {message.id} to chat {message.chat_id}")
        return await self._write(message)

    async def _write(self, message: Message) -> str:
        doc = replace(message, delivery_state=SENT, read_by=frozenset(),
                      delivered_to=frozenset(), reactions={}).to_document()

        def create(current):
            # A document that already exists means an earlier attempt landed
            return doc if current is None else None

        try:
            data = await self.retry.run(
                lambda: self.store.transaction(MESSAGES, message.id, create),
                what=f"append {message.id}", sleep=self.sleep)
        except TransientStoreError:
            async with self._lock:
                current = self.find(message.id)
                if current is not None and current.delivery_state == SENDING:
                    self._put(replace(current, delivery_state=FAILED))
            self._publish(message.chat_id)
            logger.error(f"Message {message.id} failed to send")
            raise
        await self._merge_one(message.id, data)
        logger.info(f"Message {message.id} sent")
        return message.id

    async def retry_send(self, message_id: str) -> bool:
        """Manually retry a failed message: failed -> sending -> sent.

        Messages that are not `failed` are left alone.

        Returns:
            bool: True if the message was written again, False if it was
                not `failed` and nothing happened

        Raises:
            NotFoundError: Unknown message
            TransientStoreError: If the write failed again
        """
        async with self._lock:
            message = self._require(message_id)
            self.machine.transition(message.delivery_state, SENDING)
            if message.delivery_state != FAILED:
                return False
            message = replace(message, delivery_state=SENDING)
            self._put(message)
        self._publish(message.chat_id)
        logger.info(f"Retrying message {message_id}")
        await self._write(message)
        return True

    # -- delivery state --------------------------------------------------

    async def update_delivery_state(self, message_id: str, new_state: DeliveryState) -> DeliveryState:
        """Move a message's delivery state forward.

        Stale updates are ignored; `sending`/`failed` are client-local and
        never written to the store.

        Returns:
            DeliveryState: The state after the update

        Raises:
            NotFoundError: Unknown message
            InvalidTransitionError: Edge not allowed by the state machine
        """
        new_state = DeliveryState(new_state)
        message = self._require(message_id)
        target = self.machine.transition(message.delivery_state, new_state)
        if target == message.delivery_state:
            logger.debug(f"Ignoring stale state {new_state.value} for message {message_id}")
            return target
        if target in (SENDING, FAILED):
            async with self._lock:
                self._put(replace(self._require(message_id), delivery_state=target))
            self._publish(message.chat_id)
            return target

        def advance(current):
            if current is None:
                return None
            remote = DeliveryState(current.get("deliveryState", SENT.value))
            if self.machine.is_stale(remote, target) or not self.machine.can_transition(remote, target):
                return None
            return {"deliveryState": target.value}

        data = await self.retry.run(
            lambda: self.store.transaction(MESSAGES, message_id, advance),
            what=f"state {target.value} for {message_id}", sleep=self.sleep)
        if data is None:
            raise NotFoundError("message", message_id)
        return (await self._merge_one(message_id, data)).delivery_state

    def _receipt_updates(self, current: Optional[dict], user_id: str, read: bool):
        if current is None:
            return None
        if user_id not in current.get("recipients", []):
            return None
        field = "readBy" if read else "deliveredTo"
        state = DeliveryState(current.get("deliveryState", SENT.value))
        target = self.machine.for_receipts(state, delivered=True, read=read)
        if user_id in current.get(field, []) and user_id in current.get("deliveredTo", []) and target == state:
            return None
        updates = {field: ArrayUnion(user_id), "deliveredTo": ArrayUnion(user_id)}
        if target != state:
            updates["deliveryState"] = target.value
        return updates

    def _check_recipient(self, message: Message, user_id: str) -> bool:
        if user_id == message.sender_id:
            return False
        if user_id not in message.recipients:
            raise NotParticipantError(user_id, message.chat_id)
        return True

    async def mark_read(self, message_id: str, user_id: str) -> bool:
        """Record that `user_id` viewed a message (idempotent set union).

        Store failures are retried and then parked as a pending receipt that
        flush_receipts() writes later; they are never raised.

        Returns:
            bool: True if the receipt is durable in the store

        Raises:
            NotFoundError: Unknown message
            NotParticipantError: `user_id` is neither sender nor recipient
        """
        message = self._require(message_id)
        if not self._check_recipient(message, user_id):
            return True
        async with self._lock:
            current = self._require(message_id)
            state = self.machine.for_receipts(current.delivery_state, delivered=True, read=True)
            self._put(replace(current, read_by=current.read_by | {user_id},
                              delivered_to=current.delivered_to | {user_id}, delivery_state=state))
        self._publish(message.chat_id)
        return await self._write_receipt(message_id, user_id)

    async def _write_receipt(self, message_id: str, user_id: str) -> bool:
        try:
            data = await self.retry.run(
                lambda: self.store.transaction(MESSAGES, message_id,
                                               lambda cur: self._receipt_updates(cur, user_id, True)),
                what=f"read receipt {message_id}/{user_id}", sleep=self.sleep)
        except TransientStoreError as e:
            self._pending_receipts.add((message_id, user_id))
            logger.warning(f"Read receipt for {message_id} by {user_id} deferred: {e}")
            return False
        self._pending_receipts.discard((message_id, user_id))
        if data is None:
            logger.debug(f"Read receipt for vanished message {message_id} dropped")
            return True
        await self._merge_one(message_id, data)
        return True

    async def flush_receipts(self) -> int:
        """Retry deferred read receipts.

        Returns:
            int: Number of receipts still pending
        """
        for message_id, user_id in sorted(self._pending_receipts):
            await self._write_receipt(message_id, user_id)
        if self._pending_receipts:
            logger.debug(f"{len(self._pending_receipts)} read receipts still pending")
        return len(self._pending_receipts)

    async def mark_delivered(self, message_id: str, user_id: str) -> bool:
        """Record that `user_id`'s client received a message live.

        Best effort: store failures are logged and reported as False.
        """
        message = self._require(message_id)
        if not self._check_recipient(message, user_id):
            return True
        try:
            data = await self.retry.run(
                lambda: self.store.transaction(MESSAGES, message_id,
                                               lambda cur: self._receipt_updates(cur, user_id, False)),
                what=f"delivery receipt {message_id}/{user_id}", sleep=self.sleep)
        except TransientStoreError as e:
            logger.warning(f"Delivery receipt for {message_id} by {user_id} not written: {e}")
            return False
        if data is not None:
            await self._merge_one(message_id, data)
        return True

    async def mark_chat_read(self, chat_id: str, user_id: str) -> int:
        """Mark every message from others in a chat as read by `user_id`.

        Returns:
            int: Number of messages that were unread

        Side Effects:
            - One batched write; on failure receipts are parked as pending
        """
        try:
            docs = await self.retry.run(
                lambda: self.store.query(MESSAGES, [where("chatId", "==", chat_id),
                                                    where("recipients", "array-contains", user_id)]),
                what=f"unread scan {chat_id}", sleep=self.sleep)
        except TransientStoreError as e:
            unread = await self._mark_local_read(chat_id, user_id)
            self._pending_receipts.update((message_id, user_id) for message_id in unread)
            logger.warning(f"Marking chat {chat_id} read for {user_id} deferred: {e}")
            return len(unread)

        batch = self.store.batch()
        for doc in docs:
            updates = self._receipt_updates(doc.data, user_id, True)
            if updates and user_id not in doc.data.get("readBy", []):
                batch.update(MESSAGES, doc.id, updates)
        count = len(batch)
        if count:
            try:
                await self.retry.run(batch.commit, what=f"mark chat {chat_id} read", sleep=self.sleep)
            except (TransientStoreError, NotFoundError) as e:
                await self._mark_local_read(chat_id, user_id)
                self._pending_receipts.update((op[2], user_id) for op in batch.ops)
                logger.warning(f"Marking chat {chat_id} read for {user_id} deferred: {e}")
                return count
            logger.info(f"Marked {count} messages read in chat {chat_id} for {user_id}")
        try:
            await self.load(chat_id)
        except TransientStoreError as e:
            await self._mark_local_read(chat_id, user_id)
            logger.warning(f"Reload of chat {chat_id} after marking read failed: {e}")
        return count

    async def _mark_local_read(self, chat_id: str, user_id: str) -> List[str]:
        marked = []
        async with self._lock:
            for message in self.get(chat_id):
                if user_id in message.recipients and user_id not in message.read_by:
                    state = self.machine.for_receipts(message.delivery_state, delivered=True, read=True)
                    self._put(replace(message, read_by=message.read_by | {user_id},
                                      delivered_to=message.delivered_to | {user_id}, delivery_state=state))
                    marked.append(message.id)
        if marked:
            self._publish(chat_id)
        return marked

    # -- reactions -------------------------------------------------------

    def _check_reaction(self, message: Message, user_id: str, symbol: str):
        if not symbol or not symbol.strip() or "." in symbol:
            raise ValidationError(f"Invalid reaction symbol: {symbol!r}")
        if user_id != message.sender_id and user_id not in message.recipients:
            raise NotParticipantError(user_id, message.chat_id)

    async def add_reaction(self, message_id: str, user_id: str, symbol: str) -> Message:
        """Set `symbol` as the user's only reaction on a message.

        Any earlier reaction by the same user is removed in the same atomic
        update.

        Raises:
            NotFoundError: Unknown or deleted message
            NotParticipantError: User is not part of the chat
            ValidationError: Empty or invalid symbol
            TransientStoreError: Store unreachable after retries
        """
        message = self._require(message_id)
        self._check_reaction(message, user_id, symbol)

        def swap(current):
            if current is None:
                return None
            updates = {}
            for other, users in (current.get("reactions") or {}).items():
                if other != symbol and user_id in users:
                    updates[f"reactions.{other}"] = DELETE_FIELD if users == [user_id] else ArrayRemove(user_id)
            updates[f"reactions.{symbol}"] = ArrayUnion(user_id)
            return updates

        data = await self.retry.run(lambda: self.store.transaction(MESSAGES, message_id, swap),
                                    what=f"reaction on {message_id}", sleep=self.sleep)
        if data is None:
            raise NotFoundError("message", message_id)
        logger.info(f"User {user_id} reacted {symbol} to message {message_id}")
        return await self._merge_one(message_id, data)

    async def remove_reaction(self, message_id: str, user_id: str, symbol: str) -> Message:
        """Withdraw `user_id`'s `symbol` reaction from a message.

        The symbol key is deleted once its last reactor is gone. Removing a
        reaction the user never set is a no-op.

        Args:
            message_id (str): Target message
            user_id (str): Reacting user, a participant of the chat
            symbol (str): Reaction symbol

        Returns:
            Message: The cached message after the merge

        Raises:
            NotFoundError: Unknown message
            ValidationError: Empty symbol or one containing a dot
            NotParticipantError: `user_id` is neither sender nor recipient
            TransientStoreError: If the store stayed unavailable
        """
        message = self._require(message_id)
        self._check_reaction(message, user_id, symbol)

        def drop(current):
            if current is None:
                return None
            users = (current.get("reactions") or {}).get(symbol, [])
            if user_id not in users:
                return None
            return {f"reactions.{symbol}": DELETE_FIELD if users == [user_id] else ArrayRemove(user_id)}

        data = await self.retry.run(lambda: self.store.transaction(MESSAGES, message_id, drop),
                                    what=f"reaction removal on {message_id}", sleep=self.sleep)
        if data is None:
            raise NotFoundError("message", message_id)
        return await self._merge_one(message_id, data)

    # -- live updates ----------------------------------------------------

    def subscribe(self, chat_id: str) -> Subscription:
        """Subscribe to live message updates of a chat.

        The first subscriber opens a document-store listener for the chat;
        the listener is closed when the last subscription is cancelled.
        Cached state survives unsubscribing, and resubscribing merges by id.

        Returns:
            Subscription: Yields MessagesUpdated events

        Raises:
            TransientStoreError: If the listener cannot be opened
        """
        watch = self._watches.get(chat_id)
        if watch is None:
            listener = self.store.listen(MESSAGES, [where("chatId", "==", chat_id)])
            task = asyncio.create_task(self._pump(chat_id, listener))
            watch = self._watches[chat_id] = _ChatWatch(listener, task)
            logger.info(f"Listening to chat {chat_id}")
        watch.refs += 1
        sub = self.hub.subscribe(chat_topic(chat_id))
        sub.on_cancel(lambda: self._release(chat_id, watch))
        return sub

    def _release(self, chat_id: str, watch: _ChatWatch):
        watch.refs -= 1
        if watch.refs <= 0 and self._watches.get(chat_id) is watch:
            del self._watches[chat_id]
            watch.stop()
            logger.info(f"Stopped listening to chat {chat_id}")

    async def _pump(self, chat_id: str, listener: Listener):
        async for snapshot in listener:
            await self.merge(chat_id, snapshot.documents, complete=True)

    @property
    def watched_chats(self) -> List[str]:
        """Chats with an open store listener."""
        return sorted(self._watches)

    async def forget_chat(self, chat_id: str):
        """Drop a deleted chat: stop its listener and clear its cache."""
        watch = self._watches.pop(chat_id, None)
        if watch is not None:
            watch.stop()
        async with self._lock:
            for message_id in self._chats.pop(chat_id, {}):
                self._index.pop(message_id, None)
            self._pending_receipts = {r for r in self._pending_receipts if r[0] in self._index}
        self._publish(chat_id)

    async def close(self):
        """Stop every live listener; cached state is kept."""
        watches = list(self._watches.values())
        self._watches.clear()
        for watch in watches:
            watch.stop()
        for watch in watches:
            with contextlib.suppress(asyncio.CancelledError):
                await watch.task
        if watches:
            logger.info(f"Closed {len(watches)} chat listeners")
