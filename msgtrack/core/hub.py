import asyncio
from dataclasses import dataclass
from typing import Dict, Optional, Set, Tuple

from .models import Chat, Message
from ..utils.logger import setup_logger

logger = setup_logger('msgtrack.hub')


@dataclass(frozen=True)
class MessagesUpdated:
    chat_id: str
    messages: Tuple[Message, ...]


@dataclass(frozen=True)
class ChatUpdated:
    chat: Chat


@dataclass(frozen=True)
class ChatRemoved:
    chat_id: str


@dataclass(frozen=True)
class UnreadChanged:
    user_id: str
    counts: Tuple[Tuple[str, int], ...]
    total: int


@dataclass(frozen=True)
class TypingChanged:
    chat_id: str
    user_ids: Tuple[str, ...]


def chat_topic(chat_id: str) -> str:
    return f"chat:{chat_id}"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


class Subscription:
    """Handle on one hub subscription.

    Async-iterates the events published to its topic. cancel() (or leaving
    an `async with` block) unregisters it and ends iteration.
    """

    def __init__(self, hub: "Hub", topic: str):
        self.hub = hub
        self.topic = topic
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self._on_cancel = []

    def on_cancel(self, callback):
        """Run `callback()` when this subscription is cancelled."""
        self._on_cancel.append(callback)

    def cancel(self):
        if self.closed:
            return
        self.closed = True
        self.hub._remove(self)
        self.queue.put_nowait(None)
        for callback in self._on_cancel:
            callback()
        self._on_cancel.clear()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        event = await self.queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def get_nowait(self):
        """Return the next queued event, or None if nothing is pending."""
        try:
            return self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.cancel()


class Hub:
    """Event routing hub for UI-facing live updates.

    Each subscriber owns an asyncio Queue; publishing an event puts it in
    the queue of every subscriber of the topic. Topics are "chat:<id>" for
    message list updates and "user:<id>" for chat list and unread updates.
    """

    def __init__(self):
        """Initialize event hub.

        Attributes:
            topics (Dict[str, Set[Subscription]]): Maps topics to subscriptions
        """
        self.topics: Dict[str, Set[Subscription]] = {}
        logger.info("Event Hub initialized")

    def subscribe(self, topic: str) -> Subscription:
        """Register a new subscription on a topic.

        Args:
            topic (str): Topic to subscribe to

        Returns:
            Subscription: New subscription receiving the topic's events
        """
        sub = Subscription(self, topic)
        self.topics.setdefault(topic, set()).add(sub)
        logger.debug(f"Subscribed to {topic} ({len(self.topics[topic])} subscribers)")
        return sub

    def _remove(self, sub: Subscription):
        subs = self.topics.get(sub.topic)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self.topics[sub.topic]
        logger.debug(f"Unsubscribed from {sub.topic}")

    def publish(self, topic: str, event) -> int:
        """Deliver an event to every subscriber of a topic.

        Args:
            topic (str): Topic to publish on
            event: Immutable event object

        Returns:
            int: Number of subscriptions the event was queued for
        """
        subs = list(self.topics.get(topic, ()))
        for sub in subs:
            sub.queue.put_nowait(event)
        if subs:
            logger.debug(f"Published {type(event).__name__} on {topic} to {len(subs)} subscribers")
        return len(subs)

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        """Number of open subscriptions.

        Args:
            topic (str): Count only this topic; None counts every topic

        Returns:
            int: Open subscriptions
        """
        if topic is not None:
            return len(self.topics.get(topic, ()))
        return sum(len(s) for s in self.topics.values())

    def close(self):
        """Cancel every subscription on every topic."""
        for subs in list(self.topics.values()):
            for sub in list(subs):
                sub.cancel()
        logger.info("Event Hub closed")
