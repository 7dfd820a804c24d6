from typing import List, Optional

from .docstore import DocumentStore, where
from .errors import TransientStoreError, ValidationError
from .hub import Hub, TypingChanged, chat_topic
from .models import TypingIndicator, now_ms
from ..utils.logger import setup_logger

logger = setup_logger('msgtrack.indicators')

TYPING = "typing"
STALE_AFTER_MS = 5000


class TypingTracker:
    """Typing indicators per chat.

    Indicators are best effort: writes are not retried and failures are
    logged. Indicators older than `stale_after` ms are ignored, so a client
    that vanished mid-typing stops showing up on its own.
    """

    def __init__(self, store: DocumentStore, hub: Hub, clock=now_ms, stale_after: int = STALE_AFTER_MS):
        self.store = store
        self.hub = hub
        self.clock = clock
        self.stale_after = stale_after

    async def set_typing(self, chat_id: str, user_id: str, is_typing: bool, user_name: Optional[str] = None):
        indicator = TypingIndicator(user_id=user_id, user_name=user_name or user_id, chat_id=chat_id,
                                    timestamp=self.clock(), is_typing=is_typing)
        try:
            await self.store.set(TYPING, indicator.id, indicator.to_document())
        except TransientStoreError as e:
            logger.warning(f"Typing indicator for {user_id} in {chat_id} not written: {e}")
            return
        self.hub.publish(chat_topic(chat_id), TypingChanged(chat_id, tuple(await self.typing_users(chat_id))))

    async def typing_users(self, chat_id: str, exclude: Optional[str] = None) -> List[str]:
        """Users currently typing in a chat, oldest indicator first."""
        try:
            docs = await self.store.query(TYPING, [where("chatId", "==", chat_id), where("isTyping", "==", True)])
        except TransientStoreError as e:
            logger.warning(f"Typing indicators for {chat_id} unavailable: {e}")
            return []
        cutoff = self.clock() - self.stale_after
        active = []
        for doc in docs:
            try:
                indicator = TypingIndicator.from_document(doc.id, doc.data)
            except ValidationError:
                continue
            if indicator.timestamp >= cutoff and indicator.user_id != exclude:
                active.append(indicator)
        active.sort(key=lambda i: (i.timestamp, i.user_id))
        return [i.user_id for i in active]
