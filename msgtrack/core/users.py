import asyncio
import uuid
from typing import Dict, Iterable, List, Optional

from .docstore import DocumentStore
from .errors import NotFoundError, TransientStoreError, ValidationError
from .models import PLACEHOLDER_NAME, User, now_ms
from .retry import RetryPolicy
from ..utils.logger import setup_logger

logger = setup_logger('msgtrack.users')

USERS = "users"
SEARCH_LIMIT = 10


class UserDirectory:
    """Read-through cache of user records.

    Unresolved users never block message display: display_name() falls back
    to a placeholder until resolve() has fetched the record.
    """

    def __init__(self, store: DocumentStore, retry: Optional[RetryPolicy] = None, clock=now_ms,
                 sleep=asyncio.sleep):
        self.store = store
        self.retry = retry or RetryPolicy()
        self.clock = clock
        self.sleep = sleep
        self.users_by_id: Dict[str, User] = {}

    async def register(self, display_name: str, email: Optional[str] = None,
                       user_id: Optional[str] = None) -> User:
        """Create a user record.

        Args:
            display_name (str): User's chosen display name
            email (str, optional): Contact address
            user_id (str, optional): Id from the auth provider; generated if omitted

        Returns:
            User: The stored user

        Raises:
            ValidationError: Empty display name
        """
        display_name = (display_name or "").strip()
        if not display_name:
            raise ValidationError("Display name must not be empty")
        user = User(id=user_id or uuid.uuid4().hex[:12], display_name=display_name, email=email,
                    last_seen=self.clock())
        await self.retry.run(lambda: self.store.set(USERS, user.id, user.to_document()),
                             what=f"register {user.id}", sleep=self.sleep)
        self.users_by_id[user.id] = user
        logger.info(f"New user registered: {user.display_name} (ID: {user.id})")
        return user

    def get(self, user_id: str) -> Optional[User]:
        """Cached user, without touching the store."""
        return self.users_by_id.get(user_id)

    async def resolve(self, user_id: str, refresh: bool = False) -> Optional[User]:
        """Return the user, fetching it from the store on a cache miss.

        Store failures are logged and yield None.
        """
        if not refresh and user_id in self.users_by_id:
            return self.users_by_id[user_id]
        try:
            data = await self.retry.run(lambda: self.store.get(USERS, user_id),
                                        what=f"resolve {user_id}", sleep=self.sleep)
        except TransientStoreError as e:
            logger.warning(f"Could not resolve user {user_id}: {e}")
            return self.users_by_id.get(user_id)
        if data is None:
            return None
        try:
            user = User.from_document(user_id, data)
        except ValidationError as e:
            logger.warning(f"Malformed user document {user_id}: {e}")
            return None
        self.users_by_id[user_id] = user
        return user

    async def resolve_many(self, user_ids: Iterable[str]) -> Dict[str, User]:
        found = {}
        for user_id in sorted(set(user_ids)):
            user = await self.resolve(user_id)
            if user is not None:
                found[user_id] = user
        return found

    def display_name(self, user_id: str) -> str:
        user = self.users_by_id.get(user_id)
        return user.display_name if user else PLACEHOLDER_NAME

    def names(self) -> Dict[str, str]:
        return {u.id: u.display_name for u in self.users_by_id.values()}

    async def search(self, query: str, limit: int = SEARCH_LIMIT) -> List[User]:
        """Case-insensitive substring search on display names.

        Exact matches come first; at most `limit` users are returned.
        """
        q = (query or "").strip().lower()
        docs = await self.retry.run(lambda: self.store.query(USERS), what="search users", sleep=self.sleep)
        matched = []
        for doc in docs:
            try:
                user = User.from_document(doc.id, doc.data)
            except ValidationError:
                continue
            self.users_by_id[user.id] = user
            if q in user.display_name.lower():
                matched.append(user)
        matched.sort(key=lambda u: (u.display_name.lower() != q, u.display_name.lower(), u.id))
        return matched[:limit]

    async def set_presence(self, user_id: str, online: bool):
        """Update isOnline/lastSeen; best effort, failures are only logged."""
        ts = self.clock()
        try:
            await self.retry.run(
                lambda: self.store.update(USERS, user_id, {"isOnline": online, "lastSeen": ts}),
                what=f"presence {user_id}", sleep=self.sleep)
        except (TransientStoreError, NotFoundError) as e:
            logger.warning(f"Presence update for {user_id} failed: {e}")
            return
        user = self.users_by_id.get(user_id)
        if user is not None:
            user.is_online = online
            user.last_seen = ts
        logger.debug(f"User {user_id} is {'online' if online else 'offline'}")
