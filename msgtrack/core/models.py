import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Optional

from .errors import ValidationError

PREVIEW_LIMIT = 100
PLACEHOLDER_NAME = "Unknown User"


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    FILE = "file"


class DeliveryState(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


def _ids(values, name: str) -> FrozenSet[str]:
    if values is None:
        return frozenset()
    if isinstance(values, str):
        raise ValidationError(f"{name} must be a collection of user ids, not a string")
    ids = frozenset(values)
    if any(not isinstance(v, str) or not v for v in ids):
        raise ValidationError(f"{name} must contain non-empty user ids")
    return ids


def _enum(enum_cls, value, name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Unknown {name}: {value!r}") from None


def _require(data: Mapping, key: str, kind, doc_id: str):
    value = data.get(key)
    if not isinstance(value, kind) or isinstance(value, bool) and kind is not bool:
        raise ValidationError(f"Document {doc_id}: field '{key}' missing or invalid")
    return value


@dataclass(frozen=True)
class Message:
    """Represents one chat message and its delivery/read state.

    Instances are immutable snapshots; every change produces a new Message.

    Attributes:
        id (str): Globally unique id, generated client-side
        chat_id (str): Chat the message belongs to
        sender_id (str): User who sent the message
        content (str): Text body (may be empty for media messages)
        timestamp (int): Client-assigned creation time, Unix milliseconds
        type (MessageType): text | image | audio | video | file
        media_ref (Optional[str]): Reference to uploaded media
        reply_to (Optional[str]): Id of the message this one replies to
        recipients (FrozenSet[str]): Users expected to receive the message
        read_by (FrozenSet[str]): Recipients who have viewed the message
        delivered_to (FrozenSet[str]): Recipients whose client received it live
        delivery_state (DeliveryState): Coarse lifecycle stage
        reactions (Dict[str, FrozenSet[str]]): Reaction symbol -> user ids
        sender_name (Optional[str]): Sender display name at send time
    """
    id: str
    chat_id: str
    sender_id: str
    content: str
    timestamp: int
    type: MessageType = MessageType.TEXT
    media_ref: Optional[str] = None
    reply_to: Optional[str] = None
    recipients: FrozenSet[str] = frozenset()
    read_by: FrozenSet[str] = frozenset()
    delivered_to: FrozenSet[str] = frozenset()
    delivery_state: DeliveryState = DeliveryState.SENDING
    reactions: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    sender_name: Optional[str] = None

    def __post_init__(self):
        set_ = object.__setattr__
        set_(self, "type", _enum(MessageType, self.type, "message type"))
        set_(self, "delivery_state", _enum(DeliveryState, self.delivery_state, "delivery state"))
        set_(self, "recipients", _ids(self.recipients, "recipients"))
        set_(self, "read_by", _ids(self.read_by, "read_by"))
        set_(self, "delivered_to", _ids(self.delivered_to, "delivered_to"))
        set_(self, "reactions", {
            symbol: _ids(users, "reactions")
            for symbol, users in (self.reactions or {}).items() if users
        })

        if not self.id or not self.chat_id or not self.sender_id:
            raise ValidationError("Message needs id, chat_id and sender_id")
        if not isinstance(self.content, str):
            raise ValidationError("Message content must be a string")
        if self.type == MessageType.TEXT and not self.content.strip():
            raise ValidationError("Text message content must not be empty")
        if self.type != MessageType.TEXT and not self.media_ref and not self.content.strip():
            raise ValidationError("Media message needs a media_ref or a caption")
        if self.sender_id in self.recipients:
            raise ValidationError(f"Sender {self.sender_id} cannot be a recipient")
        if not self.read_by <= self.recipients:
            raise ValidationError(f"read_by has non-recipients: {sorted(self.read_by - self.recipients)}")
        if not self.delivered_to <= self.recipients:
            raise ValidationError(f"delivered_to has non-recipients: {sorted(self.delivered_to - self.recipients)}")
        seen = set()
        for users in self.reactions.values():
            if seen & users:
                raise ValidationError(f"Message {self.id}: more than one reaction per user")
            seen |= users

    @classmethod
    def create(cls, chat_id: str, sender_id: str, content: str, recipients: Iterable[str],
               type: MessageType = MessageType.TEXT, media_ref: Optional[str] = None,
               reply_to: Optional[str] = None, sender_name: Optional[str] = None,
               timestamp: Optional[int] = None) -> "Message":
        """Build a new outgoing message in the `sending` state."""
        return cls(
            id=uuid.uuid4().hex,
            chat_id=chat_id,
            sender_id=sender_id,
            content=content,
            timestamp=now_ms() if timestamp is None else timestamp,
            type=type,
            media_ref=media_ref,
            reply_to=reply_to,
            recipients=frozenset(recipients),
            sender_name=sender_name,
        )

    @property
    def sort_key(self):
        return (self.timestamp, self.id)

    def preview(self, limit: int = PREVIEW_LIMIT) -> str:
        """Short text used in chat lists and notifications."""
        text = self.content.strip() or f"[{self.type.value}]"
        return text if len(text) <= limit else text[:limit - 1] + "…"

    def reaction_of(self, user_id: str) -> Optional[str]:
        for symbol, users in self.reactions.items():
            if user_id in users:
                return symbol
        return None

    def with_reaction(self, user_id: str, symbol: str) -> "Message":
        """Return a copy where `symbol` is the user's only reaction."""
        reactions = {s: users - {user_id} for s, users in self.reactions.items()}
        reactions[symbol] = reactions.get(symbol, frozenset()) | {user_id}
        return replace(self, reactions=reactions)

    def without_reaction(self, user_id: str, symbol: str) -> "Message":
        reactions = dict(self.reactions)
        if symbol in reactions:
            reactions[symbol] = reactions[symbol] - {user_id}
        return replace(self, reactions=reactions)

    def to_document(self) -> dict:
        """Serialize to the `messages` collection schema (document id is `id`)."""
        return {
            "chatId": self.chat_id,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "content": self.content,
            "timestamp": self.timestamp,
            "type": self.type.value,
            "mediaRef": self.media_ref,
            "replyTo": self.reply_to,
            "recipients": sorted(self.recipients),
            "readBy": sorted(self.read_by),
            "deliveredTo": sorted(self.delivered_to),
            "deliveryState": self.delivery_state.value,
            "reactions": {s: sorted(users) for s, users in self.reactions.items()},
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping) -> "Message":
        """Parse a stored message document.

        Raises:
            ValidationError: If a required field is missing or malformed
        """
        reactions = data.get("reactions") or {}
        if not isinstance(reactions, Mapping):
            raise ValidationError(f"Document {doc_id}: 'reactions' must be a map")
        return cls(
            id=doc_id,
            chat_id=_require(data, "chatId", str, doc_id),
            sender_id=_require(data, "senderId", str, doc_id),
            content=_require(data, "content", str, doc_id),
            timestamp=_require(data, "timestamp", int, doc_id),
            type=data.get("type", MessageType.TEXT.value),
            media_ref=data.get("mediaRef"),
            reply_to=data.get("replyTo"),
            recipients=data.get("recipients") or (),
            read_by=data.get("readBy") or (),
            delivered_to=data.get("deliveredTo") or (),
            delivery_state=data.get("deliveryState", DeliveryState.SENT.value),
            reactions=reactions,
            sender_name=data.get("senderName"),
        )


@dataclass(frozen=True)
class LastMessage:
    """Denormalized snapshot of a chat's newest message."""
    id: str
    sender_id: str
    preview: str
    timestamp: int
    delivery_state: DeliveryState
    type: MessageType = MessageType.TEXT

    @classmethod
    def from_message(cls, message: Message) -> "LastMessage":
        return cls(
            id=message.id,
            sender_id=message.sender_id,
            preview=message.preview(),
            timestamp=message.timestamp,
            delivery_state=message.delivery_state,
            type=message.type,
        )

    def to_document(self) -> dict:
        return {
            "id": self.id,
            "senderId": self.sender_id,
            "content": self.preview,
            "timestamp": self.timestamp,
            "deliveryState": self.delivery_state.value,
            "type": self.type.value,
        }

    @classmethod
    def from_document(cls, data: Mapping) -> "LastMessage":
        return cls(
            id=data.get("id", ""),
            sender_id=data.get("senderId", ""),
            preview=data.get("content", ""),
            timestamp=int(data.get("timestamp", 0)),
            delivery_state=_enum(DeliveryState, data.get("deliveryState", "sent"), "delivery state"),
            type=_enum(MessageType, data.get("type", "text"), "message type"),
        )


@dataclass(frozen=True)
class Chat:
    """Represents a one-on-one or group conversation.

    Attributes:
        id (str): Unique chat id
        participants (FrozenSet[str]): Member user ids
        is_group (bool): True for groups; forced on when more than two participants
        group_name (Optional[str]): Required for groups, absent otherwise
        admins (FrozenSet[str]): Group admins, always a subset of participants
        created_by (Optional[str]): Creator of a group
        group_image_ref (Optional[str]): Group avatar reference
        last_message (Optional[LastMessage]): Newest message pointer
        created_at (int): Creation time, Unix milliseconds
        updated_at (int): Bumped on every send or membership change
    """
    id: str
    participants: FrozenSet[str]
    is_group: bool = False
    group_name: Optional[str] = None
    admins: FrozenSet[str] = frozenset()
    created_by: Optional[str] = None
    group_image_ref: Optional[str] = None
    last_message: Optional[LastMessage] = None
    created_at: int = 0
    updated_at: int = 0

    def __post_init__(self):
        object.__setattr__(self, "participants", _ids(self.participants, "participants"))
        object.__setattr__(self, "admins", _ids(self.admins, "admins"))
        object.__setattr__(self, "is_group", bool(self.is_group or len(self.participants) > 2))
        if not self.id:
            raise ValidationError("Chat needs an id")
        if self.is_group and not (self.group_name or "").strip():
            raise ValidationError("Group chats need a group name")
        if not self.is_group and self.group_name:
            raise ValidationError("Only group chats can have a group name")
        if not self.admins <= self.participants:
            raise ValidationError(f"Admins must be participants: {sorted(self.admins - self.participants)}")

    def display_name(self, for_user: str, names: Optional[Mapping[str, str]] = None) -> str:
        if self.is_group:
            return self.group_name or "Group Chat"
        others = self.other_participants(for_user)
        if not others:
            return PLACEHOLDER_NAME
        other = others[0]
        return (names or {}).get(other) or other

    def other_participants(self, user_id: str) -> list:
        return sorted(self.participants - {user_id})

    def is_admin(self, user_id: str) -> bool:
        return user_id in self.admins

    def to_document(self) -> dict:
        return {
            "participants": sorted(self.participants),
            "isGroup": self.is_group,
            "groupName": self.group_name,
            "admins": sorted(self.admins),
            "createdBy": self.created_by,
            "groupImageRef": self.group_image_ref,
            "lastMessage": self.last_message.to_document() if self.last_message else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping) -> "Chat":
        participants = data.get("participants")
        if not isinstance(participants, list):
            raise ValidationError(f"Document {doc_id}: 'participants' missing or invalid")
        last = data.get("lastMessage")
        return cls(
            id=doc_id,
            participants=participants,
            is_group=bool(data.get("isGroup", False)),
            group_name=data.get("groupName"),
            admins=data.get("admins") or (),
            created_by=data.get("createdBy"),
            group_image_ref=data.get("groupImageRef"),
            last_message=LastMessage.from_document(last) if isinstance(last, Mapping) else None,
            created_at=int(data.get("createdAt", 0)),
            updated_at=int(data.get("updatedAt", 0)),
        )


@dataclass
class User:
    """External identity, cached read-through by the user directory."""
    id: str
    display_name: str
    email: Optional[str] = None
    is_online: bool = False
    last_seen: int = 0
    push_token: Optional[str] = None

    def to_document(self) -> dict:
        return {
            "displayName": self.display_name,
            "email": self.email,
            "isOnline": self.is_online,
            "lastSeen": self.last_seen,
            "pushToken": self.push_token,
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping) -> "User":
        return cls(
            id=doc_id,
            display_name=_require(data, "displayName", str, doc_id),
            email=data.get("email"),
            is_online=bool(data.get("isOnline", False)),
            last_seen=int(data.get("lastSeen", 0)),
            push_token=data.get("pushToken"),
        )


@dataclass
class TypingIndicator:
    """A user's typing status in one chat; document id is '<user>_<chat>'."""
    user_id: str
    user_name: str
    chat_id: str
    timestamp: int
    is_typing: bool

    @property
    def id(self) -> str:
        return f"{self.user_id}_{self.chat_id}"

    def to_document(self) -> dict:
        return {
            "userId": self.user_id,
            "userName": self.user_name,
            "chatId": self.chat_id,
            "timestamp": self.timestamp,
            "isTyping": self.is_typing,
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping) -> "TypingIndicator":
        return cls(
            user_id=_require(data, "userId", str, doc_id),
            user_name=data.get("userName") or PLACEHOLDER_NAME,
            chat_id=_require(data, "chatId", str, doc_id),
            timestamp=_require(data, "timestamp", int, doc_id),
            is_typing=bool(data.get("isTyping", False)),
        )
