import abc
import asyncio
import json
from dataclasses import asdict, dataclass
from typing import Iterable, List, Optional

import grpc
from grpc import aio

from .errors import MsgTrackError
from .models import Message
from .users import UserDirectory
from ..utils.logger import setup_logger

logger = setup_logger('msgtrack.notify')

PUSH_METHOD = "/msgtrack.PushGateway/Push"


def encode_json(obj) -> bytes:
    return json.dumps(obj, ensure_ascii=False).encode("utf-8")


def decode_json(data: bytes):
    return json.loads(data.decode("utf-8"))


@dataclass(frozen=True)
class NotificationPayload:
    """What a recipient's device is told about a new message or reaction.

    Attributes:
        sender_name (str): Display name of the acting user
        preview (str): Message preview, or "reacted <symbol>"
        chat_id (str): Chat to open when the notification is tapped
        type (str): Message type (text, image, ...)
        message_id (str): Message the notification is about
        kind (str): "message" or "reaction"
    """
    sender_name: str
    preview: str
    chat_id: str
    type: str
    message_id: str
    kind: str = "message"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationPayload":
        return cls(**{k: data[k] for k in ("sender_name", "preview", "chat_id", "type", "message_id")},
                   kind=data.get("kind", "message"))


class PushGateway(abc.ABC):
    """External best-effort push delivery (FCM-like)."""

    @abc.abstractmethod
    async def push(self, recipient_id: str, payload: NotificationPayload):
        """Hand one notification to the gateway; may raise on transport errors."""

    async def close(self):
        pass


class LoggingPushGateway(PushGateway):
    """Gateway stand-in that only logs; used when no gateway is configured."""

    async def push(self, recipient_id: str, payload: NotificationPayload):
        logger.info(f"[push] to {recipient_id}: {payload.sender_name}: {payload.preview} (chat {payload.chat_id})")


class GrpcPushGateway(PushGateway):
    """Client for a push gateway reachable over gRPC.

    Calls the unary method /msgtrack.PushGateway/Push with a JSON body
    {"recipientId": ..., "payload": {...}}.
    """

    def __init__(self, target: str, timeout: float = 5.0):
        """Open an insecure channel to the gateway.

        Args:
            target (str): host:port of the gateway
            timeout (float): Deadline per push call in seconds
        """
        self.target = target
        self.timeout = timeout
        self.channel = aio.insecure_channel(target)
        self._push = self.channel.unary_unary(
            PUSH_METHOD, request_serializer=encode_json, response_deserializer=decode_json)

    async def push(self, recipient_id: str, payload: NotificationPayload):
        """Deliver one payload to the gateway.

        Raises:
            grpc.RpcError: Transport failure or deadline exceeded
            MsgTrackError: Gateway rejected the push or answered with something
                other than a JSON object
        """
        response = await self._push({"recipientId": recipient_id, "payload": payload.to_dict()},
                                    timeout=self.timeout)
        if not isinstance(response, dict):
            raise MsgTrackError(f"Gateway {self.target} sent a malformed reply to push for {recipient_id}")
        if not response.get("accepted", False):
            raise MsgTrackError(f"Gateway {self.target} rejected push to {recipient_id}: {response.get('error')}")

    async def close(self):
        await self.channel.close()


class NotificationDispatcher:
    """Fans out new-message and reaction events to everyone but the actor.

    Fire-and-forget: gateway errors are logged per recipient and never
    raised or retried here.
    """

    def __init__(self, gateway: PushGateway, users: Optional[UserDirectory] = None):
        self.gateway = gateway
        self.users = users

    def _name(self, user_id: str, fallback: Optional[str] = None) -> str:
        if fallback:
            return fallback
        if self.users is not None:
            return self.users.display_name(user_id)
        return user_id

    async def dispatch_message(self, message: Message) -> List[str]:
        """Notify every recipient of a new message except its sender.

        Returns:
            List[str]: Recipient ids the gateway was called for
        """
        payload = NotificationPayload(
            sender_name=self._name(message.sender_id, message.sender_name),
            preview=message.preview(),
            chat_id=message.chat_id,
            type=message.type.value,
            message_id=message.id,
        )
        return await self._fan_out(message.sender_id, message.recipients, payload)

    async def dispatch_reaction(self, message: Message, reactor_id: str, symbol: str) -> List[str]:
        """Notify the message's participants, except the reactor, of a reaction."""
        payload = NotificationPayload(
            sender_name=self._name(reactor_id),
            preview=f"reacted {symbol}",
            chat_id=message.chat_id,
            type=message.type.value,
            message_id=message.id,
            kind="reaction",
        )
        return await self._fan_out(reactor_id, set(message.recipients) | {message.sender_id}, payload)

    async def _fan_out(self, actor_id: str, audience: Iterable[str], payload: NotificationPayload) -> List[str]:
        recipients = sorted(set(audience) - {actor_id})
        if not recipients:
            return []
        await asyncio.gather(*(self._send(r, payload) for r in recipients))
        logger.info(f"Dispatched {payload.kind} {payload.message_id} to {len(recipients)} recipients")
        return recipients

    async def _send(self, recipient_id: str, payload: NotificationPayload):
        try:
            await self.gateway.push(recipient_id, payload)
        except (grpc.RpcError, MsgTrackError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Push to {recipient_id} for {payload.message_id} failed: {e}")
        except Exception:
            logger.exception(f"Unexpected error pushing {payload.message_id} to {recipient_id}")
