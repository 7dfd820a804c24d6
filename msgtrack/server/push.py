import asyncio
from typing import Dict, List, Tuple

import grpc
from grpc import aio

from ..core.notify import NotificationPayload, decode_json, encode_json
from ..utils.logger import setup_logger

logger = setup_logger('msgtrack.push')

SERVICE_NAME = "msgtrack.PushGateway"


class PushGatewayService:
    """Development push gateway.

    Accepts Push calls, logs them and keeps them per recipient so a
    developer (or a test) can see what would have reached each device.
    """

    def __init__(self):
        """Initialize gateway.

        Attributes:
            received (List[Tuple[str, NotificationPayload]]): Every accepted push
            _lock (asyncio.Lock): Guards `received`
        """
        self.received: List[Tuple[str, NotificationPayload]] = []
        self._lock = asyncio.Lock()

    async def Push(self, request: dict, context: aio.ServicerContext) -> dict:
        """Accept one notification.

        Args:
            request (dict): {"recipientId": str, "payload": {...}}
            context (ServicerContext): gRPC service context

        Returns:
            dict: {"accepted": True}

        Raises:
            INVALID_ARGUMENT: If the recipient or payload is missing
        """
        recipient_id = request.get("recipientId")
        try:
            payload = NotificationPayload.from_dict(request.get("payload") or {})
        except (KeyError, TypeError) as e:
            logger.error(f"Push: malformed payload for '{recipient_id}': {e}")
            await context.abort(grpc.StatusCode.INVALID_ARGUMENT, f"Malformed payload: {e}")
        if not recipient_id:
            await context.abort(grpc.StatusCode.INVALID_ARGUMENT, "recipientId is required")
        async with self._lock:
            self.received.append((recipient_id, payload))
        logger.info(f"Push: {payload.kind} for '{recipient_id}' from '{payload.sender_name}': {payload.preview}")
        return {"accepted": True}

    def for_recipient(self, recipient_id: str) -> List[NotificationPayload]:
        return [p for r, p in self.received if r == recipient_id]

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for recipient_id, _ in self.received:
            counts[recipient_id] = counts.get(recipient_id, 0) + 1
        return counts


def add_push_gateway_to_server(service: PushGatewayService, server: aio.Server):
    """Register the gateway's JSON-encoded methods on a grpc.aio server."""
    handler = grpc.method_handlers_generic_handler(SERVICE_NAME, {
        "Push": grpc.unary_unary_rpc_method_handler(
            service.Push, request_deserializer=decode_json, response_serializer=encode_json),
    })
    server.add_generic_rpc_handlers((handler,))
