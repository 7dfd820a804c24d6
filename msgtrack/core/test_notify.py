import asyncio
import unittest

import grpc
from grpc import aio

from msgtrack.core.errors import MsgTrackError
from msgtrack.core.models import Message, MessageType
from msgtrack.core.notify import (GrpcPushGateway, NotificationDispatcher, NotificationPayload, PUSH_METHOD,
                                  PushGateway, decode_json, encode_json)
from msgtrack.server.push import PushGatewayService, add_push_gateway_to_server


class RecordingGateway(PushGateway):
    def __init__(self, fail_for=()):
        self.pushed = []
        self.fail_for = set(fail_for)

    async def push(self, recipient_id, payload):
        if recipient_id in self.fail_for:
            raise MsgTrackError(f"token for {recipient_id} expired")
        self.pushed.append((recipient_id, payload))


def group_message():
    return Message.create("c1", "alice", "lunch?", {"bob", "carol"}, sender_name="Alice")


class TestNotificationDispatcher(unittest.TestCase):
    def test_sender_is_never_notified(self):
        gateway = RecordingGateway()
        dispatcher = NotificationDispatcher(gateway)
        message = group_message()
        notified = asyncio.run(dispatcher.dispatch_message(message))
        self.assertEqual(notified, ["bob", "carol"])
        self.assertNotIn("alice", [r for r, _ in gateway.pushed])
        payload = gateway.pushed[0][1]
        self.assertEqual(payload, NotificationPayload("Alice", "lunch?", "c1", "text", message.id))

    def test_reaction_notifies_everyone_but_reactor(self):
        gateway = RecordingGateway()
        dispatcher = NotificationDispatcher(gateway)
        notified = asyncio.run(dispatcher.dispatch_reaction(group_message(), "bob", "👍"))
        self.assertEqual(notified, ["alice", "carol"])
        self.assertEqual(gateway.pushed[0][1].preview, "reacted 👍")
        self.assertEqual(gateway.pushed[0][1].kind, "reaction")

    def test_media_preview(self):
        gateway = RecordingGateway()
        message = Message.create("c1", "alice", "", {"bob"}, type=MessageType.IMAGE, media_ref="m/1.png")
        asyncio.run(NotificationDispatcher(gateway).dispatch_message(message))
        self.assertEqual(gateway.pushed[0][1].preview, "[image]")

    def test_gateway_failure_is_logged_not_raised(self):
        gateway = RecordingGateway(fail_for={"bob"})
        dispatcher = NotificationDispatcher(gateway)
        with self.assertLogs('msgtrack.notify', level='WARNING') as logs:
            notified = asyncio.run(dispatcher.dispatch_message(group_message()))
        self.assertEqual(notified, ["bob", "carol"])
        self.assertEqual([r for r, _ in gateway.pushed], ["carol"])
        self.assertTrue(any("bob" in line for line in logs.output))

    def test_unexpected_gateway_error_is_logged_not_raised(self):
        class BrokenGateway(PushGateway):
            async def push(self, recipient_id, payload):
                raise AttributeError("'list' object has no attribute 'get'")

        with self.assertLogs('msgtrack.notify', level='ERROR') as logs:
            notified = asyncio.run(NotificationDispatcher(BrokenGateway()).dispatch_message(group_message()))
        self.assertEqual(notified, ["bob", "carol"])
        self.assertEqual(len(logs.output), 2)


class TestGrpcPushGateway(unittest.TestCase):
    def test_round_trip_through_server(self):
        async def run():
            service = PushGatewayService()
            server = aio.server()
            add_push_gateway_to_server(service, server)
            port = server.add_insecure_port("127.0.0.1:0")
            await server.start()
            gateway = GrpcPushGateway(f"127.0.0.1:{port}", timeout=5)
            try:
                await NotificationDispatcher(gateway).dispatch_message(group_message())
                async with aio.insecure_channel(f"127.0.0.1:{port}") as channel:
                    push = channel.unary_unary(PUSH_METHOD, request_serializer=encode_json,
                                               response_deserializer=decode_json)
                    with self.assertRaises(aio.AioRpcError) as ctx:
                        await push({"recipientId": "bob", "payload": {"preview": "x"}}, timeout=5)
                    code = ctx.exception.code()
            finally:
                await gateway.close()
                await server.stop(None)
            return service, code

        service, code = asyncio.run(run())
        self.assertEqual(service.counts(), {"bob": 1, "carol": 1})
        self.assertEqual(service.for_recipient("bob")[0].sender_name, "Alice")
        self.assertEqual(code, grpc.StatusCode.INVALID_ARGUMENT)

    def test_unreachable_gateway_does_not_break_dispatch(self):
        async def run():
            gateway = GrpcPushGateway("127.0.0.1:1", timeout=0.5)
            try:
                return await NotificationDispatcher(gateway).dispatch_message(group_message())
            finally:
                await gateway.close()

        with self.assertLogs('msgtrack.notify', level='WARNING'):
            self.assertEqual(asyncio.run(run()), ["bob", "carol"])

    def test_malformed_gateway_reply_is_rejected(self):
        async def reply_with_list(request, context):
            return ["ok"]

        async def run():
            server = aio.server()
            server.add_generic_rpc_handlers((grpc.method_handlers_generic_handler(
                "msgtrack.PushGateway",
                {"Push": grpc.unary_unary_rpc_method_handler(
                    reply_with_list, request_deserializer=decode_json, response_serializer=encode_json)}),))
            port = server.add_insecure_port("127.0.0.1:0")
            await server.start()
            gateway = GrpcPushGateway(f"127.0.0.1:{port}", timeout=5)
            payload = NotificationPayload("Alice", "lunch?", "c1", "text", "m1")
            try:
                with self.assertRaises(MsgTrackError):
                    await gateway.push("bob", payload)
                with self.assertLogs('msgtrack.notify', level='WARNING'):
                    return await NotificationDispatcher(gateway).dispatch_message(group_message())
            finally:
                await gateway.close()
                await server.stop(None)

        self.assertEqual(asyncio.run(run()), ["bob", "carol"])


if __name__ == '__main__':
    unittest.main()
