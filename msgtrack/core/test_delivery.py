import asyncio
import unittest

from msgtrack.core.delivery import DELIVERED, FAILED, READ, SENDING, SENT, DeliveryStateMachine
from msgtrack.core.errors import InvalidTransitionError, TransientStoreError, ValidationError
from msgtrack.core.retry import RetryPolicy


class TestDeliveryStateMachine(unittest.TestCase):
    def setUp(self):
        self.machine = DeliveryStateMachine()

    def test_forward_path(self):
        state = SENDING
        for target in (SENT, DELIVERED, READ):
            state = self.machine.transition(state, target)
        self.assertEqual(state, READ)

    def test_skip_ahead(self):
        self.assertEqual(self.machine.transition(SENT, READ), READ)

    def test_stale_updates_are_noops(self):
        self.assertEqual(self.machine.transition(READ, DELIVERED), READ)
        self.assertEqual(self.machine.transition(DELIVERED, DELIVERED), DELIVERED)
        self.assertEqual(self.machine.transition(READ, SENT), READ)

    def test_replayed_sequence_never_moves_back(self):
        sequence = [SENT, READ, DELIVERED, SENT, READ, DELIVERED]
        state = SENDING
        seen = []
        for target in sequence:
            state = self.machine.transition(state, target)
            seen.append(state)
        self.assertEqual(seen, [SENT, READ, READ, READ, READ, READ])

    def test_failed_edges(self):
        self.assertEqual(self.machine.transition(SENDING, FAILED), FAILED)
        self.assertEqual(self.machine.transition(FAILED, SENDING), SENDING)
        with self.assertRaises(InvalidTransitionError):
            self.machine.transition(READ, FAILED)
        with self.assertRaises(InvalidTransitionError):
            self.machine.transition(FAILED, READ)
        with self.assertRaises(ValidationError):
            self.machine.transition(SENT, FAILED)

    def test_merge(self):
        self.assertEqual(self.machine.merge(SENDING, SENT), SENT)
        self.assertEqual(self.machine.merge(FAILED, DELIVERED), DELIVERED)
        self.assertEqual(self.machine.merge(READ, SENT), READ)
        self.assertEqual(self.machine.merge(SENT, READ), READ)

    def test_for_receipts(self):
        self.assertEqual(self.machine.for_receipts(SENT, True, False), DELIVERED)
        self.assertEqual(self.machine.for_receipts(SENT, True, True), READ)
        self.assertEqual(self.machine.for_receipts(READ, True, False), READ)
        self.assertEqual(self.machine.for_receipts(SENT, False, False), SENT)


class TestRetryPolicy(unittest.TestCase):
    def test_delays_grow_and_cap(self):
        policy = RetryPolicy(base_delay=1, multiplier=2, max_delay=5)
        self.assertEqual([policy.delay(n) for n in range(1, 5)], [1, 2, 4, 5])

    def test_retries_transient_errors(self):
        calls = []
        sleeps = []

        async def op():
            calls.append(1)
            if len(calls) < 3:
                raise TransientStoreError("down")
            return "ok"

        async def fake_sleep(delay):
            sleeps.append(delay)

        result = asyncio.run(RetryPolicy(max_attempts=3, base_delay=0.5).run(op, sleep=fake_sleep))
        self.assertEqual(result, "ok")
        self.assertEqual(sleeps, [0.5, 1.0])

    def test_gives_up_after_max_attempts(self):
        calls = []

        async def op():
            calls.append(1)
            raise TransientStoreError("down")

        async def fake_sleep(delay):
            pass

        with self.assertRaises(TransientStoreError):
            asyncio.run(RetryPolicy(max_attempts=2).run(op, sleep=fake_sleep))
        self.assertEqual(len(calls), 2)

    def test_other_errors_are_not_retried(self):
        calls = []

        async def op():
            calls.append(1)
            raise ValidationError("bad")

        with self.assertRaises(ValidationError):
            asyncio.run(RetryPolicy().run(op))
        self.assertEqual(len(calls), 1)


if __name__ == '__main__':
    unittest.main()
