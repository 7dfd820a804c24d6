from typing import Dict, FrozenSet

from .errors import InvalidTransitionError
from .models import DeliveryState

SENDING = DeliveryState.SENDING
SENT = DeliveryState.SENT
DELIVERED = DeliveryState.DELIVERED
READ = DeliveryState.READ
FAILED = DeliveryState.FAILED

# sending < sent < delivered < read; failed sits off the main line
RANK: Dict[DeliveryState, int] = {SENDING: 0, SENT: 1, DELIVERED: 2, READ: 3}

TRANSITIONS: Dict[DeliveryState, FrozenSet[DeliveryState]] = {
    SENDING: frozenset({SENT, DELIVERED, READ, FAILED}),
    SENT: frozenset({DELIVERED, READ}),
    DELIVERED: frozenset({READ}),
    READ: frozenset(),
    FAILED: frozenset({SENDING}),
}


class DeliveryStateMachine:
    """Per-message delivery lifecycle.

    States only move forward along sending -> sent -> delivered -> read
    (skipping ahead is allowed, e.g. sent -> read). The only other edges are
    sending -> failed and the manual retry failed -> sending.

    For group chats `read` means read by at least one recipient; the
    message's read_by set carries the per-user detail.
    """

    def can_transition(self, current: DeliveryState, target: DeliveryState) -> bool:
        return target in TRANSITIONS[current]

    def is_stale(self, current: DeliveryState, target: DeliveryState) -> bool:
        """True if `target` is at or behind `current` on the forward line."""
        return current in RANK and target in RANK and RANK[target] <= RANK[current]

    def transition(self, current: DeliveryState, target: DeliveryState) -> DeliveryState:
        """Validate an explicit state change.

        Stale updates (same or earlier state) are no-ops and return `current`,
        so replayed or reordered acknowledgements converge.

        Raises:
            InvalidTransitionError: If the edge does not exist, e.g. read -> failed
        """
        if self.is_stale(current, target):
            return current
        if not self.can_transition(current, target):
            raise InvalidTransitionError(current, target)
        return target

    def merge(self, local: DeliveryState, remote: DeliveryState) -> DeliveryState:
        """Combine a locally cached state with one observed in the store.

        A document in the store has been accepted, so a local `sending` or
        `failed` copy yields to it; otherwise the furthest state wins.
        """
        if local in (SENDING, FAILED):
            return remote if remote != SENDING else local
        if remote in (SENDING, FAILED):
            return local
        return local if RANK[local] >= RANK[remote] else remote

    def for_receipts(self, state: DeliveryState, delivered: bool, read: bool) -> DeliveryState:
        """State implied by recipient acknowledgements ("at least one" semantics)."""
        if read and self.can_transition(state, READ):
            return READ
        if delivered and self.can_transition(state, DELIVERED):
            return DELIVERED
        return state
