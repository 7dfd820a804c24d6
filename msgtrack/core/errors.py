"""Error taxonomy shared by the tracker components.

Transient store errors are retried with backoff; everything else is fatal to
the operation that raised it.
"""


class MsgTrackError(Exception):
    """Base class for all tracker errors."""


class TransientStoreError(MsgTrackError):
    """The document store could not be reached; safe to retry."""


class NotParticipantError(MsgTrackError, PermissionError):
    """Caller is not a participant of the chat it is acting on."""

    def __init__(self, user_id: str, chat_id: str):
        super().__init__(f"User {user_id} is not a participant of chat {chat_id}")
        self.user_id = user_id
        self.chat_id = chat_id


class NotFoundError(MsgTrackError, LookupError):
    """Chat or message no longer exists, e.g. after cascade deletion."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} {key} not found")
        self.kind = kind
        self.key = key


class ValidationError(MsgTrackError, ValueError):
    """Input rejected before any store call."""


class InvalidTransitionError(ValidationError):
    """Delivery state change not allowed by the state machine."""

    def __init__(self, current, target):
        super().__init__(f"Cannot move delivery state from {current.value} to {target.value}")
        self.current = current
        self.target = target


class NotSignedInError(MsgTrackError, PermissionError):
    """No current user; every listener has been torn down."""


class NotAdminError(MsgTrackError, PermissionError):
    """Caller must be a group admin for this operation."""

    def __init__(self, user_id: str, chat_id: str):
        super().__init__(f"User {user_id} is not an admin of chat {chat_id}")
        self.user_id = user_id
        self.chat_id = chat_id
