"""Typed failures of the messaging core."""

from typing import Any, Dict, Optional


class ConversationError(Exception):
    """Base exception carrying a machine-readable kind and a user message."""

    kind = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class Unauthenticated(ConversationError):
    kind = "UNAUTHENTICATED"


class NotFound(ConversationError):
    kind = "NOT_FOUND"


class Forbidden(ConversationError):
    kind = "FORBIDDEN"


class InvalidArgument(ConversationError):
    kind = "INVALID_ARGUMENT"


class InvalidStateTransition(ConversationError):
    kind = "INVALID_STATE_TRANSITION"


class StorageUnavailable(ConversationError):
    """Raised when the store fails for infrastructure reasons. Retryable."""

    kind = "STORAGE_UNAVAILABLE"


class RateLimited(ConversationError):
    kind = "RATE_LIMITED"


class ConversationAlreadyExists(ConversationError):
    """Raised when a conversation for the party pair already exists.

    Carries the existing conversation so callers can redirect into it.
    """

    kind = "CONVERSATION_ALREADY_EXISTS"

    def __init__(self, conversation_id: str, status: str):
        self.conversation_id = conversation_id
        self.status = status
        super().__init__(
            "A conversation already exists with this user.",
            {"conversation_id": conversation_id, "status": status},
        )
