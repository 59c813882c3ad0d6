"""Exception hierarchy shared by the REST client and the sync core."""

from __future__ import annotations


class ChatError(Exception):
    """Base exception for all BBBAB Messenger errors."""


class ApiError(ChatError):
    """Base exception for REST API errors."""

    def __init__(self, message: str, status: int = 0, error_type: str | None = None):
        super().__init__(message)
        self.status = status
        self.error_type = error_type


class ApiConnectionError(ApiError):
    """Failed to reach the server."""
    pass


class AuthenticationError(ApiError):
    """The token is missing, invalid or expired."""
    pass


class NotConnectedError(ChatError):
    """An outbound action was attempted without an open transport."""

    def __init__(self, conversation_id: int):
        super().__init__(f"Not connected to chat {conversation_id}")
        self.conversation_id = conversation_id


class TransportClosedError(ChatError):
    """A frame was written to a transport that is not open."""
    pass
