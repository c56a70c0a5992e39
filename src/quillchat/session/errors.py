"""Exception hierarchy for the session engine."""

from __future__ import annotations


class SessionError(Exception):
    """Base class for errors raised by quillchat components."""


class UnknownPermissionRequest(SessionError, KeyError):
    """Raised when a decision targets a request that is not pending."""

    def __init__(self, request_id: str) -> None:
        super().__init__(request_id)
        self.request_id = request_id

    def __str__(self) -> str:
        return f"No pending permission request with id {self.request_id!r}"


class TransportError(SessionError):
    """Raised when an outbound command cannot be delivered."""


class InvalidCommandError(SessionError, ValueError):
    """Raised when an outbound command does not match its schema."""


class ConversationNotFound(SessionError, FileNotFoundError):
    """Raised when a stored conversation cannot be located."""


__all__ = [
    "ConversationNotFound",
    "InvalidCommandError",
    "SessionError",
    "TransportError",
    "UnknownPermissionRequest",
]
