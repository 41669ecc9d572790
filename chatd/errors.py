"""Error taxonomy for the messaging core.

Every handler failure is one of these; the router turns them into a single
``error`` event back to the originating connection.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base class. ``public_message`` is what the client gets to see."""

    public_message = "request failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)

    def client_text(self) -> str:
        return str(self)


class AuthError(ChatError):
    """Bad, missing or expired credential. The connection is refused."""

    public_message = "Authentication error"

    def client_text(self) -> str:
        return f"Authentication error: {self}"


class ValidationError(ChatError):
    public_message = "invalid request"


class StorageError(ChatError):
    """Durable store failure. Details are logged, never sent to clients."""

    public_message = "storage failure"

    def client_text(self) -> str:
        return self.public_message


class AuthorizationError(ChatError):
    """Sender is subscribed to a room it is not a durable member of."""

    public_message = "Access denied. Not a member of this room."


class NotFound(ChatError):
    public_message = "Message not found"


class PermissionDenied(ChatError):
    public_message = "not permitted"
