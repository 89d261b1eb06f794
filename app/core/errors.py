"""
Error taxonomy shared by the relay, the storage layer and the REST routes.

Each error carries a ``public_message`` that is safe to send to a client. The
exception's own ``str()`` may contain internal detail and is only logged.
"""

from typing import Optional


class RelayError(Exception):
    public_message = "Unexpected server error"

    def __init__(self, detail: Optional[str] = None, public_message: Optional[str] = None):
        super().__init__(detail or public_message or self.public_message)
        if public_message:
            self.public_message = public_message


class AuthenticationError(RelayError):
    """Missing, malformed or expired credential. Fatal to the connection."""

    public_message = "Invalid token"


class NotFoundError(RelayError):
    """Chat does not exist or belongs to another user."""

    public_message = "Chat not found"


class InferenceError(RelayError):
    """The model engine is unreachable or failed mid-stream."""

    public_message = "The language model is unavailable right now"


class PersistenceError(RelayError):
    """A storage read or write failed."""

    public_message = "Could not save the conversation"


class InvalidPromptError(RelayError):
    public_message = "Content is required"
