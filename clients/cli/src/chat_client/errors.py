"""Error taxonomy for the encrypted conversation client."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for conversation client failures."""


class KeyDerivationError(ChatError, ValueError):
    """Invalid inputs to key derivation; fatal to opening a conversation."""


class DecryptionError(ChatError):
    """A single envelope failed to authenticate or decode.

    Recovered per message by substituting a placeholder.
    """


class EncryptionUnavailable(ChatError):
    """No usable conversation key; nothing may be sent or displayed."""


class StoreError(ChatError):
    """A fetch, create or status update against the store failed."""

    def __init__(self, message: str, *, code: str = "store_error", status: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


class SubscriptionError(ChatError):
    """The live feed could not be established or dropped."""


class SendError(ChatError):
    """A message could not be sent; nothing was persisted locally."""


class EmptyMessage(SendError):
    pass


class MessageTooLong(SendError):
    pass
