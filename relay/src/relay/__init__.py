"""Relay core: encrypted message store, live fan-out and HTTP transport."""

from .hub import Subscription, SubscriptionHub
from .limits import RateLimitExceeded
from .records import (
    EncryptedMessage,
    EncryptedMessageInput,
    MessageStatus,
    RecordValidationError,
    conversation_id_for,
)
from .runtime import RelayConfig, Runtime
from .store import InMemoryMessageStore

__all__ = [
    "EncryptedMessage",
    "EncryptedMessageInput",
    "InMemoryMessageStore",
    "MessageStatus",
    "RateLimitExceeded",
    "RecordValidationError",
    "RelayConfig",
    "Runtime",
    "Subscription",
    "SubscriptionHub",
    "conversation_id_for",
]
