"""Client core for end-to-end encrypted two-party conversations."""

from .conversation_key import conversation_id_for, derive_conversation_key
from .conversation_sync import ConversationSync, DecryptedMessage, Origin, SyncConfig, SyncState, TimelineView
from .errors import (
    ChatError,
    DecryptionError,
    EmptyMessage,
    EncryptionUnavailable,
    KeyDerivationError,
    MessageTooLong,
    SendError,
    StoreError,
    SubscriptionError,
)
from .message_cipher import PLACEHOLDER_TEXT, Envelope, decrypt, encrypt
from .store_client import HttpConversationStore, LocalConversationStore

__all__ = [
    "ChatError",
    "ConversationSync",
    "DecryptedMessage",
    "DecryptionError",
    "EmptyMessage",
    "EncryptionUnavailable",
    "Envelope",
    "HttpConversationStore",
    "KeyDerivationError",
    "LocalConversationStore",
    "MessageTooLong",
    "Origin",
    "PLACEHOLDER_TEXT",
    "SendError",
    "StoreError",
    "SubscriptionError",
    "SyncConfig",
    "SyncState",
    "TimelineView",
    "conversation_id_for",
    "decrypt",
    "derive_conversation_key",
    "encrypt",
]
