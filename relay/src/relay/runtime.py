from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .hub import Callback, Subscription, SubscriptionHub
from .records import EncryptedMessage, EncryptedMessageInput, MessageStatus
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteMessageStore
from .store import MESSAGES_PER_MIN, InMemoryMessageStore, MessageStore

logger = logging.getLogger(__name__)


@dataclass
class RelayConfig:
    db_path: Optional[str] = None
    messages_per_min: int = MESSAGES_PER_MIN
    ping_interval_s: float = 30.0
    ping_miss_limit: int = 2
    max_msg_size: int = 1_048_576
    outbound_queue_size: int = 1000


class Runtime:
    """Binds a message store to the subscription hub.

    Every write that changes a record is broadcast exactly once.
    """

    def __init__(
        self,
        *,
        store: MessageStore,
        hub: SubscriptionHub,
        backend: SQLiteBackend | None = None,
        config: RelayConfig | None = None,
    ) -> None:
        self.store = store
        self.hub = hub
        self.backend = backend
        self.config = config or RelayConfig()

    @classmethod
    def from_config(cls, config: RelayConfig | None = None) -> "Runtime":
        config = config or RelayConfig()
        backend: SQLiteBackend | None = None
        if config.db_path is not None:
            backend = SQLiteBackend(config.db_path)
            store: MessageStore = SQLiteMessageStore(backend, config.messages_per_min)
        else:
            store = InMemoryMessageStore(config.messages_per_min)
        return cls(store=store, hub=SubscriptionHub(), backend=backend, config=config)

    def create(self, message: EncryptedMessageInput) -> Tuple[EncryptedMessage, bool]:
        record, created = self.store.create(message)
        if created:
            logger.debug("stored %s in %s", record.id, record.conversation_id)
            self.hub.broadcast_created(record)
        return record, created

    def query(self, conversation_id: str, caller: str) -> List[EncryptedMessage]:
        return self.store.query_by_conversation(conversation_id, caller)

    def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        read_at_ms: int | None,
        acting: str,
    ) -> EncryptedMessage:
        record, changed = self.store.update_status(message_id, status, read_at_ms, acting)
        if changed:
            self.hub.broadcast_updated(record)
        return record

    def subscribe(
        self,
        conversation_id: str,
        identity: str,
        on_insert: Callback,
        on_update: Callback | None = None,
    ) -> Subscription:
        return self.hub.subscribe(conversation_id, identity, on_insert, on_update)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.hub.unsubscribe(subscription)

    def close(self) -> None:
        if self.backend is not None:
            self.backend.close()
