from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .records import EncryptedMessage

logger = logging.getLogger(__name__)

Callback = Callable[[EncryptedMessage], None]


@dataclass
class Subscription:
    identity: str
    conversation_id: str
    on_insert: Callback
    on_update: Optional[Callback] = None

    def deliver_created(self, record: EncryptedMessage) -> None:
        self.on_insert(record)

    def deliver_updated(self, record: EncryptedMessage) -> None:
        if self.on_update is not None:
            self.on_update(record)


class SubscriptionHub:
    """Registers per-conversation listeners and fans out record changes.

    A subscriber only receives records it is a party to.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(
        self,
        conversation_id: str,
        identity: str,
        on_insert: Callback,
        on_update: Optional[Callback] = None,
    ) -> Subscription:
        subscription = Subscription(
            identity=identity,
            conversation_id=conversation_id,
            on_insert=on_insert,
            on_update=on_update,
        )
        self._subscriptions.setdefault(conversation_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.conversation_id)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.conversation_id, None)

    def subscriber_count(self, conversation_id: str) -> int:
        return len(self._subscriptions.get(conversation_id, []))

    def broadcast_created(self, record: EncryptedMessage) -> None:
        for subscription in self._targets(record):
            subscription.deliver_created(record)

    def broadcast_updated(self, record: EncryptedMessage) -> None:
        for subscription in self._targets(record):
            subscription.deliver_updated(record)

    def _targets(self, record: EncryptedMessage) -> List[Subscription]:
        targets = [
            subscription
            for subscription in list(self._subscriptions.get(record.conversation_id, []))
            if record.is_party(subscription.identity)
        ]
        logger.debug("fan-out %s to %d subscriber(s)", record.id, len(targets))
        return targets
