from __future__ import annotations

from typing import Dict, List, Protocol, Tuple

from .limits import FixedWindowRateLimiter
from .records import (
    EncryptedMessage,
    EncryptedMessageInput,
    MessageStatus,
    RecordValidationError,
    _now_ms,
    conversation_id_for,
)

MESSAGES_PER_MIN = 120


class MessageStore(Protocol):
    def create(self, message: EncryptedMessageInput) -> Tuple[EncryptedMessage, bool]: ...

    def query_by_conversation(self, conversation_id: str, caller: str) -> List[EncryptedMessage]: ...

    def get(self, message_id: str) -> EncryptedMessage | None: ...

    def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        read_at_ms: int | None,
        acting: str,
    ) -> Tuple[EncryptedMessage, bool]: ...


def validate_input(message: EncryptedMessageInput) -> None:
    """Reject inputs whose routing fields disagree with each other."""

    if message.sender_id == message.recipient_id:
        raise RecordValidationError("sender and recipient must differ")
    expected = conversation_id_for(message.sender_id, message.recipient_id, message.scope)
    if message.conversation_id != expected:
        raise RecordValidationError("conversation_id does not match participants")


def existing_for_retry(existing: EncryptedMessage, message: EncryptedMessageInput) -> EncryptedMessage:
    """Return ``existing`` when ``message`` is a retry of it, else reject the id."""

    if existing.sender_id != message.sender_id or existing.conversation_id != message.conversation_id:
        raise RecordValidationError("message id already in use")
    return existing


def authorize_status_change(record: EncryptedMessage, acting: str) -> None:
    if acting != record.recipient_id:
        raise PermissionError("only the recipient may change message status")


class InMemoryMessageStore:
    """Append-only message store with idempotent create by message id."""

    def __init__(self, messages_per_min: int = MESSAGES_PER_MIN, *, now_func=_now_ms) -> None:
        self._now = now_func
        self._by_id: Dict[str, EncryptedMessage] = {}
        self._by_conversation: Dict[str, List[str]] = {}
        self._send_limits = FixedWindowRateLimiter(messages_per_min)

    def create(self, message: EncryptedMessageInput) -> Tuple[EncryptedMessage, bool]:
        """Persist ``message`` or return the existing record for its id.

        The boolean is ``True`` only when a new record was written.
        """

        validate_input(message)
        if message.id is not None and message.id in self._by_id:
            return existing_for_retry(self._by_id[message.id], message), False
        now_ms = self._now()
        self._send_limits.check(message.sender_id, now_ms, "message rate limit exceeded")
        record = message.to_record(now_ms=now_ms)
        self._by_id[record.id] = record
        self._by_conversation.setdefault(record.conversation_id, []).append(record.id)
        return record, True

    def query_by_conversation(self, conversation_id: str, caller: str) -> List[EncryptedMessage]:
        records = [self._by_id[message_id] for message_id in self._by_conversation.get(conversation_id, [])]
        visible = [record for record in records if record.is_party(caller)]
        # Stable sort keeps insertion order for equal timestamps.
        return sorted(visible, key=lambda record: record.created_at_ms)

    def get(self, message_id: str) -> EncryptedMessage | None:
        return self._by_id.get(message_id)

    def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        read_at_ms: int | None,
        acting: str,
    ) -> Tuple[EncryptedMessage, bool]:
        record = self._by_id.get(message_id)
        if record is None:
            raise KeyError(message_id)
        authorize_status_change(record, acting)
        updated = record.with_status(status, read_at_ms)
        if updated is record:
            return record, False
        self._by_id[message_id] = updated
        return updated, True
