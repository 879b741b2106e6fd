"""Typed encrypted-message records and boundary validation."""

from __future__ import annotations

import enum
import secrets
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

ID_SEPARATOR = "_"
DEFAULT_METADATA = {"algorithm": "AES-GCM", "keyLength": 256, "tagLength": 128}


def _now_ms() -> int:
    return int(time.time() * 1000)


class RecordValidationError(ValueError):
    """Raised when a payload cannot be mapped to a typed record."""


class MessageStatus(str, enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> "MessageStatus":
        try:
            return cls(value)
        except ValueError as exc:
            raise RecordValidationError(f"unknown status: {value!r}") from exc


_STATUS_RANK = {MessageStatus.SENT: 0, MessageStatus.DELIVERED: 1, MessageStatus.READ: 2}


def conversation_id_for(participant_a: str, participant_b: str, scope: str | None = None) -> str:
    """Return the symmetric conversation identifier for two participants.

    The identifiers are sorted so either side computes the same value. An
    optional scope (for example a help-request id) is appended.
    """

    if not participant_a or not participant_b:
        raise ValueError("participant identifiers must be non-empty")
    low, high = sorted([participant_a, participant_b])
    parts = [low, high]
    if scope:
        parts.append(scope)
    return ID_SEPARATOR.join(parts)


def new_message_id() -> str:
    return f"m_{secrets.token_urlsafe(16)}"


@dataclass(frozen=True)
class EncryptedMessageInput:
    sender_id: str
    recipient_id: str
    conversation_id: str
    ciphertext: str
    nonce: str
    metadata: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_METADATA))
    scope: str | None = None
    id: str | None = None
    created_at_ms: int | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EncryptedMessageInput":
        if not isinstance(payload, Mapping):
            raise RecordValidationError("message payload must be an object")
        metadata = payload.get("metadata") or dict(DEFAULT_METADATA)
        if not isinstance(metadata, Mapping):
            raise RecordValidationError("metadata must be an object")
        created_at_ms = payload.get("created_at_ms")
        if created_at_ms is not None and not _is_int(created_at_ms):
            raise RecordValidationError("created_at_ms must be an integer")
        return cls(
            sender_id=_require_str(payload, "sender_id"),
            recipient_id=_require_str(payload, "recipient_id"),
            conversation_id=_require_str(payload, "conversation_id"),
            ciphertext=_require_str(payload, "ciphertext"),
            nonce=_require_str(payload, "nonce"),
            metadata=dict(metadata),
            scope=_optional_str(payload, "scope"),
            id=_optional_str(payload, "id"),
            created_at_ms=created_at_ms,
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sender_id": self.sender_id,
            "recipient_id": self.recipient_id,
            "conversation_id": self.conversation_id,
            "ciphertext": self.ciphertext,
            "nonce": self.nonce,
            "metadata": dict(self.metadata),
            "scope": self.scope,
        }
        if self.id is not None:
            payload["id"] = self.id
        if self.created_at_ms is not None:
            payload["created_at_ms"] = self.created_at_ms
        return payload

    def to_record(self, *, message_id: str | None = None, now_ms: int | None = None) -> "EncryptedMessage":
        return EncryptedMessage(
            id=self.id or message_id or new_message_id(),
            sender_id=self.sender_id,
            recipient_id=self.recipient_id,
            conversation_id=self.conversation_id,
            scope=self.scope,
            ciphertext=self.ciphertext,
            nonce=self.nonce,
            metadata=dict(self.metadata),
            status=MessageStatus.SENT,
            created_at_ms=self.created_at_ms if self.created_at_ms is not None else (now_ms or _now_ms()),
            read_at_ms=None,
        )


@dataclass(frozen=True)
class EncryptedMessage:
    """A persisted message. Only ``status`` and ``read_at_ms`` ever change."""

    id: str
    sender_id: str
    recipient_id: str
    conversation_id: str
    ciphertext: str
    nonce: str
    metadata: Dict[str, Any]
    status: MessageStatus
    created_at_ms: int
    scope: str | None = None
    read_at_ms: int | None = None

    def is_party(self, identity: str) -> bool:
        return identity in (self.sender_id, self.recipient_id)

    def with_status(self, status: MessageStatus, read_at_ms: int | None = None) -> "EncryptedMessage":
        """Return the record advanced to ``status``; downgrades are ignored."""

        if status.rank <= self.status.rank:
            return self
        if status is MessageStatus.READ and read_at_ms is None:
            read_at_ms = _now_ms()
        return replace(self, status=status, read_at_ms=read_at_ms if status is MessageStatus.READ else self.read_at_ms)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "recipient_id": self.recipient_id,
            "conversation_id": self.conversation_id,
            "scope": self.scope,
            "ciphertext": self.ciphertext,
            "nonce": self.nonce,
            "metadata": dict(self.metadata),
            "status": self.status.value,
            "created_at_ms": self.created_at_ms,
            "read_at_ms": self.read_at_ms,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EncryptedMessage":
        """Map a loosely shaped store payload to a typed record.

        Accepts the native shape as well as the legacy web-client row shape
        (``encrypted_content``, ``encryption_metadata.iv``, ``help_request_id``
        and ISO-8601 ``created_at``/``read_at``).
        """

        if not isinstance(payload, Mapping):
            raise RecordValidationError("message payload must be an object")
        metadata = payload.get("metadata")
        if metadata is None:
            metadata = payload.get("encryption_metadata") or {}
        if not isinstance(metadata, Mapping):
            raise RecordValidationError("metadata must be an object")
        metadata = dict(metadata)

        ciphertext = payload.get("ciphertext", payload.get("encrypted_content"))
        legacy_iv = metadata.pop("iv", None)
        nonce = payload.get("nonce", legacy_iv)
        if not isinstance(ciphertext, str) or not ciphertext:
            raise RecordValidationError("ciphertext is required")
        if not isinstance(nonce, str) or not nonce:
            raise RecordValidationError("nonce is required")

        scope = payload.get("scope", payload.get("help_request_id"))
        if scope is not None and not isinstance(scope, str):
            raise RecordValidationError("scope must be a string")

        created_at_ms = _timestamp_ms(payload, "created_at_ms", "created_at")
        if created_at_ms is None:
            raise RecordValidationError("created_at_ms is required")

        return cls(
            id=_require_str(payload, "id"),
            sender_id=_require_str(payload, "sender_id"),
            recipient_id=_require_str(payload, "recipient_id"),
            conversation_id=_require_str(payload, "conversation_id"),
            scope=scope or None,
            ciphertext=ciphertext,
            nonce=nonce,
            metadata=metadata,
            status=MessageStatus.parse(payload.get("status", MessageStatus.SENT.value)),
            created_at_ms=created_at_ms,
            read_at_ms=_timestamp_ms(payload, "read_at_ms", "read_at"),
        )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _require_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise RecordValidationError(f"{key} is required")
    return value


def _optional_str(payload: Mapping[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise RecordValidationError(f"{key} must be a string")
    return value


def _timestamp_ms(payload: Mapping[str, Any], ms_key: str, iso_key: str) -> int | None:
    value = payload.get(ms_key)
    if value is not None:
        if not _is_int(value):
            raise RecordValidationError(f"{ms_key} must be an integer")
        return value
    iso_value = payload.get(iso_key)
    if iso_value is None:
        return None
    if not isinstance(iso_value, str):
        raise RecordValidationError(f"{iso_key} must be an ISO-8601 string")
    try:
        parsed = datetime.fromisoformat(iso_value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise RecordValidationError(f"{iso_key} must be an ISO-8601 string") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)
