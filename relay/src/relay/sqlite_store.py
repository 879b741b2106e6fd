from __future__ import annotations

import json
import sqlite3
from typing import List, Tuple

from .limits import FixedWindowRateLimiter
from .records import EncryptedMessage, EncryptedMessageInput, MessageStatus, _now_ms
from .sqlite_backend import SQLiteBackend
from .store import MESSAGES_PER_MIN, authorize_status_change, existing_for_retry, validate_input

_COLUMNS = (
    "id, conversation_id, sender_id, recipient_id, scope, ciphertext, nonce, "
    "metadata_json, status, created_at_ms, read_at_ms"
)


def _row_to_record(row: sqlite3.Row) -> EncryptedMessage:
    return EncryptedMessage(
        id=row["id"],
        conversation_id=row["conversation_id"],
        sender_id=row["sender_id"],
        recipient_id=row["recipient_id"],
        scope=row["scope"],
        ciphertext=row["ciphertext"],
        nonce=row["nonce"],
        metadata=json.loads(row["metadata_json"]),
        status=MessageStatus(row["status"]),
        created_at_ms=row["created_at_ms"],
        read_at_ms=row["read_at_ms"],
    )


class SQLiteMessageStore:
    """Durable message store backed by SQLite."""

    def __init__(self, backend: SQLiteBackend, messages_per_min: int = MESSAGES_PER_MIN, *, now_func=_now_ms) -> None:
        self._backend = backend
        self._now = now_func
        self._send_limits = FixedWindowRateLimiter(messages_per_min)

    def create(self, message: EncryptedMessageInput) -> Tuple[EncryptedMessage, bool]:
        """Insert atomically; an existing id returns the stored record."""

        validate_input(message)
        if message.id is not None:
            existing = self.get(message.id)
            if existing is not None:
                return existing_for_retry(existing, message), False
        now_ms = self._now()
        self._send_limits.check(message.sender_id, now_ms, "message rate limit exceeded")
        record = message.to_record(now_ms=now_ms)

        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                cursor.execute(
                    f"INSERT INTO messages ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.id,
                        record.conversation_id,
                        record.sender_id,
                        record.recipient_id,
                        record.scope,
                        record.ciphertext,
                        record.nonce,
                        json.dumps(record.metadata, sort_keys=True),
                        record.status.value,
                        record.created_at_ms,
                        record.read_at_ms,
                    ),
                )
                conn.commit()
                return record, True
            except sqlite3.IntegrityError:
                conn.rollback()
                row = conn.execute(f"SELECT {_COLUMNS} FROM messages WHERE id=?", (record.id,)).fetchone()
                if row is not None:
                    return existing_for_retry(_row_to_record(row), message), False
                raise
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def query_by_conversation(self, conversation_id: str, caller: str) -> List[EncryptedMessage]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT {_COLUMNS} FROM messages
                WHERE conversation_id=? AND (sender_id=? OR recipient_id=?)
                ORDER BY created_at_ms ASC, row_id ASC
                """,
                (conversation_id, caller, caller),
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def get(self, message_id: str) -> EncryptedMessage | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_COLUMNS} FROM messages WHERE id=?", (message_id,)
            ).fetchone()
        if row is None:
            return None
        return _row_to_record(row)

    def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        read_at_ms: int | None,
        acting: str,
    ) -> Tuple[EncryptedMessage, bool]:
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                row = cursor.execute(f"SELECT {_COLUMNS} FROM messages WHERE id=?", (message_id,)).fetchone()
                if row is None:
                    raise KeyError(message_id)
                record = _row_to_record(row)
                authorize_status_change(record, acting)
                updated = record.with_status(status, read_at_ms)
                if updated is record:
                    conn.commit()
                    return record, False
                cursor.execute(
                    "UPDATE messages SET status=?, read_at_ms=? WHERE id=?",
                    (updated.status.value, updated.read_at_ms, message_id),
                )
                conn.commit()
                return updated, True
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
