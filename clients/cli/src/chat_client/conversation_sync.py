"""Reconciles one open conversation's decrypted timeline.

Two sources feed the timeline: the ordered history fetched from the store
and the live feed of newly created records. They can race and deliver the
same record twice, so every merge is keyed by message id (first writer
wins) and the timeline is re-sorted by ``created_at_ms`` afterwards.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple, TypeVar

from relay.records import EncryptedMessage, EncryptedMessageInput, MessageStatus, new_message_id

from .conversation_key import MIN_ITERATIONS, conversation_id_for, derive_conversation_key_async
from .errors import (
    DecryptionError,
    EncryptionUnavailable,
    KeyDerivationError,
    SendError,
    StoreError,
    SubscriptionError,
)
from .message_cipher import PLACEHOLDER_TEXT, Envelope, decrypt_async, encrypt_async
from .sanitize import MAX_MESSAGE_CHARS, prepare_outgoing
from .store_client import ConversationStore, StoreSubscription

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _now_ms() -> int:
    return int(time.time() * 1000)


class SyncState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    LIVE = "live"
    CLOSED = "closed"


class Origin(str, enum.Enum):
    HISTORY = "history"
    LIVE = "live"
    LOCAL = "local"


@dataclass
class SyncConfig:
    request_timeout_s: float = 10.0
    kdf_iterations: int = MIN_ITERATIONS
    max_message_chars: int = MAX_MESSAGE_CHARS
    placeholder_text: str = PLACEHOLDER_TEXT


@dataclass(frozen=True)
class DecryptedMessage:
    record: EncryptedMessage
    plaintext: str
    failed: bool = False
    origin: Origin = Origin.HISTORY

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def created_at_ms(self) -> int:
        return self.record.created_at_ms

    @property
    def sender_id(self) -> str:
        return self.record.sender_id

    @property
    def recipient_id(self) -> str:
        return self.record.recipient_id

    @property
    def status(self) -> MessageStatus:
        return self.record.status


@dataclass(frozen=True)
class TimelineView:
    conversation_id: Optional[str]
    state: SyncState
    entries: Tuple[DecryptedMessage, ...] = ()
    sending: bool = False
    live: bool = False
    notice: Optional[str] = None

    def ids(self) -> List[str]:
        return [entry.id for entry in self.entries]

    def plaintexts(self) -> List[str]:
        return [entry.plaintext for entry in self.entries]


Listener = Callable[[TimelineView], None]


@dataclass
class _Conversation:
    """State owned by one open conversation; dropped whole on close."""

    conversation_id: str
    peer_id: str
    scope: Optional[str]
    key: bytes
    entries: Dict[str, DecryptedMessage] = field(default_factory=dict)
    order: List[DecryptedMessage] = field(default_factory=list)
    buffered: List[EncryptedMessage] = field(default_factory=list)
    buffered_updates: List[EncryptedMessage] = field(default_factory=list)
    subscription: Optional[StoreSubscription] = None
    live: bool = False


class ConversationSync:
    """Drives one conversation at a time for ``identity``.

    ``open`` derives the key, subscribes to the live feed (buffering events
    while history loads), loads history and switches to live delivery.
    ``close`` unsubscribes before discarding the timeline.
    """

    def __init__(
        self,
        store: ConversationStore,
        identity: str,
        config: SyncConfig | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        if not identity:
            raise ValueError("identity must be non-empty")
        self.store = store
        self.identity = identity
        self.config = config or SyncConfig()
        self._now = now_func
        self.state = SyncState.UNINITIALIZED
        self.sending = False
        self._conv: Optional[_Conversation] = None
        self._notice: Optional[str] = None
        self._tasks: Set[asyncio.Task] = set()
        self._generation = 0
        self._listeners: List[Listener] = []

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conv.conversation_id if self._conv is not None else None

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def view(self) -> TimelineView:
        conv = self._conv
        if conv is None:
            return TimelineView(conversation_id=None, state=self.state, sending=self.sending, notice=self._notice)
        return TimelineView(
            conversation_id=conv.conversation_id,
            state=self.state,
            entries=tuple(conv.order),
            sending=self.sending,
            live=conv.live,
            notice=self._notice,
        )

    async def open(
        self,
        peer_id: str,
        scope: str | None = None,
        *,
        conversation_id: str | None = None,
    ) -> TimelineView:
        if self.state in (SyncState.LOADING, SyncState.LIVE):
            raise RuntimeError("a conversation is already open; close it first")
        generation = self._generation
        try:
            key = await derive_conversation_key_async(
                self.identity,
                peer_id,
                scope,
                iterations=self.config.kdf_iterations,
            )
        except KeyDerivationError as exc:
            raise EncryptionUnavailable(f"cannot derive conversation key: {exc}") from exc
        if self._generation != generation:
            return self.view()

        expected_id = conversation_id_for(self.identity, peer_id, scope)
        if conversation_id is not None and conversation_id != expected_id:
            raise ValueError("conversation_id does not match the participants")

        conv = _Conversation(conversation_id=expected_id, peer_id=peer_id, scope=scope or None, key=key)
        self._conv = conv
        self._notice = None
        self.state = SyncState.LOADING
        logger.info("opening conversation %s", expected_id)

        try:
            subscription = await self._bounded(
                self.store.subscribe(
                    expected_id,
                    self.identity,
                    self._handle_insert,
                    self._handle_update,
                    self._handle_feed_error,
                ),
                "subscribe to the live feed",
            )
        except (SubscriptionError, StoreError) as exc:
            if self._conv is not conv:
                return self.view()
            logger.warning("live feed unavailable for %s: %s", expected_id, exc)
            self._notice = "live updates unavailable"
        else:
            if self._conv is not conv:
                subscription.cancel()
                logger.info("conversation %s closed while subscribing", expected_id)
                return self.view()
            conv.subscription = subscription
            conv.live = True

        await self.load_history()
        return self.view()

    async def load_history(self) -> TimelineView:
        conv = self._require_open()
        records = await self._bounded(
            self.store.query_by_conversation(conv.conversation_id, self.identity),
            "load messages",
        )
        decrypted = await asyncio.gather(*(self._open_record(conv, record, Origin.HISTORY) for record in records))
        if self._conv is not conv:
            return self.view()

        for entry in decrypted:
            self._merge(conv, entry)
        self._resort(conv)
        self.state = SyncState.LIVE
        self._notify()

        pending, conv.buffered = conv.buffered, []
        for record in pending:
            await self.on_live_message(record)

        updates, conv.buffered_updates = conv.buffered_updates, []
        for record in updates:
            self.on_status_update(record)

        for record in records:
            if self._needs_read_receipt(record):
                await self._auto_mark_read(record.id)
        return self.view()

    async def on_live_message(self, record: EncryptedMessage) -> bool:
        """Merge one live record; returns ``False`` when it was dropped."""

        conv = self._conv
        if conv is None or self.state is SyncState.CLOSED:
            return False
        if record.conversation_id != conv.conversation_id or record.id in conv.entries:
            return False
        entry = await self._open_record(conv, record, Origin.LIVE)
        if self._conv is not conv or record.id in conv.entries:
            return False
        conv.entries[record.id] = entry
        conv.order.append(entry)
        self._resort(conv)
        self._notify()
        if self._needs_read_receipt(record):
            await self._auto_mark_read(record.id)
        return True

    def on_status_update(self, record: EncryptedMessage) -> None:
        conv = self._conv
        if conv is None or self.state is SyncState.CLOSED:
            return
        entry = conv.entries.get(record.id)
        if entry is None:
            return
        advanced = entry.record.with_status(record.status, record.read_at_ms)
        if advanced is entry.record:
            return
        self._replace(conv, replace(entry, record=advanced))
        self._notify()

    async def send(self, plaintext: str) -> DecryptedMessage:
        conv = self._conv
        if conv is None or self.state not in (SyncState.LOADING, SyncState.LIVE):
            raise EncryptionUnavailable("no open conversation key")
        if self.sending:
            raise SendError("a message is already being sent")
        text = prepare_outgoing(plaintext, self.config.max_message_chars)

        self.sending = True
        self._notify()
        try:
            envelope = await encrypt_async(text, conv.key)
            message = EncryptedMessageInput(
                id=new_message_id(),
                sender_id=self.identity,
                recipient_id=conv.peer_id,
                conversation_id=conv.conversation_id,
                scope=conv.scope,
                ciphertext=envelope.ciphertext,
                nonce=envelope.nonce,
                metadata=dict(envelope.metadata),
            )
            record = await self._bounded(self.store.create(message), "send message")
        except StoreError as exc:
            logger.warning("send failed in %s: %s", conv.conversation_id, exc)
            self.sending = False
            self._notify()
            raise SendError(f"failed to send message: {exc}") from exc
        finally:
            self.sending = False

        entry = DecryptedMessage(record=record, plaintext=text, origin=Origin.LOCAL)
        if self._conv is conv and record.id not in conv.entries:
            conv.entries[record.id] = entry
            conv.order.append(entry)
            self._resort(conv)
        self._notify()
        return entry

    async def mark_read(self, message_id: str) -> None:
        conv = self._require_open()
        entry = conv.entries.get(message_id)
        if entry is None:
            raise KeyError(message_id)
        if entry.recipient_id != self.identity:
            raise PermissionError("only the recipient may mark a message read")
        if entry.status is MessageStatus.READ:
            return
        read_at_ms = self._now()
        await self._bounded(
            self.store.update_status(message_id, MessageStatus.READ, read_at_ms, self.identity),
            "mark message read",
        )
        current = conv.entries.get(message_id)
        if self._conv is conv and current is not None:
            self._replace(conv, replace(current, record=current.record.with_status(MessageStatus.READ, read_at_ms)))
            self._notify()

    def close(self) -> None:
        self._generation += 1
        if self.state is SyncState.CLOSED or self._conv is None:
            self.state = SyncState.CLOSED
            return
        conv = self._conv
        self.state = SyncState.CLOSED
        if conv.subscription is not None:
            conv.subscription.cancel()
            conv.subscription = None
        conv.live = False
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._conv = None
        self.sending = False
        logger.info("closed conversation %s", conv.conversation_id)
        self._notify()

    def _require_open(self) -> _Conversation:
        if self._conv is None or self.state is SyncState.CLOSED:
            raise EncryptionUnavailable("no open conversation key")
        return self._conv

    async def _bounded(self, awaitable: Awaitable[T], action: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.request_timeout_s)
        except asyncio.TimeoutError as exc:
            raise StoreError(f"timed out trying to {action}", code="timeout") from exc

    async def _open_record(self, conv: _Conversation, record: EncryptedMessage, origin: Origin) -> DecryptedMessage:
        envelope = Envelope(ciphertext=record.ciphertext, nonce=record.nonce, metadata=dict(record.metadata))
        try:
            plaintext = await decrypt_async(envelope, conv.key)
        except DecryptionError as exc:
            logger.warning("message %s unavailable: %s", record.id, exc)
            return DecryptedMessage(record=record, plaintext=self.config.placeholder_text, failed=True, origin=origin)
        return DecryptedMessage(record=record, plaintext=plaintext, origin=origin)

    def _merge(self, conv: _Conversation, entry: DecryptedMessage) -> None:
        existing = conv.entries.get(entry.id)
        if existing is None:
            conv.entries[entry.id] = entry
            conv.order.append(entry)
            return
        advanced = existing.record.with_status(entry.status, entry.record.read_at_ms)
        if advanced is not existing.record:
            self._replace(conv, replace(existing, record=advanced))

    @staticmethod
    def _replace(conv: _Conversation, entry: DecryptedMessage) -> None:
        conv.entries[entry.id] = entry
        conv.order = [entry if item.id == entry.id else item for item in conv.order]

    @staticmethod
    def _resort(conv: _Conversation) -> None:
        conv.order.sort(key=lambda item: item.created_at_ms)

    def _needs_read_receipt(self, record: EncryptedMessage) -> bool:
        return record.recipient_id == self.identity and record.status is not MessageStatus.READ

    async def _auto_mark_read(self, message_id: str) -> None:
        try:
            await self.mark_read(message_id)
        except (StoreError, EncryptionUnavailable, KeyError) as exc:
            logger.warning("could not mark %s read: %s", message_id, exc)

    def _handle_insert(self, record: EncryptedMessage) -> None:
        conv = self._conv
        if conv is None or self.state is SyncState.CLOSED:
            return
        if self.state is SyncState.LOADING:
            conv.buffered.append(record)
            return
        self._spawn(self.on_live_message(record))

    def _handle_update(self, record: EncryptedMessage) -> None:
        conv = self._conv
        if conv is not None and self.state is SyncState.LOADING:
            conv.buffered_updates.append(record)
            return
        self.on_status_update(record)

    def _handle_feed_error(self, error: SubscriptionError) -> None:
        conv = self._conv
        if conv is None or self.state is SyncState.CLOSED:
            return
        conv.live = False
        self._notice = "live updates interrupted"
        logger.warning("live feed lost for %s: %s", conv.conversation_id, error)
        self._notify()

    def _spawn(self, coro: Awaitable[bool]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("live message handling failed: %s", exc)

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.view()
        for listener in list(self._listeners):
            listener(snapshot)
