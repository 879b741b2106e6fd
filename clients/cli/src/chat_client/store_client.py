"""Conversation store adapters: in-process relay and aiohttp HTTP/WebSocket."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol
from urllib.parse import quote

import aiohttp

from relay.hub import Subscription as HubSubscription
from relay.limits import RateLimitExceeded
from relay.records import (
    EncryptedMessage,
    EncryptedMessageInput,
    MessageStatus,
    RecordValidationError,
)
from relay.runtime import Runtime

from .errors import StoreError, SubscriptionError

logger = logging.getLogger(__name__)

RecordCallback = Callable[[EncryptedMessage], None]
ErrorCallback = Callable[[SubscriptionError], None]


class StoreSubscription(Protocol):
    def cancel(self) -> None: ...


class ConversationStore(Protocol):
    async def create(self, message: EncryptedMessageInput) -> EncryptedMessage: ...

    async def query_by_conversation(self, conversation_id: str, caller: str) -> List[EncryptedMessage]: ...

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        read_at_ms: int | None,
        acting: str,
    ) -> None: ...

    async def subscribe(
        self,
        conversation_id: str,
        identity: str,
        on_insert: RecordCallback,
        on_update: Optional[RecordCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> StoreSubscription: ...


class LocalSubscription:
    def __init__(self, runtime: Runtime, subscription: HubSubscription) -> None:
        self._runtime = runtime
        self._subscription = subscription
        self.cancelled = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        self._runtime.unsubscribe(self._subscription)


class LocalConversationStore:
    """Adapts an in-process relay :class:`Runtime` to the async store contract."""

    def __init__(self, runtime: Runtime) -> None:
        self.runtime = runtime

    async def create(self, message: EncryptedMessageInput) -> EncryptedMessage:
        try:
            record, _ = self.runtime.create(message)
        except RecordValidationError as exc:
            raise StoreError(str(exc), code="invalid_request") from exc
        except RateLimitExceeded as exc:
            raise StoreError(str(exc), code="rate_limited") from exc
        return record

    async def query_by_conversation(self, conversation_id: str, caller: str) -> List[EncryptedMessage]:
        return self.runtime.query(conversation_id, caller)

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        read_at_ms: int | None,
        acting: str,
    ) -> None:
        try:
            self.runtime.update_status(message_id, status, read_at_ms, acting)
        except KeyError as exc:
            raise StoreError("unknown message", code="not_found") from exc
        except PermissionError as exc:
            raise StoreError(str(exc), code="forbidden") from exc

    async def subscribe(
        self,
        conversation_id: str,
        identity: str,
        on_insert: RecordCallback,
        on_update: Optional[RecordCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> LocalSubscription:
        subscription = self.runtime.subscribe(conversation_id, identity, on_insert, on_update)
        return LocalSubscription(self.runtime, subscription)


class HttpSubscription:
    """Live feed over a relay WebSocket; ``cancel`` stops delivery at once."""

    def __init__(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        on_insert: RecordCallback,
        on_update: Optional[RecordCallback],
        on_error: Optional[ErrorCallback],
    ) -> None:
        self._ws = ws
        self._on_insert = on_insert
        self._on_update = on_update
        self._on_error = on_error
        self.cancelled = False
        self._started = False
        self._closing: Optional[asyncio.Task] = None
        self._task = asyncio.create_task(self._pump())

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if not self._started:
            # A task cancelled before its first step never runs its finally block.
            self._closing = asyncio.ensure_future(self._ws.close())
        self._task.cancel()

    async def wait_closed(self) -> None:
        await asyncio.gather(self._task, return_exceptions=True)
        if self._closing is not None:
            await asyncio.gather(self._closing, return_exceptions=True)

    async def _pump(self) -> None:
        self._started = True
        try:
            async for msg in self._ws:
                if self.cancelled:
                    return
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._dispatch(msg.json())
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break
            if not self.cancelled:
                self._report(SubscriptionError("live feed closed by relay"))
        except asyncio.CancelledError:
            pass
        except (aiohttp.ClientError, ValueError) as exc:
            if not self.cancelled:
                self._report(SubscriptionError(f"live feed failed: {exc}"))
        finally:
            await self._ws.close()

    async def _dispatch(self, frame: Any) -> None:
        if not isinstance(frame, dict):
            return
        frame_type = frame.get("t")
        if frame_type == "ping":
            await self._ws.send_json({"v": 1, "t": "pong"})
            return
        if frame_type not in {"message.created", "message.updated"}:
            return
        try:
            record = EncryptedMessage.from_payload(frame.get("body") or {})
        except RecordValidationError as exc:
            logger.warning("dropping malformed live record: %s", exc)
            return
        if frame_type == "message.created":
            self._on_insert(record)
        elif self._on_update is not None:
            self._on_update(record)

    def _report(self, error: SubscriptionError) -> None:
        logger.warning("%s", error)
        if self._on_error is not None:
            self._on_error(error)


class HttpConversationStore:
    """Talks to a relay over HTTP; the caller identity travels as a bearer."""

    def __init__(
        self,
        base_url: str,
        identity: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.identity = identity
        self._timeout_s = timeout_s
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "HttpConversationStore":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout_s))
        return self._session

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.identity}"}

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _request(self, method: str, path: str, payload: Dict[str, Any] | None = None) -> Dict[str, Any]:
        try:
            async with self._client().request(
                method, self._url(path), json=payload, headers=self._headers()
            ) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = None
                if response.status >= 400:
                    code = "http_error"
                    message = f"relay returned HTTP {response.status}"
                    if isinstance(body, dict):
                        code = str(body.get("code") or code)
                        message = str(body.get("message") or message)
                    raise StoreError(message, code=code, status=response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StoreError(f"relay unreachable: {exc}", code="transport") from exc
        if not isinstance(body, dict):
            raise StoreError("relay returned a non-object body", code="bad_response")
        return body

    @staticmethod
    def _record(payload: Any) -> EncryptedMessage:
        try:
            return EncryptedMessage.from_payload(payload)
        except RecordValidationError as exc:
            raise StoreError(f"malformed record from relay: {exc}", code="bad_response") from exc

    async def create(self, message: EncryptedMessageInput) -> EncryptedMessage:
        body = await self._request("POST", "/v1/messages", message.to_payload())
        return self._record(body.get("message"))

    async def query_by_conversation(self, conversation_id: str, caller: str) -> List[EncryptedMessage]:
        if caller != self.identity:
            raise StoreError("caller must match the store identity", code="forbidden")
        body = await self._request("GET", f"/v1/conversations/{quote(conversation_id, safe='')}/messages")
        messages = body.get("messages")
        if not isinstance(messages, list):
            raise StoreError("relay returned no message list", code="bad_response")
        return [self._record(item) for item in messages]

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        read_at_ms: int | None,
        acting: str,
    ) -> None:
        if acting != self.identity:
            raise StoreError("acting identity must match the store identity", code="forbidden")
        payload: Dict[str, Any] = {"status": status.value}
        if read_at_ms is not None:
            payload["read_at_ms"] = read_at_ms
        await self._request("POST", f"/v1/messages/{quote(message_id, safe='')}/status", payload)

    async def subscribe(
        self,
        conversation_id: str,
        identity: str,
        on_insert: RecordCallback,
        on_update: Optional[RecordCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> HttpSubscription:
        if identity != self.identity:
            raise SubscriptionError("subscriber must match the store identity")
        try:
            ws = await self._client().ws_connect(
                self._url(f"/v1/conversations/{quote(conversation_id, safe='')}/live"),
                headers=self._headers(),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise SubscriptionError(f"could not open live feed: {exc}") from exc
        try:
            ready = await ws.receive_json(timeout=self._timeout_s)
        except (aiohttp.ClientError, asyncio.TimeoutError, TypeError, ValueError) as exc:
            await ws.close()
            raise SubscriptionError(f"live feed did not become ready: {exc}") from exc
        if not isinstance(ready, dict) or ready.get("t") != "live.ready":
            await ws.close()
            raise SubscriptionError("live feed did not become ready")
        return HttpSubscription(ws, on_insert, on_update, on_error)
