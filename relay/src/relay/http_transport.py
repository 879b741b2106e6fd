from __future__ import annotations

import asyncio
import logging
from typing import Any, Union

from aiohttp import WSMsgType, web

from .limits import RateLimitExceeded
from .records import EncryptedMessage, EncryptedMessageInput, MessageStatus, RecordValidationError
from .runtime import RelayConfig, Runtime

logger = logging.getLogger(__name__)

RUNTIME_KEY = web.AppKey("runtime", Runtime)


def _error(code: str, message: str, status: int) -> web.Response:
    return _with_no_store(web.json_response({"code": code, "message": message}, status=status))


def _unauthorized() -> web.Response:
    return _error("unauthorized", "missing bearer identity", 401)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _forbidden(message: str) -> web.Response:
    return _error("forbidden", message, 403)


def _not_found(message: str) -> web.Response:
    return _error("not_found", message, 404)


def _rate_limited(message: str) -> web.Response:
    return _error("rate_limited", message, 429)


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


def _no_store_response(payload: dict[str, Any]) -> web.Response:
    return _with_no_store(web.json_response(payload))


def _identity(request: web.Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    identity = auth_header[len("Bearer ") :].strip()
    return identity or None


async def _json_body(request: web.Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    if not isinstance(body, dict):
        return None
    return body


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_create_message(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    identity = _identity(request)
    if identity is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("body must be a JSON object")
    try:
        message = EncryptedMessageInput.from_payload(body)
    except RecordValidationError as exc:
        return _invalid_request(str(exc))
    if message.sender_id != identity:
        return _forbidden("sender_id must match the caller")
    try:
        record, created = runtime.create(message)
    except RecordValidationError as exc:
        return _invalid_request(str(exc))
    except RateLimitExceeded as exc:
        return _rate_limited(str(exc))
    return _no_store_response({"message": record.to_payload(), "created": created})


async def handle_list_messages(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    identity = _identity(request)
    if identity is None:
        return _unauthorized()
    conversation_id = request.match_info["conversation_id"]
    records = runtime.query(conversation_id, identity)
    return _no_store_response({"messages": [record.to_payload() for record in records]})


async def handle_update_status(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    identity = _identity(request)
    if identity is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("body must be a JSON object")
    try:
        status = MessageStatus.parse(body.get("status"))
    except RecordValidationError as exc:
        return _invalid_request(str(exc))
    read_at_ms = body.get("read_at_ms")
    if read_at_ms is not None and (not isinstance(read_at_ms, int) or isinstance(read_at_ms, bool)):
        return _invalid_request("read_at_ms must be an integer")
    message_id = request.match_info["message_id"]
    try:
        record = runtime.update_status(message_id, status, read_at_ms, identity)
    except KeyError:
        return _not_found("unknown message")
    except PermissionError as exc:
        return _forbidden(str(exc))
    return _no_store_response({"message": record.to_payload()})


def _record_frame(frame_type: str, record: EncryptedMessage) -> dict[str, Any]:
    return {"v": 1, "t": frame_type, "body": record.to_payload()}


async def live_feed_handler(request: web.Request) -> web.StreamResponse:
    runtime = request.app[RUNTIME_KEY]
    config = runtime.config
    identity = _identity(request)
    if identity is None:
        return _unauthorized()
    conversation_id = request.match_info["conversation_id"]

    ws = web.WebSocketResponse(max_msg_size=config.max_msg_size)
    await ws.prepare(request)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Union[dict, None]] = asyncio.Queue(maxsize=config.outbound_queue_size)

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("live feed backpressure for %s; closing", conversation_id)
            asyncio.create_task(ws.close(code=1011, message=b"backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(config.ping_interval_s)
                if ws.closed:
                    return
                if loop.time() - last_activity >= config.ping_interval_s:
                    enqueue({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > config.ping_miss_limit:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    subscription = runtime.subscribe(
        conversation_id,
        identity,
        lambda record: enqueue(_record_frame("message.created", record)),
        lambda record: enqueue(_record_frame("message.updated", record)),
    )
    enqueue({"v": 1, "t": "live.ready", "body": {"conversation_id": conversation_id}})
    logger.info("live feed opened for %s", conversation_id)

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                mark_activity()
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue({"v": 1, "t": "error", "body": {"code": "invalid_request", "message": "malformed json"}})
                    continue
                if isinstance(frame, dict) and frame.get("t") == "ping":
                    enqueue({"v": 1, "t": "pong"})
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
    finally:
        runtime.unsubscribe(subscription)
        heartbeat_task.cancel()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)
        logger.info("live feed closed for %s", conversation_id)

    return ws


def create_app(
    *,
    db_path: str | None = None,
    ping_interval_s: float = 30.0,
    config: RelayConfig | None = None,
    runtime: Runtime | None = None,
) -> web.Application:
    if runtime is None:
        config = config or RelayConfig(db_path=db_path, ping_interval_s=ping_interval_s)
        runtime = Runtime.from_config(config)

    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/messages", handle_create_message)
    app.router.add_post("/v1/messages/{message_id}/status", handle_update_status)
    app.router.add_get("/v1/conversations/{conversation_id}/messages", handle_list_messages)
    app.router.add_get("/v1/conversations/{conversation_id}/live", live_feed_handler)

    async def close_runtime(_: web.Application) -> None:
        runtime.close()

    app.on_cleanup.append(close_runtime)
    return app
