"""Command line for reading and sending encrypted conversation messages."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Set, TextIO

from .conversation_key import conversation_id_for
from .conversation_sync import ConversationSync, DecryptedMessage, SyncConfig, TimelineView
from .errors import ChatError, EncryptionUnavailable, KeyDerivationError
from .store_client import ConversationStore, HttpConversationStore

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_BASE_URL = "http://127.0.0.1:8080"


def _setup_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.WARNING)
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


def render_entry(entry: DecryptedMessage, identity: str) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "dir": "out" if entry.sender_id == identity else "in",
        "sender_id": entry.sender_id,
        "created_at_ms": entry.created_at_ms,
        "status": entry.status.value,
        "text": entry.plaintext,
        "failed": entry.failed,
    }


def _write(output: TextIO, payload: Dict[str, Any]) -> None:
    output.write(json.dumps(payload, sort_keys=True) + "\n")
    output.flush()


async def run_history(sync: ConversationSync, peer: str, scope: str | None, output: TextIO) -> int:
    view = await sync.open(peer, scope)
    try:
        for entry in view.entries:
            _write(output, render_entry(entry, sync.identity))
    finally:
        sync.close()
    return 0


async def run_send(sync: ConversationSync, peer: str, scope: str | None, text: str, output: TextIO) -> int:
    await sync.open(peer, scope)
    try:
        entry = await sync.send(text)
        _write(output, render_entry(entry, sync.identity))
    finally:
        sync.close()
    return 0


async def run_watch(
    sync: ConversationSync,
    peer: str,
    scope: str | None,
    output: TextIO,
    duration_s: float | None = None,
) -> int:
    printed: Set[str] = set()

    def emit(view: TimelineView) -> None:
        for entry in view.entries:
            if entry.id not in printed:
                printed.add(entry.id)
                _write(output, render_entry(entry, sync.identity))

    remove = sync.add_listener(emit)
    try:
        emit(await sync.open(peer, scope))
        if duration_s is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration_s)
    finally:
        remove()
        sync.close()
    return 0


async def _run_remote(args: argparse.Namespace, output: TextIO) -> int:
    config = SyncConfig(request_timeout_s=args.timeout)
    async with HttpConversationStore(args.base_url, args.me, timeout_s=args.timeout) as store:
        return await _run_with_store(store, args, config, output)


async def _run_with_store(
    store: ConversationStore,
    args: argparse.Namespace,
    config: SyncConfig,
    output: TextIO,
) -> int:
    sync = ConversationSync(store, args.me, config)
    if args.command == "history":
        return await run_history(sync, args.peer, args.scope, output)
    if args.command == "send":
        return await run_send(sync, args.peer, args.scope, args.text, output)
    return await run_watch(sync, args.peer, args.scope, output, args.duration)


def _add_conversation_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--me", required=True, help="Your participant identifier")
    parser.add_argument("--peer", required=True, help="The other participant's identifier")
    parser.add_argument("--scope", default=None, help="Optional scoping identifier, e.g. a request id")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sealed-chat", description="Encrypted two-party conversations")
    parser.add_argument("--log-level", default="WARNING", help="Logging level written to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    id_parser = subparsers.add_parser("conversation-id", help="Print the conversation identifier")
    _add_conversation_args(id_parser)

    for name, help_text in (
        ("history", "Print the decrypted conversation history"),
        ("send", "Encrypt and send one message"),
        ("watch", "Print history, then stream new messages"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        _add_conversation_args(sub)
        sub.add_argument("--base-url", default=DEFAULT_BASE_URL, help="Relay base URL")
        sub.add_argument("--timeout", type=float, default=SyncConfig.request_timeout_s, help="Per-request timeout in seconds")
        if name == "send":
            sub.add_argument("text", help="Message text")
        if name == "watch":
            sub.add_argument("--duration", type=float, default=None, help="Stop after this many seconds")
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for the ``sealed-chat`` command."""

    args = build_parser().parse_args(sys.argv[1:] if argv is None else argv)
    _setup_logging(args.log_level)
    stream = output or sys.stdout

    if args.command == "conversation-id":
        try:
            conversation_id = conversation_id_for(args.me, args.peer, args.scope)
        except ValueError as exc:
            _write(sys.stderr, {"error": "invalid_participants", "message": str(exc)})
            return 2
        _write(stream, {"conversation_id": conversation_id})
        return 0

    try:
        return asyncio.run(_run_remote(args, stream))
    except (EncryptionUnavailable, KeyDerivationError) as exc:
        _write(sys.stderr, {"error": "encryption_unavailable", "message": str(exc)})
        return 2
    except ChatError as exc:
        _write(sys.stderr, {"error": getattr(exc, "code", type(exc).__name__), "message": str(exc)})
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
