"""Relay command line: run the HTTP service or replay JSON frames offline."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Callable, Iterable, TextIO

from aiohttp import web

from .http_transport import create_app
from .records import EncryptedMessage, EncryptedMessageInput, MessageStatus
from .runtime import RelayConfig, Runtime

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _setup_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


def simulate(frames: Iterable[dict], output: TextIO, runtime: Runtime | None = None) -> None:
    """Process JSON frames through an in-memory relay and emit events."""

    runtime = runtime or Runtime.from_config(RelayConfig())

    def emitter(identity: str, kind: str) -> Callable[[EncryptedMessage], None]:
        def _emit(record: EncryptedMessage) -> None:
            output.write(json.dumps({"t": "event", "kind": kind, "identity": identity, "message": record.to_payload()}) + "\n")

        return _emit

    for frame in frames:
        frame_type = frame.get("t")
        if frame_type == "live.subscribe":
            identity = frame["identity"]
            runtime.subscribe(
                frame["conversation_id"],
                identity,
                emitter(identity, "created"),
                emitter(identity, "updated"),
            )
        elif frame_type == "message.create":
            runtime.create(EncryptedMessageInput.from_payload(frame["body"]))
        elif frame_type == "message.status":
            runtime.update_status(
                frame["message_id"],
                MessageStatus.parse(frame.get("status", MessageStatus.READ.value)),
                frame.get("read_at_ms"),
                frame["identity"],
            )
        elif frame_type == "message.query":
            identity = frame["identity"]
            records = runtime.query(frame["conversation_id"], identity)
            output.write(
                json.dumps(
                    {
                        "t": "messages",
                        "identity": identity,
                        "conversation_id": frame["conversation_id"],
                        "messages": [record.to_payload() for record in records],
                    }
                )
                + "\n"
            )
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    config = RelayConfig(
        db_path=args.db,
        messages_per_min=args.messages_per_min,
        ping_interval_s=args.ping_interval,
    )
    app = create_app(config=config)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="relay", description="Encrypted message relay")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay relay frames without a network")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp relay server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=float,
        default=30.0,
        help="Seconds between live-feed heartbeat pings",
    )
    serve_parser.add_argument(
        "--messages-per-min",
        type=int,
        default=RelayConfig.messages_per_min,
        help="Per-sender message creation limit",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for the ``relay`` command."""

    args = build_parser().parse_args(sys.argv[1:] if argv is None else argv)
    _setup_logging(args.log_level)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
