import argparse
import asyncio
import io
import json

from chat_client import chat_main
from chat_client.conversation_sync import ConversationSync, SyncConfig
from chat_client.store_client import LocalConversationStore
from relay.runtime import RelayConfig, Runtime


def _lines(buffer: io.StringIO):
    return [json.loads(line) for line in buffer.getvalue().splitlines()]


def test_conversation_id_command_is_offline_and_symmetric():
    first = io.StringIO()
    second = io.StringIO()

    assert chat_main.main(["conversation-id", "--me", "bob", "--peer", "alice"], output=first) == 0
    assert chat_main.main(["conversation-id", "--me", "alice", "--peer", "bob", "--scope", "req-9"], output=second) == 0

    assert _lines(first) == [{"conversation_id": "alice_bob"}]
    assert _lines(second) == [{"conversation_id": "alice_bob_req-9"}]


def test_conversation_id_command_rejects_empty_ids(capsys):
    assert chat_main.main(["conversation-id", "--me", "", "--peer", "alice"], output=io.StringIO()) == 2

    error = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert error["error"] == "invalid_participants"


def test_send_then_history_round_trip_through_local_relay():
    runtime = Runtime.from_config(RelayConfig())
    store = LocalConversationStore(runtime)
    sent = io.StringIO()
    history = io.StringIO()

    async def scenario():
        await chat_main.run_send(ConversationSync(store, "alice"), "bob", None, "hello <b>bob</b>", sent)
        await chat_main.run_history(ConversationSync(store, "bob"), "alice", None, history)

    asyncio.run(scenario())

    [outgoing] = _lines(sent)
    [incoming] = _lines(history)
    assert outgoing["dir"] == "out"
    assert outgoing["text"] == "hello bbob/b"
    assert incoming["id"] == outgoing["id"]
    assert incoming["dir"] == "in"
    assert incoming["text"] == "hello bbob/b"
    assert incoming["failed"] is False
    assert runtime.hub.subscriber_count("alice_bob") == 0


def test_watch_prints_each_message_once():
    runtime = Runtime.from_config(RelayConfig())
    store = LocalConversationStore(runtime)
    output = io.StringIO()
    args = argparse.Namespace(command="watch", me="bob", peer="alice", scope=None, duration=0.5)

    async def scenario():
        watcher = asyncio.create_task(chat_main._run_with_store(store, args, SyncConfig(), output))
        await asyncio.sleep(0.1)
        await chat_main.run_send(ConversationSync(store, "alice"), "bob", None, "ping", io.StringIO())
        return await watcher

    assert asyncio.run(scenario()) == 0
    printed = _lines(output)
    assert [line["text"] for line in printed] == ["ping"]
    assert printed[0]["dir"] == "in"


def test_parser_requires_text_for_send():
    parser = chat_main.build_parser()
    args = parser.parse_args(["send", "--me", "alice", "--peer", "bob", "hi there"])

    assert args.text == "hi there"
    assert args.base_url == chat_main.DEFAULT_BASE_URL
    assert args.timeout == SyncConfig.request_timeout_s
