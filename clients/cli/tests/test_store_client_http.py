import asyncio
import unittest

from aiohttp.test_utils import TestClient, TestServer

from chat_client.conversation_key import derive_conversation_key
from chat_client.conversation_sync import ConversationSync, Origin
from chat_client.errors import StoreError, SubscriptionError
from chat_client.message_cipher import encrypt
from chat_client.store_client import HttpConversationStore
from relay.http_transport import RUNTIME_KEY, create_app
from relay.records import EncryptedMessageInput, MessageStatus, conversation_id_for
from relay.runtime import RelayConfig


async def _eventually(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class HttpConversationStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = create_app(config=RelayConfig(ping_interval_s=3600))
        self.runtime = self.app[RUNTIME_KEY]
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()
        self.base_url = str(self.server.make_url(""))

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    def _store(self, identity):
        return HttpConversationStore(self.base_url, identity, session=self.client.session, timeout_s=2.0)

    def _sealed(self, msg_id, text, ts, sender="alice", recipient="bob"):
        envelope = encrypt(text, derive_conversation_key(sender, recipient))
        return EncryptedMessageInput(
            id=msg_id,
            sender_id=sender,
            recipient_id=recipient,
            conversation_id="alice_bob",
            ciphertext=envelope.ciphertext,
            nonce=envelope.nonce,
            metadata=dict(envelope.metadata),
            created_at_ms=ts,
        )

    async def test_create_query_and_status_over_http(self):
        alice = self._store("alice")
        bob = self._store("bob")

        record = await alice.create(self._sealed("m1", "hi", 100))
        self.assertEqual(record.status, MessageStatus.SENT)

        await bob.update_status("m1", MessageStatus.READ, 555, "bob")
        records = await alice.query_by_conversation("alice_bob", "alice")

        self.assertEqual([item.id for item in records], ["m1"])
        self.assertEqual(records[0].status, MessageStatus.READ)
        self.assertEqual(records[0].read_at_ms, 555)

    async def test_relay_errors_become_store_errors(self):
        alice = self._store("alice")

        with self.assertRaises(StoreError) as forged:
            await alice.create(self._sealed("m1", "forged", 100, sender="bob", recipient="alice"))
        with self.assertRaises(StoreError) as missing:
            await alice.update_status("nope", MessageStatus.READ, None, "alice")
        with self.assertRaises(StoreError) as impersonated:
            await alice.query_by_conversation("alice_bob", "bob")

        self.assertEqual((forged.exception.code, forged.exception.status), ("forbidden", 403))
        self.assertEqual((missing.exception.code, missing.exception.status), ("not_found", 404))
        self.assertEqual(impersonated.exception.code, "forbidden")

    async def test_unreachable_relay_is_a_transport_error(self):
        store = HttpConversationStore("http://127.0.0.1:1", "alice", timeout_s=1.0)
        try:
            with self.assertRaises(StoreError) as ctx:
                await store.query_by_conversation("alice_bob", "alice")
            with self.assertRaises(SubscriptionError):
                await store.subscribe("alice_bob", "alice", lambda record: None)
        finally:
            await store.close()

        self.assertEqual(ctx.exception.code, "transport")

    async def test_subscription_delivers_inserts_and_updates(self):
        alice = self._store("alice")
        inserted = []
        updated = []
        subscription = await self._store("bob").subscribe("alice_bob", "bob", inserted.append, updated.append)
        self.assertEqual(self.runtime.hub.subscriber_count("alice_bob"), 1)

        await alice.create(self._sealed("m1", "hi", 100))
        await _eventually(lambda: inserted)
        await self._store("bob").update_status("m1", MessageStatus.READ, 700, "bob")
        await _eventually(lambda: updated)

        self.assertEqual(inserted[0].id, "m1")
        self.assertEqual(updated[0].status, MessageStatus.READ)

        subscription.cancel()
        await subscription.wait_closed()
        await _eventually(lambda: self.runtime.hub.subscriber_count("alice_bob") == 0)

    async def test_cancel_before_first_frame_closes_the_socket(self):
        subscription = await self._store("bob").subscribe("alice_bob", "bob", lambda record: None)
        subscription.cancel()
        await subscription.wait_closed()

        self.assertTrue(subscription._ws.closed)
        await _eventually(lambda: self.runtime.hub.subscriber_count("alice_bob") == 0)

    async def test_identifiers_with_url_delimiters_reach_their_route(self):
        scope = "q?1#2"
        conversation_id = conversation_id_for("alice", "bob", scope)
        envelope = encrypt("odd scope", derive_conversation_key("alice", "bob", scope))
        message = EncryptedMessageInput(
            id="m?1#x",
            sender_id="alice",
            recipient_id="bob",
            conversation_id=conversation_id,
            scope=scope,
            ciphertext=envelope.ciphertext,
            nonce=envelope.nonce,
        )
        inserted = []
        subscription = await self._store("bob").subscribe(conversation_id, "bob", inserted.append)
        self.assertEqual(self.runtime.hub.subscriber_count(conversation_id), 1)

        await self._store("alice").create(message)
        await self._store("bob").update_status("m?1#x", MessageStatus.READ, 10, "bob")
        records = await self._store("alice").query_by_conversation(conversation_id, "alice")
        await _eventually(lambda: inserted)

        self.assertEqual([record.id for record in records], ["m?1#x"])
        self.assertEqual(records[0].status, MessageStatus.READ)
        self.assertEqual(inserted[0].conversation_id, conversation_id)
        subscription.cancel()
        await subscription.wait_closed()

    async def test_subscribe_requires_matching_identity(self):
        with self.assertRaises(SubscriptionError):
            await self._store("alice").subscribe("alice_bob", "bob", lambda record: None)

    async def test_two_clients_converse_end_to_end(self):
        alice = ConversationSync(self._store("alice"), "alice")
        bob = ConversationSync(self._store("bob"), "bob")
        self.addCleanup(alice.close)
        self.addCleanup(bob.close)
        self.runtime.create(self._sealed("m0", "earlier", 100))

        alice_view = await alice.open("bob")
        bob_view = await bob.open("alice")
        self.assertEqual(alice_view.plaintexts(), ["earlier"])
        self.assertEqual(bob_view.plaintexts(), ["earlier"])

        sent = await alice.send("over the wire")
        await _eventually(lambda: len(bob.view().entries) == 2)
        await _eventually(lambda: alice.view().entries[-1].status is MessageStatus.READ)

        received = bob.view().entries[-1]
        self.assertEqual(received.id, sent.id)
        self.assertEqual(received.plaintext, "over the wire")
        self.assertEqual(received.origin, Origin.LIVE)
        self.assertEqual(alice.view().ids(), ["m0", sent.id])

        bob.close()
        await _eventually(lambda: self.runtime.hub.subscriber_count("alice_bob") == 1)
        alice.close()
        await _eventually(lambda: self.runtime.hub.subscriber_count("alice_bob") == 0)


if __name__ == "__main__":
    unittest.main()
