import os
import tempfile
import unittest

from relay.hub import SubscriptionHub
from relay.limits import RateLimitExceeded
from relay.records import EncryptedMessageInput, MessageStatus, RecordValidationError, conversation_id_for
from relay.runtime import Runtime
from relay.sqlite_backend import SQLiteBackend
from relay.sqlite_store import SQLiteMessageStore
from relay.store import InMemoryMessageStore


def _input(sender="alice", recipient="bob", *, msg_id=None, created_at_ms=None, scope=None):
    return EncryptedMessageInput(
        sender_id=sender,
        recipient_id=recipient,
        conversation_id=conversation_id_for(sender, recipient, scope),
        scope=scope,
        ciphertext="Y2lwaGVy",
        nonce="bm9uY2U=",
        id=msg_id,
        created_at_ms=created_at_ms,
    )


class _StoreContract:
    def make_store(self, **kwargs):
        raise NotImplementedError

    def test_create_is_idempotent_by_id(self):
        store = self.make_store()
        first, created_first = store.create(_input(msg_id="m1", created_at_ms=1))
        repeat, created_repeat = store.create(_input(msg_id="m1", created_at_ms=2))

        self.assertTrue(created_first)
        self.assertFalse(created_repeat)
        self.assertEqual(repeat, first)
        self.assertEqual(len(store.query_by_conversation("alice_bob", "alice")), 1)

    def test_reused_id_from_another_sender_is_rejected(self):
        store = self.make_store()
        store.create(_input(msg_id="m1", created_at_ms=1))

        with self.assertRaises(RecordValidationError):
            store.create(_input("carol", "dave", msg_id="m1"))
        with self.assertRaises(RecordValidationError):
            store.create(_input("bob", "alice", msg_id="m1"))

    def test_query_orders_by_created_at_and_filters_parties(self):
        store = self.make_store()
        store.create(_input(msg_id="late", created_at_ms=30))
        store.create(_input("bob", "alice", msg_id="early", created_at_ms=10))
        store.create(_input(msg_id="middle", created_at_ms=20))
        store.create(_input("carol", "dave", msg_id="other", created_at_ms=5))

        ids = [record.id for record in store.query_by_conversation("alice_bob", "bob")]
        self.assertEqual(ids, ["early", "middle", "late"])
        self.assertEqual(store.query_by_conversation("alice_bob", "carol"), [])

    def test_scoped_conversations_are_separate(self):
        store = self.make_store()
        store.create(_input(msg_id="plain", created_at_ms=1))
        store.create(_input(msg_id="scoped", created_at_ms=2, scope="req1"))

        self.assertEqual([r.id for r in store.query_by_conversation("alice_bob", "alice")], ["plain"])
        self.assertEqual([r.id for r in store.query_by_conversation("alice_bob_req1", "alice")], ["scoped"])

    def test_create_rejects_mismatched_conversation(self):
        store = self.make_store()
        bad = EncryptedMessageInput(
            sender_id="alice",
            recipient_id="bob",
            conversation_id="alice_mallory",
            ciphertext="Y2lwaGVy",
            nonce="bm9uY2U=",
        )
        with self.assertRaises(RecordValidationError):
            store.create(bad)

    def test_create_rejects_self_conversation(self):
        store = self.make_store()
        with self.assertRaises(RecordValidationError):
            store.create(_input("alice", "alice"))

    def test_only_recipient_may_update_status(self):
        store = self.make_store()
        record, _ = store.create(_input(msg_id="m1"))

        with self.assertRaises(PermissionError):
            store.update_status(record.id, MessageStatus.READ, 99, "alice")

        updated, changed = store.update_status(record.id, MessageStatus.READ, 99, "bob")
        self.assertTrue(changed)
        self.assertEqual((updated.status, updated.read_at_ms), (MessageStatus.READ, 99))
        self.assertEqual(store.get(record.id), updated)

    def test_status_never_regresses(self):
        store = self.make_store()
        record, _ = store.create(_input(msg_id="m1"))
        store.update_status(record.id, MessageStatus.READ, 99, "bob")

        unchanged, changed = store.update_status(record.id, MessageStatus.DELIVERED, None, "bob")
        self.assertFalse(changed)
        self.assertEqual(unchanged.status, MessageStatus.READ)

    def test_unknown_message_raises_key_error(self):
        store = self.make_store()
        with self.assertRaises(KeyError):
            store.update_status("missing", MessageStatus.READ, 1, "bob")

    def test_sender_rate_limit(self):
        store = self.make_store(messages_per_min=2)
        store.create(_input())
        store.create(_input())
        with self.assertRaises(RateLimitExceeded):
            store.create(_input())
        store.create(_input("bob", "alice"))


class InMemoryMessageStoreTests(_StoreContract, unittest.TestCase):
    def make_store(self, **kwargs):
        return InMemoryMessageStore(**kwargs)


class SQLiteMessageStoreTests(_StoreContract, unittest.TestCase):
    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self._backends = []

    def tearDown(self):
        for backend in self._backends:
            backend.close()
        self._tmpdir.cleanup()

    def make_store(self, **kwargs):
        backend = SQLiteBackend(os.path.join(self._tmpdir.name, f"relay{len(self._backends)}.db"))
        self._backends.append(backend)
        return SQLiteMessageStore(backend, **kwargs)

    def test_records_survive_reopen(self):
        path = os.path.join(self._tmpdir.name, "durable.db")
        backend = SQLiteBackend(path)
        store = SQLiteMessageStore(backend)
        store.create(_input(msg_id="m1", created_at_ms=7))
        store.update_status("m1", MessageStatus.READ, 8, "bob")
        backend.close()

        reopened = SQLiteBackend(path)
        self._backends.append(reopened)
        records = SQLiteMessageStore(reopened).query_by_conversation("alice_bob", "alice")
        self.assertEqual([(r.id, r.status, r.read_at_ms) for r in records], [("m1", MessageStatus.READ, 8)])
        self.assertEqual(records[0].metadata["algorithm"], "AES-GCM")


class RuntimeBroadcastTests(unittest.TestCase):
    def test_broadcasts_once_per_change_to_parties_only(self):
        runtime = Runtime(store=InMemoryMessageStore(), hub=SubscriptionHub())
        created, updated, outsider = [], [], []
        runtime.subscribe("alice_bob", "alice", created.append, updated.append)
        runtime.subscribe("alice_bob", "mallory", outsider.append, outsider.append)

        record, _ = runtime.create(_input(msg_id="m1"))
        runtime.create(_input(msg_id="m1"))
        runtime.update_status("m1", MessageStatus.READ, 5, "bob")
        runtime.update_status("m1", MessageStatus.READ, 6, "bob")

        self.assertEqual([r.id for r in created], ["m1"])
        self.assertEqual([r.status for r in updated], [MessageStatus.READ])
        self.assertEqual(outsider, [])
        self.assertEqual(record.status, MessageStatus.SENT)

    def test_unsubscribe_stops_delivery(self):
        hub = SubscriptionHub()
        runtime = Runtime(store=InMemoryMessageStore(), hub=hub)
        seen = []
        subscription = runtime.subscribe("alice_bob", "bob", seen.append)
        runtime.unsubscribe(subscription)
        runtime.unsubscribe(subscription)

        runtime.create(_input())
        self.assertEqual(seen, [])
        self.assertEqual(hub.subscriber_count("alice_bob"), 0)


if __name__ == "__main__":
    unittest.main()
