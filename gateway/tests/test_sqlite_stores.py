import sqlite3
import tempfile
import unittest
from pathlib import Path

from chatwire.consent import ACCEPTED, PENDING, ConsentGate, SQLiteConsentStore
from chatwire.conversations import SQLiteConversationStore
from chatwire.notifications import MESSAGE_RECEIVED, PROFILE_VIEW, SQLiteNotificationStore
from chatwire.sessions import SQLiteSessionStore
from chatwire.sqlite_backend import SCHEMA_VERSION, SQLiteBackend
from chatwire.users import SQLiteUserDirectory
from chatwire.ws_transport import build_runtime


class SQLiteStoreTests(unittest.TestCase):
    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.db_path = str(Path(self._tmpdir.name) / "chatwire.db")
        self.backend = SQLiteBackend(self.db_path)

    def tearDown(self):
        self.backend.close()
        self._tmpdir.cleanup()

    def _reopen(self) -> SQLiteBackend:
        self.backend.close()
        self.backend = SQLiteBackend(self.db_path)
        return self.backend

    def test_schema_version_recorded(self):
        version = self.backend.connection.execute("PRAGMA user_version").fetchone()[0]
        self.assertEqual(version, SCHEMA_VERSION)

    def test_unknown_schema_version_rejected(self):
        self.backend.connection.execute("PRAGMA user_version = 99")
        self.backend.close()
        with self.assertRaises(ValueError):
            SQLiteBackend(self.db_path)
        self.backend = SQLiteBackend(":memory:")

    def test_sessions_survive_restart_and_invalidate(self):
        sessions = SQLiteSessionStore(self.backend)
        first = sessions.create("alice")
        second = sessions.create("alice")

        sessions = SQLiteSessionStore(self._reopen())
        self.assertEqual(sessions.get(first.session_token).user_id, "alice")
        sessions.invalidate(first)
        self.assertIsNone(sessions.get(first.session_token))
        self.assertEqual(sessions.invalidate_user("alice"), 1)
        self.assertIsNone(sessions.get(second.session_token))

    def test_expired_session_is_dropped(self):
        sessions = SQLiteSessionStore(self.backend, ttl_ms=-1)
        session = sessions.create("alice")
        self.assertIsNone(sessions.get(session.session_token))

    def test_users_online_flag_resets_on_restart(self):
        users = SQLiteUserDirectory(self.backend)
        users.upsert("alice", "Alice", "https://img.example/a.png")
        users.set_online("alice", True)
        self.assertEqual(users.online_user_ids(), ["alice"])

        users = SQLiteUserDirectory(self._reopen())
        profile = users.get("alice")
        self.assertEqual(profile.profile_photo, "https://img.example/a.png")
        self.assertFalse(profile.is_online)
        self.assertEqual(users.online_user_ids(), [])

    def test_conversation_messages_and_idempotency(self):
        store = SQLiteConversationStore(self.backend)
        conversation = store.get_or_create("alice", "bob")
        self.assertEqual(store.get_or_create("bob", "alice").conversation_id, conversation.conversation_id)

        first, created = store.append_message(conversation.conversation_id, "alice", "hi", None, client_msg_id="c1", ts_ms=10)
        again, created_again = store.append_message(
            conversation.conversation_id, "alice", "hi", None, client_msg_id="c1", ts_ms=11
        )
        store.append_message(conversation.conversation_id, "bob", "yo", None, ts_ms=20)

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.message_id, again.message_id)
        self.assertEqual([m.content for m in store.list_messages(conversation.conversation_id)], ["hi", "yo"])
        self.assertEqual([m.content for m in store.list_messages(conversation.conversation_id, limit=1)], ["yo"])
        self.assertEqual(store.list_for_user("bob")[0].last_message_at_ms, 20)

        self.assertEqual(store.mark_read(conversation.conversation_id, "bob"), 1)
        self.assertEqual(store.mark_read(conversation.conversation_id, "bob"), 0)

        with self.assertRaises(ValueError):
            store.append_message("missing", "alice", "hi", None)

    def test_client_msg_id_is_unique_per_sender(self):
        store = SQLiteConversationStore(self.backend)
        conversation = store.get_or_create("alice", "bob")
        store.append_message(conversation.conversation_id, "alice", "hi", None, client_msg_id="same")
        _, created = store.append_message(conversation.conversation_id, "bob", "hi", None, client_msg_id="same")
        self.assertTrue(created)

        with self.assertRaises(sqlite3.IntegrityError):
            self.backend.connection.execute(
                "INSERT INTO messages (message_id, conversation_id, sender_id, ts_ms, client_msg_id)"
                " VALUES ('x', ?, 'alice', 1, 'same')",
                (conversation.conversation_id,),
            )

    def test_consent_records_persist(self):
        gate = ConsentGate(SQLiteConsentStore(self.backend))
        consent, _ = gate.request("alice", "bob")
        self.assertEqual(consent.status, PENDING)

        gate = ConsentGate(SQLiteConsentStore(self._reopen()))
        self.assertEqual(gate.permission("bob", "alice")[0], PENDING)
        accepted = gate.respond(consent.consent_id, "bob", True)
        self.assertEqual(accepted.status, ACCEPTED)
        self.assertTrue(gate.is_allowed("alice", "bob"))

    def test_notification_store_operations(self):
        store = SQLiteNotificationStore(self.backend)
        view = store.create("bob", PROFILE_VIEW, "alice", data={"message": "Alice viewed your profile."})
        message = store.create("bob", MESSAGE_RECEIVED, "alice", conversation_id="c1")

        self.assertEqual(store.find("bob", "alice", PROFILE_VIEW).notification_id, view.notification_id)
        self.assertEqual(store.find("bob", "alice", MESSAGE_RECEIVED, "c1").notification_id, message.notification_id)
        self.assertIsNone(store.find("bob", "alice", MESSAGE_RECEIVED, "c2"))
        self.assertEqual(store.get(view.notification_id).data, {"message": "Alice viewed your profile."})

        self.assertEqual(store.unread_count("bob"), 2)
        self.assertEqual(store.mark_messages_read_from("bob", "alice"), 1)
        self.assertEqual(store.unread_count("bob", MESSAGE_RECEIVED), 0)
        refreshed = store.refresh(message.notification_id)
        self.assertFalse(refreshed.is_read)

        self.assertFalse(store.mark_read(view.notification_id, "alice"))
        self.assertTrue(store.mark_read(view.notification_id, "bob"))
        self.assertEqual(store.mark_all_read("bob"), 1)
        self.assertTrue(store.delete(view.notification_id, "bob"))
        self.assertEqual(len(store.list_for_user("bob")), 1)
        with self.assertRaises(ValueError):
            store.refresh("missing")


class SQLiteRuntimeTests(unittest.TestCase):
    def test_runtime_state_survives_restart(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = str(Path(tmpdir) / "state" / "chatwire.db")
            runtime = build_runtime(db_path=db_path)
            runtime.users.upsert("alice", "Alice")
            runtime.users.upsert("bob", "Bob")
            consent, _ = runtime.consent.request("alice", "bob")
            runtime.consent.respond(consent.consent_id, "bob", True)
            runtime.channel.send_message("alice", "bob", content="hello", client_msg_id="m1")
            runtime.backend.close()

            runtime = build_runtime(db_path=db_path)
            try:
                self.assertTrue(runtime.consent.is_allowed("bob", "alice"))
                conversation = runtime.conversations.get("bob", "alice")
                messages = runtime.conversations.list_messages(conversation.conversation_id)
                self.assertEqual([m.client_msg_id for m in messages], ["m1"])
                self.assertEqual(runtime.notifications.store.unread_count("bob", MESSAGE_RECEIVED), 1)

                runtime.channel.send_message("alice", "bob", content="hello", client_msg_id="m1")
                self.assertEqual(len(runtime.conversations.list_messages(conversation.conversation_id)), 1)
            finally:
                runtime.backend.close()


if __name__ == "__main__":
    unittest.main()
