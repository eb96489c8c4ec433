import os
import sqlite3
import tempfile
import unittest
from unittest import mock

from relay.contacts import SQLiteContactGraph
from relay.errors import NotFoundError, PersistenceError, ValidationError
from relay.identity import AVATAR_COLORS, SQLiteIdentityStore
from relay.log import conversation_id
from relay.sqlite_backend import SCHEMA_VERSION, SQLiteBackend
from relay.sqlite_log import SQLiteMessageLog


class SQLiteBackendTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "relay", "chat.db")
        self.backend = SQLiteBackend(self.db_path)

    def tearDown(self) -> None:
        self.backend.close()
        self.tmpdir.cleanup()

    def _reopen(self) -> SQLiteBackend:
        self.backend.close()
        self.backend = SQLiteBackend(self.db_path)
        return self.backend

    def test_schema_version_is_recorded(self):
        version = self.backend.connection.execute("PRAGMA user_version").fetchone()[0]
        self.assertEqual(version, SCHEMA_VERSION)

    def test_unsupported_schema_version_is_rejected(self):
        other_path = os.path.join(self.tmpdir.name, "future.db")
        conn = sqlite3.connect(other_path)
        conn.execute("PRAGMA user_version = 99")
        conn.close()

        with self.assertRaises(ValueError):
            SQLiteBackend(other_path)

    def test_users_are_created_once_and_survive_restart(self):
        users = SQLiteIdentityStore(self.backend)
        alice = users.get_or_create("alice")
        bob = users.get_or_create("  bob carter ")

        self.assertEqual((alice.initials, alice.color), ("A", AVATAR_COLORS[ord("a") % 6]))
        self.assertEqual((bob.username, bob.initials), ("bob carter", "BC"))

        reloaded = SQLiteIdentityStore(self._reopen()).get_or_create("alice")
        self.assertEqual(reloaded, alice)

    def test_blank_username_is_rejected_before_insert(self):
        users = SQLiteIdentityStore(self.backend)
        with self.assertRaises(ValidationError):
            users.get_or_create("   ")
        count = self.backend.connection.execute("SELECT COUNT(*) FROM users").fetchone()[0]
        self.assertEqual(count, 0)

    def test_insert_conflict_refetches_existing_user(self):
        users = SQLiteIdentityStore(self.backend)
        winner = users.get_or_create("alice")
        real_get = users.get
        calls: list[str] = []

        def missed_first_lookup(username):
            calls.append(username)
            if len(calls) == 1:
                return None
            return real_get(username)

        with mock.patch.object(users, "get", side_effect=missed_first_lookup):
            loser = users.get_or_create("alice")

        self.assertEqual(loser, winner)
        count = self.backend.connection.execute("SELECT COUNT(*) FROM users").fetchone()[0]
        self.assertEqual(count, 1)

    def test_history_orders_by_timestamp_then_id_across_restart(self):
        log = SQLiteMessageLog(self.backend)
        conv = conversation_id("alice", "bob")
        m1 = log.append(conv, "alice", "second", None, 20)
        m2 = log.append(conv, "bob", "first", None, 10)
        m3 = log.append(conv, "alice", None, "aW1n", 20)
        log.append(conversation_id("alice", "carol"), "alice", "elsewhere", None, 1)

        history = SQLiteMessageLog(self._reopen()).history(conv)

        self.assertEqual([m.id for m in history], [m2.id, m1.id, m3.id])
        self.assertEqual(history[2].image, "aW1n")
        self.assertIsNone(history[2].text)
        self.assertLess(m1.id, m2.id)
        self.assertEqual(SQLiteMessageLog(self.backend).history("nobody__none"), [])

    def test_contacts_are_symmetric_and_idempotent(self):
        users = SQLiteIdentityStore(self.backend)
        contacts = SQLiteContactGraph(self.backend, users)
        users.get_or_create("alice")

        profile = contacts.add("alice", "bob")
        contacts.add("alice", "bob")
        contacts.add("bob", "alice")

        self.assertEqual(profile.username, "bob")
        self.assertEqual([c.to_api_dict()["contact_username"] for c in contacts.list("alice")], ["bob"])
        self.assertEqual([c.contact_username for c in contacts.list("bob")], ["alice"])
        rows = self.backend.connection.execute("SELECT COUNT(*) FROM contacts").fetchone()[0]
        self.assertEqual(rows, 2)

    def test_contact_errors(self):
        users = SQLiteIdentityStore(self.backend)
        contacts = SQLiteContactGraph(self.backend, users)
        users.get_or_create("alice")

        with self.assertRaises(ValidationError):
            contacts.add("alice", "alice")
        with self.assertRaises(NotFoundError):
            contacts.add("ghost", "alice")
        self.assertEqual(contacts.list("ghost"), [])

    def test_unresolvable_contact_is_omitted(self):
        users = SQLiteIdentityStore(self.backend)
        contacts = SQLiteContactGraph(self.backend, users)
        alice = users.get_or_create("alice")
        contacts.add("alice", "bob")
        self.backend.connection.execute(
            "INSERT INTO contacts (user_id, contact_username, created_at_ms) VALUES (?, ?, ?)",
            (alice.id, "vanished", 0),
        )

        self.assertEqual([c.contact_username for c in contacts.list("alice")], ["bob"])

    def test_storage_failure_surfaces_as_persistence_error(self):
        log = SQLiteMessageLog(self.backend)
        users = SQLiteIdentityStore(self.backend)
        self.backend.close()

        with self.assertRaises(PersistenceError):
            log.append("alice__bob", "alice", "hi", None, 1)
        with self.assertRaises(PersistenceError):
            users.get_or_create("alice")

        self.backend = SQLiteBackend(self.db_path)


if __name__ == "__main__":
    unittest.main()
