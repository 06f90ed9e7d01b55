import os
import sys
import threading
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from enrollbot.session_store import (
    ConversationState,
    InMemorySessionStore,
    RoleIntent,
    Session,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestInMemorySessionStore(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = InMemorySessionStore(ttl_seconds=60, clock=self.clock)

    def test_new_identity_gets_anonymous_session(self):
        session = self.store.get_or_create("573001")
        self.assertEqual(session.identity, "573001")
        self.assertEqual(session.state, ConversationState.ANONYMOUS)
        self.assertEqual(session.role_intent, RoleIntent.NONE)
        self.assertFalse(session.admin_key_verified)
        self.assertEqual(session.collected, {})
        self.assertIsNone(session.user_id)
        self.assertFalse(session.is_authenticated)

    def test_same_identity_returns_same_session(self):
        first = self.store.get_or_create("a")
        first.state = ConversationState.CREDENTIAL_CHOICE
        self.assertIs(self.store.get_or_create("a"), first)
        self.assertIsNot(self.store.get_or_create("b"), first)

    def test_put_replaces_session(self):
        replacement = Session(identity="a", state=ConversationState.VERIFYING_EMAIL)
        self.store.get_or_create("a")
        self.store.put("a", replacement)
        self.assertIs(self.store.get_or_create("a"), replacement)

    def test_discard_forgets_identity(self):
        session = self.store.get_or_create("a")
        session.state = ConversationState.AUTHENTICATED
        self.store.discard("a")
        self.assertNotIn("a", self.store)
        self.assertEqual(self.store.get_or_create("a").state, ConversationState.ANONYMOUS)

    def test_discard_unknown_identity_is_a_noop(self):
        self.store.discard("never-seen")
        self.assertNotIn("never-seen", self.store)

    def test_session_expires_after_idle_ttl(self):
        session = self.store.get_or_create("a")
        session.state = ConversationState.REGISTERING_NAME
        self.clock.now += 61
        self.assertNotIn("a", self.store)
        self.assertEqual(self.store.get_or_create("a").state, ConversationState.ANONYMOUS)

    def test_touch_slides_expiry(self):
        session = self.store.get_or_create("a")
        self.clock.now += 50
        self.assertIs(self.store.get_or_create("a"), session)
        self.clock.now += 50
        self.assertIs(self.store.get_or_create("a"), session)

    def test_sweep_removes_only_expired(self):
        self.store.get_or_create("old")
        self.clock.now += 40
        self.store.get_or_create("fresh")
        self.clock.now += 30
        self.assertEqual(self.store.sweep_expired(), 1)
        self.assertNotIn("old", self.store)
        self.assertIn("fresh", self.store)

    def test_turns_of_one_identity_do_not_overlap(self):
        entered = threading.Event()
        done = []

        def second_turn():
            with self.store.lock_for("a"):
                entered.set()
                done.append("second")

        with self.store.lock_for("a"):
            worker = threading.Thread(target=second_turn)
            worker.start()
            self.assertFalse(entered.wait(timeout=0.2))
            done.append("first")
        worker.join(timeout=5)

        self.assertEqual(done, ["first", "second"])

    def test_other_identities_are_not_blocked(self):
        with self.store.lock_for("a"):
            finished = threading.Event()

            def other_turn():
                with self.store.lock_for("b"):
                    finished.set()

            threading.Thread(target=other_turn).start()
            self.assertTrue(finished.wait(timeout=5))

    def test_lock_kept_while_session_lives(self):
        with self.store.lock_for("a"):
            self.store.get_or_create("a")
        self.assertEqual(self.store.turn_lock_count, 1)

    def test_discard_during_turn_releases_lock(self):
        with self.store.lock_for("a"):
            self.store.get_or_create("a")
            self.store.discard("a")
            self.assertEqual(self.store.turn_lock_count, 1)
        self.assertEqual(self.store.turn_lock_count, 0)

    def test_many_discarded_identities_leave_no_locks(self):
        store = InMemorySessionStore(ttl_seconds=0, clock=self.clock)
        for i in range(100):
            identity = f"user-{i}"
            with store.lock_for(identity):
                store.get_or_create(identity)
                store.discard(identity)
        store.sweep_expired()
        self.assertEqual(store.turn_lock_count, 0)

    def test_sweep_drops_locks_of_expired_sessions(self):
        for identity in ["a", "b"]:
            with self.store.lock_for(identity):
                self.store.get_or_create(identity)
        self.clock.now += 120
        self.assertEqual(self.store.sweep_expired(), 2)
        self.assertEqual(self.store.turn_lock_count, 0)

    def test_sweep_keeps_lock_held_by_running_turn(self):
        self.store.get_or_create("a")
        with self.store.lock_for("a"):
            self.clock.now += 120
            self.store.sweep_expired()
            self.assertEqual(self.store.turn_lock_count, 1)
        self.assertEqual(self.store.turn_lock_count, 0)


if __name__ == "__main__":
    unittest.main()
