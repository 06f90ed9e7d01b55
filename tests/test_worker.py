import base64
import os
import sys
import time
import unittest
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from db_case import BackendTestCase

from enrollbot.entities import QueueMessage
from enrollbot.gateway import QueueGateway
from enrollbot.replies import FileReply
from worker_main import AppHost, AsyncGuard, ChatApp

WORKER_ID = "enrollbot-worker-1"


class WorkerTestCase(BackendTestCase):
    def setUp(self):
        super().setUp()
        self.gateway = QueueGateway(self.SessionFactory, sender_id=WORKER_ID)
        self.host = AppHost(self.gateway, apps=[ChatApp(self.backend)], translator=self.translator)
        self.guard = AsyncGuard(
            host=self.host,
            session_factory=self.SessionFactory,
            receiver_id=WORKER_ID,
            poll_interval=0.01,
            max_concurrent=4,
        )
        self._t0 = datetime(2025, 8, 1, tzinfo=timezone.utc)

    def enqueue(self, sender_id: str, text: str, offset: int, receiver_id: str = WORKER_ID) -> str:
        session = self.SessionFactory()
        try:
            row = QueueMessage(
                sender_id=sender_id,
                receiver_id=receiver_id,
                type="text",
                payload={"text": text},
                created_at=self._t0 + timedelta(seconds=offset),
            )
            session.add(row)
            session.commit()
            return row.id
        finally:
            session.close()

    def replies_for(self, receiver_id: str) -> list[QueueMessage]:
        session = self.SessionFactory()
        try:
            return (
                session.query(QueueMessage)
                .filter(QueueMessage.receiver_id == receiver_id)
                .order_by(QueueMessage.created_at.asc())
                .all()
            )
        finally:
            session.close()


class TestQueueGateway(WorkerTestCase):
    def test_text_reply_row(self):
        self.gateway.send("chat::573", "hola", correlation_id="job-1")

        rows = self.replies_for("chat::573")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].sender_id, WORKER_ID)
        self.assertEqual(rows[0].type, "reply_text")
        self.assertEqual(rows[0].payload, {"type": "text", "text": "hola", "correlation_id": "job-1"})

    def test_file_reply_row(self):
        self.gateway.send("chat::573", FileReply("t.txt", "text/plain", b"abc", caption="doc"))

        payload = self.replies_for("chat::573")[0].payload
        self.assertEqual(payload["type"], "file")
        self.assertEqual(payload["filename"], "t.txt")
        self.assertEqual(base64.b64decode(payload["data_base64"]), b"abc")
        self.assertNotIn("correlation_id", payload)


class TestClaimBatch(WorkerTestCase):
    def test_one_message_per_sender(self):
        first_a = self.enqueue("chat::A", "1", offset=0)
        self.enqueue("chat::A", "registrarme", offset=1)
        first_b = self.enqueue("chat::B", "hola", offset=2)
        self.enqueue("chat::C", "hola", offset=3, receiver_id="someone-else")

        jobs = self.guard.claim_batch(available_slots=4)

        self.assertEqual([j["id"] for j in jobs], [first_a, first_b])
        self.assertEqual(jobs[0]["payload"], {"text": "1"})
        # claimed rows are gone, the rest wait for the next poll
        self.assertEqual(len(self.replies_for(WORKER_ID)), 1)

    def test_busy_sender_is_skipped(self):
        self.enqueue("chat::A", "1", offset=0)
        only_b = self.enqueue("chat::B", "hola", offset=1)
        self.guard._busy_senders.add("chat::A")

        jobs = self.guard.claim_batch(available_slots=4)

        self.assertEqual([j["id"] for j in jobs], [only_b])

    def test_respects_available_slots(self):
        for i, sender in enumerate(["chat::A", "chat::B", "chat::C"]):
            self.enqueue(sender, "hola", offset=i)
        self.assertEqual(len(self.guard.claim_batch(available_slots=2)), 2)
        self.assertEqual(len(self.guard.claim_batch(available_slots=2)), 1)


class TestAppHost(WorkerTestCase):
    def test_chat_turn_is_answered_to_sender(self):
        self.host.process_queue_job({"id": "job-1", "sender_id": "chat::573", "type": "text", "payload": {"text": "hola"}})

        rows = self.replies_for("chat::573")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].payload["text"], self.tr("welcome"))
        self.assertEqual(rows[0].payload["correlation_id"], "job-1")
        # the backend sees the identity without the routing prefix
        self.assertIn("573", self.store)

    def test_unknown_prefix_gets_generic_error(self):
        self.host.process_queue_job({"id": "job-2", "sender_id": "sms::573", "type": "text", "payload": {"text": "hola"}})

        rows = self.replies_for("sms::573")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].payload["text"], self.tr("generic_error"))

    def test_failing_app_reply_hides_exception_text(self):
        class BrokenApp:
            key = "chat"
            key_delim = "::"

            def handle(self, identity, job):
                raise RuntimeError("password=hunter2 host=db.internal")

        host = AppHost(self.gateway, apps=[BrokenApp()], translator=self.translator)
        host.process_queue_job({"id": "job-5", "sender_id": "chat::573", "type": "text", "payload": {"text": "hola"}})

        text = self.replies_for("chat::573")[0].payload["text"]
        self.assertEqual(text, self.tr("generic_error"))
        self.assertNotIn("hunter2", text)

    def test_empty_text_is_not_answered(self):
        self.host.process_queue_job({"id": "job-3", "sender_id": "chat::573", "type": "text", "payload": {"text": "  "}})
        self.assertEqual(self.replies_for("chat::573"), [])

    def test_claimed_turns_run_in_order(self):
        self.enqueue("chat::573", "1", offset=0)
        self.enqueue("chat::573", "registrarme", offset=1)

        for _ in range(2):
            for job in self.guard.claim_batch(available_slots=4):
                self.host.process_queue_job(job)

        texts = [r.payload["text"] for r in self.replies_for("chat::573")]
        self.assertEqual(texts, [self.tr("credential_menu"), self.tr("ask_name")])

    def test_sweep_runs_app_sweep(self):
        self.host.process_queue_job({"id": "job-4", "sender_id": "chat::573", "type": "text", "payload": {"text": "hola"}})
        later = time.time() + 2 * self.store.ttl_seconds
        self.store._clock = lambda: later
        self.host.sweep()
        self.assertNotIn("573", self.store)


if __name__ == "__main__":
    unittest.main()
