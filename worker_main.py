# worker_main.py
"""
DB Queue Worker for the chat transport (STRICT)

Receiver logic
--------------
Each QueueMessage row has a receiver_id column.

This worker process is identified by QUEUE_RECEIVER_ID (env var).
AsyncGuard polls ONLY messages where:
    QueueMessage.receiver_id == QUEUE_RECEIVER_ID

The chat transport writes one row per inbound chat message, with
receiver_id = <this worker's QUEUE_RECEIVER_ID> and payload {"text": "..."}.

Routing logic
-------------
Routing is done by sender_id prefix:
    "<app_key><app_key_delim><identity>"

Example sender_ids:
  - "chat::573001112233@s.whatsapp.net" -> ChatApp (key="chat", key_delim="::")

STRICT mode:
  - There is NO default/fallback app here.
  - If sender_id does not match any registered app prefix, the worker replies with an error.

Ordering
--------
- max_concurrent is a GLOBAL cap on turns in flight.
- At most ONE message per sender is in flight at any time; later messages from the same
  sender stay queued until the earlier turn finishes, so turns of one identity run in order.
- Replies are written back with receiver_id = the original sender_id.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from enrollbot import settings
from enrollbot.backend import Backend
from enrollbot.db_connection import DbConnection
from enrollbot.entities import QueueMessage
from enrollbot.gateway import MessagingGateway, QueueGateway
from enrollbot.i18n import Translator

logger = logging.getLogger("enrollbot_worker")


class AppHost:
    def __init__(self, gateway: MessagingGateway, apps: List[Any], translator: Optional[Translator] = None):
        self.gateway = gateway
        self.apps = list(apps or [])
        self.translator = translator or Translator()

    def sweep(self) -> None:
        for app in self.apps:
            fn = getattr(app, "sweep", None)
            if callable(fn):
                fn()

    def _resolve_app(self, sender_full: str) -> Tuple[Any, str, str]:
        """
        STRICT: must match a registered app prefix.
        Returns: (app, matched_prefix, identity)
        """
        candidates: List[Tuple[int, str, Any]] = []

        for app in self.apps:
            key = getattr(app, "key", "")
            delim = getattr(app, "key_delim", "")
            prefix = f"{key}{delim}"
            if not prefix:
                continue
            if sender_full.startswith(prefix):
                candidates.append((len(prefix), prefix, app))

        if not candidates:
            known = [f"{getattr(a,'key','')}{getattr(a,'key_delim','')}" for a in self.apps]
            raise RuntimeError(f"No app matched sender_id='{sender_full}'. Known prefixes: {known}")

        candidates.sort(key=lambda x: x[0], reverse=True)
        _, prefix, app = candidates[0]
        return app, prefix, sender_full[len(prefix):]

    def process_queue_job(self, job: Dict[str, Any]) -> None:
        sender_full = str(job.get("sender_id") or "")
        msg_type = job.get("type") or "unknown"

        try:
            app, _, identity = self._resolve_app(sender_full)
            reply = app.handle(identity, job)
        except Exception as e:
            logger.exception("Error processing job id=%s type=%s: %s", job.get("id"), msg_type, e)
            # no session resolved yet: default locale
            reply = self.translator.translate("generic_error", self.translator.fallback)
            self.gateway.send(sender_full, reply, correlation_id=job.get("id"))
            return

        if reply is not None:
            self.gateway.send(sender_full, reply, correlation_id=job.get("id"))


class ChatApp:
    """
    Chat transport wrapper: one inbound text message -> one Backend turn.

      sender_id must start with:  "chat::"
    """
    key = "chat"
    key_delim = "::"

    def __init__(self, backend: Backend) -> None:
        self.backend = backend

    def sweep(self) -> None:
        removed = self.backend.store.sweep_expired()
        if removed:
            logger.debug("SessionStore sweep: removed %d expired sessions", removed)

    def handle(self, identity: str, job: Dict[str, Any]):
        payload = job.get("payload") or {}
        text = str(payload.get("text") or "").strip()
        if not text:
            return None
        return self.backend.handle_turn(identity, text)


class AsyncGuard:
    def __init__(
        self,
        host: AppHost,
        session_factory,
        receiver_id: str,
        poll_interval: float = 1.0,
        max_concurrent: int = 4,
    ):
        self.host = host
        self.SessionFactory = session_factory
        self.receiver_id = receiver_id
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self._in_flight: set[str] = set()
        self._busy_senders: set[str] = set()

    async def _run_executor_for_message(self, job: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self.host.process_queue_job, job)
        finally:
            self._in_flight.discard(job["id"])
            self._busy_senders.discard(job["sender_id"])

    def claim_batch(self, available_slots: int) -> List[Dict[str, Any]]:
        """
        Lock pending rows for this receiver, keep the oldest one per idle sender, delete those.
        Rows left behind are released when the claim transaction commits.
        """
        session: Session = self.SessionFactory()
        try:
            rows = (
                session.query(QueueMessage)
                .filter(QueueMessage.receiver_id == str(self.receiver_id))
                .order_by(QueueMessage.created_at.asc())
                .with_for_update(skip_locked=True)
                .limit(available_slots * 4)
                .all()
            )

            jobs = []
            seen = set(self._busy_senders)
            for r in rows:
                if len(jobs) >= available_slots:
                    break
                if r.sender_id in seen:
                    continue
                seen.add(r.sender_id)
                jobs.append(
                    {
                        "id": r.id,
                        "sender_id": r.sender_id,
                        "receiver_id": r.receiver_id,
                        "type": r.type,
                        "payload": r.payload,
                    }
                )
                session.delete(r)

            session.commit()
            return jobs
        finally:
            session.close()

    async def run(self) -> None:
        logger.info("AsyncGuard running – receiver_id=%s (max_concurrent=%d)", self.receiver_id, self.max_concurrent)

        while True:
            self.host.sweep()  # ! expire idle sessions

            available_slots = self.max_concurrent - len(self._in_flight)
            if available_slots <= 0:
                await asyncio.sleep(self.poll_interval)
                continue

            jobs = self.claim_batch(available_slots)
            if not jobs:
                await asyncio.sleep(self.poll_interval)
                continue

            for job in jobs:
                if job["id"] in self._in_flight:
                    continue
                self._in_flight.add(job["id"])
                self._busy_senders.add(job["sender_id"])
                asyncio.create_task(self._run_executor_for_message(job))

            await asyncio.sleep(self.poll_interval)


def main() -> None:
    if not settings.QUEUE_RECEIVER_ID:
        raise RuntimeError("QUEUE_RECEIVER_ID env var is required for DB queue mode")

    db = DbConnection()
    db.create_schema()
    session_factory = db.build_db_session_factory()

    backend = Backend(session_factory=session_factory)
    gateway = QueueGateway(session_factory, sender_id=settings.QUEUE_RECEIVER_ID)

    # STRICT: every sender_id must match one of these prefixes:
    #   - "chat::"
    apps = [
        ChatApp(backend),
    ]
    host = AppHost(gateway, apps=apps, translator=backend.translator)
    guard = AsyncGuard(
        host=host,
        session_factory=session_factory,
        receiver_id=settings.QUEUE_RECEIVER_ID,
        poll_interval=settings.POLL_INTERVAL,
        max_concurrent=settings.CONCURRENT_INSTANCES,
    )
    asyncio.run(guard.run())


if __name__ == "__main__":
    main()
