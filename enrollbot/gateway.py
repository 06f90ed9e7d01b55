# enrollbot/gateway.py

import logging
from typing import Callable

from sqlalchemy.orm import Session

from enrollbot.entities import QueueMessage
from enrollbot.replies import Reply, reply_to_payload

logger = logging.getLogger("enrollbot")


class MessagingGateway:
    """Delivers replies to a chat identity. Payload is plain text or a FileReply."""

    def send(self, identity: str, payload: Reply, correlation_id: str | None = None) -> None:
        raise NotImplementedError


class QueueGateway(MessagingGateway):
    """
    Writes replies to the queue_messages table; the chat transport picks up rows addressed to the identity.
    """

    def __init__(self, session_factory: Callable[[], Session], sender_id: str):
        self.SessionFactory = session_factory
        self.sender_id = sender_id

    def send(self, identity: str, payload: Reply, correlation_id: str | None = None) -> None:
        body = reply_to_payload(payload)
        if correlation_id:
            body["correlation_id"] = correlation_id

        session = self.SessionFactory()
        try:
            session.add(
                QueueMessage(
                    sender_id=str(self.sender_id),
                    receiver_id=str(identity),
                    type=f"reply_{body['type']}",
                    payload=body,
                )
            )
            session.commit()
        finally:
            session.close()
        logger.debug("queued %s reply for %s", body["type"], identity)
