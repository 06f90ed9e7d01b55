# enrollbot/backend.py

import logging
import re
from typing import Callable

from sqlalchemy.orm import Session as DbSession

from enrollbot.careers import CareerAssignmentManager
from enrollbot.conversation import ConversationStateMachine
from enrollbot.db_connection import DbConnection
from enrollbot.enrollment import EnrollmentManager
from enrollbot.errors import TransientStoreError
from enrollbot.i18n import Translator, normalize_text
from enrollbot.replies import FileReply, Reply
from enrollbot.router import CommandRouter
from enrollbot.session_store import InMemorySessionStore, Session, SessionStore
from enrollbot.term_resolver import TermResolver

logger = logging.getLogger("enrollbot")

_LANG_SWITCH_RE = re.compile(r"^(?:idioma|lang|language)\s+([a-z]{2})$")


class Backend:
    """
    Turn entry point: handle_turn(identity, raw_text) -> Reply.

    Turns for one identity are serialized with the store's per-identity lock; turns for different
    identities share nothing but the database.
    """

    def __init__(
        self,
        session_factory: Callable[[], DbSession] | None = None,
        store: SessionStore | None = None,
        translator: Translator | None = None,
        term_resolver: TermResolver | None = None,
        admin_secret: str | None = None,
    ):
        self.SessionFactory = session_factory or DbConnection().build_db_session_factory()
        self.store = store or InMemorySessionStore()
        self.translator = translator or Translator()
        self.term_resolver = term_resolver or TermResolver()

        self.enrollment = EnrollmentManager(self.SessionFactory)
        self.careers = CareerAssignmentManager(self.SessionFactory)
        self.conversation = ConversationStateMachine(
            self.SessionFactory,
            self.translator,
            self.store,
            admin_secret=admin_secret,
        )
        self.router = CommandRouter(
            self.SessionFactory,
            self.translator,
            self.store,
            self.enrollment,
            self.careers,
            self.term_resolver,
        )

    def handle_turn(self, identity: str, raw_text: str) -> Reply:
        identity = str(identity)
        text = (raw_text or "").strip()

        with self.store.lock_for(identity):
            session = self.store.get_or_create(identity)
            logger.debug(f"turn identity={identity} state={session.state.value} text={text!r}")
            try:
                reply = self._process_turn(session, text)
            except TransientStoreError as e:
                logger.warning(f"turn identity={identity} failed on the store: {e}")
                reply = self.translator.translate("store_error", session.locale)
            except Exception:
                logger.exception(f"turn identity={identity} failed")
                raise

        if isinstance(reply, FileReply):
            logger.debug(f"reply identity={identity} file={reply.filename} ({len(reply.data)} bytes)")
        else:
            logger.debug(f"reply identity={identity} text={reply!r}")
        return reply

    def _process_turn(self, session: Session, text: str) -> Reply:
        switched = self._switch_language(session, text)
        if switched is not None:
            return switched

        if session.is_authenticated:
            return self.router.dispatch(session, text)
        return self.conversation.handle(session, text)

    def _switch_language(self, session: Session, text: str) -> str | None:
        """`idioma en` / `lang es` at any state: change locale, leave the state alone."""
        m = _LANG_SWITCH_RE.match(normalize_text(text))
        if not m or not self.translator.supports(m.group(1)):
            return None
        session.locale = m.group(1)
        return self.translator.translate(
            "lang_switched",
            session.locale,
            language=self.translator.translate("language_name", session.locale),
        )
