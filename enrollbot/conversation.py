# enrollbot/conversation.py

import hmac
import logging
import re
from typing import Callable

from sqlalchemy.orm import Session as DbSession

from enrollbot import settings
from enrollbot.entities import ROLE_ADMIN, ROLE_STUDENT, User
from enrollbot.errors import ConflictError, ValidationError
from enrollbot.i18n import Translator, normalize_text
from enrollbot.session_store import ConversationState, RoleIntent, Session, SessionStore
from enrollbot.transactions import read_scope, transaction_scope

logger = logging.getLogger("enrollbot")

_DIGITS_RE = re.compile(r"[0-9]+")

# column widths of users.name / users.national_id / users.email
MAX_NAME_LENGTH = 200
MAX_NATIONAL_ID_LENGTH = 32
MAX_EMAIL_LENGTH = 320

_INVALID_INPUT_KEYS = {
    "email": "invalid_email",
    "national_id": "invalid_id",
    "name": "invalid_name",
}


def validate_email(text: str) -> str:
    email = (text or "").strip().lower()
    if "@" not in email or " " in email or len(email) > MAX_EMAIL_LENGTH:
        raise ValidationError("email", f"Invalid email: {text!r}")
    return email


def validate_national_id(text: str) -> str:
    national_id = (text or "").strip()
    if not _DIGITS_RE.fullmatch(national_id) or len(national_id) > MAX_NATIONAL_ID_LENGTH:
        raise ValidationError("national_id", f"Invalid national id: {text!r}")
    return national_id


def validate_name(text: str) -> str:
    name = " ".join((text or "").split())
    if not name or len(name) > MAX_NAME_LENGTH:
        raise ValidationError("name", "Empty or oversized name")
    return name


class ConversationStateMachine:
    """
    Pre-authentication turns: role selection, admin secret, login and registration.

    Only the login lookup and the registration insert touch the database; every other transition
    mutates the in-memory Session. AUTHENTICATED is terminal here and belongs to the CommandRouter.
    """

    def __init__(
        self,
        session_factory: Callable[[], DbSession],
        translator: Translator,
        store: SessionStore,
        admin_secret: str | None = None,
    ):
        self.SessionFactory = session_factory
        self.translator = translator
        self.store = store
        self.admin_secret = settings.ADMIN_SECRET if admin_secret is None else admin_secret

        self._handlers = {
            ConversationState.ANONYMOUS: self._on_role_selection,
            ConversationState.ROLE_SELECTING: self._on_role_selection,
            ConversationState.ADMIN_SECRET_PENDING: self._on_admin_secret,
            ConversationState.CREDENTIAL_CHOICE: self._on_credential_choice,
            ConversationState.VERIFYING_EMAIL: self._on_verifying_email,
            ConversationState.VERIFYING_ID: self._on_verifying_id,
            ConversationState.REGISTERING_NAME: self._on_registering_name,
            ConversationState.REGISTERING_ID: self._on_registering_id,
            ConversationState.REGISTERING_EMAIL: self._on_registering_email,
        }

    def t(self, session: Session, key: str, **params) -> str:
        return self.translator.translate(key, session.locale, **params)

    def handle(self, session: Session, text: str) -> str:
        handler = self._handlers.get(session.state)
        if handler is None:
            raise RuntimeError(f"No pre-auth handler for state {session.state}")
        previous = session.state
        try:
            reply = handler(session, text)
        except ValidationError as e:
            # bad input: stay in the same state and ask again
            return self.t(session, _INVALID_INPUT_KEYS.get(e.code, "unrecognized"))
        if session.state != previous:
            logger.debug("session %s: %s -> %s", session.identity, previous.value, session.state.value)
        return reply

    # -----------------------
    # Role selection
    # -----------------------

    def _matches(self, text: str, key: str) -> bool:
        # phrases of every locale are accepted, the session locale only decides the reply language
        return normalize_text(text) in self.translator.phrases(key)

    def _role_menu(self, session: Session) -> str:
        return self.t(session, "welcome")

    def _reset_to_menu(self, session: Session) -> None:
        session.role_intent = RoleIntent.NONE
        session.admin_key_verified = False
        session.collected.clear()
        session.state = ConversationState.ANONYMOUS

    def _on_role_selection(self, session: Session, text: str) -> str:
        if self._matches(text, "opt_role_student"):
            session.role_intent = RoleIntent.STUDENT
            session.state = ConversationState.CREDENTIAL_CHOICE
            return self.t(session, "credential_menu")

        if self._matches(text, "opt_role_admin"):
            session.role_intent = RoleIntent.ADMIN
            session.admin_key_verified = False
            session.state = ConversationState.ADMIN_SECRET_PENDING
            return self.t(session, "ask_admin_secret")

        session.state = ConversationState.ROLE_SELECTING
        return self._role_menu(session)

    def _on_admin_secret(self, session: Session, text: str) -> str:
        candidate = (text or "").strip()
        if self.admin_secret and hmac.compare_digest(candidate.encode("utf-8"), self.admin_secret.encode("utf-8")):
            session.admin_key_verified = True
            session.state = ConversationState.CREDENTIAL_CHOICE
            logger.info("session %s: admin key verified", session.identity)
            return self.t(session, "credential_menu")

        # single attempt, no retry loop
        logger.info("session %s: admin key rejected", session.identity)
        self._reset_to_menu(session)
        return f"{self.t(session, 'admin_secret_invalid')}\n\n{self._role_menu(session)}"

    def _admin_gate_failed(self, session: Session) -> bool:
        return session.role_intent == RoleIntent.ADMIN and not session.admin_key_verified

    def _on_credential_choice(self, session: Session, text: str) -> str:
        wants_login = self._matches(text, "opt_registered")
        wants_register = not wants_login and self._matches(text, "opt_register")

        if not (wants_login or wants_register):
            return self.t(session, "credential_menu")

        if self._admin_gate_failed(session):
            self._reset_to_menu(session)
            return f"{self.t(session, 'admin_not_verified')}\n\n{self._role_menu(session)}"

        session.collected.clear()
        if wants_login:
            session.state = ConversationState.VERIFYING_EMAIL
            return self.t(session, "ask_email")

        session.state = ConversationState.REGISTERING_NAME
        return self.t(session, "ask_name")

    # -----------------------
    # Login
    # -----------------------

    def _on_verifying_email(self, session: Session, text: str) -> str:
        session.collected["email"] = validate_email(text)
        session.state = ConversationState.VERIFYING_ID
        return self.t(session, "ask_id")

    def _on_verifying_id(self, session: Session, text: str) -> str:
        national_id = validate_national_id(text)
        email = session.collected.get("email", "")

        user = self._find_user(email=email, national_id=national_id)
        if user is None:
            logger.info("session %s: login failed for %s", session.identity, email)
            self.store.discard(session.identity)
            return self.t(session, "unrecognized_user")

        if session.role_intent == RoleIntent.ADMIN and user.role != ROLE_ADMIN:
            logger.info("session %s: admin login refused for user=%s", session.identity, user.id)
            self.store.discard(session.identity)
            return self.t(session, "not_admin")

        self._authenticate(session, user)
        return self.t(session, "session_started", name=user.name)

    # -----------------------
    # Registration
    # -----------------------

    def _on_registering_name(self, session: Session, text: str) -> str:
        session.collected["name"] = validate_name(text)
        session.state = ConversationState.REGISTERING_ID
        return self.t(session, "ask_id")

    def _on_registering_id(self, session: Session, text: str) -> str:
        session.collected["national_id"] = validate_national_id(text)
        session.state = ConversationState.REGISTERING_EMAIL
        return self.t(session, "ask_email")

    def _on_registering_email(self, session: Session, text: str) -> str:
        email = validate_email(text)
        session.collected["email"] = email

        existing = self._find_user(email=email)
        if existing is not None:
            # implicit login, not an error
            self._authenticate(session, existing)
            return self.t(session, "already_exist", name=existing.name)

        grant_admin = session.role_intent == RoleIntent.ADMIN and session.admin_key_verified
        role = ROLE_ADMIN if grant_admin else ROLE_STUDENT
        try:
            user = self._create_user(
                name=session.collected.get("name", ""),
                national_id=session.collected.get("national_id", ""),
                email=email,
                role=role,
            )
        except ConflictError:
            logger.info("session %s: registration conflict for %s", session.identity, email)
            self.store.discard(session.identity)
            return self.t(session, "register_fail")

        logger.info("session %s: registered user=%s role=%s", session.identity, user.id, role)
        self._authenticate(session, user)
        return self.t(session, "register_success_admin" if role == ROLE_ADMIN else "register_success_student")

    # -----------------------
    # Helpers
    # -----------------------

    def _authenticate(self, session: Session, user: User) -> None:
        session.state = ConversationState.AUTHENTICATED
        session.user_id = user.id
        # admin only with a stored admin role AND a secret verified in this session
        is_admin = user.role == ROLE_ADMIN and session.admin_key_verified
        session.role = ROLE_ADMIN if is_admin else ROLE_STUDENT
        session.collected.clear()

    def _find_user(self, email: str, national_id: str | None = None) -> User | None:
        with read_scope(self.SessionFactory) as db:
            query = db.query(User).filter(User.email == email)
            if national_id is not None:
                query = query.filter(User.national_id == national_id)
            user = query.one_or_none()
            if user is not None:
                db.expunge(user)
            return user

    def _create_user(self, name: str, national_id: str, email: str, role: str) -> User:
        with transaction_scope(self.SessionFactory) as db:
            user = User(name=name, national_id=national_id, email=email, role=role)
            db.add(user)
            db.flush()
            db.expunge(user)
        return user
