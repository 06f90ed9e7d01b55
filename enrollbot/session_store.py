# enrollbot/session_store.py

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, ContextManager, Dict, Iterator, Optional

from enrollbot import settings


class ConversationState(str, Enum):
    ANONYMOUS = "anonymous"
    ROLE_SELECTING = "role_selecting"
    ADMIN_SECRET_PENDING = "admin_secret_pending"
    CREDENTIAL_CHOICE = "credential_choice"
    VERIFYING_EMAIL = "verifying_email"
    VERIFYING_ID = "verifying_id"
    REGISTERING_NAME = "registering_name"
    REGISTERING_ID = "registering_id"
    REGISTERING_EMAIL = "registering_email"
    AUTHENTICATED = "authenticated"


class RoleIntent(str, Enum):
    NONE = "none"
    STUDENT = "student"
    ADMIN = "admin"


@dataclass
class Session:
    identity: str
    state: ConversationState = ConversationState.ANONYMOUS
    role_intent: RoleIntent = RoleIntent.NONE
    admin_key_verified: bool = False
    # name / national_id / email gathered across turns
    collected: Dict[str, str] = field(default_factory=dict)
    user_id: Optional[int] = None
    role: Optional[str] = None
    locale: str = field(default_factory=lambda: settings.DEFAULT_LOCALE)

    @property
    def is_authenticated(self) -> bool:
        return self.state == ConversationState.AUTHENTICATED and self.user_id is not None


class SessionStore:
    """
    Keyed conversation state, one Session per remote identity.
    Subclass to back it with an external keyed store; the state machine only uses this interface.
    """

    def get_or_create(self, identity: str) -> Session:
        raise NotImplementedError

    def put(self, identity: str, session: Session) -> None:
        raise NotImplementedError

    def discard(self, identity: str) -> None:
        raise NotImplementedError

    def lock_for(self, identity: str) -> ContextManager[None]:
        """Mutex held for a whole turn (`with store.lock_for(identity):`) so turns of one identity never interleave."""
        raise NotImplementedError

    def sweep_expired(self) -> int:
        return 0


class InMemorySessionStore(SessionStore):
    """
    In-process sessions with:
    - sliding TTL (expires ttl_seconds after last touch)
    - thread-safe operations (turns for different identities run concurrently)
    - one lock per identity, held through lock_for(); the lock is dropped once no turn
      holds or waits on it and the identity has no live session
    """

    def __init__(self, ttl_seconds: int | None = None, clock: Callable[[], float] | None = None):
        self.ttl_seconds = settings.SESSION_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock or time.time
        self._lock = threading.Lock()
        # identity -> {"session": Session, "expires_at": float}
        self._items: dict[str, dict[str, object]] = {}
        # identity -> {"lock": threading.Lock, "users": turns holding or waiting}
        self._turn_locks: dict[str, dict[str, object]] = {}

    def _get_or_create_unlocked(self, identity: str) -> Session:
        now = self._clock()
        item = self._items.get(identity)

        if item is not None:
            if float(item["expires_at"]) > now:
                item["expires_at"] = now + self.ttl_seconds
                return item["session"]  # type: ignore[return-value]
            # expired -> replace
            del self._items[identity]

        session = Session(identity=identity)
        self._items[identity] = {"session": session, "expires_at": now + self.ttl_seconds}
        return session

    def get_or_create(self, identity: str) -> Session:
        with self._lock:
            return self._get_or_create_unlocked(str(identity))

    def put(self, identity: str, session: Session) -> None:
        with self._lock:
            self._items[str(identity)] = {
                "session": session,
                "expires_at": self._clock() + self.ttl_seconds,
            }

    def discard(self, identity: str) -> None:
        with self._lock:
            self._items.pop(str(identity), None)

    @contextmanager
    def lock_for(self, identity: str) -> Iterator[None]:
        identity = str(identity)
        with self._lock:
            entry = self._turn_locks.setdefault(identity, {"lock": threading.Lock(), "users": 0})
            entry["users"] = int(entry["users"]) + 1

        try:
            with entry["lock"]:  # type: ignore[union-attr]
                yield
        finally:
            with self._lock:
                entry["users"] = int(entry["users"]) - 1
                if entry["users"] == 0 and identity not in self._items:
                    # discarded during the turn (logout, failed login): nothing left to guard
                    self._turn_locks.pop(identity, None)

    @property
    def turn_lock_count(self) -> int:
        with self._lock:
            return len(self._turn_locks)

    def __contains__(self, identity: str) -> bool:
        with self._lock:
            item = self._items.get(str(identity))
            return item is not None and float(item["expires_at"]) > self._clock()

    def sweep_expired(self) -> int:
        """
        Delete expired sessions. Safe to call every worker poll cycle.
        Returns how many entries were removed.
        """
        now = self._clock()
        removed = 0
        with self._lock:
            expired = [k for k, v in self._items.items() if float(v["expires_at"]) <= now]
            for k in expired:
                del self._items[k]
                removed += 1
            # locks of identities with no live session and no turn in progress
            idle = [k for k, v in self._turn_locks.items() if v["users"] == 0 and k not in self._items]
            for k in idle:
                del self._turn_locks[k]
        return removed
