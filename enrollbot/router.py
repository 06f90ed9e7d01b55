# enrollbot/router.py

import logging
from typing import Callable

from sqlalchemy.orm import Session as DbSession

from enrollbot.careers import CareerAssignmentManager
from enrollbot.entities import Career, ROLE_ADMIN, ROLE_STUDENT, Subject, User
from enrollbot.enrollment import EnrollmentManager, normalize_code
from enrollbot.errors import ConflictError, NotFoundError, ValidationError
from enrollbot.i18n import Translator, normalize_text
from enrollbot.parsing import CareerDraft, SubjectDraft, parse_block
from enrollbot.replies import FileReply, Reply
from enrollbot.session_store import Session, SessionStore
from enrollbot.term_resolver import TermResolver
from enrollbot.transactions import read_scope, transaction_scope
from enrollbot.transcripts import PlainTextTranscriptRenderer

logger = logging.getLogger("enrollbot")

ANY_ROLE = frozenset({ROLE_STUDENT, ROLE_ADMIN})
STUDENT_ONLY = frozenset({ROLE_STUDENT})
ADMIN_ONLY = frozenset({ROLE_ADMIN})

# canonical verb -> roles allowed to run it; phrases live under "cmd_<verb>" in the locale files
COMMANDS = {
    "help": ANY_ROLE,
    "logout": ANY_ROLE,
    "my_data": ANY_ROLE,
    "view_subjects": ANY_ROLE,
    "view_careers": ANY_ROLE,
    "my_enrollment": STUDENT_ONLY,
    "enroll": STUDENT_ONLY,
    "withdraw": STUDENT_ONLY,
    "assign_career": STUDENT_ONLY,
    "transcript": STUDENT_ONLY,
    "create_subject": ADMIN_ONLY,
    "create_career": ADMIN_ONLY,
    "list_students": ADMIN_ONLY,
}

# business error code -> reply key
ERROR_REPLY_KEYS = {
    "subject": "subject_not_found",
    "career": "career_not_found",
    "period": "period_not_found",
    "no_seats": "no_seats",
    "already_enrolled": "already_enrolled",
    "not_enrolled": "not_enrolled",
    "already_assigned": "already_assigned",
}


class CommandRouter:
    def __init__(
        self,
        session_factory: Callable[[], DbSession],
        translator: Translator,
        store: SessionStore,
        enrollment: EnrollmentManager,
        careers: CareerAssignmentManager,
        term_resolver: TermResolver,
        renderer: PlainTextTranscriptRenderer | None = None,
    ):
        self.SessionFactory = session_factory
        self.translator = translator
        self.store = store
        self.enrollment = enrollment
        self.careers = careers
        self.term_resolver = term_resolver
        self.renderer = renderer or PlainTextTranscriptRenderer(translator)

        # (normalized phrase, verb), longest phrase first so "enroll in" wins over "enroll"
        table = []
        for verb in COMMANDS:
            for phrase in translator.phrases(f"cmd_{verb}"):
                table.append((phrase, verb))
        self._phrase_table = sorted(table, key=lambda p: len(p[0]), reverse=True)

    def t(self, session: Session, key: str, **params) -> str:
        return self.translator.translate(key, session.locale, **params)

    def match_verb(self, text: str) -> tuple[str | None, str]:
        """Return (verb, raw argument text) or (None, "")."""
        norm = normalize_text(text)
        for phrase, verb in self._phrase_table:
            if norm == phrase or norm.startswith(phrase + " "):
                n_words = len(phrase.split())
                parts = (text or "").strip().split(None, n_words)
                args = parts[n_words].strip() if len(parts) > n_words else ""
                return verb, args
        return None, ""

    def dispatch(self, session: Session, text: str) -> Reply:
        user = self._load_user(session.user_id)
        if user is None:
            # account vanished under an open session
            self.store.discard(session.identity)
            return self.t(session, "unrecognized")

        role = ROLE_ADMIN if (session.role == ROLE_ADMIN and user.role == ROLE_ADMIN) else ROLE_STUDENT

        verb, args = self.match_verb(text)
        # unknown and forbidden look the same from outside
        if verb is None or role not in COMMANDS[verb]:
            if verb is not None:
                logger.info("session %s: verb %s refused for role %s", session.identity, verb, role)
            return self.t(session, "unrecognized")

        logger.debug("session %s: verb=%s role=%s", session.identity, verb, role)
        handler = getattr(self, f"handle_{verb}")
        try:
            return handler(session, user, role, args)
        except (NotFoundError, ConflictError) as e:
            key = ERROR_REPLY_KEYS.get(e.code)
            if key is None:
                logger.info("session %s: %s failed with %s", session.identity, verb, e.code)
                return self.t(session, "enroll_error")
            return self.t(session, key, term=e.details.get("term", ""))

    # -----------------------
    # Shared commands
    # -----------------------

    def handle_help(self, session: Session, user: User, role: str, args: str) -> Reply:
        return self.t(session, "help_admin" if role == ROLE_ADMIN else "help_student")

    def handle_logout(self, session: Session, user: User, role: str, args: str) -> Reply:
        self.store.discard(session.identity)
        return self.t(session, "logged_out")

    def handle_my_data(self, session: Session, user: User, role: str, args: str) -> Reply:
        return self.t(
            session,
            "my_data",
            name=user.name,
            national_id=user.national_id,
            email=user.email,
            role=self.t(session, f"role_{role}"),
            career=self._career_label(session, user.career_id),
        )

    def handle_view_subjects(self, session: Session, user: User, role: str, args: str) -> Reply:
        with read_scope(self.SessionFactory) as db:
            subjects = db.query(Subject).order_by(Subject.code.asc()).all()
            if not subjects:
                return self.t(session, "no_subjects")
            return "\n".join(
                self.t(
                    session,
                    "subject_line",
                    name=s.name,
                    code=s.code,
                    credits=s.credits,
                    seats=s.seats,
                    days=s.days,
                    hours=s.hours,
                )
                for s in subjects
            )

    def handle_view_careers(self, session: Session, user: User, role: str, args: str) -> Reply:
        with read_scope(self.SessionFactory) as db:
            careers = db.query(Career).order_by(Career.code.asc()).all()
            if not careers:
                return self.t(session, "no_careers")
            return "\n".join(self.t(session, "career_line", name=c.name, code=c.code) for c in careers)

    # -----------------------
    # Student commands
    # -----------------------

    def handle_my_enrollment(self, session: Session, user: User, role: str, args: str) -> Reply:
        term = self.term_resolver.current_term()
        summary = self.enrollment.current_enrollment(user.id, term)
        if not summary.subjects:
            return self.t(session, "no_enrollment", term=term)
        lines = [self.t(session, "enrollment_header", term=term, total_credits=summary.total_credits)]
        for s in summary.subjects:
            lines.append(self.t(session, "enrollment_line", name=s.name, code=s.code, credits=s.credits))
        return "\n".join(lines)

    def handle_enroll(self, session: Session, user: User, role: str, args: str) -> Reply:
        code = normalize_code(args)
        if not code:
            return self.t(session, "missing_code", example=self.translator.translate("cmd_enroll", session.locale) + " MAT101")
        term = self.term_resolver.current_term()
        result = self.enrollment.enroll(user.id, code, term)
        return self.t(
            session,
            "enroll_success",
            name=result.subject_name,
            code=result.subject_code,
            term=term,
            total_credits=result.total_credits,
        )

    def handle_withdraw(self, session: Session, user: User, role: str, args: str) -> Reply:
        code = normalize_code(args)
        if not code:
            return self.t(session, "missing_code", example=self.translator.translate("cmd_withdraw", session.locale) + " MAT101")
        term = self.term_resolver.current_term()
        result = self.enrollment.withdraw(user.id, code, term)
        return self.t(
            session,
            "withdraw_success",
            name=result.subject_name,
            code=result.subject_code,
            term=term,
            total_credits=result.total_credits,
        )

    def handle_assign_career(self, session: Session, user: User, role: str, args: str) -> Reply:
        code = normalize_code(args)
        if not code:
            return self.t(session, "missing_code", example=self.translator.translate("cmd_assign_career", session.locale) + " SIS")
        result = self.careers.assign_career(user.id, code, self.term_resolver.current_term())
        return self.t(session, "career_assigned", name=result.career_name, code=result.career_code)

    def handle_transcript(self, session: Session, user: User, role: str, args: str) -> Reply:
        term = self.term_resolver.current_term()
        summary = self.enrollment.current_enrollment(user.id, term)
        data = self.renderer.render(user, summary, session.locale)
        return FileReply(
            filename=f"transcript_{user.national_id}_{term}.{self.renderer.extension}",
            mime_type=self.renderer.mime_type,
            data=data,
            caption=self.t(session, "transcript_caption", term=term),
        )

    # -----------------------
    # Admin commands
    # -----------------------

    def handle_create_subject(self, session: Session, user: User, role: str, args: str) -> Reply:
        try:
            draft = parse_block(args, self.translator.field_labels(), SubjectDraft)
        except ValidationError as e:
            return self.t(session, "error_format_subject", fields=", ".join(e.details.get("fields", [])))

        try:
            with transaction_scope(self.SessionFactory) as db:
                career_id = None
                if draft.career:
                    career = db.query(Career).filter(Career.code == draft.career).one_or_none()
                    if career is None:
                        raise NotFoundError("career", f"Career not found: {draft.career}")
                    career_id = career.id
                db.add(
                    Subject(
                        code=draft.code,
                        name=draft.name,
                        semester=draft.semester,
                        credits=draft.credits,
                        seats=draft.seats,
                        days=draft.days,
                        hours=draft.hours,
                        career_id=career_id,
                    )
                )
                db.flush()
        except ConflictError:
            return self.t(session, "error_subject_duplicate")

        logger.info("admin user=%s created subject %s (%s seats)", user.id, draft.code, draft.seats)
        return self.t(session, "subject_created", name=draft.name)

    def handle_create_career(self, session: Session, user: User, role: str, args: str) -> Reply:
        try:
            draft = parse_block(args, self.translator.field_labels(), CareerDraft)
        except ValidationError as e:
            return self.t(session, "error_format_career", fields=", ".join(e.details.get("fields", [])))

        try:
            with transaction_scope(self.SessionFactory) as db:
                db.add(Career(code=draft.code, name=draft.name))
                db.flush()
        except ConflictError:
            return self.t(session, "error_career_duplicate")

        logger.info("admin user=%s created career %s", user.id, draft.code)
        return self.t(session, "career_created", name=draft.name)

    def handle_list_students(self, session: Session, user: User, role: str, args: str) -> Reply:
        with read_scope(self.SessionFactory) as db:
            rows = (
                db.query(User, Career)
                .outerjoin(Career, Career.id == User.career_id)
                .filter(User.role == ROLE_STUDENT)
                .order_by(User.name.asc())
                .all()
            )
            if not rows:
                return self.t(session, "no_students")
            no_career = self.t(session, "no_career")
            return "\n".join(
                self.t(
                    session,
                    "student_line",
                    name=u.name,
                    email=u.email,
                    career=f"{c.name} ({c.code})" if c is not None else no_career,
                )
                for u, c in rows
            )

    # -----------------------
    # Helpers
    # -----------------------

    def _load_user(self, user_id: int | None) -> User | None:
        if user_id is None:
            return None
        with read_scope(self.SessionFactory) as db:
            user = db.get(User, user_id)
            if user is not None:
                db.expunge(user)
            return user

    def _career_label(self, session: Session, career_id: int | None) -> str:
        if career_id is None:
            return self.t(session, "no_career")
        with read_scope(self.SessionFactory) as db:
            career = db.get(Career, career_id)
            return f"{career.name} ({career.code})" if career is not None else self.t(session, "no_career")
