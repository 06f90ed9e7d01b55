# enrollbot/enrollment.py

import logging
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.orm import Session

from enrollbot.entities import EnrollmentPeriod, EnrollmentRecord, Subject, User
from enrollbot.errors import ConflictError, NotFoundError
from enrollbot.transactions import ensure_period, read_scope, transaction_scope

logger = logging.getLogger("enrollbot")


@dataclass
class EnrollResult:
    term: str
    subject_code: str
    subject_name: str
    credits: int
    seats_left: int
    total_credits: int


# withdraw reports the same figures after the seat is returned
WithdrawResult = EnrollResult


@dataclass
class EnrolledSubject:
    code: str
    name: str
    credits: int
    days: str
    hours: str


@dataclass
class EnrollmentSummary:
    term: str
    total_credits: int = 0
    subjects: list[EnrolledSubject] = field(default_factory=list)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class EnrollmentManager:
    """
    Enroll / withdraw as single transactions against Subject.seats and EnrollmentPeriod.total_credits.

    The subject row is locked (SELECT ... FOR UPDATE) before the capacity check, so two callers
    racing for the last seat are serialized and exactly one of them sees seats > 0.
    The term is always supplied by the caller.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.SessionFactory = session_factory

    def _require_user(self, session: Session, user_id: int) -> None:
        if session.get(User, user_id) is None:
            raise NotFoundError("user", f"User not found: {user_id}")

    def _lock_subject(self, session: Session, code: str) -> Subject:
        subject = (
            session.query(Subject)
            .filter(Subject.code == code)
            .with_for_update()
            .one_or_none()
        )
        if subject is None:
            raise NotFoundError("subject", f"Subject not found: {code}")
        return subject

    def _find_record(self, session: Session, period_id: int, subject_id: int) -> EnrollmentRecord | None:
        return (
            session.query(EnrollmentRecord)
            .filter(
                EnrollmentRecord.period_id == period_id,
                EnrollmentRecord.subject_id == subject_id,
            )
            .one_or_none()
        )

    def enroll(self, user_id: int, subject_code: str, term: str) -> EnrollResult:
        code = normalize_code(subject_code)

        # 1) period first, in its own unit of work
        with transaction_scope(self.SessionFactory) as session:
            self._require_user(session, user_id)
            period_id = ensure_period(session, user_id, term).id

        # 2) capacity check + writes under the subject lock
        with transaction_scope(self.SessionFactory) as session:
            subject = self._lock_subject(session, code)

            if subject.seats <= 0:
                raise ConflictError("no_seats", f"No seats left in {code}")

            if self._find_record(session, period_id, subject.id) is not None:
                raise ConflictError("already_enrolled", f"Already enrolled in {code} for {term}")

            session.add(EnrollmentRecord(period_id=period_id, subject_id=subject.id))

            period = (
                session.query(EnrollmentPeriod)
                .filter(EnrollmentPeriod.id == period_id)
                .with_for_update()
                .one()
            )
            period.total_credits = period.total_credits + subject.credits
            subject.seats = subject.seats - 1
            session.flush()

            result = EnrollResult(
                term=term,
                subject_code=subject.code,
                subject_name=subject.name,
                credits=subject.credits,
                seats_left=subject.seats,
                total_credits=period.total_credits,
            )

        logger.info(
            "enroll user=%s subject=%s term=%s seats_left=%s total_credits=%s",
            user_id, result.subject_code, term, result.seats_left, result.total_credits,
        )
        return result

    def withdraw(self, user_id: int, subject_code: str, term: str) -> WithdrawResult:
        code = normalize_code(subject_code)

        with transaction_scope(self.SessionFactory) as session:
            self._require_user(session, user_id)

            period = (
                session.query(EnrollmentPeriod)
                .filter(
                    EnrollmentPeriod.user_id == user_id,
                    EnrollmentPeriod.term == term,
                )
                .one_or_none()
            )
            if period is None:
                raise NotFoundError("period", f"No enrollment period for user {user_id} in {term}", term=term)

            # same lock order as enroll: subject, then period
            subject = self._lock_subject(session, code)
            session.refresh(period, with_for_update=True)

            record = self._find_record(session, period.id, subject.id)
            if record is None:
                raise ConflictError("not_enrolled", f"Not enrolled in {code} for {term}")

            session.delete(record)
            period.total_credits = period.total_credits - subject.credits
            subject.seats = subject.seats + 1
            session.flush()

            result = WithdrawResult(
                term=term,
                subject_code=subject.code,
                subject_name=subject.name,
                credits=subject.credits,
                seats_left=subject.seats,
                total_credits=period.total_credits,
            )

        logger.info(
            "withdraw user=%s subject=%s term=%s seats_left=%s total_credits=%s",
            user_id, result.subject_code, term, result.seats_left, result.total_credits,
        )
        return result

    def current_enrollment(self, user_id: int, term: str) -> EnrollmentSummary:
        with read_scope(self.SessionFactory) as session:
            summary = EnrollmentSummary(term=term)
            period = (
                session.query(EnrollmentPeriod)
                .filter(
                    EnrollmentPeriod.user_id == user_id,
                    EnrollmentPeriod.term == term,
                )
                .one_or_none()
            )
            if period is None:
                return summary

            rows = (
                session.query(Subject)
                .join(EnrollmentRecord, EnrollmentRecord.subject_id == Subject.id)
                .filter(EnrollmentRecord.period_id == period.id)
                .order_by(Subject.code.asc())
                .all()
            )
            summary.total_credits = period.total_credits
            summary.subjects = [
                EnrolledSubject(code=s.code, name=s.name, credits=s.credits, days=s.days, hours=s.hours)
                for s in rows
            ]
            return summary
