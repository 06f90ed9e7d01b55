# enrollbot/careers.py

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import update
from sqlalchemy.orm import Session

from enrollbot.entities import Career, CareerAssignment, EnrollmentPeriod, User
from enrollbot.enrollment import normalize_code
from enrollbot.errors import ConflictError, NotFoundError
from enrollbot.transactions import ensure_period, transaction_scope

logger = logging.getLogger("enrollbot")


@dataclass
class AssignResult:
    term: str
    career_code: str
    career_name: str


class CareerAssignmentManager:
    def __init__(self, session_factory: Callable[[], Session]):
        self.SessionFactory = session_factory

    def assign_career(self, user_id: int, career_code: str, term: str) -> AssignResult:
        """
        Bind the user to a career, once.

        Both "already assigned" signals (User.career_id and any CareerAssignment on the user's periods)
        are read under the user row lock, in the same transaction as the writes.
        """
        code = normalize_code(career_code)

        with transaction_scope(self.SessionFactory) as session:
            user = (
                session.query(User)
                .filter(User.id == user_id)
                .with_for_update()
                .one_or_none()
            )
            if user is None:
                raise NotFoundError("user", f"User not found: {user_id}")

            if user.career_id is not None or self._has_assignment(session, user_id):
                raise ConflictError("already_assigned", f"User {user_id} already has a career")

            career = session.query(Career).filter(Career.code == code).one_or_none()
            if career is None:
                raise NotFoundError("career", f"Career not found: {code}")

            period = ensure_period(session, user_id, term)
            session.add(CareerAssignment(period_id=period.id, career_id=career.id))

            res = session.execute(
                update(User)
                .where(User.id == user_id, User.career_id.is_(None))
                .values(career_id=career.id)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise ConflictError("already_assigned", f"User {user_id} already has a career")

            result = AssignResult(term=term, career_code=career.code, career_name=career.name)

        logger.info("assign_career user=%s career=%s term=%s", user_id, result.career_code, term)
        return result

    def _has_assignment(self, session: Session, user_id: int) -> bool:
        found = (
            session.query(CareerAssignment.id)
            .join(EnrollmentPeriod, EnrollmentPeriod.id == CareerAssignment.period_id)
            .filter(EnrollmentPeriod.user_id == user_id)
            .first()
        )
        return found is not None
