# enrollbot/transactions.py

import logging
from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from enrollbot.entities import EnrollmentPeriod, PERIOD_ACTIVE
from enrollbot.errors import ConflictError, EnrollbotError, TransientStoreError

logger = logging.getLogger("enrollbot")


@contextmanager
def transaction_scope(session_factory: Callable[[], Session]) -> Iterator[Session]:
    """
    One unit of work: commit when the body returns, rollback on any exit by exception.
    Row locks taken inside the body (with_for_update) are released by that commit/rollback.

    IntegrityError -> ConflictError("duplicate"); any other driver error -> TransientStoreError.
    Business errors raised by the body propagate unchanged after the rollback.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except EnrollbotError:
        session.rollback()
        raise
    except IntegrityError as e:
        session.rollback()
        logger.info("transaction rolled back on integrity violation: %s", e.orig)
        raise ConflictError("duplicate", str(e.orig)) from e
    except DBAPIError as e:
        session.rollback()
        logger.warning("transaction rolled back on store failure: %s", e)
        raise TransientStoreError(str(e)) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def read_scope(session_factory: Callable[[], Session]) -> Iterator[Session]:
    """Read-only session: never commits. Driver errors surface as TransientStoreError."""
    session = session_factory()
    try:
        yield session
    except DBAPIError as e:
        logger.warning("read failed on store: %s", e)
        raise TransientStoreError(str(e)) from e
    finally:
        session.close()


def ensure_period(session: Session, user_id: int, term: str) -> EnrollmentPeriod:
    """Return the user's period for `term`, creating it with zero credits when absent."""
    query = session.query(EnrollmentPeriod).filter(
        EnrollmentPeriod.user_id == user_id,
        EnrollmentPeriod.term == term,
    )
    period = query.one_or_none()
    if period is not None:
        return period

    try:
        with session.begin_nested():
            period = EnrollmentPeriod(
                user_id=user_id,
                term=term,
                status=PERIOD_ACTIVE,
                total_credits=0,
            )
            session.add(period)
    except IntegrityError:
        # a concurrent turn created it first
        period = query.one()
    return period
