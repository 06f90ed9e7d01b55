# enrollbot/entities.py
from datetime import datetime, timezone
from uuid import uuid4
from sqlalchemy.orm import Mapped, declarative_base, mapped_column
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    text,
    func,
    Index,
    JSON,
    UniqueConstraint,
)

from typing import TypeAlias
Timestamp: TypeAlias = datetime
Base = declarative_base()

ROLE_STUDENT = "student"
ROLE_ADMIN = "admin"

PERIOD_ACTIVE = "active"


class TimestampMixin:
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class QueueMessage(Base):
    __tablename__ = "queue_messages"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    sender_id = Column(String, nullable=False)      # chat identity or worker id
    receiver_id = Column(String, nullable=False)    # worker id or chat identity
    type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_queue_messages_receiver_created", "receiver_id", "created_at"),
    )


class Career(Base, TimestampMixin):
    __tablename__ = "careers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # stored uppercase; lookups upper() the input
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    national_id: Mapped[str] = mapped_column(String(32), nullable=False)
    # stored lowercase
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        server_default=text(f"'{ROLE_STUDENT}'"),
    )
    # set at most once, see CareerAssignmentManager
    career_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("careers.id", ondelete="RESTRICT"),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_users_email_national_id", "email", "national_id"),
    )


class Subject(Base, TimestampMixin):
    __tablename__ = "subjects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    semester: Mapped[int] = mapped_column(Integer, nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    # only the enrollment manager writes this column
    seats: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    days: Mapped[str] = mapped_column(String(200), nullable=False)
    hours: Mapped[str] = mapped_column(String(200), nullable=False)
    career_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("careers.id", ondelete="SET NULL"),
        nullable=True,
    )

    __table_args__ = (
        CheckConstraint("seats >= 0", name="ck_subjects_seats_non_negative"),
        CheckConstraint("credits > 0", name="ck_subjects_credits_positive"),
    )


class EnrollmentPeriod(Base, TimestampMixin):
    __tablename__ = "enrollment_periods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    term: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        server_default=text(f"'{PERIOD_ACTIVE}'"),
    )
    total_credits: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))

    __table_args__ = (
        UniqueConstraint("user_id", "term", name="uq_enrollment_periods_user_term"),
    )


class EnrollmentRecord(Base):
    __tablename__ = "enrollment_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    period_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("enrollment_periods.id", ondelete="CASCADE"),
        nullable=False,
    )
    subject_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("subjects.id", ondelete="RESTRICT"),
        nullable=False,
    )
    created_at: Mapped[Timestamp] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("period_id", "subject_id", name="uq_enrollment_records_period_subject"),
    )


class CareerAssignment(Base):
    __tablename__ = "career_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    period_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("enrollment_periods.id", ondelete="CASCADE"),
        nullable=False,
    )
    career_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("careers.id", ondelete="RESTRICT"),
        nullable=False,
    )
    created_at: Mapped[Timestamp] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_career_assignments_period_id", "period_id"),
    )
