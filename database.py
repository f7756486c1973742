"""Database module for MedLove Reminder Service.

This module defines SQLAlchemy models and database session management.
All timestamps are timezone-aware UTC datetimes; calendar dates (`date`)
are computed in the configured TIMEZONE before they are stored.
"""

from sqlalchemy import (
    create_engine, Column, String, Integer, Boolean, Date, DateTime, JSON,
    Enum as SQLEnum, Index, ForeignKey, text,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
import enum

from config import settings

# SQLAlchemy Base
Base = declarative_base()


class FrequencyEnum(enum.Enum):
    """How often a medication is taken (informational)"""
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"


class LogStatusEnum(enum.Enum):
    """Status values for medication log entries"""
    REMINDER_SENT = "reminder_sent"
    TAKEN = "taken"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class User(Base):
    """Subject profile - the owner of medications, addressed by reminders."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, doc="Unique user ID")
    email = Column(String, nullable=False, doc="Contact address for reminders")
    display_name = Column(String, default="", doc="Name used in greetings")

    notification_count = Column(Integer, nullable=False, default=0, doc="Lifetime primary reminders sent")
    last_notification_sent = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, notifications={self.notification_count})>"


class Medication(Base):
    """Medication schedule entry.

    `times` holds HH:MM strings. `is_active` means "eligible for reminders";
    a taken dose clears it for the rest of the day and records `taken_on_date`
    so the daily reset can tell it apart from an entry the user disabled.
    """

    __tablename__ = "medications"

    id = Column(String, primary_key=True, doc="Unique medication ID (UUID)")
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)

    name = Column(String, nullable=False)
    dosage = Column(String, nullable=False)
    frequency = Column(
        SQLEnum(FrequencyEnum, values_callable=_enum_values),
        default=FrequencyEnum.DAILY,
    )
    times = Column(JSON, nullable=False, default=list, doc="Ordered HH:MM strings")

    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    notes = Column(String, default="")
    color = Column(String, default="")
    icon = Column(String, default="")

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    taken_on_date = Column(Date, nullable=True)
    last_taken_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return (
            f"<Medication(id={self.id}, user={self.user_id}, name={self.name}, "
            f"times={self.times}, active={self.is_active})>"
        )


class MedicationLog(Base):
    """Reminder record / taken record for one medication on one date."""

    __tablename__ = "medication_logs"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    medication_id = Column(String, ForeignKey("medications.id"), nullable=False)

    # Snapshots taken when the record is written
    medication_name = Column(String, default="")
    dosage = Column(String, default="")

    scheduled_time = Column(String, nullable=True, doc="HH:MM slot, null for manual taken logs")
    date = Column(Date, nullable=False, doc="Calendar date in the configured timezone")
    status = Column(SQLEnum(LogStatusEnum, values_callable=_enum_values), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False)
    taken_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_log_user_med_date', 'user_id', 'medication_id', 'date'),
        Index('idx_log_date_status', 'date', 'status'),
        # One taken dose per medication per day
        Index(
            'uq_log_taken_once', 'user_id', 'medication_id', 'date',
            unique=True,
            sqlite_where=text("status = 'taken'"),
            postgresql_where=text("status = 'taken'"),
        ),
        # One primary reminder per occurrence
        Index(
            'uq_log_reminder_once', 'user_id', 'medication_id', 'date', 'scheduled_time',
            unique=True,
            sqlite_where=text("status = 'reminder_sent'"),
            postgresql_where=text("status = 'reminder_sent'"),
        ),
    )

    def __repr__(self):
        return (
            f"<MedicationLog(id={self.id}, med={self.medication_id}, date={self.date}, "
            f"time={self.scheduled_time}, status={self.status.value})>"
        )


class Streak(Base):
    """Consecutive-day adherence counter per (user, medication)."""

    __tablename__ = "streaks"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    medication_id = Column(String, ForeignKey("medications.id"), primary_key=True)

    current_streak = Column(Integer, nullable=False, default=0)
    longest_streak = Column(Integer, nullable=False, default=0)
    last_taken = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return (
            f"<Streak(user={self.user_id}, med={self.medication_id}, "
            f"current={self.current_streak}, longest={self.longest_streak})>"
        )


def make_engine(database_url: str):
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if "sqlite" in database_url else {},
        echo=False  # Set to True for SQL debugging
    )


def init_db(bind) -> None:
    """Create all tables."""
    Base.metadata.create_all(bind=bind)


# Database Engine Setup
engine = make_engine(settings.DATABASE_URL)

# Session Factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Database session dependency for FastAPI.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
