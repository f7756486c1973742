"""CRUD operations for MedLove Reminder Service.

This module provides database operations for users, medications,
medication logs and streaks. All datetime parameters are timezone-aware
datetime objects; `day` parameters are calendar dates already computed in
the configured timezone.
"""

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from typing import List, Optional
import uuid
from datetime import date, datetime, timedelta, timezone

from database import (
    User, Medication, MedicationLog, Streak, FrequencyEnum, LogStatusEnum,
)
from logger_config import setup_logger

logger = setup_logger(__name__, 'crud.log')


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def create_user(db: Session, user_data: dict) -> User:
    """Register a user profile.

    Args:
        db: Database session
        user_data: Dictionary with id, email and optional display_name

    Returns:
        User: Created user

    Raises:
        IntegrityError: If the id is already registered
    """
    db_user = User(
        id=user_data['id'],
        email=user_data['email'],
        display_name=user_data.get('display_name', ''),
        notification_count=0,
        created_at=_utcnow(),
    )
    db.add(db_user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(db_user)
    return db_user


def get_user(db: Session, user_id: str) -> Optional[User]:
    return db.get(User, user_id)


def increment_notification_count(db: Session, user_id: str, when: datetime) -> bool:
    """Bump the lifetime reminder counter and stamp the last send time.

    Returns:
        bool: False if the user does not exist
    """
    updated = db.query(User).filter(User.id == user_id).update(
        {
            User.notification_count: User.notification_count + 1,
            User.last_notification_sent: when,
        },
        synchronize_session=False,
    )
    db.commit()
    return updated > 0


# ---------------------------------------------------------------------------
# Medications
# ---------------------------------------------------------------------------

def create_medication(db: Session, user_id: str, medication_data: dict) -> Medication:
    """Create a medication schedule entry for a user.

    Args:
        db: Database session
        user_id: Owning user
        medication_data: Dictionary with medication fields
            - name: str
            - dosage: str
            - times: List[str] (HH:MM, already validated)
            - frequency, start_date, end_date, notes, color, icon, is_active: optional

    Returns:
        Medication: Created medication
    """
    now = _utcnow()

    frequency = medication_data.get('frequency', 'daily')
    if isinstance(frequency, str):
        frequency = FrequencyEnum[frequency.upper()]

    db_medication = Medication(
        id=str(uuid.uuid4()),
        user_id=user_id,
        name=medication_data['name'],
        dosage=medication_data['dosage'],
        frequency=frequency,
        times=list(medication_data['times']),
        start_date=medication_data.get('start_date'),
        end_date=medication_data.get('end_date'),
        notes=medication_data.get('notes', ''),
        color=medication_data.get('color', ''),
        icon=medication_data.get('icon', ''),
        is_active=medication_data.get('is_active', True),
        created_at=now,
        updated_at=now,
    )

    db.add(db_medication)
    db.commit()
    db.refresh(db_medication)
    return db_medication


def get_medications_by_user(db: Session, user_id: str, active_only: bool = False) -> List[Medication]:
    query = db.query(Medication).filter(Medication.user_id == user_id)
    if active_only:
        query = query.filter(Medication.is_active.is_(True))
    return query.order_by(Medication.created_at).all()


def get_medication(db: Session, medication_id: str, user_id: Optional[str] = None) -> Optional[Medication]:
    """Get a medication by ID, optionally scoped to its owner.

    Args:
        db: Database session
        medication_id: Medication UUID
        user_id: Owner (for security); None for internal lookups

    Returns:
        Optional[Medication]: Medication if found, None otherwise
    """
    query = db.query(Medication).filter(Medication.id == medication_id)
    if user_id is not None:
        query = query.filter(Medication.user_id == user_id)
    return query.first()


def update_medication(
    db: Session,
    medication_id: str,
    user_id: str,
    updates: dict
) -> Optional[Medication]:
    """Update an existing medication.

    Args:
        db: Database session
        medication_id: Medication UUID
        user_id: Owner (for security)
        updates: Dictionary of fields to update (None values are ignored)

    Returns:
        Optional[Medication]: Updated medication if found, None otherwise
    """
    medication = get_medication(db, medication_id, user_id)
    if not medication:
        return None

    for key, value in updates.items():
        if value is None:
            continue
        if key == 'frequency' and isinstance(value, str):
            value = FrequencyEnum[value.upper()]
        setattr(medication, key, value)

        # JSON columns need explicit change tracking
        if key == 'times':
            flag_modified(medication, 'times')

    # Re-enabling by hand clears the taken-today marker
    if updates.get('is_active'):
        medication.taken_on_date = None

    medication.updated_at = _utcnow()

    db.commit()
    db.refresh(medication)
    return medication


def delete_medication(db: Session, medication_id: str, user_id: str) -> bool:
    """Delete a medication together with its logs and streak.

    Returns:
        bool: True if deleted, False if not found
    """
    medication = get_medication(db, medication_id, user_id)
    if not medication:
        return False

    db.query(MedicationLog).filter(MedicationLog.medication_id == medication_id).delete(
        synchronize_session=False
    )
    db.query(Streak).filter(Streak.medication_id == medication_id).delete(
        synchronize_session=False
    )
    db.delete(medication)
    db.commit()
    return True


def get_active_medications_at(db: Session, time_key: str) -> List[Medication]:
    """Get active medications scheduled at an HH:MM slot.

    The JSON `times` column is not portably searchable, so the slot is
    filtered in Python after selecting active rows.

    Args:
        db: Database session
        time_key: HH:MM string

    Returns:
        List[Medication]: Active medications whose times contain time_key
    """
    active = db.query(Medication).filter(
        Medication.is_active.is_(True)
    ).order_by(Medication.created_at, Medication.id).all()

    return [m for m in active if time_key in (m.times or [])]


def deactivate_for_day(db: Session, medication_id: str, day: date, when: datetime) -> bool:
    """Mark a medication as taken for `day` so it drops out of today's sweeps."""
    medication = get_medication(db, medication_id)
    if not medication:
        return False

    medication.is_active = False
    medication.taken_on_date = day
    medication.last_taken_at = when
    medication.updated_at = _utcnow()
    db.commit()
    return True


def reactivate_taken_before(db: Session, day: date) -> int:
    """Re-enable medications that a taken dose disabled before `day`.

    Entries the user switched off themselves have no taken_on_date and
    stay inactive.

    Returns:
        int: Number of medications reactivated
    """
    count = db.query(Medication).filter(
        Medication.is_active.is_(False),
        Medication.taken_on_date.isnot(None),
        Medication.taken_on_date < day,
    ).update(
        {
            Medication.is_active: True,
            Medication.taken_on_date: None,
            Medication.updated_at: _utcnow(),
        },
        synchronize_session=False,
    )
    db.commit()
    return count


# ---------------------------------------------------------------------------
# Medication logs
# ---------------------------------------------------------------------------

def create_log(db: Session, log_data: dict) -> MedicationLog:
    """Insert a medication log row.

    Args:
        db: Database session
        log_data: Dictionary with user_id, medication_id, date, status and
            optional medication_name, dosage, scheduled_time, taken_at

    Returns:
        MedicationLog: Created row

    Raises:
        IntegrityError: If the row would break one of the once-per-day
            unique indexes (the session is rolled back first)
    """
    status = log_data['status']
    if isinstance(status, str):
        status = LogStatusEnum(status)

    db_log = MedicationLog(
        id=log_data.get('id') or str(uuid.uuid4()),
        user_id=log_data['user_id'],
        medication_id=log_data['medication_id'],
        medication_name=log_data.get('medication_name', ''),
        dosage=log_data.get('dosage', ''),
        scheduled_time=log_data.get('scheduled_time'),
        date=log_data['date'],
        status=status,
        created_at=log_data.get('created_at') or _utcnow(),
        taken_at=log_data.get('taken_at'),
    )

    db.add(db_log)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(db_log)
    return db_log


def has_taken_log(db: Session, user_id: str, medication_id: str, day: date) -> bool:
    return db.query(MedicationLog.id).filter(
        MedicationLog.user_id == user_id,
        MedicationLog.medication_id == medication_id,
        MedicationLog.date == day,
        MedicationLog.status == LogStatusEnum.TAKEN,
    ).first() is not None


def get_logs_for_date(db: Session, day: date, status: Optional[str] = None) -> List[MedicationLog]:
    query = db.query(MedicationLog).filter(MedicationLog.date == day)
    if status:
        query = query.filter(MedicationLog.status == LogStatusEnum(status))
    return query.order_by(MedicationLog.created_at).all()


def get_logs_by_user(
    db: Session,
    user_id: str,
    medication_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    status: Optional[str] = None,
    limit: int = 100
) -> List[MedicationLog]:
    """Get a user's medication logs, newest first.

    Args:
        db: Database session
        user_id: Owner
        medication_id: Optional medication filter
        start_date: Optional inclusive lower bound on date
        end_date: Optional inclusive upper bound on date
        status: Optional status filter (reminder_sent, taken)
        limit: Maximum number of results

    Returns:
        List[MedicationLog]: Matching log rows
    """
    query = db.query(MedicationLog).filter(MedicationLog.user_id == user_id)

    if medication_id:
        query = query.filter(MedicationLog.medication_id == medication_id)
    if start_date:
        query = query.filter(MedicationLog.date >= start_date)
    if end_date:
        query = query.filter(MedicationLog.date <= end_date)
    if status:
        query = query.filter(MedicationLog.status == LogStatusEnum(status))

    return query.order_by(MedicationLog.date.desc(), MedicationLog.created_at.desc()).limit(limit).all()


def count_taken_logs(db: Session, user_id: str, start_date: date, end_date: date) -> int:
    return db.query(MedicationLog).filter(
        MedicationLog.user_id == user_id,
        MedicationLog.status == LogStatusEnum.TAKEN,
        MedicationLog.date >= start_date,
        MedicationLog.date <= end_date,
    ).count()


def get_user_stats(db: Session, user_id: str, today: date) -> dict:
    """Dashboard numbers for a user as of `today`.

    A medication counts as enabled for the day if it is active or was
    deactivated by today's taken dose. Compliance is taken doses over the
    last 7 days against enabled medications x 7, capped at 100. A streak
    whose last dose is older than yesterday shows as 0.

    Returns:
        dict: streak, compliance, weekly_count, today_completed, today_total
    """
    medications = get_medications_by_user(db, user_id)
    enabled = [m for m in medications if m.is_active or m.taken_on_date == today]

    weekly_count = count_taken_logs(db, user_id, today - timedelta(days=6), today)
    today_completed = count_taken_logs(db, user_id, today, today)

    expected = len(enabled) * 7
    compliance = round(min(100.0, weekly_count * 100.0 / expected), 1) if expected else 0.0

    taken_dates = {
        (log.medication_id, log.date)
        for log in get_logs_by_user(db, user_id, start_date=today - timedelta(days=1),
                                    end_date=today, status='taken')
    }
    best = 0
    for streak in get_streaks_by_user(db, user_id):
        recent = any((streak.medication_id, d) in taken_dates for d in (today, today - timedelta(days=1)))
        if recent:
            best = max(best, streak.current_streak)

    return {
        "streak": best,
        "compliance": compliance,
        "weekly_count": weekly_count,
        "today_completed": today_completed,
        "today_total": len(enabled),
    }


# ---------------------------------------------------------------------------
# Streaks
# ---------------------------------------------------------------------------

def get_streak(db: Session, user_id: str, medication_id: str) -> Optional[Streak]:
    return db.get(Streak, (user_id, medication_id))


def get_streaks_by_user(db: Session, user_id: str) -> List[Streak]:
    return db.query(Streak).filter(Streak.user_id == user_id).all()


def upsert_streak(db: Session, streak_data: dict) -> Streak:
    """Create or overwrite the streak row for (user_id, medication_id)."""
    streak = get_streak(db, streak_data['user_id'], streak_data['medication_id'])
    if streak is None:
        streak = Streak(
            user_id=streak_data['user_id'],
            medication_id=streak_data['medication_id'],
        )
        db.add(streak)

    streak.current_streak = streak_data['current_streak']
    streak.longest_streak = streak_data['longest_streak']
    streak.last_taken = streak_data.get('last_taken')
    streak.updated_at = streak_data.get('updated_at') or _utcnow()

    db.commit()
    db.refresh(streak)
    return streak
