"""Store adapter used by the reminder core.

Wraps the SQLAlchemy CRUD layer behind the async interface the scheduler,
dispatcher and streak engine consume. ORM rows are validated into the typed
records from `schemas` here and nowhere else, and SQLAlchemy failures leave
this module as StoreError.
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import crud
from errors import AlreadyTakenError, StoreError
from schemas import MedicationEntry, ReminderRecord, StreakRecord, UserProfile

logger = logging.getLogger(__name__)


class MedicationStore:
    """Document-style store interface over a SQLAlchemy session factory."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Store operation failed: {e}")
            raise StoreError(str(e)) from e
        finally:
            db.close()

    # -- profiles --------------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        with self._session() as db:
            user = crud.get_user(db, user_id)
            return UserProfile.model_validate(user) if user else None

    async def increment_notification_count(self, user_id: str, when: datetime) -> None:
        with self._session() as db:
            if not crud.increment_notification_count(db, user_id, when):
                logger.warning(f"Notification count not updated, user {user_id} not found")

    # -- medications -----------------------------------------------------

    async def query_due_medications(self, day: date, time_key: str) -> List[MedicationEntry]:
        """Active entries scheduled at `time_key` and within their date range on `day`."""
        with self._session() as db:
            rows = crud.get_active_medications_at(db, time_key)
            return [
                MedicationEntry.model_validate(row) for row in rows
                if (row.start_date is None or row.start_date <= day)
                and (row.end_date is None or row.end_date >= day)
            ]

    async def get_medication(self, medication_id: str) -> Optional[MedicationEntry]:
        with self._session() as db:
            row = crud.get_medication(db, medication_id)
            return MedicationEntry.model_validate(row) if row else None

    async def deactivate_for_day(self, medication_id: str, day: date, when: datetime) -> None:
        with self._session() as db:
            crud.deactivate_for_day(db, medication_id, day, when)

    async def reactivate_medications(self, day: date) -> int:
        with self._session() as db:
            return crud.reactivate_taken_before(db, day)

    # -- reminder records ------------------------------------------------

    async def write_reminder_record(self, record: ReminderRecord) -> bool:
        """Persist a reminder_sent record.

        Returns:
            bool: False if this occurrence was already recorded
        """
        with self._session() as db:
            try:
                crud.create_log(db, record.model_dump(exclude_none=True))
            except IntegrityError:
                logger.info(
                    f"Reminder for {record.medication_id} at {record.date} {record.scheduled_time} "
                    f"already recorded"
                )
                return False
            return True

    async def write_taken_record(self, record: ReminderRecord) -> ReminderRecord:
        """Persist a taken record; a second one for the same day is a conflict."""
        with self._session() as db:
            try:
                row = crud.create_log(db, record.model_dump(exclude_none=True))
            except IntegrityError as e:
                raise AlreadyTakenError(record.user_id, record.medication_id, record.date) from e
            return ReminderRecord.model_validate(row)

    async def query_taken_today(self, user_id: str, medication_id: str, day: date) -> bool:
        with self._session() as db:
            return crud.has_taken_log(db, user_id, medication_id, day)

    async def list_reminder_records(self, day: date, status: Optional[str] = None) -> List[ReminderRecord]:
        with self._session() as db:
            return [ReminderRecord.model_validate(row) for row in crud.get_logs_for_date(db, day, status)]

    # -- streaks ---------------------------------------------------------

    async def read_streak(self, user_id: str, medication_id: str) -> Optional[StreakRecord]:
        """Return the streak, or None when there is definitively none.

        Transient failures raise StoreError rather than looking like absence.
        """
        with self._session() as db:
            row = crud.get_streak(db, user_id, medication_id)
            return StreakRecord.model_validate(row) if row else None

    async def write_streak(self, record: StreakRecord) -> StreakRecord:
        with self._session() as db:
            return StreakRecord.model_validate(crud.upsert_streak(db, record.model_dump()))
