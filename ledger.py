"""In-process dedup ledger for sent reminders.

Holds the (subject, medication, date, time) keys this scheduler has already
notified. It is owned by one ReminderScheduler, cleared at local midnight,
and rebuilt from persisted reminder_sent records after a restart.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Set, Tuple

from matcher import local_date
from schemas import ReminderStatus

logger = logging.getLogger(__name__)

OccurrenceKey = Tuple[str, str, date, str]


class DedupLedger:
    """Set of occurrences already dispatched."""

    def __init__(self):
        self._sent: Set[OccurrenceKey] = set()

    def __len__(self):
        return len(self._sent)

    def already_sent(self, subject_id: str, medication_id: str, day: date, time_key: str) -> bool:
        return (subject_id, medication_id, day, time_key) in self._sent

    def mark_sent(self, subject_id: str, medication_id: str, day: date, time_key: str) -> bool:
        """Record an occurrence as sent. Safe to call repeatedly.

        Returns:
            bool: True if the key was new, i.e. the caller has claimed it
        """
        key = (subject_id, medication_id, day, time_key)
        if key in self._sent:
            return False
        self._sent.add(key)
        return True

    def discard(self, subject_id: str, medication_id: str, day: date, time_key: str) -> None:
        """Release a claim whose record could not be persisted."""
        self._sent.discard((subject_id, medication_id, day, time_key))

    def clear(self) -> None:
        count = len(self._sent)
        self._sent.clear()
        logger.info(f"Cleared {count} sent reminder(s) for new day")

    async def rebuild(self, store, day: date) -> int:
        """Load today's reminder_sent records so a restart does not resend.

        Returns:
            int: Number of keys loaded
        """
        records = await store.list_reminder_records(day, ReminderStatus.REMINDER_SENT.value)
        for record in records:
            if record.scheduled_time:
                self.mark_sent(record.user_id, record.medication_id, record.date, record.scheduled_time)
        logger.info(f"Rebuilt dedup ledger with {len(records)} record(s) for {day}")
        return len(records)


def next_midnight(now: datetime, tz: tzinfo = timezone.utc) -> datetime:
    """The next local midnight after `now`, as an aware datetime in `tz`."""
    tomorrow = local_date(now, tz) + timedelta(days=1)
    return datetime.combine(tomorrow, time(0, 0), tzinfo=tz)


def seconds_until_midnight(now: datetime, tz: tzinfo = timezone.utc) -> float:
    """Delay for the one-shot midnight reset, recomputed each time it fires."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return max((next_midnight(now, tz) - now).total_seconds(), 0.0)
