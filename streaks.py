"""Adherence streak bookkeeping.

A streak counts consecutive calendar days (in the configured timezone) on
which a dose of one medication was marked taken:

- first taken dose:            current = 1, longest = 1
- taken the next calendar day: current += 1, longest = max(longest, current)
- taken after a gap:           current = 1, longest unchanged
- taken again the same day:    no-op

A missed day is never recorded explicitly; the streak decays when the next
taken dose arrives after a gap.
"""

import logging
from datetime import datetime, timezone, tzinfo

from matcher import local_date
from schemas import StreakRecord, as_utc

logger = logging.getLogger(__name__)


class AdherenceLedger:
    """Streak engine. Single writer per (subject, medication) key."""

    def __init__(self, store, tz: tzinfo = timezone.utc):
        self.store = store
        self.tz = tz

    def days_between(self, earlier: datetime, later: datetime) -> int:
        """Calendar days from `earlier` to `later` in the ledger's timezone."""
        return (local_date(later, self.tz) - local_date(earlier, self.tz)).days

    async def record_taken(self, subject_id: str, medication_id: str, when: datetime) -> StreakRecord:
        """Apply a taken dose at `when` and return the resulting streak.

        StoreError from the read propagates; only a missing record counts as
        "no prior streak".
        """
        when = as_utc(when)
        existing = await self.store.read_streak(subject_id, medication_id)

        if existing is None or existing.last_taken is None:
            updated = StreakRecord(
                user_id=subject_id,
                medication_id=medication_id,
                current_streak=1,
                longest_streak=max(1, existing.longest_streak if existing else 0),
                last_taken=when,
                updated_at=when,
            )
        else:
            days = self.days_between(existing.last_taken, when)
            if days <= 0:
                logger.info(f"Streak for {subject_id}/{medication_id} already counted today")
                return existing

            if days == 1:
                current = existing.current_streak + 1
                longest = max(existing.longest_streak, current)
            else:
                current = 1
                longest = max(existing.longest_streak, current)

            updated = existing.model_copy(update={
                "current_streak": current,
                "longest_streak": longest,
                "last_taken": when,
                "updated_at": when,
            })

        saved = await self.store.write_streak(updated)
        logger.info(
            f"Streak for {subject_id}/{medication_id}: "
            f"current={saved.current_streak} longest={saved.longest_streak}"
        )
        return saved
