"""Time window matching for medication schedules.

Pure functions: given the entries and an injected `now`, decide which
entries are due this minute. All wall-clock interpretation happens in the
timezone passed in (the service's configured TIMEZONE); nothing here reads
the system clock.
"""

from datetime import date, datetime, timezone, tzinfo
from typing import Iterable, List

from schemas import DueMatch, MedicationEntry


def _localize(now: datetime, tz: tzinfo) -> datetime:
    if now.tzinfo is None:
        # Naive datetimes are taken to be UTC
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(tz)


def minute_key(now: datetime, tz: tzinfo = timezone.utc) -> str:
    """`now` truncated to HH:MM in `tz`; seconds are ignored."""
    return _localize(now, tz).strftime("%H:%M")


def local_date(now: datetime, tz: tzinfo = timezone.utc) -> date:
    """Calendar date of `now` in `tz`."""
    return _localize(now, tz).date()


def due_now(entries: Iterable[MedicationEntry], now: datetime, tz: tzinfo = timezone.utc) -> List[DueMatch]:
    """Select active entries scheduled at the current minute.

    Args:
        entries: Medication schedule entries (any order)
        now: The instant being evaluated
        tz: Timezone the HH:MM strings are expressed in

    Returns:
        List[DueMatch]: One match per due entry, in input order, carrying
        the matched HH:MM string and the calendar date
    """
    current_time = minute_key(now, tz)
    current_date = local_date(now, tz)

    return [
        DueMatch(entry=entry, time=current_time, date=current_date)
        for entry in entries
        if entry.is_active and current_time in entry.times
    ]
