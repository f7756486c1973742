"""Reminder scheduler - the orchestrating core of the reminder service.

One ReminderScheduler owns its dedup ledger and follow-up queue. Callers
drive it with an injected `now`:

- on_tick(now): sweep for due medications, dispatch, then run follow-ups
- run_follow_ups(now): send follow-ups whose delay has elapsed
- on_dose_taken(subject_id, medication_id, when): record a taken dose
- on_day_rollover(now): midnight reset of the ledger and taken-today flags

Flow per due occurrence:
1. Claim the occurrence in the ledger (no await between check and claim)
2. Persist a reminder_sent record; if that fails, release the claim and skip
3. Skip if the dose was already taken today
4. Send the primary reminder and queue its escalation chain
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

from errors import (
    AlreadyTakenError, DeliveryError, NotFoundError, StoreError, UnauthenticatedError,
)
from escalation import EscalationChain, FollowUpQueue
from events import EventBus, REMINDER_DISPATCHED, STREAK_UPDATED
from ledger import DedupLedger
from matcher import due_now, local_date, minute_key
from schemas import (
    DeliveryReceipt, DueMatch, ReminderRecord, ReminderStatus, StreakRecord, as_utc,
)
from streaks import AdherenceLedger

logger = logging.getLogger(__name__)


class SchedulerState(enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DISPATCHING = "dispatching"


@dataclass
class SchedulerConfig:
    """Scheduling knobs, supplied at construction."""

    sweep_interval: timedelta = timedelta(minutes=5)
    follow_up_delay: timedelta = timedelta(minutes=15)
    max_follow_ups: int = 3
    timezone: tzinfo = timezone.utc

    @property
    def max_attempts(self) -> int:
        return 1 + self.max_follow_ups

    @classmethod
    def from_settings(cls, settings) -> "SchedulerConfig":
        return cls(
            sweep_interval=timedelta(seconds=settings.WORKER_CHECK_INTERVAL),
            follow_up_delay=timedelta(minutes=settings.FOLLOW_UP_DELAY_MINUTES),
            max_follow_ups=settings.MAX_FOLLOW_UPS,
            timezone=ZoneInfo(settings.TIMEZONE),
        )


@dataclass
class TickResult:
    checked_at: datetime
    dispatched: int = 0
    follow_ups_sent: int = 0


class ReminderScheduler:
    """Sweep, dedup, dispatch and escalate medication reminders."""

    def __init__(self, store, dispatcher, ledger: Optional[DedupLedger] = None,
                 follow_ups: Optional[FollowUpQueue] = None,
                 streaks: Optional[AdherenceLedger] = None,
                 events: Optional[EventBus] = None,
                 config: Optional[SchedulerConfig] = None):
        self.config = config or SchedulerConfig()
        self.store = store
        self.dispatcher = dispatcher
        self.ledger = ledger if ledger is not None else DedupLedger()
        self.follow_ups = follow_ups if follow_ups is not None else FollowUpQueue()
        self.streaks = streaks if streaks is not None else AdherenceLedger(store, self.config.timezone)
        self.events = events if events is not None else EventBus()
        self.state = SchedulerState.IDLE

    @property
    def tz(self) -> tzinfo:
        return self.config.timezone

    async def start(self, now: datetime) -> None:
        """Rebuild today's dedup ledger from persisted reminder records."""
        await self.ledger.rebuild(self.store, local_date(now, self.tz))

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def on_tick(self, now: datetime) -> TickResult:
        """Run one sweep at `now`, then any follow-ups that are due.

        Raises:
            StoreError: If the due medications cannot be queried
        """
        result = TickResult(checked_at=now)
        try:
            result.dispatched = await self.sweep(now)
        finally:
            result.follow_ups_sent = await self.run_follow_ups(now)
        return result

    async def sweep(self, now: datetime) -> int:
        """Dispatch primary reminders for everything due at `now`.

        Returns:
            int: Number of primary reminders sent
        """
        self.state = SchedulerState.SCANNING
        try:
            time_key = minute_key(now, self.tz)
            day = local_date(now, self.tz)
            logger.debug(f"Checking for medications at {day} {time_key}")

            entries = await self.store.query_due_medications(day, time_key)
            matches = due_now(entries, now, self.tz)

            if not matches:
                logger.debug("No medications found for current time")
                return 0

            logger.info(f"Found {len(matches)} medication(s) due at {time_key}")

            dispatched = 0
            for match in matches:
                try:
                    if await self._dispatch(match, now):
                        dispatched += 1
                except Exception as e:
                    logger.error(
                        f"Error dispatching reminder for medication {match.entry.id}: {e}",
                        exc_info=True
                    )
            return dispatched
        finally:
            self.state = SchedulerState.IDLE

    async def _dispatch(self, match: DueMatch, now: datetime) -> bool:
        entry = match.entry
        key = (entry.user_id, entry.id, match.date, match.time)

        if not self.ledger.mark_sent(*key):
            return False

        record = ReminderRecord(
            user_id=entry.user_id,
            medication_id=entry.id,
            medication_name=entry.name,
            dosage=entry.dosage,
            scheduled_time=match.time,
            date=match.date,
            status=ReminderStatus.REMINDER_SENT,
            created_at=now,
        )
        try:
            created = await self.store.write_reminder_record(record)
        except StoreError as e:
            self.ledger.discard(*key)
            logger.error(f"Could not record reminder for {entry.id}, not sending: {e}")
            return False

        if not created:
            return False

        if await self.store.query_taken_today(entry.user_id, entry.id, match.date):
            logger.info(f"User {entry.user_id} already took {entry.name} today")
            return False

        subject = await self.store.get_user(entry.user_id)
        if subject is None:
            logger.warning(f"User {entry.user_id} not found")
            return False

        self.state = SchedulerState.DISPATCHING
        try:
            receipt = await self.dispatcher.send_reminder(subject, entry, match.time)
        except DeliveryError as e:
            logger.error(f"Error sending email reminder to user {entry.user_id}: {e}")
            return False

        if self.config.max_attempts > 1:
            self.follow_ups.schedule(EscalationChain(
                subject=subject,
                medication=entry,
                scheduled_time=match.time,
                date=match.date,
                next_due_at=now + self.config.follow_up_delay,
                max_attempts=self.config.max_attempts,
            ))

        await self.events.emit(REMINDER_DISPATCHED, {
            "user_id": entry.user_id,
            "medication_id": entry.id,
            "medication_name": entry.name,
            "scheduled_time": match.time,
            "date": match.date,
            "attempt": 1,
            "message_id": receipt.message_id,
        })
        return True

    # ------------------------------------------------------------------
    # Follow-ups
    # ------------------------------------------------------------------

    async def run_follow_ups(self, now: datetime) -> int:
        """Send every follow-up that is due at `now`.

        A chain whose dose has been taken stops without sending, even if its
        cancellation has not reached this scheduler. A failed follow-up is
        logged and the next one is still scheduled.

        Returns:
            int: Number of follow-ups sent
        """
        sent = 0
        for chain in self.follow_ups.pop_due(now):
            subject, medication = chain.subject, chain.medication
            attempt = chain.next_attempt
            try:
                if await self._taken_since(subject.id, medication.id, chain.date, now):
                    chain.stop()
                    logger.info(f"User {subject.id} has taken {medication.name}, no follow-up needed")
                    continue

                receipt = await self.dispatcher.send_follow_up(
                    subject, medication, chain.scheduled_time, attempt
                )
                if receipt is not None:
                    sent += 1
                    await self.events.emit(REMINDER_DISPATCHED, {
                        "user_id": subject.id,
                        "medication_id": medication.id,
                        "medication_name": medication.name,
                        "scheduled_time": chain.scheduled_time,
                        "date": chain.date,
                        "attempt": attempt,
                        "message_id": receipt.message_id,
                    })
            except (DeliveryError, StoreError) as e:
                chain.failures.append(attempt)
                logger.error(f"Error in follow-up reminder {attempt} for user {subject.id}: {e}")
            except Exception as e:
                # The chain is already off the queue; it must still be re-queued below
                chain.failures.append(attempt)
                logger.error(
                    f"Unexpected error in follow-up reminder {attempt} for user {subject.id}: {e}",
                    exc_info=True
                )

            chain.advance(now, self.config.follow_up_delay)
            self.follow_ups.schedule(chain)
        return sent

    async def _taken_since(self, subject_id: str, medication_id: str, day, now: datetime) -> bool:
        # A late-evening occurrence may be answered by a dose logged after midnight
        if await self.store.query_taken_today(subject_id, medication_id, day):
            return True
        today = local_date(now, self.tz)
        if today == day:
            return False
        return await self.store.query_taken_today(subject_id, medication_id, today)

    def next_follow_up_at(self) -> Optional[datetime]:
        return self.follow_ups.next_due_at()

    # ------------------------------------------------------------------
    # Dose taken / day rollover
    # ------------------------------------------------------------------

    async def on_dose_taken(self, subject_id: str, medication_id: str, when: datetime) -> StreakRecord:
        """Mark today's dose taken, stop pending follow-ups and update the streak.

        Raises:
            UnauthenticatedError: If no subject id is supplied
            NotFoundError: If the medication does not exist or is not the subject's
            AlreadyTakenError: If a dose was already marked taken today
            StoreError: On store failure
        """
        if not subject_id:
            raise UnauthenticatedError("User must be authenticated")
        when = as_utc(when)
        day = local_date(when, self.tz)

        medication = await self.store.get_medication(medication_id)
        if medication is None or medication.user_id != subject_id:
            raise NotFoundError(f"Medication {medication_id} not found")

        if await self.store.query_taken_today(subject_id, medication_id, day):
            raise AlreadyTakenError(subject_id, medication_id, day)

        # Streak first: a same-day repeat is a no-op, so if the taken record
        # below fails the caller can retry without losing the increment
        streak = await self.streaks.record_taken(subject_id, medication_id, when)

        await self.store.write_taken_record(ReminderRecord(
            user_id=subject_id,
            medication_id=medication_id,
            medication_name=medication.name,
            dosage=medication.dosage,
            date=day,
            status=ReminderStatus.TAKEN,
            created_at=when,
            taken_at=when,
        ))
        await self.store.deactivate_for_day(medication_id, day, when)

        # Any date: a dose taken after midnight also answers last night's chain
        cancelled = self.follow_ups.cancel(subject_id, medication_id)
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending follow-up chain(s) for {medication_id}")

        logger.info(f"Medication marked as taken for user {subject_id}")

        await self.events.emit(STREAK_UPDATED, streak)
        return streak

    async def on_day_rollover(self, now: datetime) -> int:
        """Clear the ledger and reactivate entries taken on earlier days.

        Returns:
            int: Number of medications reactivated
        """
        self.ledger.clear()
        count = await self.store.reactivate_medications(local_date(now, self.tz))
        logger.info(f"Daily reset: reactivated {count} medication(s)")
        return count

    async def send_manual_reminder(self, subject_id: str, medication_id: str, now: datetime) -> DeliveryReceipt:
        """Send a primary reminder right away, outside the sweep.

        Raises:
            NotFoundError: If the medication or user does not exist
            DeliveryError: If the transport rejects the message
        """
        medication = await self.store.get_medication(medication_id)
        if medication is None or medication.user_id != subject_id:
            raise NotFoundError(f"Medication {medication_id} not found")

        subject = await self.store.get_user(subject_id)
        if subject is None:
            raise NotFoundError(f"User {subject_id} not found")

        receipt = await self.dispatcher.send_reminder(subject, medication, minute_key(now, self.tz))
        logger.info(f"Manual reminder sent for {medication.name}")
        return receipt
