"""End-to-end tests for the reminder scheduler against an in-memory database."""

import asyncio
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

import crud
from errors import AlreadyTakenError, NotFoundError, StoreError, UnauthenticatedError
from events import REMINDER_DISPATCHED, STREAK_UPDATED
from store import MedicationStore

DAY = date(2025, 3, 10)
T0 = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)


def minutes(n):
    return T0 + timedelta(minutes=n)


def reminder_logs(session_factory, day=DAY):
    with session_factory() as db:
        return crud.get_logs_for_date(db, day, "reminder_sent")


def test_due_medication_gets_one_reminder(scheduler, transport, session_factory, make_user, make_medication):
    make_user()
    make_medication(times=["08:00"])

    result = asyncio.run(scheduler.on_tick(T0))

    assert result.dispatched == 1
    assert transport.subjects() == ["\U0001F48A Time for Vitamin D!"]
    assert len(reminder_logs(session_factory)) == 1

    user = asyncio.run(scheduler.store.get_user("user-1"))
    assert user.notification_count == 1
    assert user.last_notification_sent is not None


def test_second_tick_in_same_minute_sends_nothing(scheduler, transport, session_factory,
                                                  make_user, make_medication):
    make_user()
    make_medication(times=["08:00"])

    asyncio.run(scheduler.on_tick(T0))
    result = asyncio.run(scheduler.on_tick(T0 + timedelta(seconds=30)))

    assert result.dispatched == 0
    assert len(transport.sent) == 1
    [log] = reminder_logs(session_factory)
    assert log.scheduled_time == "08:00"
    assert log.date == DAY
    assert log.status.value == "reminder_sent"


def test_restarted_scheduler_does_not_resend(make_scheduler, transport, make_user, make_medication):
    make_user()
    make_medication(times=["08:00"])
    asyncio.run(make_scheduler().on_tick(T0))

    restarted = make_scheduler()
    asyncio.run(restarted.start(T0 + timedelta(seconds=20)))
    assert len(restarted.ledger) == 1

    result = asyncio.run(restarted.on_tick(T0 + timedelta(seconds=40)))
    assert result.dispatched == 0

    # Even with an empty ledger the persisted record blocks a second send
    cold = make_scheduler()
    assert asyncio.run(cold.on_tick(T0 + timedelta(seconds=50))).dispatched == 0
    assert len(transport.sent) == 1


def test_not_due_and_inactive_medications_are_skipped(scheduler, transport, make_user, make_medication):
    make_user()
    make_medication(times=["09:00"])
    make_medication(times=["08:00"], name="Paused", is_active=False)
    make_medication(times=["08:00"], name="Later", start_date=date(2025, 3, 11))
    make_medication(times=["08:00"], name="Finished", end_date=date(2025, 3, 9))

    assert asyncio.run(scheduler.on_tick(T0)).dispatched == 0
    assert transport.sent == []


def test_follow_ups_escalate_to_four_notifications(scheduler, transport, make_user, make_medication):
    make_user()
    make_medication(times=["08:00"])

    asyncio.run(scheduler.on_tick(T0))
    sent_follow_ups = 0
    for n in (15, 30, 45, 60, 75, 90):
        sent_follow_ups += asyncio.run(scheduler.run_follow_ups(minutes(n)))

    assert sent_follow_ups == 3
    assert transport.subjects() == [
        "\U0001F48A Time for Vitamin D!",
        "⏰ Gentle Reminder: Vitamin D (2nd reminder)",
        "⏰ Gentle Reminder: Vitamin D (3rd reminder)",
        "⏰ Gentle Reminder: Vitamin D (4th reminder)",
    ]
    assert len(scheduler.follow_ups) == 0
    assert scheduler.next_follow_up_at() is None


def test_follow_up_waits_for_delay(scheduler, transport, make_user, make_medication):
    make_user()
    make_medication(times=["08:00"])

    asyncio.run(scheduler.on_tick(T0))
    assert scheduler.next_follow_up_at() == minutes(15)
    assert asyncio.run(scheduler.run_follow_ups(minutes(14))) == 0
    assert asyncio.run(scheduler.run_follow_ups(minutes(15))) == 1


def test_taken_dose_cancels_follow_ups(scheduler, transport, make_user, make_medication):
    make_user()
    med_id = make_medication(times=["08:00"])

    asyncio.run(scheduler.on_tick(T0))
    streak = asyncio.run(scheduler.on_dose_taken("user-1", med_id, minutes(5)))

    assert streak.current_streak == 1
    assert len(scheduler.follow_ups) == 0
    for n in (15, 30, 45):
        assert asyncio.run(scheduler.run_follow_ups(minutes(n))) == 0
    assert len(transport.sent) == 1


def test_taken_record_from_elsewhere_stops_due_follow_up(scheduler, transport, session_factory,
                                                        make_user, make_medication):
    make_user()
    med_id = make_medication(times=["08:00"])
    asyncio.run(scheduler.on_tick(T0))

    # Taken through another process; this scheduler's queue never heard of it
    with session_factory() as db:
        crud.create_log(db, {
            "user_id": "user-1", "medication_id": med_id, "date": DAY,
            "status": "taken", "taken_at": minutes(10),
        })

    assert asyncio.run(scheduler.run_follow_ups(minutes(15))) == 0
    assert len(scheduler.follow_ups) == 0
    assert len(transport.sent) == 1


def test_dose_taken_after_midnight_cancels_late_evening_chain(scheduler, transport,
                                                              make_user, make_medication):
    make_user()
    med_id = make_medication(times=["23:50"])
    late = datetime(2025, 3, 10, 23, 50, tzinfo=timezone.utc)
    assert asyncio.run(scheduler.on_tick(late)).dispatched == 1

    asyncio.run(scheduler.on_dose_taken("user-1", med_id, late + timedelta(minutes=10)))

    assert len(scheduler.follow_ups) == 0
    assert asyncio.run(scheduler.run_follow_ups(late + timedelta(minutes=15))) == 0
    assert len(transport.sent) == 1


def test_taken_record_after_midnight_stops_late_evening_follow_up(scheduler, transport, session_factory,
                                                                 make_user, make_medication):
    make_user()
    med_id = make_medication(times=["23:50"])
    late = datetime(2025, 3, 10, 23, 50, tzinfo=timezone.utc)
    asyncio.run(scheduler.on_tick(late))

    with session_factory() as db:
        crud.create_log(db, {
            "user_id": "user-1", "medication_id": med_id, "date": date(2025, 3, 11),
            "status": "taken", "taken_at": late + timedelta(minutes=10),
        })

    assert asyncio.run(scheduler.run_follow_ups(late + timedelta(minutes=15))) == 0
    assert len(scheduler.follow_ups) == 0
    assert len(transport.sent) == 1


def test_failed_follow_up_does_not_cancel_the_next(scheduler, transport, make_user, make_medication):
    make_user()
    med_id = make_medication(times=["08:00"])
    asyncio.run(scheduler.on_tick(T0))

    transport.fail_all = True
    assert asyncio.run(scheduler.run_follow_ups(minutes(15))) == 0
    chain = scheduler.follow_ups.get(("user-1", med_id, DAY, "08:00"))
    assert chain.failures == [2]

    transport.fail_all = False
    assert asyncio.run(scheduler.run_follow_ups(minutes(30))) == 1
    assert transport.subjects()[-1] == "⏰ Gentle Reminder: Vitamin D (3rd reminder)"


def test_unexpected_follow_up_error_keeps_every_chain(scheduler, transport, make_user, make_medication):
    make_user()
    first = make_medication(times=["08:00"])
    second = make_medication(times=["08:00"], name="Omega 3")
    asyncio.run(scheduler.on_tick(T0))
    assert len(scheduler.follow_ups) == 2

    transport.raise_error = AttributeError("'list' object has no attribute 'get'")
    assert asyncio.run(scheduler.run_follow_ups(minutes(15))) == 0

    assert len(scheduler.follow_ups) == 2
    for med_id in (first, second):
        assert scheduler.follow_ups.get(("user-1", med_id, DAY, "08:00")).failures == [2]

    transport.raise_error = None
    assert asyncio.run(scheduler.run_follow_ups(minutes(30))) == 2


def test_failed_primary_reminder_ends_the_chain(scheduler, transport, session_factory,
                                                make_user, make_medication):
    make_user()
    make_medication(times=["08:00"])
    transport.fail_all = True

    result = asyncio.run(scheduler.on_tick(T0))

    assert result.dispatched == 0
    assert len(scheduler.follow_ups) == 0
    assert len(reminder_logs(session_factory)) == 1
    assert asyncio.run(scheduler.store.get_user("user-1")).notification_count == 0


def test_one_failing_subject_does_not_stop_the_batch(scheduler, transport, make_user, make_medication):
    make_user("user-1", "broken@example.com")
    make_user("user-2", "ok@example.com")
    make_medication("user-1", times=["08:00"])
    make_medication("user-2", times=["08:00"])
    transport.failing.add("broken@example.com")

    result = asyncio.run(scheduler.on_tick(T0))

    assert result.dispatched == 1
    assert [to for to, _, _ in transport.sent] == ["ok@example.com"]


class FailingRecordStore(MedicationStore):
    """Store whose next `failures` reminder writes raise StoreError."""

    def __init__(self, session_factory, failures=1):
        super().__init__(session_factory)
        self.failures = failures

    async def write_reminder_record(self, record):
        if self.failures:
            self.failures -= 1
            raise StoreError("database is locked")
        return await super().write_reminder_record(record)


def test_record_write_failure_fails_closed(make_scheduler, transport, session_factory,
                                           make_user, make_medication):
    make_user()
    make_medication(times=["08:00"])
    scheduler = make_scheduler(store=FailingRecordStore(session_factory))

    assert asyncio.run(scheduler.on_tick(T0)).dispatched == 0
    assert transport.sent == []
    assert len(scheduler.ledger) == 0

    # The claim was released, so the next tick in the window retries
    assert asyncio.run(scheduler.on_tick(T0 + timedelta(seconds=30))).dispatched == 1
    assert len(transport.sent) == 1


class FailingTakenStore(MedicationStore):
    """Store whose next `failures` taken-record writes raise StoreError."""

    def __init__(self, session_factory, failures=1):
        super().__init__(session_factory)
        self.failures = failures

    async def write_taken_record(self, record):
        if self.failures:
            self.failures -= 1
            raise StoreError("database is locked")
        return await super().write_taken_record(record)


def test_dose_taken_retry_after_store_failure_counts_once(make_scheduler, session_factory,
                                                          make_user, make_medication):
    make_user()
    med_id = make_medication()
    failing_store = FailingTakenStore(session_factory)
    scheduler = make_scheduler(store=failing_store)

    with pytest.raises(StoreError):
        asyncio.run(scheduler.on_dose_taken("user-1", med_id, T0))
    assert asyncio.run(failing_store.query_taken_today("user-1", med_id, DAY)) is False

    streak = asyncio.run(scheduler.on_dose_taken("user-1", med_id, minutes(1)))

    assert (streak.current_streak, streak.longest_streak) == (1, 1)
    assert asyncio.run(failing_store.query_taken_today("user-1", med_id, DAY)) is True
    assert asyncio.run(failing_store.get_medication(med_id)).is_active is False


def test_dose_taken_validations(scheduler, make_user, make_medication):
    make_user("user-1")
    make_user("user-2", "other@example.com")
    med_id = make_medication("user-1")

    with pytest.raises(UnauthenticatedError):
        asyncio.run(scheduler.on_dose_taken("", med_id, T0))
    with pytest.raises(NotFoundError):
        asyncio.run(scheduler.on_dose_taken("user-2", med_id, T0))
    with pytest.raises(NotFoundError):
        asyncio.run(scheduler.on_dose_taken("user-1", "no-such-med", T0))

    asyncio.run(scheduler.on_dose_taken("user-1", med_id, T0))
    with pytest.raises(AlreadyTakenError):
        asyncio.run(scheduler.on_dose_taken("user-1", med_id, minutes(60)))


def test_taken_medication_is_skipped_until_rollover(scheduler, transport, make_user, make_medication):
    make_user()
    med_id = make_medication(times=["08:00"])
    asyncio.run(scheduler.on_dose_taken("user-1", med_id, minutes(-60)))

    medication = asyncio.run(scheduler.store.get_medication(med_id))
    assert medication.is_active is False
    assert medication.taken_on_date == DAY

    assert asyncio.run(scheduler.on_tick(T0)).dispatched == 0

    next_midnight = datetime(2025, 3, 11, 0, 0, tzinfo=timezone.utc)
    assert asyncio.run(scheduler.on_day_rollover(next_midnight)) == 1
    assert asyncio.run(scheduler.store.get_medication(med_id)).is_active is True

    next_morning = datetime(2025, 3, 11, 8, 0, tzinfo=timezone.utc)
    assert asyncio.run(scheduler.on_tick(next_morning)).dispatched == 1
    assert len(transport.sent) == 1


def test_rollover_leaves_user_disabled_medications_alone(scheduler, make_user, make_medication):
    make_user()
    med_id = make_medication(is_active=False)

    scheduler.ledger.mark_sent("user-1", med_id, DAY, "08:00")
    assert asyncio.run(scheduler.on_day_rollover(datetime(2025, 3, 11, tzinfo=timezone.utc))) == 0
    assert len(scheduler.ledger) == 0
    assert asyncio.run(scheduler.store.get_medication(med_id)).is_active is False


def test_consecutive_days_build_streak(scheduler, make_user, make_medication):
    make_user()
    med_id = make_medication()

    for day in (10, 11, 12):
        when = datetime(2025, 3, day, 9, 0, tzinfo=timezone.utc)
        asyncio.run(scheduler.on_day_rollover(when.replace(hour=0)))
        streak = asyncio.run(scheduler.on_dose_taken("user-1", med_id, when))

    assert (streak.current_streak, streak.longest_streak) == (3, 3)


def test_local_timezone_drives_matching_and_dates(make_scheduler, transport, session_factory,
                                                  make_user, make_medication):
    make_user()
    make_medication(times=["23:30"])
    scheduler = make_scheduler(timezone=ZoneInfo("America/New_York"))

    # 03:30 UTC on the 11th is 23:30 EDT on the 10th
    now = datetime(2025, 3, 11, 3, 30, tzinfo=timezone.utc)
    assert asyncio.run(scheduler.on_tick(now)).dispatched == 1
    assert len(reminder_logs(session_factory, DAY)) == 1


def test_events_are_emitted(scheduler, make_user, make_medication):
    make_user()
    med_id = make_medication(times=["08:00"])
    seen = []
    scheduler.events.subscribe(REMINDER_DISPATCHED, lambda payload: seen.append(("sent", payload)))

    async def on_streak(payload):
        seen.append(("streak", payload))

    scheduler.events.subscribe(STREAK_UPDATED, on_streak)

    asyncio.run(scheduler.on_tick(T0))
    asyncio.run(scheduler.on_dose_taken("user-1", med_id, minutes(1)))

    assert [kind for kind, _ in seen] == ["sent", "streak"]
    assert seen[0][1]["attempt"] == 1
    assert seen[0][1]["scheduled_time"] == "08:00"
    assert seen[1][1].current_streak == 1


def test_manual_reminder(scheduler, transport, make_user, make_medication):
    make_user()
    med_id = make_medication(times=["20:00"])

    receipt = asyncio.run(scheduler.send_manual_reminder("user-1", med_id, T0))

    assert receipt.to_address == "jane@example.com"
    assert len(transport.sent) == 1
    with pytest.raises(NotFoundError):
        asyncio.run(scheduler.send_manual_reminder("user-2", med_id, T0))
