"""Background Worker for MedLove Reminder Service.

This module runs the reminder scheduler on an asyncio loop.

The worker:
- Sweeps for due medications every WORKER_CHECK_INTERVAL seconds, aligned to
  wall-clock multiples of the interval (so a 5 minute interval ticks at :00,
  :05, :10 ...), plus once immediately at startup
- Wakes in between to send follow-up reminders as soon as they are due
- Clears the dedup ledger and reactivates taken medications at local midnight,
  recomputing the next midnight each time it fires, and once at startup
- Logs errors and keeps running
"""

import asyncio
import math
import signal
import sys
from datetime import datetime, timedelta, timezone

import database
from config import settings
from ledger import next_midnight
from logger_config import setup_core_loggers, setup_logger
from services import build_scheduler

# Configure logging
logger = setup_logger(__name__, 'worker.log')
setup_core_loggers('worker.log')

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_sweep_at(now: datetime, interval: timedelta) -> datetime:
    """The next wall-clock multiple of `interval` strictly after `now`."""
    step = interval.total_seconds()
    slot = math.floor(now.timestamp() / step) + 1
    return datetime.fromtimestamp(slot * step, tz=timezone.utc)


def next_wake_at(next_sweep: datetime, next_reset: datetime, next_follow_up) -> datetime:
    candidates = [next_sweep, next_reset]
    if next_follow_up is not None:
        candidates.append(next_follow_up)
    return min(candidates)


async def worker_loop(scheduler, clock=utcnow):
    """Main worker loop that runs until a shutdown signal arrives.

    Args:
        scheduler: ReminderScheduler to drive
        clock: Callable returning the current aware datetime
    """
    config = scheduler.config
    logger.info("Background worker started")
    logger.info(f"Worker enabled: {settings.WORKER_ENABLED}")
    logger.info(f"Check interval: {config.sweep_interval.total_seconds():.0f} seconds")
    logger.info(f"Follow-up delay: {config.follow_up_delay}, max follow-ups: {config.max_follow_ups}")
    logger.info(f"Timezone: {config.timezone}")

    if not settings.WORKER_ENABLED:
        logger.warning("Worker is disabled in configuration. Exiting.")
        return

    now = clock()
    # Catch up on a midnight reset missed while the worker was down;
    # this clears the ledger, so it runs before the rebuild
    await scheduler.on_day_rollover(now)
    await scheduler.start(now)
    next_sweep = now
    next_reset = next_midnight(now, config.timezone)

    iteration = 0
    while not shutdown_requested:
        try:
            iteration += 1
            now = clock()
            logger.debug(f"Worker iteration {iteration} started")

            if now >= next_reset:
                await scheduler.on_day_rollover(now)
                next_reset = next_midnight(now, config.timezone)

            if now >= next_sweep:
                result = await scheduler.on_tick(now)
                next_sweep = next_sweep_at(now, config.sweep_interval)
                if result.dispatched or result.follow_ups_sent:
                    logger.info(
                        f"Sweep at {now.isoformat()}: {result.dispatched} reminder(s), "
                        f"{result.follow_ups_sent} follow-up(s)"
                    )
            else:
                await scheduler.run_follow_ups(now)

            wake = next_wake_at(next_sweep, next_reset, scheduler.next_follow_up_at())
            seconds = max((wake - clock()).total_seconds(), 0.0)

            # Break sleep into 1-second intervals to allow quick shutdown
            for _ in range(math.ceil(seconds)):
                if shutdown_requested:
                    break
                await asyncio.sleep(1)

        except Exception as e:
            logger.error(f"Error in worker loop iteration {iteration}: {str(e)}", exc_info=True)
            # Continue running even if an error occurs
            await asyncio.sleep(5)

    logger.info("Background worker shutting down gracefully")


def main():
    """Main entry point for the background worker."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("=" * 60)
    logger.info("MedLove Reminder Service - Background Worker")
    logger.info("=" * 60)

    try:
        database.init_db(database.engine)
        scheduler = build_scheduler(settings, database.SessionLocal)
        asyncio.run(worker_loop(scheduler))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error(f"Fatal error in background worker: {str(e)}", exc_info=True)
        sys.exit(1)

    logger.info("Background worker stopped")
    sys.exit(0)


if __name__ == "__main__":
    main()
