"""Builds the reminder core from settings.

Each process (API, MCP server, worker) calls `build_scheduler` once at
startup and passes the result around explicitly.
"""

from sqlalchemy.orm import sessionmaker

from notifier import NotificationDispatcher, build_transport
from scheduler import ReminderScheduler, SchedulerConfig
from store import MedicationStore


def build_scheduler(settings, session_factory: sessionmaker, transport=None) -> ReminderScheduler:
    """Wire store, dispatcher and scheduler together.

    Args:
        settings: config.Settings instance
        session_factory: SQLAlchemy sessionmaker for the store
        transport: Optional email transport overriding settings.EMAIL_TRANSPORT
    """
    config = SchedulerConfig.from_settings(settings)
    store = MedicationStore(session_factory)
    dispatcher = NotificationDispatcher(
        transport if transport is not None else build_transport(settings),
        store,
        app_url=settings.APP_URL,
        max_attempts=config.max_attempts,
    )
    return ReminderScheduler(store, dispatcher, config=config)
