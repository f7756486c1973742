"""Exceptions raised by the MedLove reminder core.

Adapters translate library errors (httpx, smtplib, SQLAlchemy) into these at
their boundary so the scheduler only ever handles this taxonomy.
"""


class ReminderServiceError(Exception):
    """Base class for service errors."""


class DeliveryError(ReminderServiceError):
    """The email transport rejected or timed out sending a message."""

    def __init__(self, message: str, to_address: str = None):
        super().__init__(message)
        self.to_address = to_address


class StoreError(ReminderServiceError):
    """A read or write against the store failed for a transient reason."""


class NotFoundError(ReminderServiceError):
    """A user or medication referenced by an operation does not exist."""


class UnauthenticatedError(ReminderServiceError):
    """A request arrived without a valid subject identity."""


class AlreadyTakenError(ReminderServiceError):
    """A dose was already marked taken for this medication today."""

    def __init__(self, user_id: str, medication_id: str, day):
        super().__init__(f"Medication {medication_id} already taken on {day}")
        self.user_id = user_id
        self.medication_id = medication_id
        self.day = day
