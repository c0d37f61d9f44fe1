"""Exceptions raised by the onboarding reminder domain."""


class ReminderError(Exception):
    """Base class for reminder scheduling errors."""


class MalformedRecordError(ReminderError):
    """A record cannot be evaluated (missing destination, bad creation time).

    Isolated to the record: the cycle logs it and moves on.
    """

    def __init__(self, record_id: str, reason: str):
        super().__init__(f"Record {record_id}: {reason}")
        self.record_id = record_id
        self.reason = reason


class StoreUnavailableError(ReminderError):
    """The record store could not be read; the whole cycle is skipped."""


class ThresholdConfigError(ReminderError):
    """Threshold configuration is invalid. Raised at startup only."""
