"""Onboarding domain - reminders for clients who have not finished onboarding.

Polls onboarding records on a timer and emails a reminder at each elapsed
threshold (24 hours, 3 days, 7 days by default) until the client has both
completed the credit report and signed the documents.
"""

from .evaluator import OnboardingRecord, Threshold, decide, load_thresholds
from .errors import MalformedRecordError, StoreUnavailableError, ThresholdConfigError
from .record_store import SqliteRecordStore
from .scheduler import CycleReport, ReminderScheduler
from .sender import SmtpReminderSender
from .supabase_store import SupabaseRecordStore

__all__ = [
    "OnboardingRecord",
    "Threshold",
    "decide",
    "load_thresholds",
    "MalformedRecordError",
    "StoreUnavailableError",
    "ThresholdConfigError",
    "SqliteRecordStore",
    "SupabaseRecordStore",
    "SmtpReminderSender",
    "CycleReport",
    "ReminderScheduler",
]
