"""Reminder decision logic.

Pure functions only: given a record, the configured thresholds and the
current time, work out which reminders are due. No store, no sender, no
clock reads - the scheduler supplies ``now``.

A reminder is due when the record is still onboarding, enough time has
passed since creation, and the threshold id is not already in the record's
``reminders_sent`` set. The set is the only memory of what was sent, so
repeated or delayed polls can never send the same threshold twice.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .errors import MalformedRecordError, ThresholdConfigError


@dataclass(frozen=True, order=True)
class Threshold:
    """Elapsed time after creation at which a reminder becomes due."""
    id: str = field(compare=False)
    elapsed: timedelta


@dataclass
class OnboardingRecord:
    """The slice of a client's onboarding state the scheduler needs."""
    id: str
    created_at: Optional[datetime]
    credit_report_completed: bool
    documents_signed: bool
    destination: Optional[str]
    reminders_sent: frozenset = frozenset()
    name: Optional[str] = None


_DURATION_RE = re.compile(r"^\s*(\d+)\s*([mhdw])\s*$", re.IGNORECASE)
_UNITS = {"m": "minutes", "h": "hours", "d": "days", "w": "weeks"}
_LABELS = {"m": "minute", "h": "hour", "d": "day", "w": "week"}


def parse_duration(text: str) -> timedelta:
    """Parse a duration token such as ``"24h"`` or ``"3d"``."""
    match = _DURATION_RE.match(text or "")
    if not match:
        raise ThresholdConfigError(f"Invalid threshold duration: {text!r}")
    amount, unit = int(match.group(1)), match.group(2).lower()
    if amount <= 0:
        raise ThresholdConfigError(f"Threshold duration must be positive: {text!r}")
    return timedelta(**{_UNITS[unit]: amount})


def load_thresholds(spec: str) -> list[Threshold]:
    """Build the ascending threshold list from a comma separated spec.

    Args:
        spec: e.g. ``"24h,3d,7d"``. Each token is both the duration and the id.

    Returns:
        Thresholds sorted by elapsed time, shortest first

    Raises:
        ThresholdConfigError: empty spec, bad token, or duplicate id/duration
    """
    tokens = [t.strip().lower() for t in (spec or "").split(",") if t.strip()]
    if not tokens:
        raise ThresholdConfigError("At least one reminder threshold is required")

    thresholds = [Threshold(elapsed=parse_duration(t), id=t) for t in tokens]

    ids = [t.id for t in thresholds]
    if len(set(ids)) != len(ids):
        raise ThresholdConfigError(f"Duplicate threshold ids in {spec!r}")
    durations = [t.elapsed for t in thresholds]
    if len(set(durations)) != len(durations):
        raise ThresholdConfigError(f"Duplicate threshold durations in {spec!r}")

    return sorted(thresholds)


def describe_threshold(threshold: Threshold) -> str:
    """Human label for a threshold id, e.g. ``"3d"`` -> ``"3 days"``."""
    match = _DURATION_RE.match(threshold.id)
    if not match:
        return threshold.id
    amount, unit = int(match.group(1)), _LABELS[match.group(2).lower()]
    return f"{amount} {unit}" if amount == 1 else f"{amount} {unit}s"


def is_terminal(record: OnboardingRecord) -> bool:
    """True once both onboarding steps are done. Terminal records get nothing."""
    return bool(record.credit_report_completed and record.documents_signed)


def validate_record(record: OnboardingRecord, now: datetime) -> None:
    """Reject records the scheduler must not act on.

    Raises:
        MalformedRecordError: missing destination, missing or naive
            ``created_at``, or ``created_at`` later than ``now``
    """
    if not record.destination or not str(record.destination).strip():
        raise MalformedRecordError(record.id, "missing destination")
    _check_created_at(record, now)


def _check_created_at(record: OnboardingRecord, now: datetime) -> None:
    if record.created_at is None:
        raise MalformedRecordError(record.id, "missing created_at")
    if record.created_at.tzinfo is None:
        raise MalformedRecordError(record.id, "created_at has no timezone")
    if record.created_at > now:
        raise MalformedRecordError(
            record.id, f"created_at {record.created_at.isoformat()} is in the future"
        )


def decide(record: OnboardingRecord, thresholds: Iterable[Threshold], now: datetime) -> list[Threshold]:
    """Return the thresholds whose reminder is due for ``record`` at ``now``.

    Every reached threshold not yet in ``reminders_sent`` is returned, in
    ascending order, so a scheduler that was down for days sees the whole
    backlog. Choosing how much of it to send is the caller's job.

    Raises:
        MalformedRecordError: ``created_at`` is missing or after ``now``
    """
    _check_created_at(record, now)

    if is_terminal(record):
        return []

    elapsed = now - record.created_at
    return [
        threshold
        for threshold in sorted(thresholds)
        if elapsed >= threshold.elapsed and threshold.id not in record.reminders_sent
    ]
