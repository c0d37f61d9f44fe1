"""Circuit breaker for the reminder sender.

When the mail server is down every send in a cycle would fail after its own
timeout, stretching the cycle past its budget. The breaker trips after a run
of consecutive failed sends; while it is open the scheduler defers the rest
of the cycle's reminders (nothing is marked, they stay due) instead of
waiting on a dead server.

States:
- CLOSED: sends go through
- OPEN: sends are deferred without touching the network
- HALF_OPEN: cool-down elapsed, one trial send allowed

Transitions:
- CLOSED → OPEN: ``failure_threshold`` consecutive failed sends
- OPEN → HALF_OPEN: ``recovery_timeout`` seconds after tripping
- HALF_OPEN → CLOSED: trial send accepted
- HALF_OPEN → OPEN: trial send failed

All calls come from the scheduler's event loop, so there is no locking.
"""

import time
from enum import Enum
from typing import Callable, Optional

from logger import logger
from . import config


class CircuitState(Enum):
    """Breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Tracks sender health across record workers and cycles.

    Usage:
        if not breaker.allow_request():
            ...  # defer, reminder stays due
        elif await sender.send(...):
            breaker.record_success()
        else:
            breaker.record_failure()
    """

    def __init__(
        self,
        failure_threshold: Optional[int] = None,
        recovery_timeout: Optional[float] = None,
        name: str = "sender",
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            failure_threshold: Consecutive failed sends that trip the breaker
            recovery_timeout: Seconds to wait before a trial send
            name: Label used in log lines
            clock: Monotonic seconds source
        """
        self.failure_threshold = config.CIRCUIT_FAILURE_THRESHOLD if failure_threshold is None else failure_threshold
        self.recovery_timeout = config.CIRCUIT_RECOVERY_TIMEOUT if recovery_timeout is None else recovery_timeout
        self.name = name
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        """Back to CLOSED with empty counters."""
        self._state = CircuitState.CLOSED
        self._streak = 0
        self._tripped_at: Optional[float] = None
        self._trial_pending = False
        self._accepted = 0
        self._failed = 0
        self._trips = 0

    @property
    def state(self) -> CircuitState:
        self._maybe_half_open()
        return self._state

    def _maybe_half_open(self) -> None:
        if self._state is not CircuitState.OPEN:
            return
        if self._clock() - self._tripped_at >= self.recovery_timeout:
            self._state = CircuitState.HALF_OPEN
            self._trial_pending = False
            logger.info(f"Circuit [{self.name}]: cool-down over, allowing one trial send")

    def allow_request(self) -> bool:
        """May a reminder be handed to the sender now?

        HALF_OPEN lets exactly one trial through; other record workers are
        deferred until its outcome is known.
        """
        state = self.state
        if state is CircuitState.HALF_OPEN and not self._trial_pending:
            self._trial_pending = True
            return True
        return state is CircuitState.CLOSED

    def record_success(self) -> None:
        self._accepted += 1
        self._streak = 0
        if self._state is CircuitState.HALF_OPEN:
            self._state = CircuitState.CLOSED
            self._tripped_at = None
            self._trial_pending = False
            logger.info(f"Circuit [{self.name}]: trial send accepted, sender recovered")

    def record_failure(self) -> None:
        self._failed += 1
        self._streak += 1
        if self._state is CircuitState.HALF_OPEN:
            self._trip()
            logger.warning(f"Circuit [{self.name}]: trial send failed, deferring sends again")
        elif self._state is CircuitState.CLOSED and self._streak >= self.failure_threshold:
            self._trip()
            logger.warning(
                f"Circuit [{self.name}]: {self._streak} sends failed in a row, "
                f"deferring sends for {self.recovery_timeout}s"
            )

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._tripped_at = self._clock()
        self._trial_pending = False
        self._trips += 1

    def get_stats(self) -> dict:
        """Counters for the cycle log."""
        state = self.state
        open_for = None
        if state is not CircuitState.CLOSED and self._tripped_at is not None:
            open_for = int(self._clock() - self._tripped_at)
        return {
            "state": state.value,
            "consecutive_failures": self._streak,
            "failure_threshold": self.failure_threshold,
            "sends_accepted": self._accepted,
            "sends_failed": self._failed,
            "trips": self._trips,
            "open_for_seconds": open_for,
        }
