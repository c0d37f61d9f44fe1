"""Onboarding reminder scheduler.

Owns the polling timer and the cycle body:

1. fetch records still onboarding from the store
2. ask the evaluator which thresholds are due for each record
3. send each due reminder, oldest threshold first
4. mark the threshold sent in the store, only after the sender accepted it

Cycles never overlap. Each cycle runs under a time budget; work cut off by
the budget is picked up again next cycle. A send and the write that records
it run together in their own task, shielded from cycle cancellation: a
budget cut-off or ``stop()`` waits for the pair rather than splitting it.
If the write itself fails, the reminder stays due and goes out again next
cycle.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from logger import logger
from utils import mask_destination, sanitize_for_log
from . import config
from .circuit_breaker import CircuitBreaker
from .errors import MalformedRecordError, StoreUnavailableError
from .evaluator import (
    OnboardingRecord,
    Threshold,
    decide,
    describe_threshold,
    load_thresholds,
    validate_record,
)
from .sender import next_step_path, resolve_url


class RecordStore(Protocol):
    async def fetch_active_records(self) -> list[OnboardingRecord]: ...

    async def mark_reminder_sent(self, record_id: str, threshold_id: str) -> bool: ...


class ReminderSender(Protocol):
    async def send(self, destination: str, threshold_id: str, params: dict) -> bool: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CycleReport:
    """What one cycle did. Counters survive a budget cut-off."""
    started_at: Optional[datetime] = None
    duration: float = 0.0
    fetched: int = 0
    dispatched: int = 0
    failed: int = 0
    deferred: int = 0
    malformed: int = 0
    persist_failed: int = 0
    errors: int = 0
    store_error: Optional[str] = None
    timed_out: bool = False
    skipped: bool = False
    sent: list[tuple[str, str]] = field(default_factory=list)

    def summary(self) -> str:
        if self.skipped:
            return "skipped (previous cycle still running)"
        if self.store_error:
            return f"store unavailable: {self.store_error}"
        text = (
            f"fetched={self.fetched}, dispatched={self.dispatched}, failed={self.failed}, "
            f"deferred={self.deferred}, malformed={self.malformed}, "
            f"persist_failed={self.persist_failed}, errors={self.errors}, "
            f"duration={self.duration:.1f}s"
        )
        return f"{text} (budget exceeded)" if self.timed_out else text


class ReminderScheduler:
    """Periodic driver for onboarding reminders.

    Usage:
        reminders = ReminderScheduler(store, sender)
        reminders.start()          # first cycle runs immediately
        ...
        await reminders.stop()
    """

    def __init__(
        self,
        store: RecordStore,
        sender: ReminderSender,
        thresholds: Optional[list[Threshold]] = None,
        *,
        poll_interval: Optional[float] = None,
        cycle_budget: Optional[float] = None,
        stop_timeout: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        backlog_policy: Optional[str] = None,
        circuit: Optional[CircuitBreaker] = None,
        clock: Callable[[], datetime] = _utcnow,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.store = store
        self.sender = sender
        self.thresholds = sorted(thresholds) if thresholds else load_thresholds(config.THRESHOLDS_SPEC)
        self.poll_interval = poll_interval or config.POLL_INTERVAL_SECONDS
        self.cycle_budget = cycle_budget or config.CYCLE_BUDGET_SECONDS
        self.stop_timeout = config.STOP_TIMEOUT_SECONDS if stop_timeout is None else stop_timeout
        self.max_concurrency = max_concurrency or config.MAX_CONCURRENT_RECORDS
        self.backlog_policy = (backlog_policy or config.BACKLOG_POLICY).lower()
        if self.backlog_policy not in config.BACKLOG_POLICIES:
            raise ValueError(f"Unknown backlog policy {self.backlog_policy!r}, expected one of {config.BACKLOG_POLICIES}")
        self.circuit = circuit or CircuitBreaker(name="reminder-sender")
        self._clock = clock
        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)

        self._cycle_task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()
        self._record_locks: dict[str, asyncio.Lock] = {}
        self._started = False
        self.last_report: Optional[CycleReport] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._started

    def start(self, poll_interval: Optional[float] = None) -> "ReminderScheduler":
        """Register the polling job and start the timer.

        Must be called from inside a running event loop. The first cycle runs
        immediately, then every ``poll_interval`` seconds. Ticks that arrive
        while a cycle is still running are dropped (``max_instances=1``) and
        missed ticks collapse into one (``coalesce=True``).

        Returns:
            This scheduler, as the handle to ``stop()``
        """
        if self._started:
            raise RuntimeError("Reminder scheduler already started")

        if poll_interval:
            self.poll_interval = poll_interval

        self._scheduler.add_job(
            self.run_cycle,
            'interval',
            seconds=self.poll_interval,
            id=config.JOB_ID,
            name="onboarding reminders",
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,  # Prevent overlapping runs
            coalesce=True,    # Combine missed runs
            replace_existing=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()
        self._started = True

        logger.info(
            f"Onboarding reminder scheduler started (every {self.poll_interval}s, "
            f"thresholds={[t.id for t in self.thresholds]}, backlog_policy={self.backlog_policy})"
        )
        return self

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the timer and wind down the current cycle.

        The in-flight cycle gets ``timeout`` seconds to finish before it is
        cancelled. Sends already handed to the sender are always awaited
        together with their store write.
        """
        timeout = self.stop_timeout if timeout is None else timeout

        if self._started:
            if self._scheduler.get_job(config.JOB_ID):
                self._scheduler.remove_job(config.JOB_ID)
            if self._owns_scheduler and self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._started = False

        cycle = self._cycle_task
        if cycle is not None and not cycle.done():
            logger.info(f"Waiting up to {timeout}s for the running reminder cycle")
            done, _ = await asyncio.wait({cycle}, timeout=timeout)
            if not done:
                logger.warning("Reminder cycle did not finish before shutdown deadline, cancelling")
                cycle.cancel()
                await asyncio.gather(cycle, return_exceptions=True)

        await self._drain_inflight()
        logger.info("Onboarding reminder scheduler stopped")

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """Run one poll/decide/send/persist cycle.

        Returns immediately with ``skipped=True`` if another cycle is running.
        """
        if self._cycle_task is not None and not self._cycle_task.done():
            logger.warning("Reminder cycle still running, skipping this tick")
            return CycleReport(skipped=True)

        self._cycle_task = asyncio.ensure_future(self._run_budgeted_cycle())
        # Shielded: if the caller is cancelled, the cycle itself carries on
        # and stop() decides how long to wait for it
        return await asyncio.shield(self._cycle_task)

    async def _run_budgeted_cycle(self) -> CycleReport:
        report = CycleReport(started_at=self._clock())
        started = time.monotonic()

        # Finish sends left over from a cycle that was cut off, so the same
        # record is never sent to by two cycles at once
        await self._drain_inflight()

        try:
            await asyncio.wait_for(self._cycle_body(report), timeout=self.cycle_budget)
        except asyncio.TimeoutError:
            report.timed_out = True
            logger.warning(
                f"Reminder cycle exceeded its {self.cycle_budget}s budget; "
                "remaining records will be retried next cycle"
            )

        report.duration = time.monotonic() - started
        self.last_report = report

        if report.store_error:
            logger.error(f"Reminder cycle skipped: {report.summary()}")
        elif report.dispatched or report.failed or report.deferred or report.timed_out:
            logger.info(f"Reminder cycle complete - {report.summary()}")
        else:
            logger.debug(f"Reminder cycle complete - {report.summary()}")
        if report.deferred:
            logger.warning(f"Sender circuit open, {report.deferred} record(s) deferred: {self.circuit.get_stats()}")
        return report

    async def _cycle_body(self, report: CycleReport) -> None:
        try:
            records = await self.store.fetch_active_records()
        except StoreUnavailableError as e:
            report.store_error = str(e)
            return
        except Exception as e:
            logger.exception("Unexpected error fetching onboarding records")
            report.store_error = f"{type(e).__name__}: {sanitize_for_log(str(e))}"
            return

        # After the fetch, so records created while it ran are not in the future
        now = self._clock()

        report.fetched = len(records)
        if not records:
            return

        # One worker per record id
        unique: dict[str, OnboardingRecord] = {}
        for record in records:
            unique.setdefault(record.id, record)
        if len(unique) != len(records):
            logger.warning(f"Store returned {len(records) - len(unique)} duplicate record(s), ignoring repeats")
        records = list(unique.values())

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _guarded(record: OnboardingRecord) -> None:
            async with semaphore:
                await self._process_record(record, now, report)

        await asyncio.gather(*(_guarded(record) for record in records))

        # Drop locks for records nobody is working on
        for record_id, lock in list(self._record_locks.items()):
            if not lock.locked():
                del self._record_locks[record_id]

    async def _process_record(self, record: OnboardingRecord, now: datetime, report: CycleReport) -> None:
        lock = self._record_locks.setdefault(record.id, asyncio.Lock())
        async with lock:
            try:
                await self._process_record_locked(record, now, report)
            except asyncio.CancelledError:
                raise
            except Exception:
                report.errors += 1
                logger.exception(f"Unexpected error processing onboarding record {record.id}")

    async def _process_record_locked(self, record: OnboardingRecord, now: datetime, report: CycleReport) -> None:
        try:
            validate_record(record, now)
            due = decide(record, self.thresholds, now)
        except MalformedRecordError as e:
            report.malformed += 1
            logger.warning(f"Skipping malformed onboarding record: {e}")
            return

        if not due:
            return

        if len(due) > 1:
            logger.info(f"Record {record.id} has {len(due)} overdue reminders: {[t.id for t in due]}")

        # (threshold to send, threshold ids to mark once it is accepted)
        if self.backlog_policy == "latest":
            batch = [(due[-1], [t.id for t in due])]
        else:
            batch = [(threshold, [threshold.id]) for threshold in due]

        for threshold, mark_ids in batch:
            if not self.circuit.allow_request():
                report.deferred += 1
                logger.debug(f"Sender circuit open, deferring reminder {threshold.id} for record {record.id}")
                return

            if not await self._dispatch(record, threshold, mark_ids, report):
                # Later thresholds wait until this one has gone out
                return

    async def _dispatch(
        self,
        record: OnboardingRecord,
        threshold: Threshold,
        mark_ids: list[str],
        report: CycleReport,
    ) -> bool:
        task = asyncio.ensure_future(self._send_and_mark(record, threshold, mark_ids, report))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def _send_and_mark(
        self,
        record: OnboardingRecord,
        threshold: Threshold,
        mark_ids: list[str],
        report: CycleReport,
    ) -> bool:
        """Send one reminder, then record it. Never records an unsent reminder."""
        params = self._template_params(record, threshold)
        destination = mask_destination(record.destination)

        try:
            accepted = await self.sender.send(record.destination, threshold.id, params)
        except Exception as e:
            logger.error(f"Sender raised for reminder {threshold.id} to {destination} (record {record.id}): {sanitize_for_log(str(e))}")
            accepted = False

        if not accepted:
            self.circuit.record_failure()
            report.failed += 1
            logger.warning(f"Reminder {threshold.id} for record {record.id} not sent, will retry next cycle")
            return False

        self.circuit.record_success()

        for threshold_id in mark_ids:
            try:
                marked = await self.store.mark_reminder_sent(record.id, threshold_id)
            except Exception as e:
                logger.error(f"Store raised marking reminder {threshold_id} for record {record.id}: {e}")
                marked = False
            if not marked:
                report.persist_failed += 1
                logger.error(
                    f"Reminder {threshold.id} was sent to {destination} but {threshold_id} could not be "
                    f"recorded for record {record.id}; it will be sent again next cycle"
                )
                return False

        report.dispatched += 1
        report.sent.append((record.id, threshold.id))
        logger.info(f"Sent {threshold.id} onboarding reminder to {destination} (record {record.id})")
        return True

    def _template_params(self, record: OnboardingRecord, threshold: Threshold) -> dict:
        return {
            "name": record.name,
            "threshold_id": threshold.id,
            "threshold_label": describe_threshold(threshold),
            "next_step_url": resolve_url(next_step_path(record.credit_report_completed)),
        }

    async def _drain_inflight(self) -> None:
        if self._inflight:
            logger.info(f"Waiting for {len(self._inflight)} in-flight reminder send(s)")
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
