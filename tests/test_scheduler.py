"""Tests for the onboarding reminder scheduler.

Drives ``run_cycle`` directly against the in-memory store and sender from
conftest, moving the fake clock between cycles.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from domains.onboarding import config
from domains.onboarding.circuit_breaker import CircuitBreaker, CircuitState
from domains.onboarding.scheduler import CycleReport
from domains.onboarding.sender import resolve_url
from tests.conftest import T0, make_record


def _sent_thresholds(sender):
    return [threshold_id for _, threshold_id, _ in sender.sent]


class TestSendOnce:
    """Each threshold goes out exactly once per record."""

    @pytest.mark.asyncio
    async def test_second_cycle_sends_nothing(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that a reminder marked in one cycle is not repeated in the next."""
        fake_store.add(make_record())
        clock.set(hours=25)
        reminders = make_scheduler()

        report = await reminders.run_cycle()
        assert report.sent == [("client-1", "24h")]
        assert report.dispatched == 1

        report = await reminders.run_cycle()
        assert report.sent == []
        assert len(fake_sender.sent) == 1
        assert fake_store.marked == [("client-1", "24h")]

    @pytest.mark.asyncio
    async def test_week_of_polling(self, make_scheduler, fake_store, fake_sender, clock):
        """Test the 24h / 3d / 7d sequence as seen by a poller."""
        fake_store.add(make_record())
        reminders = make_scheduler()

        for offset in (dict(hours=23), dict(hours=25), dict(hours=26),
                       dict(hours=73), dict(hours=74), dict(days=7, hours=1), dict(days=30)):
            clock.set(**offset)
            await reminders.run_cycle()

        assert _sent_thresholds(fake_sender) == ["24h", "3d", "7d"]

    @pytest.mark.asyncio
    async def test_nothing_before_first_threshold(self, make_scheduler, fake_store, fake_sender, clock):
        fake_store.add(make_record())
        clock.set(hours=23, minutes=59)

        report = await make_scheduler().run_cycle()

        assert report.fetched == 1
        assert report.dispatched == 0
        assert fake_sender.attempts == 0

    @pytest.mark.asyncio
    async def test_completed_record_never_contacted(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that a terminal record is skipped even if the store returns it."""
        done = make_record(credit_report_completed=True, documents_signed=True)
        fake_store.fetch_active_records = AsyncMock(return_value=[done])
        clock.set(days=8)

        report = await make_scheduler().run_cycle()

        assert report.dispatched == 0
        assert fake_sender.attempts == 0

    @pytest.mark.asyncio
    async def test_completing_onboarding_stops_reminders(self, make_scheduler, fake_store, fake_sender, clock):
        record = make_record()
        fake_store.add(record)
        reminders = make_scheduler()

        clock.set(hours=25)
        await reminders.run_cycle()
        record.credit_report_completed = True
        record.documents_signed = True
        clock.set(days=8)
        await reminders.run_cycle()

        assert _sent_thresholds(fake_sender) == ["24h"]

    @pytest.mark.asyncio
    async def test_duplicate_rows_sent_once(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that a record returned twice by the store is only reminded once."""
        fake_store.add(make_record())
        fake_store.duplicate_rows = True
        clock.set(hours=25)

        report = await make_scheduler().run_cycle()

        assert report.fetched == 2
        assert report.dispatched == 1
        assert len(fake_sender.sent) == 1


class TestFailures:
    """Send, persist and store failures."""

    @pytest.mark.asyncio
    async def test_send_failure_retried_next_cycle(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that a rejected send is not marked and goes out on the next cycle."""
        fake_store.add(make_record())
        fake_sender.fail_for = {"client-1@example.com"}
        clock.set(hours=25)
        reminders = make_scheduler()

        report = await reminders.run_cycle()
        assert report.failed == 1
        assert report.dispatched == 0
        assert fake_store.marked == []

        fake_sender.fail_for = set()
        report = await reminders.run_cycle()
        assert report.sent == [("client-1", "24h")]
        assert fake_store.marked == [("client-1", "24h")]

    @pytest.mark.asyncio
    async def test_persist_failure_resends_next_cycle(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that a sent-but-unrecorded reminder goes out again."""
        fake_store.add(make_record())
        fake_store.fail_mark = {"24h"}
        clock.set(hours=25)
        reminders = make_scheduler()

        report = await reminders.run_cycle()
        assert report.persist_failed == 1
        assert report.dispatched == 0
        assert len(fake_sender.sent) == 1

        fake_store.fail_mark = set()
        report = await reminders.run_cycle()
        assert report.dispatched == 1
        assert _sent_thresholds(fake_sender) == ["24h", "24h"]
        assert fake_store.marked == [("client-1", "24h")]

    @pytest.mark.asyncio
    async def test_store_raising_on_mark_counts_as_persist_failure(self, make_scheduler, fake_store, fake_sender, clock):
        fake_store.add(make_record())
        fake_store.mark_reminder_sent = AsyncMock(side_effect=RuntimeError("disk full"))
        clock.set(hours=25)

        report = await make_scheduler().run_cycle()

        assert report.persist_failed == 1
        assert report.errors == 0

    @pytest.mark.asyncio
    async def test_store_outage_skips_cycle(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that an unreachable store ends the cycle without sending."""
        fake_store.add(make_record())
        fake_store.fail_fetch = True
        clock.set(hours=25)
        reminders = make_scheduler()

        report = await reminders.run_cycle()

        assert report.store_error == "database offline"
        assert "store unavailable" in report.summary()
        assert fake_sender.attempts == 0
        assert reminders.last_report is report

        fake_store.fail_fetch = False
        report = await reminders.run_cycle()
        assert report.sent == [("client-1", "24h")]

    @pytest.mark.asyncio
    async def test_unexpected_fetch_error_skips_cycle(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that any store exception is reported as a skipped cycle, not raised."""
        fake_store.add(make_record())
        fake_store.fetch_active_records = AsyncMock(side_effect=RuntimeError("cursor closed"))
        clock.set(hours=25)
        reminders = make_scheduler()

        report = await reminders.run_cycle()

        assert "RuntimeError" in report.store_error
        assert "store unavailable" in report.summary()
        assert reminders.last_report is report
        assert fake_sender.attempts == 0

        del fake_store.fetch_active_records
        report = await reminders.run_cycle()
        assert report.sent == [("client-1", "24h")]

    @pytest.mark.asyncio
    async def test_record_created_during_fetch_not_malformed(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that a sign-up landing while the fetch runs is not treated as from the future."""
        fetch = fake_store.fetch_active_records

        async def _slow_fetch():
            fake_store.add(make_record("new", created_at=clock.now + timedelta(seconds=1)))
            clock.now += timedelta(seconds=2)
            return await fetch()

        fake_store.fetch_active_records = _slow_fetch
        clock.set(hours=1)

        report = await make_scheduler().run_cycle()

        assert report.fetched == 1
        assert report.malformed == 0
        assert report.dispatched == 0

    @pytest.mark.asyncio
    async def test_malformed_records_skipped(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that bad records are counted and the rest of the cycle continues."""
        clock.set(hours=25)
        fake_store.add(make_record("good"))
        fake_store.add(make_record("future", created_at=T0 + timedelta(hours=30)))
        fake_store.add(make_record("no-date", created_at=None))
        fake_store.add(make_record("no-email", destination=""))

        report = await make_scheduler().run_cycle()

        assert report.malformed == 3
        assert report.sent == [("good", "24h")]
        assert report.errors == 0

    @pytest.mark.asyncio
    async def test_sender_exception_isolated_to_record(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that one record's sender error does not stop the others."""
        fake_store.add(make_record("a"))
        fake_store.add(make_record("b"))
        fake_sender.raise_for = {"a@example.com"}
        clock.set(hours=25)

        report = await make_scheduler().run_cycle()

        assert report.failed == 1
        assert report.sent == [("b", "24h")]
        assert fake_store.marked == [("b", "24h")]

    @pytest.mark.asyncio
    async def test_unexpected_error_isolated_to_record(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that a bug while processing one record is logged and counted."""
        fake_store.add(make_record("a"))
        fake_store.add(make_record("b"))
        clock.set(hours=25)
        reminders = make_scheduler()

        original = reminders._template_params

        def _params(record, threshold):
            if record.id == "a":
                raise KeyError("template")
            return original(record, threshold)

        reminders._template_params = _params
        report = await reminders.run_cycle()

        assert report.errors == 1
        assert report.sent == [("b", "24h")]


class TestBacklog:
    """Records that have several thresholds due at once."""

    @pytest.mark.asyncio
    async def test_all_policy_sends_in_ascending_order(self, make_scheduler, fake_store, fake_sender, clock):
        fake_store.add(make_record())
        clock.set(days=8)

        report = await make_scheduler().run_cycle()

        assert _sent_thresholds(fake_sender) == ["24h", "3d", "7d"]
        assert fake_store.marked == [("client-1", "24h"), ("client-1", "3d"), ("client-1", "7d")]
        assert report.dispatched == 3

    @pytest.mark.asyncio
    async def test_failure_mid_backlog_keeps_earlier_progress(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that a failure stops the record's batch but keeps what was sent."""
        fake_store.add(make_record())
        fake_sender.fail_for = {"3d"}
        clock.set(days=8)
        reminders = make_scheduler()

        report = await reminders.run_cycle()
        assert fake_store.marked == [("client-1", "24h")]
        assert report.failed == 1
        assert fake_sender.attempts == 2

        fake_sender.fail_for = set()
        await reminders.run_cycle()
        assert _sent_thresholds(fake_sender) == ["24h", "3d", "7d"]

    @pytest.mark.asyncio
    async def test_latest_policy_sends_one_and_marks_all(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that 'latest' sends only the newest due reminder."""
        fake_store.add(make_record())
        clock.set(days=8)
        reminders = make_scheduler(backlog_policy="latest")

        report = await reminders.run_cycle()

        assert report.sent == [("client-1", "7d")]
        assert _sent_thresholds(fake_sender) == ["7d"]
        assert sorted(fake_store.marked) == [("client-1", "24h"), ("client-1", "3d"), ("client-1", "7d")]

        report = await reminders.run_cycle()
        assert report.sent == []

    def test_unknown_policy_rejected(self, make_scheduler):
        with pytest.raises(ValueError):
            make_scheduler(backlog_policy="newest-first")


class TestCycleControl:
    """Overlap, budget and shutdown behaviour."""

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, make_scheduler, fake_store, fake_sender, clock):
        fake_store.add(make_record())
        fake_sender.delay = 0.2
        clock.set(hours=25)
        reminders = make_scheduler()

        first = asyncio.create_task(reminders.run_cycle())
        await asyncio.sleep(0.05)
        second = await reminders.run_cycle()
        first_report = await first

        assert second.skipped is True
        assert "skipped" in second.summary()
        assert first_report.dispatched == 1
        assert len(fake_sender.sent) == 1

    @pytest.mark.asyncio
    async def test_budget_cutoff_then_resume_without_duplicates(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that work cut off by the budget finishes next cycle, each reminder once."""
        for record_id in ("a", "b", "c"):
            fake_store.add(make_record(record_id))
        fake_sender.delay = 0.2
        clock.set(hours=25)
        reminders = make_scheduler(cycle_budget=0.3, max_concurrency=1)

        report = await reminders.run_cycle()
        assert report.timed_out is True
        assert "budget exceeded" in report.summary()

        await reminders.run_cycle()

        destinations = [destination for destination, _, _ in fake_sender.sent]
        assert sorted(destinations) == ["a@example.com", "b@example.com", "c@example.com"]
        assert sorted(fake_store.marked) == [("a", "24h"), ("b", "24h"), ("c", "24h")]

    @pytest.mark.asyncio
    async def test_cutoff_send_is_still_recorded(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that a send in progress at the cut-off is marked before the next cycle decides."""
        fake_store.add(make_record())
        fake_sender.delay = 0.3
        clock.set(hours=25)
        reminders = make_scheduler(cycle_budget=0.05)

        report = await reminders.run_cycle()
        assert report.timed_out is True

        report = await reminders.run_cycle()
        assert report.sent == []
        assert len(fake_sender.sent) == 1
        assert fake_store.marked == [("client-1", "24h")]

    @pytest.mark.asyncio
    async def test_stop_waits_for_running_cycle(self, make_scheduler, fake_store, fake_sender, clock):
        fake_store.add(make_record())
        fake_sender.delay = 0.1
        clock.set(hours=25)
        reminders = make_scheduler()

        cycle = asyncio.create_task(reminders.run_cycle())
        await asyncio.sleep(0.02)
        await reminders.stop(timeout=5)

        assert cycle.done()
        assert cycle.result().dispatched == 1
        assert fake_store.marked == [("client-1", "24h")]

    @pytest.mark.asyncio
    async def test_stop_deadline_cancels_cycle_but_finishes_send(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that a send already handed over is recorded even when the cycle is cancelled."""
        fake_store.add(make_record())
        fake_sender.delay = 0.3
        clock.set(hours=25)
        reminders = make_scheduler()

        cycle = asyncio.create_task(reminders.run_cycle())
        await asyncio.sleep(0.05)
        await reminders.stop(timeout=0.05)

        results = await asyncio.gather(cycle, return_exceptions=True)
        assert isinstance(results[0], asyncio.CancelledError)
        assert len(fake_sender.sent) == 1
        assert fake_store.marked == [("client-1", "24h")]

    @pytest.mark.asyncio
    async def test_open_circuit_defers_sends(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that once the sender circuit opens, remaining reminders wait."""
        fake_store.add(make_record("a"))
        fake_store.add(make_record("b"))
        fake_sender.fail_for = {"a@example.com"}
        clock.set(hours=25)
        circuit = CircuitBreaker(failure_threshold=1, recovery_timeout=60, name="test")
        reminders = make_scheduler(circuit=circuit, max_concurrency=1)

        report = await reminders.run_cycle()

        assert circuit.state == CircuitState.OPEN
        assert report.failed == 1
        assert report.deferred == 1
        assert fake_sender.attempts == 1
        assert fake_store.marked == []


class TestTemplateParams:
    """Parameters handed to the sender."""

    @pytest.mark.asyncio
    async def test_params_for_first_step(self, make_scheduler, fake_store, fake_sender, clock):
        fake_store.add(make_record(name="Jane"))
        clock.set(hours=25)

        await make_scheduler().run_cycle()

        destination, threshold_id, params = fake_sender.sent[0]
        assert destination == "client-1@example.com"
        assert threshold_id == "24h"
        assert params["name"] == "Jane"
        assert params["threshold_id"] == "24h"
        assert params["threshold_label"] == "24 hours"
        assert params["next_step_url"] == resolve_url(config.CREDIT_REPORT_PATH)

    @pytest.mark.asyncio
    async def test_params_after_credit_report(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that clients with a credit report are sent to the documents page."""
        fake_store.add(make_record(credit_report_completed=True))
        clock.set(hours=73)
        fake_store.records["client-1"].reminders_sent = frozenset({"24h"})

        await make_scheduler().run_cycle()

        _, threshold_id, params = fake_sender.sent[0]
        assert threshold_id == "3d"
        assert params["threshold_label"] == "3 days"
        assert params["next_step_url"] == resolve_url(config.DOCUMENTS_PATH)


class TestLifecycle:
    """start() and stop() with the APScheduler timer."""

    @pytest.mark.asyncio
    async def test_start_registers_non_overlapping_job(self, make_scheduler):
        timer = MagicMock()
        timer.running = False
        reminders = make_scheduler(scheduler=timer)

        handle = reminders.start(60)

        assert handle is reminders
        assert reminders.running
        kwargs = timer.add_job.call_args.kwargs
        assert timer.add_job.call_args.args[1] == 'interval'
        assert kwargs["seconds"] == 60
        assert kwargs["id"] == config.JOB_ID
        assert kwargs["max_instances"] == 1
        assert kwargs["coalesce"] is True
        assert kwargs["next_run_time"] is not None
        timer.start.assert_called_once()

        with pytest.raises(RuntimeError):
            reminders.start()

        await reminders.stop()
        timer.remove_job.assert_called_once_with(config.JOB_ID)
        # Scheduler was passed in, so it is left running for its owner
        timer.shutdown.assert_not_called()
        assert not reminders.running

    @pytest.mark.asyncio
    async def test_first_cycle_runs_on_start(self, make_scheduler, fake_store, fake_sender, clock):
        """Test that a real timer runs a cycle immediately and stops cleanly."""
        fake_store.add(make_record())
        clock.set(hours=25)
        reminders = make_scheduler(poll_interval=3600)

        reminders.start()
        for _ in range(100):
            if reminders.last_report is not None:
                break
            await asyncio.sleep(0.02)
        await reminders.stop()

        assert reminders.last_report is not None
        assert reminders.last_report.sent == [("client-1", "24h")]
        assert not reminders.running

    @pytest.mark.asyncio
    async def test_stop_without_start(self, make_scheduler):
        await make_scheduler().stop()


class TestCycleReport:
    """Report summaries."""

    def test_summary_counts(self):
        report = CycleReport(fetched=3, dispatched=2, failed=1, duration=0.5)
        text = report.summary()
        assert "fetched=3" in text
        assert "dispatched=2" in text
        assert "failed=1" in text
        assert "budget" not in text
