#!/usr/bin/env python3
"""Onboarding reminder service.

Polls onboarding records every couple of minutes and emails clients who
have not finished onboarding 24 hours, 3 days and 7 days after signing up.

Usage:
    python reminder_service.py [--backend sqlite|supabase] [--interval SECONDS]
    python reminder_service.py --once     # run a single cycle and exit
    python reminder_service.py --stats    # print store statistics (sqlite)

Run one instance only: two schedulers polling the same store can send the
same reminder twice.
"""

import argparse
import asyncio
import signal
import sys

from logger import logger
from domains.onboarding import config
from domains.onboarding import (
    ReminderScheduler,
    SmtpReminderSender,
    SqliteRecordStore,
    SupabaseRecordStore,
    ThresholdConfigError,
    load_thresholds,
)


def build_store(backend: str, threshold_ids):
    """Create the record store for the configured backend."""
    if backend == "supabase":
        return SupabaseRecordStore(threshold_ids=threshold_ids)
    if backend == "sqlite":
        return SqliteRecordStore(threshold_ids=threshold_ids)
    raise ValueError(f"Unknown store backend: {backend}")


def build_scheduler(backend: str) -> ReminderScheduler:
    """Wire thresholds, store and sender into a scheduler."""
    thresholds = load_thresholds(config.THRESHOLDS_SPEC)
    store = build_store(backend, [t.id for t in thresholds])
    return ReminderScheduler(store, SmtpReminderSender(), thresholds)


async def serve(reminders: ReminderScheduler, interval: int) -> None:
    """Run the scheduler until SIGINT/SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt from asyncio.run
            pass

    reminders.start(interval)
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutdown requested")
        await reminders.stop()


async def run_once(reminders: ReminderScheduler) -> int:
    report = await reminders.run_cycle()
    print(f"Cycle: {report.summary()}")
    for record_id, threshold_id in report.sent:
        print(f"  sent {threshold_id} -> {record_id}")
    return 1 if report.store_error else 0


def print_stats(store: SqliteRecordStore) -> None:
    stats = store.get_stats()
    print("\n" + "=" * 40)
    print("Onboarding reminder store")
    print("=" * 40)
    print(f"   Records:     {stats['total_records']}")
    print(f"   Completed:   {stats['completed_records']}")
    print(f"   In progress: {stats['in_progress_records']}")
    print("   Reminders sent:")
    for threshold_id, count in sorted(stats["reminders_sent"].items()):
        print(f"     {threshold_id:>6}: {count}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Onboarding reminder scheduler")
    parser.add_argument("--backend", choices=["sqlite", "supabase"], default=config.STORE_BACKEND,
                        help="Record store backend (default: %(default)s)")
    parser.add_argument("--interval", type=int, default=config.POLL_INTERVAL_SECONDS,
                        help="Seconds between cycles (default: %(default)s)")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument("--stats", action="store_true", help="Print store statistics and exit")
    args = parser.parse_args(argv)

    try:
        reminders = build_scheduler(args.backend)
    except ThresholdConfigError as e:
        logger.error(f"Invalid reminder configuration: {e}")
        return 2

    if args.stats:
        if not isinstance(reminders.store, SqliteRecordStore):
            print("[ERROR] --stats is only available for the sqlite backend")
            return 2
        try:
            print_stats(reminders.store)
        finally:
            reminders.store.close()
        return 0

    if args.once:
        return asyncio.run(run_once(reminders))

    logger.info("Starting onboarding reminder service...")
    try:
        asyncio.run(serve(reminders, args.interval))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
