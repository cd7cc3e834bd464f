#!/usr/bin/env python3
"""
Run the inactivity reminder job once.

Meant to be called by an external scheduler (cron, a platform scheduler)
on every replica; the distributed lock keeps concurrent runs from sending
duplicate reminders.
"""
import argparse
import logging

from jobs.reminder import ReminderJob


def main():
    parser = argparse.ArgumentParser(description='Send debt reminders to inactive home members')
    parser.add_argument('--trigger', default='cron', help='Label recorded in logs and the run summary')
    parser.add_argument('--inactivity-days', type=int, help='Override INACTIVITY_REMINDER_DAYS')
    parser.add_argument('--batch-size', type=int, help='Override REMINDER_BATCH_SIZE')
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    job = ReminderJob()
    if args.inactivity_days:
        job.inactivity_days = args.inactivity_days
    if args.batch_size:
        job.batch_size = args.batch_size

    summary = job.run(trigger=args.trigger)
    if summary["skipped"]:
        print(f"Skipped: {summary['reason']}")
    else:
        print(f"Selected {summary['selected']} user(s): {summary['sent']} sent, {summary['failed']} failed")


if __name__ == "__main__":
    main()
