#!/usr/bin/env python3
"""
Command-line runner for the BlogMailer email queue.

Run this script from cron (or a CMS pseudo-cron) to deliver queued emails
in batches, or by hand to drain the queue immediately and inspect it.

Usage:
    python process_queue.py [--data-dir DIR] run [--if-due]
    python process_queue.py drain [--target N]
    python process_queue.py stats
    python process_queue.py list [--state STATE] [--campaign KEY] [--limit N]
    python process_queue.py cleanup [--days N]
    python process_queue.py release-stale
    python process_queue.py cancel CAMPAIGN_KEY
    python process_queue.py retry JOB_ID
"""

import os
import sys
import json
import argparse
import importlib
import logging

logger = logging.getLogger('BlogMailer.manual')

DEFAULT_DATA_DIR_ENV = 'BLOGMAILER_DATA_DIR'


def find_data_dir():
    """Find the BlogMailer data directory."""
    env_dir = os.environ.get(DEFAULT_DATA_DIR_ENV)
    if env_dir:
        return env_dir

    candidates = [
        '/var/lib/blogmailer',
        os.path.expanduser('~/.blogmailer'),
        './data',
    ]

    for path in candidates:
        if os.path.exists(path):
            return path

    return None


def load_config(data_dir):
    """Load queue settings from config.json next to (or inside) the data directory."""
    for config_path in (
        os.path.join(data_dir, 'config.json'),
        os.path.join(os.path.dirname(os.path.abspath(data_dir)), 'config.json'),
    ):
        if os.path.exists(config_path):
            with open(config_path, 'r') as f:
                return json.load(f)

    # Environment variables (BLOGMAILER_*) are read by the settings model
    return {}


def load_sender(reference):
    """
    Build a sender from a "package.module:factory" reference.

    Returns a LoggingSender (dry run) when no reference is given.
    """
    from worker.sender import LoggingSender, Sender

    if not reference:
        return LoggingSender()

    module_name, _, attr = reference.partition(':')
    if not module_name or not attr:
        raise ValueError(f"Sender must look like 'package.module:factory', got: {reference}")

    factory = getattr(importlib.import_module(module_name), attr)
    sender = factory()
    if not isinstance(sender, Sender):
        raise ValueError(f"{reference} did not produce an object with a send() method")
    return sender


def build_parser():
    parser = argparse.ArgumentParser(description='Process and maintain the BlogMailer email queue')
    parser.add_argument('--data-dir', '-d', help='Path to BlogMailer data directory')
    parser.add_argument('--sender', help="Sender factory as 'package.module:factory' (default: log only)")
    parser.add_argument('--batch-size', type=int, help='Override emails per batch')
    parser.add_argument('--plain-logs', action='store_true', help='Human-readable logs instead of JSON')

    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Process one batch')
    run.add_argument('--if-due', action='store_true',
                     help='Only process when the scheduling interval has elapsed')

    drain = sub.add_parser('drain', help='Process batches until the queue is empty (send now)')
    drain.add_argument('--target', type=int, help='Stop after this many emails')
    drain.add_argument('--max-iterations', type=int, help='Batch cap (default: config)')

    sub.add_parser('stats', help='Show queue counts by state')

    listing = sub.add_parser('list', help='Show queued jobs as JSON')
    listing.add_argument('--state', choices=['pending', 'claimed', 'sent', 'failed', 'cancelled'])
    listing.add_argument('--campaign', help='Only jobs of this campaign key')
    listing.add_argument('--limit', type=int, default=100)

    cleanup = sub.add_parser('cleanup', help='Delete finished jobs past the retention window')
    cleanup.add_argument('--days', type=int, help='Retention in days (default: config)')

    sub.add_parser('release-stale', help='Fail claims whose worker never reported back')

    cancel = sub.add_parser('cancel', help='Cancel pending jobs of a campaign')
    cancel.add_argument('campaign_key')

    retry = sub.add_parser('retry', help='Re-queue a permanently failed job')
    retry.add_argument('job_id', type=int)

    return parser


def run_command(args, data_dir, config):
    """Execute one subcommand. Returns the process exit code."""
    from mail_queue.models import JobState
    from mail_queue.store import EmailQueue
    from worker.backoff import RetryPolicy
    from worker.processor import BatchProcessor
    from worker.scheduler import ProcessingScheduler
    from worker.stats import StopReason

    queue = EmailQueue(data_dir)
    retry_policy = RetryPolicy.from_config(config)

    if args.command == 'stats':
        print(json.dumps(queue.stats(), indent=2))
        return 0

    if args.command == 'list':
        state = JobState(args.state) if args.state else None
        jobs = queue.list_jobs(state=state, campaign_key=args.campaign, limit=args.limit)
        print(json.dumps([job.to_dict() for job in jobs], indent=2))
        return 0

    if args.command == 'cleanup':
        days = args.days or config.queue_retention_days
        deleted = queue.delete_older_than(days)
        logger.info(f"Deleted {deleted} finished job(s) older than {days} day(s)")
        return 0

    if args.command == 'release-stale':
        released = queue.release_stale_claims(config.claim_timeout_seconds, retry_policy)
        logger.info(f"Released {released} stale claim(s)")
        return 0

    if args.command == 'cancel':
        cancelled = queue.cancel_campaign(args.campaign_key)
        print(json.dumps({'campaign_key': args.campaign_key, 'cancelled': cancelled}))
        return 0

    if args.command == 'retry':
        if queue.retry_failed(args.job_id):
            logger.info(f"Job {args.job_id} re-queued")
            return 0
        logger.error(f"Job {args.job_id} is not a failed job or its recipient is already queued")
        return 1

    sender = load_sender(args.sender)
    processor = BatchProcessor.from_config(queue, sender, config)
    if args.batch_size:
        processor.batch_size = args.batch_size

    if args.command == 'run':
        scheduler = ProcessingScheduler(data_dir)
        if args.if_due and not scheduler.is_due(config.process_interval_minutes):
            logger.debug("Queue processing not due yet")
            return 0

        if scheduler.is_maintenance_due():
            queue.release_stale_claims(config.claim_timeout_seconds, retry_policy)
            queue.delete_older_than(config.queue_retention_days)
            scheduler.record_maintenance()

        result = processor.process_once()
        scheduler.record_run(result)
        print(json.dumps(result.to_dict()))
        return 1 if result.storage_error else 0

    if args.command == 'drain':
        max_iterations = args.max_iterations or config.max_drain_iterations
        result = processor.drain(max_iterations=max_iterations, target=args.target)
        ProcessingScheduler(data_dir).record_run(result)
        print(json.dumps(result.to_dict()))
        return 1 if result.stop_reason == StopReason.STORAGE_ERROR else 0

    logger.error(f"Unknown command: {args.command}")
    return 2


def main(argv=None):
    args = build_parser().parse_args(argv)

    # Import here to allow script to show help without dependencies
    from mail_queue.exceptions import StorageError
    from shared.logging_config import configure_logging
    from validation.config import validate_config

    data_dir = args.data_dir or find_data_dir()
    if not data_dir:
        configure_logging('info', json_output=not args.plain_logs)
        logger.error("Could not find BlogMailer data directory. Use --data-dir or set BLOGMAILER_DATA_DIR.")
        return 1

    config, error = validate_config(load_config(data_dir))
    if config is None:
        configure_logging('info', json_output=not args.plain_logs)
        logger.error(f"Invalid configuration: {error}")
        return 1

    configure_logging(config.log_level, json_output=not args.plain_logs)
    logger.debug(f"Using data directory: {data_dir}")
    config.log_config()

    try:
        return run_command(args, data_dir, config)
    except StorageError as e:
        logger.error(f"Queue storage unavailable: {e}")
        return 1
    except ValueError as e:
        logger.error(str(e))
        return 2


if __name__ == '__main__':
    sys.exit(main())
