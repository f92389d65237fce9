"""
Command line entry point: run one backup.

Exit codes:
    0  backup succeeded (failed destinations are reported via notifications)
    1  fatal failure or invalid configuration
    2  some destinations failed and --fail-on-partial was given
"""

import os
import time
import signal
import logging
import argparse
from contextlib import contextmanager
from typing import List, Optional

from backupkit import configure_logging
from backupkit.config import config as config_by_name
from backupkit.utils.crypto import crypto_manager_from_config
from backupkit.backup.events import JobFailed, LoggingEventSink, emit
from backupkit.backup.factory import BackupJobFactory
from backupkit.backup.filters import parse_day
from backupkit.backup.job import ConfigurationError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2


class BackupTimeout(Exception):
    """Raised when the backup exceeds --timeout."""
    pass


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='backupkit', description='Run the backup.')
    parser.add_argument('--env', choices=sorted(config_by_name.keys()),
                        default=os.environ.get('BACKUPKIT_ENV', 'production'),
                        help='Configuration to load')
    parser.add_argument('--definition', help='Backup definition JSON file (default: BACKUP_DEFINITION)')
    parser.add_argument('--filename', help='Archive filename instead of the timestamp')
    parser.add_argument('--only-db', action='store_true', help='Only back up databases')
    parser.add_argument('--db-name', action='append', default=[], help='Only dump this connection (repeatable)')
    parser.add_argument('--only-files', action='store_true', help='Only back up files')
    parser.add_argument('--only-to-disk', help='Only copy the archive to this destination')
    parser.add_argument('--disable-notifications', action='store_true')
    parser.add_argument('--timeout', type=int, help='Abort the backup after this many seconds')
    parser.add_argument('--sanitized', action='store_true', help='Scrub dump data with the replacement rules')
    parser.add_argument('--filter-week', metavar='DATE', help='Only dump log rows of the week containing DATE')
    parser.add_argument('--filter-month', metavar='DATE', help='Only dump log rows of the month starting at DATE')
    parser.add_argument('--fail-on-partial', action='store_true',
                        help='Exit non-zero when any destination failed')
    return parser


def guard_against_invalid_options(args):
    """
    Raises:
        ConfigurationError: If options contradict each other
    """
    if args.only_db and args.only_files:
        raise ConfigurationError('Cannot use `only-db` and `only-files` together')

    if args.filter_week and args.filter_month:
        raise ConfigurationError('Cannot use `filter-week` and `filter-month` together')

    if args.filter_month:
        try:
            day = parse_day(args.filter_month)
        except ValueError as e:
            raise ConfigurationError(str(e))
        if day.day != 1:
            raise ConfigurationError('Filter month option is not first day of month')


@contextmanager
def time_limit(seconds: Optional[int]):
    """Raise BackupTimeout in the main thread after seconds (POSIX only)."""
    if not seconds or seconds <= 0 or not hasattr(signal, 'SIGALRM'):
        yield
        return

    def on_alarm(signum, frame):
        raise BackupTimeout(f"Backup exceeded the {seconds}s timeout")

    previous = signal.signal(signal.SIGALRM, on_alarm)
    signal.alarm(seconds)
    try:
        yield
    finally:
        signal.alarm(0)
        signal.signal(signal.SIGALRM, previous)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = config_by_name[args.env]
    configure_logging(config)

    logger.info('Starting backup...')
    start_time = time.monotonic()
    event_sink = LoggingEventSink()
    run_started = False

    try:
        guard_against_invalid_options(args)

        factory = BackupJobFactory(config, crypto=crypto_manager_from_config(config), event_sink=event_sink)
        job = factory.create_from_file(args.definition or config.BACKUP_DEFINITION)

        if args.only_db:
            job.dont_backup_filesystem()

        if args.db_name:
            job = job.only_db_name(args.db_name)

        if args.only_files:
            job.dont_backup_databases()

        if args.only_to_disk:
            job = job.only_backup_to(args.only_to_disk)

        if args.filename:
            job.set_filename(args.filename)

        if args.sanitized:
            job.set_sanitized()

        if args.filter_week:
            job.set_filter_week(args.filter_week)

        if args.filter_month:
            job.set_filter_month(args.filter_month)

        if args.disable_notifications:
            job.disable_notifications()

        run_started = True
        with time_limit(args.timeout):
            outcome = job.run()

    except Exception as e:
        logger.error(f"Backup failed because: {e}.")

        # Failures inside run() already reported themselves
        if not run_started and not args.disable_notifications:
            emit(event_sink, JobFailed(e, stage='configure'))

        return EXIT_FATAL

    logger.info(f"Filename: {job.filename}")
    logger.info(f"Backup completed! Time: {time.monotonic() - start_time:.1f}s")

    if outcome.destination_errors:
        for disk_name, error in outcome.destination_errors.items():
            logger.warning(f"Destination {disk_name} failed: {error}")
        if args.fail_on_partial:
            return EXIT_PARTIAL

    return EXIT_OK
