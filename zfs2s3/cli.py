"""CLI entry point for zfs2s3."""

import argparse
import logging
import os
import signal
import sys
import threading

from zfs2s3 import __version__, configure_logging
from zfs2s3.backup.sources import ZfsSource
from zfs2s3.backup.storage import S3Storage, StorageError
from zfs2s3.backup.transfer import TransferCancelled
from zfs2s3.config import DEFAULT_CONFIG_PATH, ConfigurationError, load_config
from zfs2s3.engine import BackupEngine
from zfs2s3.models import JobKind
from zfs2s3.scheduler import Scheduler


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


class ShutdownHandler:
    """
    SIGINT/SIGTERM handling.

    The first signal stops the scheduler and lets running cycles finish;
    a second one aborts running transfers at their next part boundary.
    """

    def __init__(self):
        self.stop_event = threading.Event()
        self.abort_event = threading.Event()

    def __call__(self, signum, frame):
        name = signal.Signals(signum).name
        if not self.stop_event.is_set():
            logger.info(f"{name} received, finishing running cycles (send again to abort uploads)")
            self.stop_event.set()
        else:
            logger.warning(f"{name} received again, aborting running uploads")
            self.abort_event.set()

    def cancellation_check(self):
        if self.abort_event.is_set():
            raise TransferCancelled("Shutdown requested")

    def install(self):
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, self)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='zfs2s3',
        description='Back up ZFS volume snapshots to S3-compatible object storage',
    )
    parser.add_argument('--config', '-c', default=DEFAULT_CONFIG_PATH,
                        help=f'Path to the TOML configuration (default: {DEFAULT_CONFIG_PATH})')
    parser.add_argument('--single-shot', choices=[k.value for k in JobKind],
                        help='Run one cycle of the given kind for all volumes and exit')
    parser.add_argument('--s3-key-id', default=os.environ.get('S3_ACCESS_KEY_ID'),
                        help='S3 access key ID (env: S3_ACCESS_KEY_ID)')
    parser.add_argument('--s3-secret-key', default=os.environ.get('S3_SECRET_ACCESS_KEY'),
                        help='S3 secret access key (env: S3_SECRET_ACCESS_KEY)')
    parser.add_argument('--log-level', type=str.upper,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Override logging.level from the configuration')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def build_storage(config, access_key=None, secret_key=None) -> S3Storage:
    """Create the S3 storage handler described by the [s3] section."""
    s3 = config.s3
    return S3Storage(
        bucket_name=s3.bucket,
        access_key=access_key,
        secret_key=secret_key,
        region=s3.region,
        endpoint_url=s3.url,
        prefix=s3.prefix,
        checksums=s3.checksums,
        addressing_style=s3.addressing_style,
        connect_timeout=s3.connect_timeout,
        read_timeout=s3.read_timeout,
        max_attempts=s3.max_attempts,
    )


def run(argv=None) -> int:
    """
    Run zfs2s3 and return the process exit code.

    Returns:
        0 on clean shutdown or single-shot success, 1 on failure,
        2 on configuration error
    """
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    configure_logging(
        level=args.log_level or config.logging.level,
        log_file=config.logging.file,
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count,
    )
    logger.info(f"zfs2s3 {__version__} starting with {args.config}")

    try:
        storage = build_storage(config, args.s3_key_id, args.s3_secret_key)
        storage.test_connection()
    except StorageError as e:
        logger.error(f"Object store unreachable: {e}")
        return EXIT_FAILURE

    shutdown = ShutdownHandler()
    shutdown.install()

    source = ZfsSource(command=config.zfs.command, timeout=config.zfs.timeout)
    engine = BackupEngine(config, source, storage, cancellation_check=shutdown.cancellation_check)

    if args.single_shot:
        try:
            success = engine.run_once(JobKind(args.single_shot))
        finally:
            engine.shutdown(wait=True)
        return EXIT_OK if success else EXIT_FAILURE

    scheduler = Scheduler(config.schedules(), engine, tick_interval=config.scheduler.tick_interval)
    scheduler.run(shutdown.stop_event)

    logger.info("Waiting for running cycles to finish")
    engine.shutdown(wait=True)
    logger.info("Shutdown complete")
    return EXIT_OK


def main(argv=None) -> None:
    sys.exit(run(argv))


if __name__ == '__main__':
    main()
