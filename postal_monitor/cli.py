#!/usr/bin/env python3
"""
Entry point for the postal-monitor command.

Without options the monitor runs continuously, checking every
check_interval_minutes until it receives SIGINT or SIGTERM.
"""
import argparse
import signal
import sys
import threading
from typing import List, Optional

from . import __version__
from .checkpoint import CheckpointStore
from .config import MonitorConfig, load_config
from .database import DeliveryDatabase
from .errors import CheckpointError, ConfigError, DatabaseError
from .logging_setup import get_logger, setup_logging
from .notifier import FailureNotifier
from .poller import FailurePoller
from .systemd import SystemdNotifier

log = get_logger("cli")

# 128 + SIGINT, as a shell reports a process killed by Ctrl+C
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="postal-monitor",
        description="Email an alert for every failed outgoing delivery on a Postal mail server.",
        epilog="Without options, runs in continuous monitoring mode.",
    )
    parser.add_argument("--once", action="store_true",
                        help="Run a single check and exit")
    parser.add_argument("--test-email", action="store_true",
                        help="Send a test email to verify SMTP settings and exit")
    parser.add_argument("-c", "--config", metavar="FILE",
                        help="Use specific config file")
    parser.add_argument("--version", action="version",
                        version=f"%(prog)s {__version__}")
    return parser


def run_test_email(config: MonitorConfig) -> int:
    notifier = FailureNotifier(config)
    return 0 if notifier.send_test() else 1


def run_monitor(config: MonitorConfig, once: bool,
                stop_event: Optional[threading.Event] = None) -> int:
    """Connect, then run one cycle or loop until stop_event is set"""
    systemd = SystemdNotifier()
    checkpoint = CheckpointStore(config.monitoring.state_file_path)
    database = DeliveryDatabase(config.database)

    try:
        cursor = checkpoint.read()
        database.connect()
    except (CheckpointError, DatabaseError) as e:
        log.critical("%s", e)
        systemd.status(f"Startup failed: {e}")
        return 1

    poller = FailurePoller(
        source=database,
        notifier=FailureNotifier(config),
        checkpoint=checkpoint,
        email_delay_seconds=config.monitoring.email_delay_seconds,
        systemd=systemd,
    )

    try:
        if once:
            poller.run_cycle(cursor)
            return 0

        stop_event = stop_event or threading.Event()

        def on_signal(signum, frame):
            """Handle clean shutdown on SIGINT/SIGTERM."""
            log.info("Signal %d received; shutting down", signum)
            systemd.stopping()
            stop_event.set()

        signal.signal(signal.SIGINT, on_signal)
        signal.signal(signal.SIGTERM, on_signal)

        log.info("Press Ctrl+C to stop monitoring")
        systemd.ready()
        poller.run_forever(cursor, config.monitoring.interval_seconds, stop_event)
        return 0
    finally:
        database.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"FATAL: {e}", file=sys.stderr)
        return 1

    verbose = config.testing.verbose_logging
    setup_logging("DEBUG" if verbose else config.monitoring.log_level,
                  config.monitoring.log_file)
    log.info("Loaded configuration from %s", config.source_path)

    try:
        if args.test_email or config.testing.test_mode:
            return run_test_email(config)
        return run_monitor(config, once=args.once)
    except KeyboardInterrupt:
        log.info("Interrupted by user")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
