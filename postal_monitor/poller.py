"""
Failure poller - finds new failed deliveries and drives the notifier

The checkpoint advances past every record once its notification attempt
finishes, whether or not the email went out. A record that can never be
sent therefore cannot stall the monitor; the cost is that a failed alert
is not retried.
"""
import threading
import time
from typing import Callable, List, Optional, Protocol

from .checkpoint import CheckpointStore
from .errors import DatabaseError
from .logging_setup import get_logger
from .models import FailureRecord
from .systemd import SystemdNotifier

log = get_logger("poller")


class FailureSource(Protocol):
    def fetch_failures(self, after_id: int) -> List[FailureRecord]: ...


class Notifier(Protocol):
    def send(self, record: FailureRecord) -> bool: ...


class FailurePoller:
    """Poll for failures after the checkpoint and notify on each, in id order"""

    def __init__(self, source: FailureSource, notifier: Notifier,
                 checkpoint: CheckpointStore, email_delay_seconds: float = 1.0,
                 systemd: Optional[SystemdNotifier] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.source = source
        self.notifier = notifier
        self.checkpoint = checkpoint
        self.email_delay_seconds = email_delay_seconds
        self.systemd = systemd
        self._sleep = sleep
        self.stats = {"cycles": 0, "sent": 0, "failed": 0, "query_errors": 0}

    def poll_once(self, cursor: int) -> List[FailureRecord]:
        """Failed outgoing deliveries newer than cursor, ascending by id"""
        return self.source.fetch_failures(cursor)

    def process(self, records: List[FailureRecord], cursor: int) -> int:
        """Notify on each record and advance the checkpoint; returns the new cursor"""
        pending = len(records)
        for index, record in enumerate(records):
            if index and pending > 1 and self.email_delay_seconds > 0:
                self._sleep(self.email_delay_seconds)

            if self.notifier.send(record):
                self.stats["sent"] += 1
            else:
                self.stats["failed"] += 1
                log.warning("Alert for delivery ID %s was not sent; moving past it", record.id)

            if record.id > cursor:
                cursor = record.id
                self.checkpoint.write(cursor)
            else:
                log.warning("Delivery ID %s is not above checkpoint %d, not saving it",
                            record.id, cursor)

            if self.systemd:
                self.systemd.watchdog()
        return cursor

    def run_cycle(self, cursor: int) -> int:
        """One query-and-notify pass. Query errors leave the cursor unchanged."""
        self.stats["cycles"] += 1
        log.info("Checking for failed deliveries since ID: %d", cursor)

        try:
            records = self.poll_once(cursor)
        except DatabaseError as e:
            self.stats["query_errors"] += 1
            log.error("%s", e)
            if self.systemd:
                self.systemd.status(f"Database error at checkpoint {cursor}")
            return cursor

        if not records:
            log.info("No new delivery failures found")
        else:
            log.info("Found %d new delivery failure(s)", len(records))
            cursor = self.process(records, cursor)

        if self.systemd:
            self.systemd.status(
                f"Checkpoint {cursor}, sent {self.stats['sent']}, failed {self.stats['failed']}"
            )
        return cursor

    def run_forever(self, cursor: int, interval_seconds: float,
                    stop_event: Optional[threading.Event] = None) -> int:
        """
        Run poll cycles every interval_seconds until stop_event is set.

        Returns the last cursor so callers (and tests) can inspect progress.
        """
        stop_event = stop_event or threading.Event()
        log.info("Starting continuous monitoring (check every %s seconds)", interval_seconds)

        while not stop_event.is_set():
            cursor = self.run_cycle(cursor)
            if self.systemd:
                self.systemd.watchdog()
            stop_event.wait(interval_seconds)

        log.info("Monitoring stopped at checkpoint %d", cursor)
        return cursor
