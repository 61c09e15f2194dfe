"""
Read-only access to the Postal message database (MySQL / MariaDB)
"""
import time
from typing import Any, Callable, List, Optional

import mysql.connector

from .config import DatabaseConfig
from .errors import DatabaseError
from .logging_setup import get_logger
from .models import OUTGOING_SCOPE, SUCCESS_STATUSES, FailureRecord

log = get_logger("database")

_STATUS_PLACEHOLDERS = ", ".join(["%s"] * len(SUCCESS_STATUSES))

FAILED_DELIVERIES_SQL = f"""
    SELECT
        d.id,
        d.message_id,
        d.status,
        d.code,
        d.output,
        d.details,
        d.timestamp,
        m.rcpt_to,
        m.mail_from,
        m.subject,
        m.scope
    FROM deliveries d
    JOIN messages m ON d.message_id = m.id
    WHERE d.id > %s
      AND d.status NOT IN ({_STATUS_PLACEHOLDERS})
      AND m.scope = %s
    ORDER BY d.id ASC
"""


def failure_query_params(after_id: int) -> tuple:
    """Bound parameters for FAILED_DELIVERIES_SQL, in placeholder order"""
    return (int(after_id),) + tuple(SUCCESS_STATUSES) + (OUTGOING_SCOPE,)


class DeliveryDatabase:
    """Manage the database connection and the failed delivery query"""

    def __init__(self, config: DatabaseConfig,
                 connect: Callable[..., Any] = mysql.connector.connect,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self._connect = connect
        self._sleep = sleep
        self.conn = None

    def connect(self):
        """Connect to database with retry logic"""
        attempts = self.config.connect_attempts
        for attempt in range(1, attempts + 1):
            try:
                self.conn = self._connect(
                    host=self.config.host,
                    port=self.config.port,
                    database=self.config.name,
                    user=self.config.user,
                    password=self.config.password,
                    charset="utf8mb4",
                    connection_timeout=self.config.connect_timeout,
                    autocommit=True,
                )
                log.info("Connected to database %s on %s:%d",
                         self.config.name, self.config.host, self.config.port)
                return self.conn
            except mysql.connector.Error as e:
                if attempt < attempts:
                    wait_time = 5 * attempt
                    log.warning("Database connection failed, retrying in %ds: %s",
                                wait_time, e)
                    self._sleep(wait_time)
                else:
                    log.critical("Failed to connect to database after %d attempts",
                                 attempts)
                    raise DatabaseError(f"Database connection failed: {e}") from e

    def ensure_connection(self):
        """Ensure database connection is alive"""
        if self.conn is None:
            self.connect()
            return
        try:
            self.conn.ping(reconnect=True, attempts=1, delay=0)
        except mysql.connector.Error:
            log.warning("Database connection lost, reconnecting...")
            self.connect()

    def fetch_failures(self, after_id: int) -> List[FailureRecord]:
        """
        Failed outgoing deliveries with an id greater than after_id, oldest first.

        Deliveries with a status in SUCCESS_STATUSES or a message scope other
        than outgoing are filtered out by the query itself.
        """
        self.ensure_connection()

        cursor = None
        try:
            cursor = self.conn.cursor(dictionary=True)
            cursor.execute(FAILED_DELIVERIES_SQL, failure_query_params(after_id))
            rows = cursor.fetchall()
        except mysql.connector.Error as e:
            raise DatabaseError(f"Database error: {e}") from e
        finally:
            if cursor is not None:
                cursor.close()

        return [FailureRecord.from_row(row) for row in rows]

    def close(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
            except mysql.connector.Error as e:
                log.debug("Error closing database connection: %s", e)
            self.conn = None
