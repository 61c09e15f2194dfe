#!/usr/bin/env python3
"""
Tests for the command line driver
"""
import os
import shutil
import signal
import tempfile
import threading
import unittest
from unittest.mock import patch

from postal_monitor import cli
from postal_monitor.config import load_config
from postal_monitor.errors import DatabaseError
from postal_monitor.logging_setup import get_logger
from postal_monitor.test_config import VALID_CONFIG


class CliTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.state_file = os.path.join(self.temp_dir, "cursor")
        self.config_path = os.path.join(self.temp_dir, "config.ini")
        with open(self.config_path, "w") as f:
            f.write(VALID_CONFIG.replace("/tmp/cursor", self.state_file))

        for name in ("SystemdNotifier", "DeliveryDatabase", "FailureNotifier"):
            patcher = patch(f"postal_monitor.cli.{name}")
            setattr(self, name, patcher.start())
            self.addCleanup(patcher.stop)

        self.database = self.DeliveryDatabase.return_value
        self.database.fetch_failures.return_value = []
        self.notifier = self.FailureNotifier.return_value

        handlers = (signal.getsignal(signal.SIGINT), signal.getsignal(signal.SIGTERM))
        self.addCleanup(signal.signal, signal.SIGINT, handlers[0])
        self.addCleanup(signal.signal, signal.SIGTERM, handlers[1])
        self.addCleanup(self.reset_logging)

    def reset_logging(self):
        logger = get_logger()
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        logger.propagate = True

    def tearDown(self):
        shutil.rmtree(self.temp_dir)


class TestMain(CliTestCase):

    def test_test_email_success(self):
        self.notifier.send_test.return_value = True
        with patch("postal_monitor.cli.CheckpointStore") as store:
            self.assertEqual(cli.main(["--test-email", "-c", self.config_path]), 0)
            store.assert_not_called()
        self.DeliveryDatabase.assert_not_called()
        self.assertFalse(os.path.exists(self.state_file))

    def test_test_email_failure_exit_code(self):
        self.notifier.send_test.return_value = False
        self.assertEqual(cli.main(["--test-email", "--config", self.config_path]), 1)

    def test_forced_test_mode(self):
        with open(self.config_path, "a") as f:
            f.write("\n[testing]\ntest_mode = true\n")
        self.notifier.send_test.return_value = True

        self.assertEqual(cli.main(["-c", self.config_path]), 0)
        self.notifier.send_test.assert_called_once()
        self.DeliveryDatabase.assert_not_called()

    def test_missing_config_is_fatal(self):
        missing = os.path.join(self.temp_dir, "missing.ini")
        with patch("sys.stderr"):
            self.assertEqual(cli.main(["--once", "-c", missing]), 1)
        self.DeliveryDatabase.assert_not_called()

    def test_once_runs_single_cycle(self):
        with open(self.state_file, "w") as f:
            f.write("9")
        self.assertEqual(cli.main(["--once", "-c", self.config_path]), 0)

        self.database.connect.assert_called_once()
        self.database.fetch_failures.assert_called_once_with(9)
        self.database.close.assert_called_once()

    def test_database_failure_at_startup(self):
        self.database.connect.side_effect = DatabaseError("Database connection failed: refused")
        self.assertEqual(cli.main(["--once", "-c", self.config_path]), 1)
        self.database.fetch_failures.assert_not_called()

    def test_corrupt_checkpoint_at_startup(self):
        with open(self.state_file, "w") as f:
            f.write("garbage")
        self.assertEqual(cli.main(["--once", "-c", self.config_path]), 1)
        self.database.connect.assert_not_called()

    def test_interrupt_while_connecting(self):
        self.database.connect.side_effect = KeyboardInterrupt
        self.assertEqual(cli.main(["--once", "-c", self.config_path]), cli.EXIT_INTERRUPTED)
        self.database.fetch_failures.assert_not_called()

    def test_interrupt_during_single_cycle(self):
        self.database.fetch_failures.side_effect = KeyboardInterrupt
        with self.assertLogs("postal-monitor.cli", level="INFO") as logs:
            self.assertEqual(cli.main(["--once", "-c", self.config_path]), 130)
        self.database.close.assert_called_once()
        self.assertIn("Interrupted by user", "\n".join(logs.output))

    def test_interrupt_during_test_email(self):
        self.notifier.send_test.side_effect = KeyboardInterrupt
        self.assertEqual(cli.main(["--test-email", "-c", self.config_path]), 130)

    def test_help_exits_zero(self):
        with patch("sys.stdout"):
            with self.assertRaises(SystemExit) as ctx:
                cli.main(["--help"])
        self.assertEqual(ctx.exception.code, 0)


class TestContinuousMode(CliTestCase):

    def test_stops_on_event(self):
        config = load_config(self.config_path, environ={})
        stop = threading.Event()
        stop.set()

        self.assertEqual(cli.run_monitor(config, once=False, stop_event=stop), 0)
        self.SystemdNotifier.return_value.ready.assert_called_once()
        self.database.close.assert_called_once()

    def test_signal_handler_sets_event(self):
        config = load_config(self.config_path, environ={})
        stop = threading.Event()

        def fetch(after_id):
            signal.getsignal(signal.SIGTERM)(signal.SIGTERM, None)
            return []

        self.database.fetch_failures.side_effect = fetch
        self.assertEqual(cli.run_monitor(config, once=False, stop_event=stop), 0)
        self.assertTrue(stop.is_set())
        self.SystemdNotifier.return_value.stopping.assert_called_once()


if __name__ == '__main__':
    unittest.main()
