#!/usr/bin/env python3
"""
Tests for configuration loading and validation
"""
import os
import shutil
import tempfile
import textwrap
import unittest

from postal_monitor.config import (
    DEFAULT_STATE_FILE,
    SMTPConfig,
    find_config_file,
    load_config,
    parse_bool,
)
from postal_monitor.errors import ConfigError

VALID_CONFIG = textwrap.dedent("""\
    [database]
    host = db.internal
    port = 3307
    name = postal-server-1
    user = postal
    password = dbpass

    [smtp]
    host = smtp.example.com
    port = 465
    user = alerts@example.com
    password = smtppass
    use_tls = false

    [notifications]
    email = ops@example.com
    from_email = alerts@example.com

    [monitoring]
    check_interval_minutes = 2
    state_file_path = /tmp/cursor
""")


class ConfigTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def write_config(self, content: str, name: str = "config.ini") -> str:
        path = os.path.join(self.temp_dir, name)
        with open(path, "w") as f:
            f.write(content)
        return path


class TestLoadConfig(ConfigTestCase):

    def test_valid_config(self):
        config = load_config(self.write_config(VALID_CONFIG), environ={})

        self.assertEqual(config.database.host, "db.internal")
        self.assertEqual(config.database.port, 3307)
        self.assertEqual(config.database.name, "postal-server-1")
        self.assertEqual(config.smtp.port, 465)
        self.assertFalse(config.smtp.use_tls)
        self.assertFalse(config.smtp.skip_cert_verify)
        self.assertEqual(config.smtp.encryption, "SSL/TLS")
        self.assertEqual(config.notifications.email, "ops@example.com")
        self.assertEqual(config.notifications.from_name, "Postal Monitor")
        self.assertEqual(config.monitoring.interval_seconds, 120)
        self.assertEqual(config.monitoring.state_file_path, "/tmp/cursor")
        self.assertFalse(config.testing.verbose_logging)
        self.assertFalse(config.testing.test_mode)

    def test_defaults(self):
        content = VALID_CONFIG.replace("port = 3307\n", "").replace(
            "check_interval_minutes = 2\nstate_file_path = /tmp/cursor\n", "")
        config = load_config(self.write_config(content), environ={})

        self.assertEqual(config.database.port, 3306)
        self.assertEqual(config.monitoring.check_interval_minutes, 5)
        self.assertEqual(config.monitoring.state_file_path, DEFAULT_STATE_FILE)
        self.assertEqual(config.monitoring.email_delay_seconds, 1.0)

    def test_testing_section(self):
        content = VALID_CONFIG + "\n[testing]\nverbose_logging = yes\ntest_mode = on\n"
        config = load_config(self.write_config(content), environ={})
        self.assertTrue(config.testing.verbose_logging)
        self.assertTrue(config.testing.test_mode)

    def test_environment_overrides_file(self):
        config = load_config(self.write_config(VALID_CONFIG), environ={
            "POSTAL_MONITOR_SMTP_PASSWORD": "from-env",
            "POSTAL_MONITOR_DATABASE_HOST": "other-db",
        })
        self.assertEqual(config.smtp.password, "from-env")
        self.assertEqual(config.database.host, "other-db")

    def test_missing_section_is_fatal(self):
        content = VALID_CONFIG.split("[monitoring]")[0]
        with self.assertRaises(ConfigError) as ctx:
            load_config(self.write_config(content), environ={})
        self.assertIn("monitoring", str(ctx.exception))

    def test_missing_required_key(self):
        content = VALID_CONFIG.replace("email = ops@example.com\n", "")
        with self.assertRaises(ConfigError) as ctx:
            load_config(self.write_config(content), environ={})
        self.assertIn("email", str(ctx.exception))

    def test_unparsable_file(self):
        with self.assertRaises(ConfigError):
            load_config(self.write_config("this is not an ini file"), environ={})

    def test_missing_explicit_file(self):
        with self.assertRaises(ConfigError):
            load_config(os.path.join(self.temp_dir, "nope.ini"), environ={})

    def test_invalid_integer(self):
        content = VALID_CONFIG.replace("port = 465", "port = smtp")
        with self.assertRaises(ConfigError):
            load_config(self.write_config(content), environ={})

    def test_invalid_timezone(self):
        content = VALID_CONFIG + "timezone = Mars/Olympus_Mons\n"
        with self.assertRaises(ConfigError) as ctx:
            load_config(self.write_config(content), environ={})
        self.assertIn("timezone", str(ctx.exception))

    def test_invalid_notification_address(self):
        content = VALID_CONFIG.replace("email = ops@example.com", "email = ops")
        with self.assertRaises(ConfigError):
            load_config(self.write_config(content), environ={})


class TestFindConfigFile(ConfigTestCase):

    def test_environment_variable_path(self):
        path = self.write_config(VALID_CONFIG, "monitor.ini")
        found = find_config_file(None, environ={"POSTAL_MONITOR_CONFIG": path})
        self.assertEqual(str(found), path)

    def test_nothing_found(self):
        cwd = os.getcwd()
        os.chdir(self.temp_dir)
        try:
            if os.path.exists("/etc/postal-monitor/config.ini"):
                self.skipTest("system config present")
            with self.assertRaises(ConfigError):
                find_config_file(None, environ={})
        finally:
            os.chdir(cwd)


class TestHelpers(unittest.TestCase):

    def test_parse_bool(self):
        for value in ("true", "True", "1", "yes", "on"):
            self.assertTrue(parse_bool(value))
        for value in ("false", "0", "no", "off", ""):
            self.assertFalse(parse_bool(value))
        with self.assertRaises(ConfigError):
            parse_bool("maybe")

    def test_smtp_validation(self):
        self.assertEqual(SMTPConfig(host="smtp.example.com").validate(), [])
        errors = SMTPConfig(host="", port=70000).validate()
        self.assertIn("SMTP host is required", errors)
        self.assertIn("Invalid SMTP port", errors)


if __name__ == '__main__':
    unittest.main()
