"""
Configuration loading

The monitor reads an INI file with [database], [smtp], [notifications],
[monitoring] and an optional [testing] section. Any value can be
overridden from the environment (or a .env file next to the config) as
POSTAL_MONITOR_<SECTION>_<KEY>, which keeps passwords out of the file.
"""
import configparser
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import pytz
from dotenv import load_dotenv

from .errors import ConfigError

ENV_PREFIX = "POSTAL_MONITOR"
CONFIG_ENV_VAR = "POSTAL_MONITOR_CONFIG"
DEFAULT_CONFIG_PATHS = (
    "/etc/postal-monitor/config.ini",
    "config.ini",
)
DEFAULT_STATE_FILE = "./last_checked_delivery_id"

REQUIRED_SECTIONS = ("database", "smtp", "notifications", "monitoring")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


# ───── CONFIGURATION CLASSES ─────────────────────────────
@dataclass(frozen=True)
class DatabaseConfig:
    host: str
    name: str
    user: str
    password: str = ""
    port: int = 3306
    connect_attempts: int = 3
    connect_timeout: int = 10


@dataclass(frozen=True)
class SMTPConfig:
    """SMTP configuration with validation"""
    host: str
    port: int = 587
    user: str = ""
    password: str = ""
    use_tls: bool = True
    skip_cert_verify: bool = False
    timeout: int = 30

    @property
    def encryption(self) -> str:
        return "STARTTLS" if self.use_tls else "SSL/TLS"

    def validate(self) -> List[str]:
        """Validate SMTP configuration"""
        errors = []
        if not self.host:
            errors.append("SMTP host is required")
        if not 0 < self.port < 65536:
            errors.append("Invalid SMTP port")
        if self.user and not self.password:
            errors.append("SMTP password is required when a user is set")
        if self.timeout <= 0:
            errors.append("SMTP timeout must be positive")
        return errors


@dataclass(frozen=True)
class NotificationConfig:
    email: str
    from_email: str
    from_name: str = "Postal Monitor"

    def validate(self) -> List[str]:
        errors = []
        for label, address in (("notification email", self.email),
                               ("from email", self.from_email)):
            if not address or "@" not in address:
                errors.append(f"Invalid {label} address: {address!r}")
        return errors


@dataclass(frozen=True)
class MonitoringConfig:
    check_interval_minutes: float = 5
    state_file_path: str = DEFAULT_STATE_FILE
    email_delay_seconds: float = 1.0
    timezone: Optional[str] = None
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def interval_seconds(self) -> float:
        return self.check_interval_minutes * 60

    def validate(self) -> List[str]:
        errors = []
        if self.check_interval_minutes <= 0:
            errors.append("check_interval_minutes must be positive")
        if self.email_delay_seconds < 0:
            errors.append("email_delay_seconds cannot be negative")
        if self.timezone:
            try:
                pytz.timezone(self.timezone)
            except pytz.UnknownTimeZoneError:
                errors.append(f"Unknown timezone: {self.timezone}")
        return errors


@dataclass(frozen=True)
class TestingConfig:
    verbose_logging: bool = False
    test_mode: bool = False


@dataclass(frozen=True)
class MonitorConfig:
    """Everything the monitor needs, built once at startup"""
    database: DatabaseConfig
    smtp: SMTPConfig
    notifications: NotificationConfig
    monitoring: MonitoringConfig
    testing: TestingConfig
    source_path: Optional[str] = None


# ───── PARSING HELPERS ─────────────────────────────────
def parse_bool(value: str, key: str = "value") -> bool:
    """Parse an INI style boolean (true/false, yes/no, on/off, 1/0)"""
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {value!r}")


class _Section:
    """Read typed values from one INI section with environment overrides"""

    def __init__(self, parser: configparser.ConfigParser, name: str,
                 environ: Dict[str, str]):
        self.name = name
        self.values = dict(parser.items(name)) if parser.has_section(name) else {}
        prefix = f"{ENV_PREFIX}_{name.upper()}_"
        for var, value in environ.items():
            if var.startswith(prefix):
                self.values[var[len(prefix):].lower()] = value

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.values.get(key)
        if value is None:
            return default
        return value.strip()

    def require(self, key: str) -> str:
        value = self.get(key)
        if not value:
            raise ConfigError(f"Missing required configuration value: [{self.name}] {key}")
        return value

    def get_int(self, key: str, default: int) -> int:
        value = self.get(key)
        if value in (None, ""):
            return default
        try:
            return int(value)
        except ValueError:
            raise ConfigError(f"Invalid integer for [{self.name}] {key}: {value!r}") from None

    def get_float(self, key: str, default: float) -> float:
        value = self.get(key)
        if value in (None, ""):
            return default
        try:
            return float(value)
        except ValueError:
            raise ConfigError(f"Invalid number for [{self.name}] {key}: {value!r}") from None

    def get_bool(self, key: str, default: bool) -> bool:
        value = self.get(key)
        if value is None:
            return default
        return parse_bool(value, f"[{self.name}] {key}")


# ───── LOADING ─────────────────────────────────────────
def find_config_file(explicit: Optional[str] = None,
                     environ: Optional[Dict[str, str]] = None) -> Path:
    """Locate the config file, the explicit path taking precedence"""
    environ = os.environ if environ is None else environ

    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise ConfigError(f"Configuration file not found: {explicit}")
        return path

    candidates = [environ.get(CONFIG_ENV_VAR)] + list(DEFAULT_CONFIG_PATHS)
    for candidate in candidates:
        if candidate and Path(candidate).is_file():
            return Path(candidate)

    raise ConfigError(
        "Configuration file not found. Please check config.ini exists "
        f"(searched: {', '.join(c for c in candidates if c)})"
    )


def load_config(path: Optional[str] = None,
                environ: Optional[Dict[str, str]] = None) -> MonitorConfig:
    """
    Load, validate and return the monitor configuration.

    Raises ConfigError on anything that should stop the monitor before it
    starts: a missing or unparsable file, a missing required section or
    key, or values that fail validation.
    """
    config_path = find_config_file(path, environ)

    if environ is None:
        load_dotenv(config_path.parent / ".env")
        load_dotenv()
        environ = dict(os.environ)

    parser = configparser.ConfigParser(interpolation=None)
    try:
        with open(config_path, encoding="utf-8") as f:
            parser.read_file(f)
    except (OSError, configparser.Error) as e:
        raise ConfigError(f"Failed to parse configuration file: {config_path}: {e}") from e

    for section in REQUIRED_SECTIONS:
        if not parser.has_section(section):
            raise ConfigError(f"Missing required configuration section: {section}")

    db = _Section(parser, "database", environ)
    smtp = _Section(parser, "smtp", environ)
    notif = _Section(parser, "notifications", environ)
    mon = _Section(parser, "monitoring", environ)
    testing = _Section(parser, "testing", environ)

    config = MonitorConfig(
        database=DatabaseConfig(
            host=db.require("host"),
            name=db.require("name"),
            user=db.require("user"),
            password=db.get("password", ""),
            port=db.get_int("port", 3306),
            connect_attempts=max(1, db.get_int("connect_attempts", 3)),
            connect_timeout=db.get_int("connect_timeout", 10),
        ),
        smtp=SMTPConfig(
            host=smtp.require("host"),
            port=smtp.get_int("port", 587),
            user=smtp.get("user", ""),
            password=smtp.get("password", ""),
            use_tls=smtp.get_bool("use_tls", True),
            skip_cert_verify=smtp.get_bool("skip_cert_verify", False),
            timeout=smtp.get_int("timeout", 30),
        ),
        notifications=NotificationConfig(
            email=notif.require("email"),
            from_email=notif.require("from_email"),
            from_name=notif.get("from_name") or "Postal Monitor",
        ),
        monitoring=MonitoringConfig(
            check_interval_minutes=mon.get_float("check_interval_minutes", 5),
            state_file_path=mon.get("state_file_path") or DEFAULT_STATE_FILE,
            email_delay_seconds=mon.get_float("email_delay_seconds", 1.0),
            timezone=mon.get("timezone") or None,
            log_level=mon.get("log_level") or "INFO",
            log_file=mon.get("log_file") or None,
        ),
        testing=TestingConfig(
            verbose_logging=testing.get_bool("verbose_logging", False),
            test_mode=testing.get_bool("test_mode", False),
        ),
        source_path=str(config_path),
    )

    errors = config.smtp.validate() + config.notifications.validate() + config.monitoring.validate()
    if errors:
        raise ConfigError(f"Configuration errors: {'; '.join(errors)}")

    return config
