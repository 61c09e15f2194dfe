"""
Failure notifier - renders an alert for a failed delivery and mails it

One SMTP connection is opened per alert. With testing.verbose_logging on,
the whole SMTP conversation is forwarded to a trace sink as
(level, message) pairs instead of smtplib's default stderr printing.
"""
import html as html_lib
import logging
import re
import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from enum import Enum
from string import Template
from typing import Callable, Optional

import pytz

from .config import MonitorConfig
from .logging_setup import get_logger
from .models import FailureRecord

TraceSink = Callable[[int, str], None]

PLACEHOLDER = "N/A"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
SUBJECT_TEMPLATE = "Postal Delivery Failure Alert - {status}"
TEST_SUBJECT = "Postal Monitor Test Email"
CREDENTIALS_HIDDEN = "[credentials hidden]"

ALERT_TEMPLATE = Template("""\
<h2>Postal Delivery Failure Alert</h2>
<p><strong>A delivery failure has been detected in your Postal mail server.</strong></p>

<h3>Delivery Details:</h3>
<ul>
    <li><strong>Delivery ID:</strong> $id</li>
    <li><strong>Message ID:</strong> $message_id</li>
    <li><strong>Status:</strong> $status</li>
    <li><strong>Timestamp:</strong> $timestamp</li>
</ul>

<h3>Message Details:</h3>
<ul>
    <li><strong>From:</strong> $mail_from</li>
    <li><strong>To:</strong> $rcpt_to</li>
    <li><strong>Subject:</strong> $subject</li>
    <li><strong>Scope:</strong> $scope</li>
</ul>

<h3>Error Information:</h3>
<ul>
    <li><strong>Error Code:</strong> $code</li>
    <li><strong>Output:</strong> $output</li>
    <li><strong>Details:</strong> $details</li>
</ul>

<p><em>This is an automated notification from your Postal monitoring system.</em></p>
""")

TEST_TEMPLATE = Template("""\
<h2>Postal Monitor Test Email</h2>
<p>This message confirms that the Postal monitor can deliver alerts.</p>
<ul>
    <li><strong>SMTP Host:</strong> $host</li>
    <li><strong>SMTP Port:</strong> $port</li>
    <li><strong>Encryption:</strong> $encryption</li>
    <li><strong>Sent At:</strong> $sent_at</li>
</ul>
<p><em>No action is required.</em></p>
""")

_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


class SendState(Enum):
    """Progress of a single Notifier.send call"""
    IDLE = "idle"
    BUILDING = "building"
    DISPATCHING = "dispatching"
    SENT = "sent"
    FAILED = "failed"


# ───── SMTP TRANSPORTS ─────────────────────────────────
class _TraceMixin:
    """Route smtplib debug output to a sink instead of stderr"""

    def __init__(self, *args, trace_sink: Optional[TraceSink] = None, **kwargs):
        self.trace_sink = trace_sink
        self._hide_sent = False
        super().__init__(*args, **kwargs)

    def auth(self, *args, **kwargs):
        # AUTH commands and their base64 continuations carry the credentials
        self._hide_sent = True
        try:
            return super().auth(*args, **kwargs)
        finally:
            self._hide_sent = False

    def _print_debug(self, *args):
        if self._hide_sent and args and args[0] == "send:":
            args = ("send:", CREDENTIALS_HIDDEN)
        if self.trace_sink is None:
            return super()._print_debug(*args)
        text = " ".join(str(arg) for arg in args)
        for line in text.splitlines():
            if line.strip():
                self.trace_sink(logging.DEBUG, line.rstrip())


class TracingSMTP(_TraceMixin, smtplib.SMTP):
    """Plain SMTP connection, upgraded with STARTTLS by the notifier"""


class TracingSMTP_SSL(_TraceMixin, smtplib.SMTP_SSL):
    """Implicit TLS (SMTPS) connection"""


def build_ssl_context(skip_cert_verify: bool = False) -> ssl.SSLContext:
    """Default TLS context, or one that accepts any certificate"""
    context = ssl.create_default_context()
    if skip_cert_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def describe_transport_error(error: Exception) -> str:
    """Human readable diagnostic for an SMTP failure"""
    if isinstance(error, smtplib.SMTPRecipientsRefused):
        refused = ", ".join(
            f"{rcpt} ({code} {_decode(msg)})" for rcpt, (code, msg) in error.recipients.items()
        )
        return f"Recipients refused: {refused}"
    if isinstance(error, smtplib.SMTPResponseException):
        return f"SMTP Error {error.smtp_code}: {_decode(error.smtp_error)}"
    if isinstance(error, ssl.SSLError):
        return f"TLS error: {error}"
    if isinstance(error, OSError):
        return f"Could not connect to SMTP host: {error}"
    return str(error) or error.__class__.__name__


def _decode(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    return str(value)


# ───── RENDERING ───────────────────────────────────────
def format_timestamp(value: Optional[datetime], tz_name: Optional[str] = None) -> str:
    """Render a delivery time in the configured zone, server local time otherwise"""
    if value is None:
        return PLACEHOLDER
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    if tz_name:
        value = value.astimezone(pytz.timezone(tz_name))
    else:
        value = value.astimezone()
    return value.strftime(TIMESTAMP_FORMAT)


def render_value(value) -> str:
    """Escape a field for HTML, using the placeholder when it is absent"""
    if value is None or value == "":
        return PLACEHOLDER
    return "<br>".join(html_lib.escape(str(value)).splitlines())


def html_to_text(html_body: str) -> str:
    """Plain text fallback: line breaks kept, markup stripped"""
    text = _BR_RE.sub("\n", html_body)
    text = _TAG_RE.sub("", text)
    text = html_lib.unescape(text)

    lines = []
    for line in text.splitlines():
        line = line.strip()
        if not line and (not lines or not lines[-1]):
            continue
        lines.append(line)
    return "\n".join(lines).strip() + "\n"


def build_subject(record: FailureRecord) -> str:
    return SUBJECT_TEMPLATE.format(status=record.status)


def build_html_body(record: FailureRecord, tz_name: Optional[str] = None) -> str:
    return ALERT_TEMPLATE.substitute(
        id=record.id,
        message_id=record.message_id,
        status=render_value(record.status),
        timestamp=format_timestamp(record.timestamp, tz_name),
        mail_from=render_value(record.mail_from),
        rcpt_to=render_value(record.rcpt_to),
        subject=render_value(record.subject),
        scope=render_value(record.scope),
        code=render_value(record.code),
        output=render_value(record.output),
        details=render_value(record.details),
    )


# ───── NOTIFIER ────────────────────────────────────────
class FailureNotifier:
    """Build and send failure alerts over SMTP"""

    def __init__(self, config: MonitorConfig, trace_sink: Optional[TraceSink] = None,
                 logger: Optional[logging.Logger] = None):
        self.smtp = config.smtp
        self.notifications = config.notifications
        self.tz_name = config.monitoring.timezone
        self.verbose = config.testing.verbose_logging
        self.log = logger or get_logger("notifier")
        self.trace_sink = trace_sink or self._log_trace
        self.ssl_context = build_ssl_context(self.smtp.skip_cert_verify)
        self.state = SendState.IDLE
        self.last_error: Optional[str] = None

        if self.smtp.skip_cert_verify:
            self.log.warning("SMTP certificate verification is DISABLED (skip_cert_verify=true)")

    def _log_trace(self, level: int, message: str) -> None:
        self.log.log(level, "SMTP: %s", message)

    def _set_state(self, state: SendState) -> None:
        self.log.debug("Notifier state %s -> %s", self.state.value, state.value)
        self.state = state

    def build_message(self, subject: str, html_body: str,
                      delivery_id: Optional[int] = None) -> MIMEMultipart:
        """Create a multipart/alternative message addressed to the alert recipient"""
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.notifications.from_name, self.notifications.from_email))
        msg["To"] = self.notifications.email
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = make_msgid(domain=self.notifications.from_email.rpartition("@")[2] or None)
        if delivery_id is not None:
            msg["X-Postal-Delivery-ID"] = str(delivery_id)

        msg.attach(MIMEText(html_to_text(html_body), "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))
        return msg

    def build_alert(self, record: FailureRecord) -> MIMEMultipart:
        return self.build_message(
            build_subject(record),
            build_html_body(record, self.tz_name),
            delivery_id=record.id,
        )

    def _open_transport(self) -> smtplib.SMTP:
        """Connect, secure and authenticate an SMTP session"""
        cfg = self.smtp
        if cfg.use_tls:
            server = TracingSMTP(timeout=cfg.timeout, trace_sink=self.trace_sink)
        else:
            server = TracingSMTP_SSL(timeout=cfg.timeout, context=self.ssl_context,
                                     trace_sink=self.trace_sink)
        if self.verbose:
            server.set_debuglevel(1)

        try:
            server.connect(cfg.host, cfg.port)
            if cfg.use_tls:
                server.starttls(context=self.ssl_context)
            if cfg.user:
                server.login(cfg.user, cfg.password)
        except Exception:
            server.close()
            raise
        return server

    def _dispatch(self, msg: MIMEMultipart) -> None:
        with self._open_transport() as server:
            server.send_message(msg)

    def _deliver(self, msg: MIMEMultipart, label: str) -> bool:
        """Send msg, recording the outcome; never raises"""
        self._set_state(SendState.DISPATCHING)
        try:
            self._dispatch(msg)
        except (smtplib.SMTPException, OSError) as e:
            self.last_error = describe_transport_error(e)
            self._set_state(SendState.FAILED)
            self.log.error("Failed to send notification for %s: %s", label, self.last_error)
            return False
        except Exception as e:
            self.last_error = str(e) or e.__class__.__name__
            self._set_state(SendState.FAILED)
            self.log.exception("Unexpected error sending notification for %s", label)
            return False

        self.last_error = None
        self._set_state(SendState.SENT)
        return True

    def send(self, record: FailureRecord) -> bool:
        """Alert on one failed delivery. Returns False on any failure."""
        self.state = SendState.IDLE
        self._set_state(SendState.BUILDING)
        try:
            msg = self.build_alert(record)
        except Exception as e:
            self.last_error = str(e) or e.__class__.__name__
            self._set_state(SendState.FAILED)
            self.log.exception("Failed to build notification for delivery ID: %s", record.id)
            return False

        if not self._deliver(msg, f"delivery ID: {record.id}"):
            return False

        self.log.info("Notification sent for delivery ID: %s", record.id)
        return True

    def send_test(self) -> bool:
        """Send a static confirmation email to verify SMTP settings"""
        cfg = self.smtp
        self.log.info("Sending test email")
        self.log.info("SMTP Host: %s", cfg.host)
        self.log.info("SMTP Port: %d", cfg.port)
        self.log.info("SMTP User: %s", cfg.user or "(no authentication)")
        self.log.info("Encryption: %s", cfg.encryption)
        self.log.info("Certificate verification: %s",
                      "disabled" if cfg.skip_cert_verify else "enabled")
        self.log.info("From: %s", self.notifications.from_email)
        self.log.info("To: %s", self.notifications.email)

        self.state = SendState.IDLE
        self._set_state(SendState.BUILDING)
        html_body = TEST_TEMPLATE.substitute(
            host=html_lib.escape(cfg.host),
            port=cfg.port,
            encryption=cfg.encryption,
            sent_at=datetime.now().strftime(TIMESTAMP_FORMAT),
        )
        msg = self.build_message(TEST_SUBJECT, html_body)

        if not self._deliver(msg, "test email"):
            return False

        self.log.info("Test email sent successfully to %s", self.notifications.email)
        return True
