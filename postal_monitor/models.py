"""
Value types read from the Postal database
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Union

# Delivery statuses Postal considers a successful (or still retrying) outcome
SUCCESS_STATUSES = ("Sent", "SoftFail")

OUTGOING_SCOPE = "outgoing"


def _to_datetime(value: Union[None, int, float, Decimal, datetime]) -> Optional[datetime]:
    """Postal stores delivery timestamps as epoch seconds in a DECIMAL column"""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="replace")
    return str(value)


@dataclass(frozen=True)
class FailureRecord:
    """One failed outgoing delivery joined with its message"""
    id: int
    message_id: int
    status: str
    timestamp: Optional[datetime]
    mail_from: str
    rcpt_to: str
    subject: str
    scope: str = OUTGOING_SCOPE
    code: Optional[str] = None
    output: Optional[str] = None
    details: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FailureRecord":
        """Map a dictionary cursor row onto a record"""
        return cls(
            id=int(row["id"]),
            message_id=int(row["message_id"]),
            status=str(row["status"]),
            timestamp=_to_datetime(row.get("timestamp")),
            mail_from=_optional_text(row.get("mail_from")) or "",
            rcpt_to=_optional_text(row.get("rcpt_to")) or "",
            subject=_optional_text(row.get("subject")) or "",
            scope=_optional_text(row.get("scope")) or OUTGOING_SCOPE,
            code=_optional_text(row.get("code")),
            output=_optional_text(row.get("output")),
            details=_optional_text(row.get("details")),
        )
