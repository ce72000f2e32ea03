"""Daraja request signing.

Every push and query request carries a password derived from the merchant
short code, the passkey and the request timestamp.
"""

import base64
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

# Daraja validates timestamps in East Africa Time
EAT = timezone(timedelta(hours=3), "EAT")

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


def eat_now() -> datetime:
    """Current time in East Africa Time."""
    return datetime.now(EAT)


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as a Daraja timestamp (``YYYYMMDDHHMMSS``, EAT)."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(EAT)
    return moment.strftime(TIMESTAMP_FORMAT)


def generate_password(
    short_code: str,
    passkey: str,
    clock: Callable[[], datetime] = eat_now,
) -> tuple[str, str]:
    """Generate the request password.

    The password is base64(short_code + passkey + timestamp).

    Returns:
        (password, timestamp) as a tuple; the same timestamp must be sent
        alongside the password.
    """
    timestamp = format_timestamp(clock())
    raw = f"{short_code}{passkey}{timestamp}"
    password = base64.b64encode(raw.encode("utf-8")).decode("ascii")
    return password, timestamp
