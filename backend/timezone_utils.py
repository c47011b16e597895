"""
Timezone utilities for ledger timestamps.

All timestamps are stored as naive UTC datetimes. Values arriving from the
payment gateway are reported in the gateway's local time (Asia/Dhaka) and
are converted here before they reach the ledger.
"""
from datetime import datetime
from typing import Optional
import pytz

GATEWAY_TIMEZONE = "Asia/Dhaka"


def get_timezone(name: str) -> pytz.BaseTzInfo:
    """
    Get pytz timezone object, falling back to UTC for unknown names.

    Args:
        name: Timezone string (e.g., "Asia/Dhaka")

    Returns:
        pytz timezone object
    """
    try:
        return pytz.timezone(name)
    except pytz.exceptions.UnknownTimeZoneError:
        return pytz.UTC


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(pytz.UTC).replace(tzinfo=None)


def parse_gateway_datetime(value: Optional[str], tz_name: str = GATEWAY_TIMEZONE) -> Optional[datetime]:
    """
    Parse a gateway timestamp such as "2024-05-01 14:03:11" reported in local time.

    Returns None for empty or unparseable values.
    """
    if not value:
        return None

    try:
        local_dt = datetime.strptime(value.strip(), "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return None

    return get_timezone(tz_name).localize(local_dt).astimezone(pytz.UTC).replace(tzinfo=None)
