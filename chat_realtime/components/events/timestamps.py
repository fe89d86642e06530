"""
Timestamp normalisation for inbound events.

The backend emits RFC 3339 timestamps with anywhere from zero to nine
fractional digits. Every timestamp that reaches state is converted to an
aware UTC datetime truncated (never rounded) to millisecond precision, so
the same instant always compares equal regardless of source precision.

    >>> format_timestamp(normalize_timestamp("2017-04-08T17:36:10.540Z"))
    '2017-04-08T17:36:10.54Z'
    >>> format_timestamp(normalize_timestamp("2017-04-08T17:36:10.5409999Z"))
    '2017-04-08T17:36:10.54Z'
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

_RFC3339_RE = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})[Tt ](?P<time>\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<tz>[Zz]|[+-]\d{2}:?\d{2})?$"
)

# Keys normalised at the top level of an event and inside nested records
TIMESTAMP_FIELDS: frozenset[str] = frozenset({
    "created_at",
    "updated_at",
    "deleted_at",
    "last_read",
    "last_active",
    "last_message_at",
})


def truncate_to_millis(value: datetime) -> datetime:
    """Drop sub-millisecond precision and convert to UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def _parse_offset(tz: str | None) -> timezone:
    if tz is None or tz in ("Z", "z"):
        return timezone.utc
    sign = -1 if tz[0] == "-" else 1
    digits = tz[1:].replace(":", "")
    offset = timedelta(hours=int(digits[:2]), minutes=int(digits[2:]))
    return timezone(sign * offset)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an RFC 3339 string into a millisecond-truncated UTC datetime.

    Raises:
        ValueError: If the string is not an RFC 3339 timestamp.
    """
    match = _RFC3339_RE.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid timestamp: {value!r}")

    fraction = match.group("fraction") or ""
    # Truncate on the digit string so precision beyond microseconds never rounds
    millis = int(fraction[:3].ljust(3, "0")) if fraction else 0

    naive = datetime.strptime(
        f"{match.group('date')}T{match.group('time')}", "%Y-%m-%dT%H:%M:%S"
    )
    aware = naive.replace(microsecond=millis * 1000, tzinfo=_parse_offset(match.group("tz")))
    return aware.astimezone(timezone.utc)


def normalize_timestamp(value: str | datetime | None) -> datetime | None:
    """
    Canonical representation for any timestamp accepted from the wire.

    Raises:
        ValueError: If value is neither None, a datetime nor an RFC 3339 string.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return truncate_to_millis(value)
    if isinstance(value, str):
        return parse_timestamp(value)
    raise ValueError(f"Unsupported timestamp type: {type(value).__name__}")


def format_timestamp(value: datetime) -> str:
    """
    Render a timestamp the way the backend does.

    Milliseconds are printed without trailing zeros and omitted when zero.
    """
    value = truncate_to_millis(value)
    base = value.strftime("%Y-%m-%dT%H:%M:%S")
    millis = value.microsecond // 1000
    if not millis:
        return f"{base}Z"
    fraction = f"{millis:03d}".rstrip("0")
    return f"{base}.{fraction}Z"


def normalize_record(record: dict) -> dict:
    """
    Return a copy of record with every known timestamp field normalised.

    Nested dicts (message.user, member.user, ...) are normalised too.
    Lists of dicts are handled one level deep, which covers latest_reactions
    and members lists.
    """
    normalized: dict = {}
    for key, value in record.items():
        if key in TIMESTAMP_FIELDS and value is not None:
            normalized[key] = normalize_timestamp(value)
        elif isinstance(value, dict):
            normalized[key] = normalize_record(value)
        elif isinstance(value, list):
            normalized[key] = [
                normalize_record(item) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            normalized[key] = value
    return normalized
