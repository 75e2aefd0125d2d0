"""Shared parsing helpers.

parse_datetime:  ISO-8601 parsing for request payloads, UTC-normalised
"""
from datetime import datetime, timezone


def parse_datetime(value):
    """Parse an ISO-8601 datetime string to an aware UTC datetime.

    Returns None for empty input; raises ValueError on malformed input so
    callers can answer 400.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
