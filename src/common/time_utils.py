"""
Timestamp helpers. All persisted timestamps are UTC ISO-8601 strings.
"""

from datetime import datetime, timedelta
from typing import Optional

import pytz


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(pytz.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_iso(iso_timestamp: str) -> Optional[datetime]:
    """Parse an ISO timestamp into an aware UTC datetime, or None if unparseable."""
    if not iso_timestamp:
        return None

    try:
        dt = datetime.fromisoformat(iso_timestamp.replace('Z', '+00:00'))
    except ValueError:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def iso_to_date(iso_timestamp: str) -> str:
    """Convert an ISO timestamp to YYYY-MM-DD string."""
    dt = parse_iso(iso_timestamp)
    return dt.strftime('%Y-%m-%d') if dt else ""


def days_ago(days: int) -> datetime:
    return utc_now() - timedelta(days=days)
