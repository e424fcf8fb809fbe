"""Time Utilities - UTC timestamps and formatting"""
from datetime import datetime, timezone, timedelta
from typing import Optional
from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes (Mongo returns them naive)"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso(dt: datetime) -> str:
    """
    Format datetime to ISO 8601 string
    
    Args:
        dt: Datetime object
        
    Returns:
        ISO formatted string with Z suffix for UTC
    """
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 string to datetime
    
    Args:
        iso_string: ISO formatted datetime string
        
    Returns:
        Datetime object in UTC
    """
    return ensure_utc(date_parser.isoparse(iso_string))


def add_minutes(dt: datetime, minutes: int) -> datetime:
    """Add minutes to datetime"""
    return dt + timedelta(minutes=minutes)


def minutes_until(dt: datetime, now: datetime) -> int:
    """
    Calculate minutes from now until the given datetime
    
    Returns:
        Positive if in future, negative if in past
    """
    delta = ensure_utc(dt) - ensure_utc(now)
    return int(delta.total_seconds() / 60)


def is_overdue(due_at: Optional[datetime], now: datetime) -> bool:
    """
    Check if due datetime has passed
    
    Args:
        due_at: Due datetime or None
        now: Reference time (injected clock)
        
    Returns:
        True if overdue, False otherwise
    """
    if due_at is None:
        return False
    return ensure_utc(now) >= ensure_utc(due_at)
