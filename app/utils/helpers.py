"""Shared utility functions for blueprints and services.

parse_date:        lenient date parsing (returns None on bad input)
parse_datetime:    ISO datetime parsing, raises ValidationError
as_utc / utcnow:   timezone normalisation (SQLite returns naive datetimes)
pagination_args:   limit/offset from the query string
current_actor:     best-effort actor id from request headers
"""
import logging
from datetime import date, datetime, timezone

from flask import request

from app.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input.
    """
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_datetime(value, field="datetime"):
    """Parse an ISO-8601 datetime, assuming UTC when no offset is given."""
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value)))
    except (ValueError, TypeError) as exc:
        raise ValidationError(f"Invalid {field}: {value!r}", details={field: "ISO-8601 expected"}) from exc


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt):
    """Normalise a datetime to UTC-aware regardless of input tz-awareness."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def pagination_args(default_limit=50):
    """Return (limit, offset) from the query string, clamped."""
    limit = request.args.get("limit", default_limit, type=int)
    offset = request.args.get("offset", 0, type=int)
    limit = max(1, min(limit or default_limit, MAX_PAGE_SIZE))
    return limit, max(0, offset or 0)


def current_actor(data=None):
    """Best-effort actor extraction (authentication is handled upstream)."""
    data = data or {}
    return (
        data.get("actor_id")
        or request.headers.get("X-User", "")
        or request.headers.get("X-Forwarded-User", "")
        or "system"
    )
