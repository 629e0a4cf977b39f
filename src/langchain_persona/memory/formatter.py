"""
Rendering of memories into the ``<memory_archive>`` prompt section.

Token accounting must use exactly these functions so that what is counted
is what ends up in the prompt.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from xml.sax.saxutils import escape
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .documents import MemoryDocument

logger = logging.getLogger(__name__)

MEMORY_ARCHIVE_INSTRUCTIONS = (
    "Archived memories from earlier interactions. They are background, "
    "not part of the current conversation; use them for continuity and do "
    "not quote them back verbatim."
)

_ARCHIVE_OPEN = f"<memory_archive>\n<instructions>{MEMORY_ARCHIVE_INSTRUCTIONS}</instructions>\n"
_ARCHIVE_CLOSE = "\n</memory_archive>"


def resolve_timezone(name: Optional[str]):
    """ZoneInfo for ``name``, UTC when missing or unknown."""
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Unknown timezone %r, using UTC", name)
        return timezone.utc


def as_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def format_memory_date(created_at: Optional[datetime], tz_name: Optional[str] = None) -> Optional[str]:
    """YYYY-MM-DD in the user's timezone, or None when undated."""
    if created_at is None:
        return None
    return as_aware(created_at).astimezone(resolve_timezone(tz_name)).strftime("%Y-%m-%d")


def format_single_memory(doc: MemoryDocument, tz_name: Optional[str] = None) -> str:
    date = format_memory_date(doc.created_at, tz_name)
    prefix = f"[{date}] " if date else ""
    return f"- {prefix}{escape(doc.text)}"


def wrap_memory_archive(lines: list[str]) -> str:
    """Wrap rendered memory lines; an empty list renders nothing."""
    if not lines:
        return ""
    return _ARCHIVE_OPEN + "\n".join(lines) + _ARCHIVE_CLOSE


def format_memory_archive(docs: list[MemoryDocument], tz_name: Optional[str] = None) -> str:
    return wrap_memory_archive([format_single_memory(doc, tz_name) for doc in docs])


def memory_wrapper_text() -> str:
    """The framing text charged once when at least one memory is included."""
    return _ARCHIVE_OPEN + _ARCHIVE_CLOSE
