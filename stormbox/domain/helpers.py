import re
from datetime import datetime

from stormbox.constants import (
    BYTES_PER_KB,
    BYTES_PER_MB,
    FOLDER_DISPLAY_RULES,
    NO_SUBJECT,
    SEEN_KEYWORD,
    SORT_RECEIVED,
    SORT_SENT,
)
from stormbox.domain.models import DetailHeader, join_addresses

_WHITESPACE_RE = re.compile(r"\s+")


def sort_property_for(mailbox) -> str:
    """Sent folders sort by send time, everything else by arrival."""
    if mailbox is None:
        return SORT_RECEIVED
    role = (mailbox.role or "").lower()
    name = (mailbox.name or "").lower()
    if role == "sent" or name in ("sent", "sent items"):
        return SORT_SENT
    return SORT_RECEIVED


def display_name(mailbox) -> str:
    """Canonical folder label from the protocol role, then the folder name."""
    role = (mailbox.role or "").lower()
    name = (mailbox.name or "").lower()
    for label, roles, names in FOLDER_DISPLAY_RULES:
        if role in roles or name in names:
            return label
    return mailbox.name or "Mailbox"


def slugify_folder_name(label) -> str:
    return _WHITESPACE_RE.sub("-", (label or "").lower())


def format_date(iso_str):
    """Format an ISO timestamp for the detail header."""
    if not iso_str:
        return ""
    try:
        dt = datetime.fromisoformat(iso_str.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return iso_str
    if dt.tzinfo is not None:
        dt = dt.astimezone()
    return dt.strftime("%Y-%m-%d %H:%M")


def format_size(size_bytes):
    """Format file size for display."""
    if not size_bytes:
        return ""
    if size_bytes < BYTES_PER_KB:
        return f"{size_bytes} B"
    if size_bytes < BYTES_PER_MB:
        return f"{size_bytes / BYTES_PER_KB:.1f} KB"
    return f"{size_bytes / BYTES_PER_MB:.1f} MB"


def format_flags(summary) -> str:
    flags = sorted(summary.keywords)
    if flags:
        return ", ".join(flags)
    return SEEN_KEYWORD if summary.seen else ""


def build_detail_header(summary, sort_property=SORT_RECEIVED) -> DetailHeader:
    timestamp = summary.sent_at if sort_property == SORT_SENT else summary.received_at
    return DetailHeader(
        subject=summary.subject or NO_SUBJECT,
        from_=summary.from_text,
        to=join_addresses(summary.to),
        cc=join_addresses(summary.cc),
        date=format_date(timestamp),
        flags=format_flags(summary),
        size=f"{summary.size} bytes" if summary.size is not None else "",
        id=summary.id,
        preview=(summary.preview or "").strip(),
    )


def matches_filter(summary, filter_text) -> bool:
    needle = (filter_text or "").strip().lower()
    if not needle:
        return True
    return needle in summary.from_text.lower() or needle in (summary.subject or "").lower()


__all__ = [
    "build_detail_header",
    "display_name",
    "format_date",
    "format_flags",
    "format_size",
    "matches_filter",
    "slugify_folder_name",
    "sort_property_for",
]
