"""
Safe Name Builder

Turns untrusted thread and message metadata (subjects, UIDs, sender strings)
into path segments that are safe on every common filesystem and fit inside the
USTAR tar header name field.
"""

from __future__ import annotations

import unicodedata
from email.utils import parseaddr

MAX_SEGMENT_LENGTH = 80
MAX_FILE_NAME_LENGTH = 120
# USTAR name field is 100 bytes; one byte is kept for the trailing "/".
MAX_TAR_NAME_LENGTH = 100
MAX_DIRECTORY_NAME_LENGTH = MAX_TAR_NAME_LENGTH - 1

MESSAGE_EXTENSION = ".eml"
DELIMITER = "_"

THREAD_FALLBACK = "thread"
UID_FALLBACK = "uid"
DATE_FALLBACK = "date"

# Union of the Windows reserved set and the POSIX separator/NUL.
INVALID_CHARACTERS = frozenset('/\\:*?"<>|\x00')

_TRIM_CHARS = " ._"


def _is_invalid_char(ch: str) -> bool:
    return ch in INVALID_CHARACTERS or unicodedata.category(ch) == "Cc"


def sanitize_segment(value: str | None, fallback: str, enforce_length: bool = True) -> str:
    """Sanitize a single path segment.

    Invalid filename and control characters become "_", runs of ".." are
    collapsed, leading/trailing space, dot and underscore are trimmed. Blank
    input (None, empty or whitespace-only) yields ``fallback``.
    """
    if value is None or not value.strip():
        return fallback

    sanitized = "".join("_" if _is_invalid_char(ch) else ch for ch in value.strip())

    while ".." in sanitized:
        sanitized = sanitized.replace("..", "_")

    sanitized = sanitized.strip(_TRIM_CHARS)
    if not sanitized:
        sanitized = fallback

    if enforce_length and len(sanitized) > MAX_SEGMENT_LENGTH:
        sanitized = sanitized[:MAX_SEGMENT_LENGTH]

    return sanitized


def _fit(segment: str, budget: int) -> str:
    """Truncate ``segment`` to ``budget`` chars without leaving a dangling delimiter."""
    if budget <= 0:
        return ""
    return segment[:budget].rstrip(_TRIM_CHARS)


def extract_sender_name(sender: str | None) -> str:
    """Return the most readable part of a From header value.

    Prefers the display name of ``"Display Name <addr>"``, then the local part
    of the address, then the raw string.
    """
    if not sender or not sender.strip():
        return ""

    display_name, address = parseaddr(sender)
    if display_name.strip():
        return display_name.strip()
    if address and "@" in address:
        local_part = address.split("@", 1)[0].strip()
        if local_part:
            return local_part
    return sender.strip()


def build_thread_directory_name(thread_id: int, subject: str | None) -> str:
    """Build ``"{thread_id}_{subject}"`` bounded to the tar directory name budget.

    When the id alone does not leave room for a subject the subject is
    dropped and the id truncated.
    """
    thread_segment = str(thread_id)
    safe_subject = sanitize_segment(subject, THREAD_FALLBACK)

    available = MAX_DIRECTORY_NAME_LENGTH - len(thread_segment) - len(DELIMITER)
    if available <= 0:
        return thread_segment[:MAX_DIRECTORY_NAME_LENGTH]

    safe_subject = _fit(safe_subject, available) or THREAD_FALLBACK[:available]
    name = f"{thread_segment}{DELIMITER}{safe_subject}"
    return name[:MAX_DIRECTORY_NAME_LENGTH]


def build_message_file_name(
    unique_id: str | None,
    subject: str | None,
    date_segment: str | None,
    sender: str | None = None,
) -> str:
    """Build ``"{uid}_{date}[_{sender}][_{subject}].eml"``.

    uid and date are mandatory; sender and subject are appended in that order
    only while the length budget allows.
    """
    core_max = MAX_FILE_NAME_LENGTH - len(MESSAGE_EXTENSION)

    safe_uid = sanitize_segment(unique_id, UID_FALLBACK, enforce_length=False)[:MAX_SEGMENT_LENGTH]
    safe_date = sanitize_segment(date_segment, DATE_FALLBACK)
    core = _fit(f"{safe_uid}{DELIMITER}{safe_date}", core_max) or UID_FALLBACK

    optional_segments = (
        sanitize_segment(extract_sender_name(sender), ""),
        sanitize_segment(subject, ""),
    )
    for segment in optional_segments:
        if not segment:
            continue
        piece = _fit(segment, core_max - len(core) - len(DELIMITER))
        if piece:
            core = f"{core}{DELIMITER}{piece}"

    return f"{core}{MESSAGE_EXTENSION}"
