"""
Gmail-Specific IMAP Utilities

Gmail search extensions (X-GM-RAW, X-GM-LABELS) and thread grouping via
X-GM-THRID, plus the on-demand message fetcher used by streaming
compression.
"""

from __future__ import annotations

import imaplib
import re
from dataclasses import dataclass
from datetime import datetime
from email import policy
from email.parser import BytesParser

from archival.message_blob import MessageBlob
from archival.message_writer import header_date, raw_message_to_blob
from core import imap_retry
from utils import imap_common
from utils.console import safe_print

# Gmail system folder holding every message
GMAIL_ALL_MAIL = "[Gmail]/All Mail"

FETCH_BATCH = 500
STREAM_CHUNK_SIZE = 1024 * 1024

SUMMARY_HEADERS = "SUBJECT FROM TO DATE"
SUMMARY_FETCH_ITEMS = f"(UID X-GM-THRID RFC822.SIZE INTERNALDATE BODY.PEEK[HEADER.FIELDS ({SUMMARY_HEADERS})])"

_UID_RE = re.compile(rb"UID\s+(\d+)")
_THRID_RE = re.compile(rb"X-GM-THRID\s+(\d+)")
_SIZE_RE = re.compile(rb"RFC822\.SIZE\s+(\d+)")
_INTERNALDATE_RE = re.compile(rb'INTERNALDATE\s+"([^"]+)"')


@dataclass(frozen=True)
class MessageSummary:
    """Envelope-level facts about one message, enough to name and fetch it."""

    unique_id: str
    thread_id: int
    size: int
    subject: str | None = None
    sender: str | None = None
    recipient: str | None = None
    date: datetime | None = None


def build_search_criteria(search: str | None, label: str | None) -> list[str]:
    """Build UID SEARCH arguments for a Gmail query and/or label.

    Blank (empty or whitespace-only) values are ignored; with neither, all
    messages match.
    """
    criteria = []
    if search and search.strip():
        criteria += ["X-GM-RAW", imap_common.quote_imap_string(search.strip())]
    if label and label.strip():
        criteria += ["X-GM-LABELS", imap_common.quote_imap_string(label.strip())]
    return criteria or ["ALL"]


def _needs_utf8(criteria) -> bool:
    return any(not arg.isascii() for arg in criteria)


def enable_utf8(conn) -> bool:
    """Switch the session to UTF-8 mode (RFC 6855) if the server offers it.

    Must run before a folder is selected. Returns True when UTF-8 quoted
    strings may be sent.
    """
    if getattr(conn, "utf8_enabled", False):
        return True
    if "UTF8=ACCEPT" not in getattr(conn, "capabilities", ()):
        return False
    typ, _ = conn.enable("UTF8=ACCEPT")
    return typ == "OK"


def search_uids(conn, criteria) -> list[str]:
    """Run UID SEARCH and return the matching UIDs in server order."""
    if _needs_utf8(criteria) and not getattr(conn, "utf8_enabled", False):
        raise imaplib.IMAP4.error("Non-ASCII search terms need a session with UTF8=ACCEPT enabled")

    typ, data = conn.uid(imap_common.CMD_SEARCH, *criteria)
    if typ != "OK":
        raise imaplib.IMAP4.error(f"SEARCH failed: {typ} {data}")
    if not data or not data[0]:
        return []
    return [uid.decode() for uid in data[0].split()]


def _parse_internaldate(meta: bytes):
    match = _INTERNALDATE_RE.search(meta)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1).decode(), "%d-%b-%Y %H:%M:%S %z")
    except ValueError:
        return None


def parse_summary(meta: bytes, header_bytes: bytes | None) -> MessageSummary | None:
    """Build a MessageSummary from one FETCH response item.

    Returns None when the response carries no UID.
    """
    uid_match = _UID_RE.search(meta)
    if not uid_match:
        return None
    thrid_match = _THRID_RE.search(meta)
    size_match = _SIZE_RE.search(meta)

    subject = sender = recipient = None
    date = None
    if header_bytes:
        headers = BytesParser(policy=policy.compat32).parsebytes(header_bytes, headersonly=True)
        subject = imap_common.decode_mime_header(headers.get("Subject")) or None
        sender = imap_common.decode_mime_header(headers.get("From")) or None
        recipient = imap_common.decode_mime_header(headers.get("To")) or None
        date = header_date(headers)

    return MessageSummary(
        unique_id=uid_match.group(1).decode(),
        thread_id=int(thrid_match.group(1)) if thrid_match else 0,
        size=int(size_match.group(1)) if size_match else 0,
        subject=subject,
        sender=sender,
        recipient=recipient,
        date=date or _parse_internaldate(meta),
    )


def fetch_summaries(conn, uids) -> list[MessageSummary]:
    """Fetch summaries for ``uids`` in batches, preserving the input order."""
    uid_list = [uid.decode() if isinstance(uid, bytes) else str(uid) for uid in uids]
    by_uid: dict[str, MessageSummary] = {}

    for i in range(0, len(uid_list), FETCH_BATCH):
        batch = uid_list[i : i + FETCH_BATCH]
        typ, data = conn.uid(imap_common.CMD_FETCH, ",".join(batch), SUMMARY_FETCH_ITEMS)
        if typ != "OK":
            raise imaplib.IMAP4.error(f"FETCH summaries failed: {typ} {data}")
        for item in data or []:
            if isinstance(item, tuple) and len(item) >= 2:
                summary = parse_summary(item[0], item[1])
                if summary is not None:
                    by_uid[summary.unique_id] = summary

    return [by_uid[uid] for uid in uid_list if uid in by_uid]


def group_threads(conn, summaries, log_fn=safe_print) -> dict[int, list[MessageSummary]]:
    """Expand matching messages into their complete Gmail threads.

    Threads keep first-seen order; messages within a thread are in UID
    (arrival) order and include thread members that did not match the
    search.
    """
    threads: dict[int, list[MessageSummary]] = {}
    for summary in summaries:
        if not summary.thread_id:
            log_fn(f"Warning: Message {summary.unique_id} has no X-GM-THRID; is this a Gmail server?")
            continue
        if summary.thread_id in threads:
            continue
        thread_uids = search_uids(conn, ["X-GM-THRID", str(summary.thread_id)])
        threads[summary.thread_id] = fetch_summaries(conn, thread_uids)
    return threads


def _first_literal(data):
    for item in data or []:
        if isinstance(item, tuple) and len(item) >= 2:
            return item[1]
    return None


def fetch_message_bytes(conn, uid: str) -> bytes:
    typ, data = conn.uid(imap_common.CMD_FETCH, uid, "(BODY.PEEK[])")
    if typ != "OK":
        raise imaplib.IMAP4.error(f"FETCH body failed for UID {uid}: {typ} {data}")
    raw = _first_literal(data)
    if raw is None:
        raise LookupError(f"No message body returned for UID {uid}")
    return raw


def stream_message_body(conn, uid: str, size: int, sink, chunk_size: int = STREAM_CHUNK_SIZE) -> int:
    """Copy a message into ``sink`` with partial fetches of ``chunk_size`` bytes.

    Returns the number of bytes written; stops early if the server returns
    less than requested.
    """
    offset = 0
    while offset < size:
        length = min(chunk_size, size - offset)
        typ, data = conn.uid(imap_common.CMD_FETCH, uid, f"(BODY.PEEK[]<{offset}.{length}>)")
        if typ != "OK":
            raise imaplib.IMAP4.error(f"Partial FETCH failed for UID {uid} at offset {offset}: {typ} {data}")
        chunk = _first_literal(data)
        if not chunk:
            break
        sink.write(chunk)
        offset += len(chunk)
    return offset


def fetch_message_blob(
    conn, summary: MessageSummary, max_size_bytes: int, chunk_size: int = STREAM_CHUNK_SIZE
) -> MessageBlob:
    """Fetch one message, buffered if small, as a streaming writer if large."""
    if summary.size > max_size_bytes:
        return MessageBlob.from_writer(
            summary.unique_id,
            lambda sink: stream_message_body(conn, summary.unique_id, summary.size, sink, chunk_size),
            summary.size,
            summary.subject,
            summary.sender,
            summary.recipient,
            summary.date,
        )
    return raw_message_to_blob(summary, fetch_message_bytes(conn, summary.unique_id))


def make_message_fetcher(session, max_message_size_mb=10, log_fn=safe_print, max_attempts=3, base_delay=1.0):
    """Build the per-message fetch callback for streaming compression.

    ``session`` provides ``connection()`` (see ``core.imap_session.FolderSession``);
    each fetch is retried on transient network errors.
    """
    max_size_bytes = max_message_size_mb * 1024 * 1024

    def fetcher(summary: MessageSummary) -> MessageBlob:
        blob = imap_retry.execute_with_retry(
            lambda: fetch_message_blob(session.connection(), summary, max_size_bytes),
            max_attempts=max_attempts,
            base_delay=base_delay,
            operation_name=f"Fetch UID {summary.unique_id}",
            log_fn=log_fn,
        )
        if blob.is_streaming:
            log_fn(f"Message {summary.unique_id} ({summary.size:,} bytes) will use streaming")
        return blob

    return fetcher
