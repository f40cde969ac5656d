"""
Message Writer

Converts parsed emails (``email.message.Message``) or raw RFC 5322 bytes into
``MessageBlob`` objects. Messages above the size threshold get a streaming
representation that re-serializes into the archive sink on demand instead of
keeping the bytes around.
"""

from __future__ import annotations

import io
from email import policy
from email.generator import BytesGenerator
from email.message import Message
from email.parser import BytesParser
from email.utils import parsedate_to_datetime

from archival.message_blob import MessageBlob
from utils.console import safe_print

DEFAULT_MAX_SIZE_BYTES = 10 * 1024 * 1024


def serialize_message(message: Message, sink) -> None:
    BytesGenerator(sink, mangle_from_=False, policy=message.policy).flatten(message)


def header_date(message: Message):
    """Parse the Date header; None if missing or unparseable."""
    raw_date = message.get("Date")
    if not raw_date:
        return None
    try:
        return parsedate_to_datetime(str(raw_date))
    except (TypeError, ValueError):
        return None


def _header_text(message: Message, name: str) -> str:
    value = message.get(name)
    return str(value) if value is not None else ""


def message_to_blob(
    summary, message: Message, max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES, log_fn=safe_print
) -> MessageBlob:
    """Convert a parsed email into a MessageBlob.

    The UID only lives on the IMAP summary, so both are required.
    """
    buffer = io.BytesIO()
    serialize_message(message, buffer)
    estimated_size = buffer.tell()

    subject = _header_text(message, "Subject")
    sender = _header_text(message, "From")
    recipient = _header_text(message, "To")
    date = header_date(message)

    if estimated_size <= max_size_bytes:
        return MessageBlob.from_bytes(summary.unique_id, buffer.getvalue(), subject, sender, recipient, date)

    del buffer
    log_fn(f"Message {summary.unique_id} ({estimated_size:,} bytes) will use streaming")
    return MessageBlob.from_writer(
        summary.unique_id,
        lambda sink: serialize_message(message, sink),
        estimated_size,
        subject,
        sender,
        recipient,
        date,
    )


def messages_to_blobs(messages, summaries, max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES) -> list[MessageBlob]:
    """Pair messages with their summaries and convert each one."""
    return [message_to_blob(summary, message, max_size_bytes) for message, summary in zip(messages, summaries)]


def raw_message_to_blob(summary, raw_bytes: bytes) -> MessageBlob:
    """Wrap bytes fetched over IMAP, filling metadata gaps from the headers."""
    headers = BytesParser(policy=policy.default).parsebytes(raw_bytes, headersonly=True)
    return MessageBlob.from_bytes(
        summary.unique_id,
        raw_bytes,
        getattr(summary, "subject", None) or _header_text(headers, "Subject"),
        getattr(summary, "sender", None) or _header_text(headers, "From"),
        getattr(summary, "recipient", None) or _header_text(headers, "To"),
        getattr(summary, "date", None) or header_date(headers),
    )
