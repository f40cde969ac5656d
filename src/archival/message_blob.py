"""
Message Blob

One serialized email ready for archival. The content is either held in memory
(``BufferedContent``) or produced on demand by a writer function
(``StreamedContent``) so that very large messages never have to be fully
materialized.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import BinaryIO, Optional, Union

from archival import safe_names

DATE_FORMAT = "%Y-%m-%d_%H-%M-%S"

StreamWriter = Callable[[BinaryIO], None]


@dataclass(frozen=True)
class BufferedContent:
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class StreamedContent:
    writer: StreamWriter
    size: int

    def __post_init__(self):
        if not callable(self.writer):
            raise TypeError("writer must be callable")
        if self.size < 0:
            raise ValueError(f"size must be >= 0, got {self.size}")


MessageContent = Optional[Union[BufferedContent, StreamedContent]]


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class MessageBlob:
    """An email plus the metadata used to name and date its archive entry.

    ``content`` is None only for the null-blob case, which archives as an
    empty entry.
    """

    unique_id: str
    content: MessageContent
    subject: str = ""
    sender: str = ""
    recipient: str = ""
    date: datetime = datetime(1970, 1, 1, tzinfo=timezone.utc)

    def __post_init__(self):
        if self.content is not None and not isinstance(self.content, (BufferedContent, StreamedContent)):
            raise TypeError(f"Unsupported message content: {type(self.content).__name__}")
        object.__setattr__(self, "date", as_utc(self.date))

    @classmethod
    def from_bytes(cls, unique_id, data: bytes, subject="", sender="", recipient="", date=None) -> MessageBlob:
        return cls(
            unique_id=str(unique_id),
            content=BufferedContent(bytes(data)),
            subject=subject or "",
            sender=sender or "",
            recipient=recipient or "",
            date=date or datetime.now(timezone.utc),
        )

    @classmethod
    def from_writer(
        cls, unique_id, writer: StreamWriter, size: int, subject="", sender="", recipient="", date=None
    ) -> MessageBlob:
        return cls(
            unique_id=str(unique_id),
            content=StreamedContent(writer, size),
            subject=subject or "",
            sender=sender or "",
            recipient=recipient or "",
            date=date or datetime.now(timezone.utc),
        )

    @property
    def blob(self) -> bytes | None:
        if isinstance(self.content, BufferedContent):
            return self.content.data
        return None

    @property
    def stream_writer(self) -> StreamWriter | None:
        if isinstance(self.content, StreamedContent):
            return self.content.writer
        return None

    @property
    def is_streaming(self) -> bool:
        return isinstance(self.content, StreamedContent)

    @property
    def size(self) -> int:
        return self.content.size if self.content is not None else 0

    @property
    def date_string(self) -> str:
        return self.date.strftime(DATE_FORMAT)

    @property
    def file_name(self) -> str:
        return safe_names.build_message_file_name(self.unique_id, self.subject, self.date_string, self.sender)

    def write_to(self, sink: BinaryIO) -> None:
        """Write the message body to ``sink`` from whichever representation it holds."""
        if isinstance(self.content, StreamedContent):
            self.content.writer(sink)
        elif isinstance(self.content, BufferedContent):
            sink.write(self.content.data)

    def __str__(self):
        return (
            f"Subject: {self.subject}\n"
            f"From: {self.sender}\n"
            f"To: {self.recipient}\n"
            f"Date: {self.date.isoformat()}\n"
            f"Size: {self.size} bytes\n"
            f"UID: {self.unique_id}\n"
        )
