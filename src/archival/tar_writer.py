"""
Tar Writer

Sequential tar producer for a non-seekable sink plus the thread → message
serialization used by every compressor backend.

Each thread becomes a directory entry followed by one ``.eml`` file entry per
message, in input order. A message that fails to fetch or write is recorded in
the returned ``ArchiveReport`` and the archive carries on with the next one;
only failures of the sink itself propagate.
"""

from __future__ import annotations

import gc
import tarfile
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import BinaryIO, Optional, Protocol

from archival import safe_names
from archival.message_blob import MessageBlob, as_utc
from utils.console import safe_print

BLOCKSIZE = tarfile.BLOCKSIZE
RECORDSIZE = tarfile.RECORDSIZE
NUL = b"\0"

DIRECTORY_MODE = 0o755
FILE_MODE = 0o644


class TarEntryOverflowError(ValueError):
    """Raised when more bytes are written than the entry header declared."""


class FailureStage(Enum):
    FETCH = "fetch"
    WRITE = "write"


class MessageSummaryLike(Protocol):
    unique_id: str
    subject: Optional[str]


MessageFetcher = Callable[[MessageSummaryLike], MessageBlob]


@dataclass(frozen=True)
class SkippedMessage:
    thread_id: int
    unique_id: str
    stage: FailureStage
    reason: str


@dataclass
class ArchiveReport:
    """Outcome of one archive run: written entry names and skipped messages."""

    entries: list[str] = field(default_factory=list)
    skipped: list[SkippedMessage] = field(default_factory=list)
    empty_threads: list[int] = field(default_factory=list)

    @property
    def written_count(self) -> int:
        return len(self.entries)

    def record_skip(self, thread_id: int, unique_id, stage: FailureStage, reason) -> None:
        self.skipped.append(SkippedMessage(thread_id, str(unique_id), stage, str(reason)))

    def skipped_ids(self, stage: FailureStage | None = None) -> list[str]:
        return [s.unique_id for s in self.skipped if stage is None or s.stage == stage]


class TarWriter:
    """Write tar entries one at a time to a forward-only binary sink.

    Headers are PAX (USTAR compatible, UTF-8 names). The caller owns the sink:
    ``close()`` writes the end-of-archive marker but never closes ``fileobj``.
    """

    def __init__(self, fileobj: BinaryIO, encoding: str = "utf-8"):
        self.fileobj = fileobj
        self.encoding = encoding
        self.offset = 0
        self.closed = False
        self._entry: tarfile.TarInfo | None = None
        self._entry_written = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        # Partial archives are deleted by the compressor on error.
        if exc_type is None:
            self.close()

    def _raw_write(self, data: bytes) -> None:
        self.fileobj.write(data)
        self.offset += len(data)

    @property
    def entry_remaining(self) -> int:
        if self._entry is None:
            return 0
        return self._entry.size - self._entry_written

    def put_next_entry(self, info: tarfile.TarInfo) -> None:
        if self.closed:
            raise ValueError("TarWriter is closed")
        if self._entry is not None:
            self.close_entry()
        self._raw_write(info.tobuf(tarfile.PAX_FORMAT, self.encoding, "surrogateescape"))
        self._entry = info
        self._entry_written = 0

    def write(self, data) -> int:
        if self._entry is None:
            raise ValueError("No open tar entry to write to")
        data = bytes(data)
        if self._entry_written + len(data) > self._entry.size:
            raise TarEntryOverflowError(
                f"Entry {self._entry.name} declared {self._entry.size} bytes, "
                f"got at least {self._entry_written + len(data)}"
            )
        self._raw_write(data)
        self._entry_written += len(data)
        return len(data)

    def close_entry(self) -> int:
        """Finish the current entry; returns how many zero bytes were padded in.

        A short entry is padded to its declared size so later entries stay
        readable.
        """
        if self._entry is None:
            return 0
        missing = self._entry.size - self._entry_written
        if missing > 0:
            self._raw_write(NUL * missing)
        remainder = self._entry.size % BLOCKSIZE
        if remainder:
            self._raw_write(NUL * (BLOCKSIZE - remainder))
        self._entry = None
        self._entry_written = 0
        return max(missing, 0)

    def add_directory(self, name: str, mtime: float | None = None) -> None:
        if not name.endswith("/"):
            name = f"{name}/"
        info = tarfile.TarInfo(name)
        info.type = tarfile.DIRTYPE
        info.mode = DIRECTORY_MODE
        info.mtime = int(time.time() if mtime is None else mtime)
        self.put_next_entry(info)
        self.close_entry()

    def flush(self) -> None:
        flush = getattr(self.fileobj, "flush", None)
        if flush is not None:
            flush()

    def close(self) -> None:
        if self.closed:
            return
        self.close_entry()
        self._raw_write(NUL * (BLOCKSIZE * 2))
        _blocks, remainder = divmod(self.offset, RECORDSIZE)
        if remainder > 0:
            self._raw_write(NUL * (RECORDSIZE - remainder))
        self.flush()
        self.closed = True


def build_file_info(name: str, message: MessageBlob) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.type = tarfile.REGTYPE
    info.mode = FILE_MODE
    info.size = message.size
    info.mtime = int(message.date.timestamp())
    return info


def _write_message(
    tar: TarWriter,
    folder_name: str,
    message: MessageBlob,
    thread_id: int,
    report: ArchiveReport,
    output_path: str,
    log_fn,
) -> None:
    unique_id = getattr(message, "unique_id", None)
    try:
        if not isinstance(message, MessageBlob):
            raise TypeError(f"Expected a MessageBlob, got {type(message).__name__}")
        entry_name = f"{folder_name}{message.file_name}"
        tar.put_next_entry(build_file_info(entry_name, message))
    except OSError:
        raise
    except Exception as e:
        log_fn(f"Error: Failed to build tar entry for message {unique_id}, skipping: {e}")
        report.record_skip(thread_id, unique_id, FailureStage.WRITE, e)
        return

    try:
        message.write_to(tar)
        if tar.entry_remaining > 0:
            raise EOFError(f"Message body ended after {message.size - tar.entry_remaining} of {message.size} bytes")
    except Exception as e:
        log_fn(f"Error: Failed to write message to tar archive | {message.file_name}: {e}")
        report.record_skip(thread_id, message.unique_id, FailureStage.WRITE, e)
    else:
        report.entries.append(entry_name)
        log_fn(f"Saved to: {output_path}/{entry_name}")
    finally:
        tar.close_entry()


def _directory_mtime(first) -> int:
    date = getattr(first, "date", None)
    return int(as_utc(date).timestamp()) if date else 0


def _open_thread(tar: TarWriter, thread_id: int, first, log_fn) -> str:
    """Add the thread directory, named from and dated by its first message."""
    folder_name = f"{safe_names.build_thread_directory_name(thread_id, getattr(first, 'subject', None))}/"
    tar.add_directory(folder_name, mtime=_directory_mtime(first))
    log_fn(f"Thread ID: {thread_id}")
    return folder_name


def write_threads(
    tar: TarWriter,
    threads: Mapping[int, Sequence[MessageBlob]],
    output_path: str = "",
    log_fn=safe_print,
) -> ArchiveReport:
    """Write pre-built messages grouped by thread into ``tar``.

    Threads are written in mapping iteration order, messages in sequence
    order. Empty threads are skipped with a notice.
    """
    report = ArchiveReport()

    for thread_id, messages in threads.items():
        if not messages:
            log_fn(f"Thread ID: {thread_id} contained no messages. Skipping.")
            report.empty_threads.append(thread_id)
            continue

        folder_name = _open_thread(tar, thread_id, messages[0], log_fn)
        for message in messages:
            _write_message(tar, folder_name, message, thread_id, report, output_path, log_fn)
        log_fn(f"Saved thread to: {output_path}/{folder_name}")

    tar.flush()
    return report


def write_threads_streaming(
    tar: TarWriter,
    threads: Mapping[int, Iterable[MessageSummaryLike]],
    fetcher: MessageFetcher,
    max_message_size_mb: int = 10,
    output_path: str = "",
    log_fn=safe_print,
) -> ArchiveReport:
    """Write threads whose messages are fetched one at a time via ``fetcher``.

    Only one message is held at a time. A fetch failure skips that message;
    the rest of the thread is still written.
    """
    max_size_bytes = max_message_size_mb * 1024 * 1024
    report = ArchiveReport()

    for thread_id, summaries in threads.items():
        summaries = list(summaries)
        if not summaries:
            log_fn(f"Thread ID: {thread_id} contained no messages. Skipping.")
            report.empty_threads.append(thread_id)
            continue

        folder_name = _open_thread(tar, thread_id, summaries[0], log_fn)
        for summary in summaries:
            unique_id = getattr(summary, "unique_id", summary)
            log_fn(f"Processing message {unique_id} (Subject: {getattr(summary, 'subject', None) or 'No Subject'})")
            try:
                message = fetcher(summary)
            except Exception as e:
                log_fn(f"Error: Failed to fetch message {unique_id}, skipping: {e}")
                report.record_skip(thread_id, unique_id, FailureStage.FETCH, e)
                continue

            if not isinstance(message, MessageBlob):
                error = TypeError(f"Fetcher returned {type(message).__name__} instead of a MessageBlob")
                log_fn(f"Error: Failed to fetch message {unique_id}, skipping: {error}")
                report.record_skip(thread_id, unique_id, FailureStage.FETCH, error)
                continue

            _write_message(tar, folder_name, message, thread_id, report, output_path, log_fn)

            if message.size > max_size_bytes // 2:
                del message
                gc.collect()

        log_fn(f"Saved thread to: {output_path}/{folder_name}")

    tar.flush()
    return report
