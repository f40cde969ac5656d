"""
Compressor Backends

Each backend turns thread groups into one compressed tar file:

- gzip and bzip2 stream the tar straight through the encoder (single pass).
- LZMA and XZ stage the tar in a secure temp file first, then encode it into
  the output (two pass). The ``.tar.lzma`` layout needs the uncompressed size
  in its header before the payload.

On any failure the partially written output is deleted and the original error
re-raised; temp files are always removed.
"""

from __future__ import annotations

import bz2
import gzip
import lzma
import os
import shutil
import struct
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import BinaryIO

from archival import secure_io
from archival.message_blob import MessageBlob
from archival.tar_writer import (
    ArchiveReport,
    MessageFetcher,
    MessageSummaryLike,
    TarWriter,
    write_threads,
    write_threads_streaming,
)
from utils.console import safe_print

COPY_CHUNK_SIZE = 1024 * 1024

GZIP_COMPRESSION_LEVEL = 9
BZIP2_COMPRESSION_LEVEL = 9  # 900k blocks, the bzip2 maximum
XZ_PRESET = 9

# .tar.lzma: [props][dict size LE32][uncompressed size LE64][raw LZMA1 stream]
LZMA_LC = 3
LZMA_LP = 0
LZMA_PB = 2
LZMA_DICTIONARY_SIZE = 64 * 1024 * 1024
LZMA_NICE_LEN = 128
LZMA_FILTERS = [
    {
        "id": lzma.FILTER_LZMA1,
        "dict_size": LZMA_DICTIONARY_SIZE,
        "lc": LZMA_LC,
        "lp": LZMA_LP,
        "pb": LZMA_PB,
        "mode": lzma.MODE_NORMAL,
        "nice_len": LZMA_NICE_LEN,
        "mf": lzma.MF_BT4,
    }
]
LZMA_HEADER = struct.Struct("<BIQ")

_xz_init_lock = threading.Lock()
_xz_initialized = False


def init_xz_codec() -> bool:
    """Verify once per process that liblzma can produce .xz streams.

    Safe to call repeatedly; later calls return True immediately.
    """
    global _xz_initialized
    with _xz_init_lock:
        if _xz_initialized:
            return True
        if not lzma.is_check_supported(lzma.CHECK_CRC64):
            raise RuntimeError("liblzma was built without CRC64 support; cannot write .xz archives")
        _xz_initialized = True
    return True


def lzma_properties_byte(lc: int = LZMA_LC, lp: int = LZMA_LP, pb: int = LZMA_PB) -> int:
    return (pb * 5 + lp) * 9 + lc


def build_lzma_header(uncompressed_size: int, dict_size: int = LZMA_DICTIONARY_SIZE) -> bytes:
    return LZMA_HEADER.pack(lzma_properties_byte(), dict_size, uncompressed_size)


WriteFn = Callable[[TarWriter], ArchiveReport]


class BaseCompressor(ABC):
    """Uniform compress / compress_streaming contract shared by all backends."""

    name = ""
    extension = ""

    def __init__(self, log_fn=safe_print):
        self.log_fn = log_fn

    def compress(self, output_path, threads: Mapping[int, Sequence[MessageBlob]]) -> ArchiveReport:
        """Archive pre-built messages to ``output_path``."""
        output_path = os.fspath(output_path)
        return self._run(output_path, lambda tar: write_threads(tar, threads, output_path, log_fn=self.log_fn))

    def compress_streaming(
        self,
        output_path,
        threads: Mapping[int, Iterable[MessageSummaryLike]],
        fetcher: MessageFetcher,
        max_message_size_mb: int = 10,
    ) -> ArchiveReport:
        """Archive messages fetched on demand, one at a time, to ``output_path``."""
        output_path = os.fspath(output_path)
        return self._run(
            output_path,
            lambda tar: write_threads_streaming(
                tar, threads, fetcher, max_message_size_mb, output_path, log_fn=self.log_fn
            ),
        )

    def _run(self, output_path: str, write_fn: WriteFn) -> ArchiveReport:
        try:
            report = self._stage(output_path, write_fn)
        except BaseException as e:
            self.log_fn(f"Error: {self.name} compression failed | Output file: {output_path}: {e}")
            self._remove_partial_output(output_path)
            raise

        self.log_fn(
            f"Archive written: {output_path} "
            f"({report.written_count} messages, {len(report.skipped)} skipped)"
        )
        return report

    def _remove_partial_output(self, output_path: str) -> None:
        try:
            if os.path.isfile(output_path):
                os.remove(output_path)
        except OSError as e:
            self.log_fn(f"Warning: Unable to delete corrupted output file {output_path}: {e}")

    @abstractmethod
    def _stage(self, output_path: str, write_fn: WriteFn) -> ArchiveReport:
        """Produce the compressed archive, returning the tar writer's report."""


class SinglePassCompressor(BaseCompressor):
    """Tar bytes flow directly through the encoder into the output file."""

    @abstractmethod
    def _open_encoder(self, output: BinaryIO) -> BinaryIO:
        """Wrap ``output`` in a writable encoding stream."""

    def _stage(self, output_path: str, write_fn: WriteFn) -> ArchiveReport:
        with open(output_path, "wb") as output:
            with self._open_encoder(output) as encoder:
                tar = TarWriter(encoder)
                report = write_fn(tar)
                tar.close()
        return report


class TwoPassCompressor(BaseCompressor):
    """Tar is staged in a secure temp file, then encoded into the output."""

    temp_prefix = "archive_temp"

    @abstractmethod
    def _encode(self, tar_input: BinaryIO, output: BinaryIO, tar_size: int) -> None:
        """Encode the complete staged tar from ``tar_input`` into ``output``."""

    def _stage(self, output_path: str, write_fn: WriteFn) -> ArchiveReport:
        with open(output_path, "wb") as output:
            temp_stream, temp_path = secure_io.create_secure_temp_file(self.temp_prefix, ".tar")
            try:
                with temp_stream:
                    tar = TarWriter(temp_stream)
                    report = write_fn(tar)
                    tar.close()

                with open(temp_path, "rb") as tar_input:
                    self._encode(tar_input, output, os.path.getsize(temp_path))
                output.flush()
            finally:
                secure_io.safe_delete_file(temp_path, self.log_fn)
        return report


class TarGzipCompressor(SinglePassCompressor):
    name = "gzip"
    extension = ".tar.gz"

    def _open_encoder(self, output):
        return gzip.GzipFile(filename="", mode="wb", compresslevel=GZIP_COMPRESSION_LEVEL, fileobj=output)


class TarBzip2Compressor(SinglePassCompressor):
    name = "bzip2"
    extension = ".tar.bz2"

    def _open_encoder(self, output):
        return bz2.BZ2File(output, "wb", compresslevel=BZIP2_COMPRESSION_LEVEL)


class LzmaCompressor(TwoPassCompressor):
    name = "lzma"
    extension = ".tar.lzma"
    temp_prefix = "lzma_temp"

    def _encode(self, tar_input, output, tar_size):
        output.write(build_lzma_header(tar_size))
        encoder = lzma.LZMACompressor(format=lzma.FORMAT_RAW, filters=LZMA_FILTERS)
        while True:
            chunk = tar_input.read(COPY_CHUNK_SIZE)
            if not chunk:
                break
            output.write(encoder.compress(chunk))
        output.write(encoder.flush())


class TarXzCompressor(TwoPassCompressor):
    name = "xz"
    extension = ".tar.xz"
    temp_prefix = "xz_temp"

    def __init__(self, log_fn=safe_print):
        super().__init__(log_fn)
        init_xz_codec()

    def _encode(self, tar_input, output, tar_size):
        with lzma.LZMAFile(output, "wb", format=lzma.FORMAT_XZ, check=lzma.CHECK_CRC64, preset=XZ_PRESET) as xz:
            shutil.copyfileobj(tar_input, xz, COPY_CHUNK_SIZE)


DEFAULT_COMPRESSION = "lzma"

COMPRESSORS: dict[str, type[BaseCompressor]] = {
    "lzma": LzmaCompressor,
    "gzip": TarGzipCompressor,
    "bzip2": TarBzip2Compressor,
    "xz": TarXzCompressor,
}


def normalize_compression(name: str | None) -> str:
    """Lowercase selector; unknown or blank values fall back to LZMA."""
    key = (name or "").strip().lower()
    return key if key in COMPRESSORS else DEFAULT_COMPRESSION


def get_compressor(name: str | None, log_fn=safe_print) -> BaseCompressor:
    key = normalize_compression(name)
    if name and name.strip() and key != name.strip().lower():
        log_fn(f"Warning: Unknown compression method '{name}', using {DEFAULT_COMPRESSION}")
    return COMPRESSORS[key](log_fn=log_fn)


def archive_extension(name: str | None) -> str:
    return COMPRESSORS[normalize_compression(name)].extension


def ensure_archive_extension(output_path: str, name: str | None) -> str:
    """Append the backend's extension unless ``output_path`` already has it."""
    extension = archive_extension(name)
    if output_path.endswith(extension):
        return output_path
    return f"{output_path}{extension}"
