"""
Archive Reader

Opens archives produced by the compressor backends for inspection and
verification. ``.tar.lzma`` files use the LZMA "alone" layout (properties,
dictionary size, uncompressed size, raw LZMA1 payload), which ``lzma`` reads
with ``FORMAT_ALONE``; ``tarfile`` cannot detect it on its own.
"""

from __future__ import annotations

import lzma
import tarfile
from contextlib import contextmanager

from archival.compressors import LZMA_HEADER


def read_lzma_header(fileobj) -> tuple[dict, int]:
    """Read the 13-byte ``.tar.lzma`` header.

    Returns ``(filter_spec, uncompressed_size)``; ``filter_spec`` describes
    the LZMA1 filter the payload was encoded with.
    """
    header = fileobj.read(LZMA_HEADER.size)
    if len(header) != LZMA_HEADER.size:
        raise lzma.LZMAError("Truncated .tar.lzma header")

    props, dict_size, uncompressed_size = LZMA_HEADER.unpack(header)
    if props >= 9 * 5 * 5:
        raise lzma.LZMAError(f"Invalid LZMA properties byte: {props:#x}")
    lc = props % 9
    props //= 9
    lp = props % 5
    pb = props // 5

    filter_spec = {"id": lzma.FILTER_LZMA1, "dict_size": dict_size, "lc": lc, "lp": lp, "pb": pb}
    return filter_spec, uncompressed_size


@contextmanager
def open_tar_archive(path: str):
    """Open any archive produced here as a streaming ``tarfile.TarFile``."""
    if str(path).endswith(".tar.lzma"):
        with lzma.open(path, "rb", format=lzma.FORMAT_ALONE) as decoded:
            with tarfile.open(fileobj=decoded, mode="r|") as tar:
                yield tar
    else:
        with tarfile.open(path, "r|*") as tar:
            yield tar


def verify_archive(path: str) -> int:
    """Walk every member of the archive and return the member count."""
    with open_tar_archive(path) as tar:
        return sum(1 for _ in tar)


def read_archive_entries(path: str) -> dict[str, bytes | None]:
    """Map every member name to its content (None for directories)."""
    entries: dict[str, bytes | None] = {}
    with open_tar_archive(path) as tar:
        for member in tar:
            if member.isfile():
                extracted = tar.extractfile(member)
                entries[member.name] = extracted.read() if extracted else b""
            else:
                entries[member.name] = None
    return entries
