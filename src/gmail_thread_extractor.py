"""
Gmail Thread Extractor

Finds Gmail messages matching a search query and/or label, expands every hit
to its complete conversation (X-GM-THRID), and archives the threads as a
compressed tar file: one directory per thread, one .eml file per message.

Messages are fetched one at a time while the archive is written, so memory
stays bounded by the largest single message below the streaming threshold.

Configuration (Environment Variables):
    GMAIL_EMAIL, GMAIL_PASSWORD: Account credentials (use an App Password).
    GMAIL_SEARCH: Gmail search query (same syntax as the web UI search box).
    GMAIL_LABEL: Optional Gmail label to restrict the search to.
    GMAIL_OUTPUT: Output archive path (extension is added if missing).
    GMAIL_COMPRESSION: lzma (default), gzip, bzip2 or xz.

    A JSON config file (--config, or config.json / gmail-extractor.json /
    ~/.gmail-extractor.json) may provide the same settings plus
    timeoutMinutes and maxMessageSizeMB. Command-line values win.

Usage:
    python3 gmail_thread_extractor.py \
        --email "you@gmail.com" \
        --search "from:alice subject:report" \
        --label "Projects" \
        --output "./report-threads" \
        --compression xz
"""

import argparse
import getpass
import os
import sys
from typing import Optional

from archival.compressors import COMPRESSORS, DEFAULT_COMPRESSION, ensure_archive_extension, get_compressor
from core import config, imap_retry, imap_session
from providers import provider_gmail
from utils import imap_common
from utils.console import safe_print

DEFAULT_TIMEOUT_MINUTES = 5


class GmailThreadExtractor:
    """Connects to Gmail over IMAP and archives matching threads."""

    def __init__(
        self,
        email,
        password,
        imap_server=imap_common.GMAIL_IMAP_HOST,
        imap_port=imap_common.GMAIL_IMAP_PORT,
        timeout_minutes=None,
        log_fn=safe_print,
    ):
        self.email = email
        self.imap_server = imap_server
        self.imap_port = imap_port
        self.log_fn = log_fn
        self.conf = imap_session.build_imap_conf(
            imap_server, email, password, port=imap_port, timeout_minutes=timeout_minutes or DEFAULT_TIMEOUT_MINUTES
        )

    def _wrap(self, conn):
        return imap_retry.ConnectionProxy(conn, log_fn=self.log_fn)

    def connect(self):
        """Log in and select All Mail read-only; raises ConnectionError on failure."""
        conn = imap_common.get_imap_connection_from_conf(self.conf)
        if not conn:
            raise ConnectionError(f"Could not connect to {self.imap_server} as {self.email}")
        conn = self._wrap(conn)
        if not provider_gmail.enable_utf8(conn):
            self.log_fn(f"Warning: {self.imap_server} does not support UTF8=ACCEPT; non-ASCII searches will fail")
        typ, data = conn.select(imap_common.quote_imap_string(provider_gmail.GMAIL_ALL_MAIL), readonly=True)
        if typ != "OK":
            try:
                conn.logout()
            except Exception:
                # Best-effort logout.
                pass
            raise ConnectionError(f"Could not select {provider_gmail.GMAIL_ALL_MAIL}: {data}")
        return conn

    def find_threads(self, conn, search, label):
        """Search and expand hits to whole threads, keyed by X-GM-THRID."""
        criteria = provider_gmail.build_search_criteria(search, label)
        uids = provider_gmail.search_uids(conn, criteria)
        self.log_fn(f"Found {len(uids)} matching messages.")
        summaries = provider_gmail.fetch_summaries(conn, uids)
        threads = provider_gmail.group_threads(conn, summaries, log_fn=self.log_fn)
        self.log_fn(f"Found {len(threads)} threads.")
        return threads

    def _fetch_all(self, threads, fetcher):
        blobs = {}
        for thread_id, summaries in threads.items():
            blobs[thread_id] = []
            for summary in summaries:
                try:
                    blobs[thread_id].append(fetcher(summary))
                except Exception as e:
                    self.log_fn(f"Error: Failed to fetch message {summary.unique_id} in thread {thread_id}: {e}")
        return blobs

    def extract_threads(
        self,
        output_path,
        search,
        label="",
        compression=DEFAULT_COMPRESSION,
        max_message_size_mb=config.DEFAULT_MAX_MESSAGE_SIZE_MB,
        streaming=True,
    ):
        """
        Archive every thread matching ``search`` / ``label`` to ``output_path``.

        The compression extension is appended when missing. Returns the
        ArchiveReport from the compressor.
        """
        conn = self.connect()
        session = imap_session.FolderSession(conn, self.conf, provider_gmail.GMAIL_ALL_MAIL, wrap=self._wrap)
        try:
            threads = self.find_threads(conn, search, label)

            output_path = ensure_archive_extension(os.fspath(output_path), compression)
            compressor = get_compressor(compression, log_fn=self.log_fn)
            fetcher = provider_gmail.make_message_fetcher(session, max_message_size_mb, log_fn=self.log_fn)

            if streaming:
                report = compressor.compress_streaming(output_path, threads, fetcher, max_message_size_mb)
            else:
                report = compressor.compress(output_path, self._fetch_all(threads, fetcher))

            self.log_fn(f"All done! Emails saved to {output_path}")
            return report
        finally:
            session.logout()


def _prompt_until_value(prompt_fn, label):
    while True:
        value = prompt_fn(f"{label}: ")
        if value and value.strip():
            return value


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Extracts email threads from a Gmail account.")
    parser.add_argument("--config", help="Path to the JSON configuration file.")
    parser.add_argument("--email", default=os.getenv("GMAIL_EMAIL"), help="Gmail address (or GMAIL_EMAIL)")
    parser.add_argument(
        "--password", default=os.getenv("GMAIL_PASSWORD"), help="Password or App Password (or GMAIL_PASSWORD)"
    )
    parser.add_argument("--search", default=os.getenv("GMAIL_SEARCH"), help="Gmail search query (or GMAIL_SEARCH)")
    parser.add_argument("--label", default=os.getenv("GMAIL_LABEL"), help="Gmail label to filter by (or GMAIL_LABEL)")
    parser.add_argument("--output", default=os.getenv("GMAIL_OUTPUT"), help="Output archive path (or GMAIL_OUTPUT)")
    parser.add_argument(
        "--compression",
        type=str.lower,
        choices=sorted(COMPRESSORS),
        default=(os.getenv("GMAIL_COMPRESSION") or None),
        help="Compression method: lzma (default), gzip, bzip2 or xz (or GMAIL_COMPRESSION)",
    )
    parser.add_argument("--timeout", type=int, help="IMAP operation timeout in minutes (1-60, default 5)")
    parser.add_argument(
        "--max-message-size", type=int, help="Messages above this size in MB are streamed (1-1000, default 10)"
    )
    parser.add_argument(
        "--no-streaming",
        action="store_false",
        dest="streaming",
        help="Download every message before writing the archive",
    )
    args = parser.parse_args(argv)

    try:
        config_path = args.config or config.find_default_config()
        base = config.load_config(config_path) if config_path else config.ExtractorConfig()
        final = base.merge_with_command_line(
            email=args.email,
            password=args.password,
            search=args.search,
            label=args.label,
            output=args.output,
            compression=args.compression,
            timeout_minutes=args.timeout,
            max_message_size_mb=args.max_message_size,
        )

        if not final.output:
            raise config.ConfigError(
                "Output file path is required. Specify --output or include 'output' in config file."
            )
        if not final.search:
            raise config.ConfigError(
                "Search query is required. Specify --search or include 'search' in config file."
            )

        email = final.email or _prompt_until_value(input, "Email")
        password = final.password or _prompt_until_value(getpass.getpass, "Password")
        if not final.email:
            final = final.merge_with_command_line(email=email)
    except config.ConfigError as e:
        safe_print(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        safe_print("\nCancelled.")
        return 130

    print("\n--- Configuration Summary ---")
    print(f"Email       : {final.email}")
    print(f"Search      : {final.search}")
    print(f"Label       : {final.label or '(none)'}")
    print(f"Output      : {final.output}")
    print(f"Compression : {final.effective_compression}")
    print(f"Max Msg Size: {final.effective_max_message_size_mb} MB")
    print("-----------------------------\n")

    extractor = GmailThreadExtractor(final.email, password, timeout_minutes=final.timeout_minutes)
    try:
        extractor.extract_threads(
            final.output,
            final.search,
            final.label or "",
            final.effective_compression,
            final.effective_max_message_size_mb,
            streaming=args.streaming,
        )
    except KeyboardInterrupt:
        safe_print("\nCancelled.")
        return 130
    except Exception as e:
        safe_print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
