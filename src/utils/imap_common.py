"""
IMAP Common Utilities

Connection handling and header decoding shared by the Gmail thread extractor.
"""

from __future__ import annotations

import imaplib
import re
import urllib.parse
from email.header import decode_header

from utils.console import safe_print

GMAIL_IMAP_HOST = "imap.gmail.com"
GMAIL_IMAP_PORT = 993

# IMAP Commands
CMD_SEARCH = "search"
CMD_FETCH = "fetch"

_QUOTED_SPECIALS = re.compile(r'(["\\])')


def get_imap_connection_from_conf(conf):
    """
    Establishes an IMAP connection using a conf dict.

    conf dict structure:
        {
            "host": str,
            "port": int or None,
            "user": str,
            "password": str,
            "timeout": float or None  # seconds
        }
    """
    return get_imap_connection(
        conf["host"], conf["user"], conf.get("password"), port=conf.get("port"), timeout=conf.get("timeout")
    )


def get_imap_connection(host, user, password, port=None, timeout=None, log_fn=safe_print):
    """
    Establishes a connection to the IMAP server and logs in.
    SSL is used unless the host is given as ``imap://host:port``.
    Returns the connection object or None if failed.
    """
    if not host or not user:
        log_fn(f"Error: Invalid credentials for {host}")
        return None

    if not password:
        log_fn(f"Error: A password (or app password) is required for {host}")
        return None

    try:
        use_ssl = True
        resolved_host = host
        if "://" in host:
            parsed = urllib.parse.urlparse(host)
            scheme = parsed.scheme.lower()
            if not scheme or not parsed.hostname:
                raise ValueError("Invalid IMAP host")
            if scheme in {"imap", "tcp"}:
                use_ssl = False
            elif scheme not in {"imaps", "ssl"}:
                raise ValueError(f"Unsupported IMAP scheme: {scheme}")
            resolved_host = parsed.hostname
            port = parsed.port or port

        if use_ssl:
            conn = imaplib.IMAP4_SSL(resolved_host, port or imaplib.IMAP4_SSL_PORT, timeout=timeout)
        else:
            conn = imaplib.IMAP4(resolved_host, port or imaplib.IMAP4_PORT, timeout=timeout)
        conn.login(user, password)
        return conn
    except Exception as e:
        log_fn(f"Connection error to {host}: {e}")
        return None


def ensure_connection_from_conf(conn, conf):
    """
    Verifies an IMAP connection is still alive, reconnecting if necessary.
    Returns the existing connection if healthy, or a new connection if it was broken.
    Returns None if reconnection fails.
    """
    try:
        if conn:
            conn.noop()
            return conn
    except Exception:
        # Connection is broken (network error, timeout, etc.) - fall through to reconnect
        pass
    return get_imap_connection_from_conf(conf)


def quote_imap_string(value: str) -> str:
    """Quote an ASCII string for use as an IMAP astring argument."""
    return '"' + _QUOTED_SPECIALS.sub(r"\\\1", value) + '"'


def decode_mime_header(header_value):
    """
    Decodes MIME encoded headers (Subject, etc.) to a unicode string.
    Returns an empty string for missing headers.
    """
    if not header_value:
        return ""
    if isinstance(header_value, bytes):
        header_value = header_value.decode("utf-8", errors="replace")
    try:
        decoded_list = decode_header(header_value)
        text_parts = []
        for data, encoding in decoded_list:
            if isinstance(data, bytes):
                charset = encoding or "utf-8"
                try:
                    text_parts.append(data.decode(charset, errors="replace"))
                except LookupError:
                    text_parts.append(data.decode("utf-8", errors="replace"))
            else:
                text_parts.append(str(data))
        return "".join(text_parts)
    except Exception:
        return str(header_value)
