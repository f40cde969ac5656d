"""
IMAP Retry Logic

Two layers of retry for Gmail IMAP traffic:

- ``ConnectionProxy`` transparently retries commands whose ``(typ, data)``
  response reports a transient server condition.
- ``execute_with_retry`` retries an arbitrary operation that raises
  transient network errors, with capped exponential backoff.
"""

from __future__ import annotations

import imaplib
import socket
import ssl
import time

from utils.console import safe_print

TRANSIENT_PATTERNS = [b"UNAVAILABLE", b"Server Busy", b"try again", b"THROTTLED"]

_RETRYABLE_MESSAGE_HINTS = ("temporary", "try again", "server busy", "overloaded", "unavailable", "throttled")
_PERMANENT_MESSAGE_HINTS = ("authenticationfailed", "authentication", "credentials", "invalid", "not found")


def _is_transient_error(data):
    """Check if IMAP response data contains transient error patterns."""
    for item in data or []:
        if isinstance(item, bytes):
            for pattern in TRANSIENT_PATTERNS:
                if pattern in item:
                    return True
    return False


def is_retryable_error(exc: BaseException) -> bool:
    """Return True for failures worth another attempt.

    Socket, SSL and timeout errors and aborted IMAP connections are
    retryable. IMAP command errors are retried only when the server says the
    condition is temporary; authentication failures never are.
    """
    if isinstance(exc, imaplib.IMAP4.abort):
        return True
    if isinstance(exc, imaplib.IMAP4.error):
        message = str(exc).lower()
        if any(hint in message for hint in _PERMANENT_MESSAGE_HINTS):
            return False
        return any(hint in message for hint in _RETRYABLE_MESSAGE_HINTS)
    if isinstance(exc, (socket.timeout, TimeoutError, ConnectionError, ssl.SSLError, EOFError)):
        return True
    if isinstance(exc, OSError):
        message = str(exc).lower()
        return any(hint in message for hint in ("network", "connection", "timed out", "temporary"))
    return False


def execute_with_retry(
    operation,
    max_attempts=3,
    base_delay=1.0,
    max_delay=30.0,
    operation_name="operation",
    log_fn=safe_print,
    sleep_fn=time.sleep,
):
    """Run ``operation()`` and retry it on retryable errors.

    The delay doubles per attempt (``base_delay * 2**(attempt-1)``) up to
    ``max_delay``. Non-retryable errors and the last failure are re-raised
    unchanged.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except Exception as e:
            if not is_retryable_error(e) or attempt >= max_attempts:
                log_fn(f"Error: {operation_name} failed permanently: {e}")
                raise

            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            log_fn(f"Warning: {operation_name} failed (attempt {attempt}/{max_attempts}): {e}")
            log_fn(f"Retrying in {delay:.1f} seconds...")
            sleep_fn(delay)


class ConnectionProxy:
    """Transparent proxy that retries IMAP commands on transient server errors.

    Wraps an imaplib.IMAP4 or IMAP4_SSL connection. For methods in
    RETRYABLE_METHODS that return (typ, data) tuples, retries on transient
    errors with exponential backoff.
    """

    # Read-only commands the extractor issues; all are safe to repeat.
    RETRYABLE_METHODS = frozenset({"uid", "select", "search", "fetch", "noop"})

    def __init__(self, conn, max_retries=3, initial_wait=5, log_fn=safe_print, sleep_fn=time.sleep):
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        if initial_wait < 0:
            raise ValueError(f"initial_wait must be >= 0, got {initial_wait}")
        self._conn = conn
        self._max_retries = max_retries
        self._initial_wait = initial_wait
        self._log_fn = log_fn
        self._sleep_fn = sleep_fn

    def __setattr__(self, name, value):
        # Public attributes belong to the connection.
        if name.startswith("_"):
            super().__setattr__(name, value)
        else:
            setattr(self._conn, name, value)

    def __getattr__(self, name):
        attr = getattr(self._conn, name)
        if name not in self.RETRYABLE_METHODS or not callable(attr):
            return attr

        def wrapper(*args, **kwargs):
            last_result = None
            for attempt in range(self._max_retries):
                result = attr(*args, **kwargs)
                if not isinstance(result, tuple) or len(result) < 2:
                    return result
                typ, data = result[0], result[1]
                if typ == "OK" or not _is_transient_error(data):
                    return result
                last_result = result
                if attempt + 1 < self._max_retries:
                    wait = self._initial_wait * (2**attempt)
                    self._log_fn(f"Server busy, retrying in {wait}s... (attempt {attempt + 1}/{self._max_retries})")
                    self._sleep_fn(wait)
            return last_result

        return wrapper
