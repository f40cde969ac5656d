"""
Shared pytest fixtures and utilities for the Gmail thread extractor tests.
"""

import os
import sys
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest

# Ensure src/tools are in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))

from mock_gmail_server import start_server_thread


def make_eml(subject="Hello", sender="Alice <alice@example.com>", to="bob@example.com", date=None, body="Hi Bob", message_id=None):
    """Build a small RFC 5322 message with CRLF line endings."""
    date = date or "Mon, 01 Jan 2024 10:00:00 +0000"
    lines = [
        f"From: {sender}",
        f"To: {to}",
        f"Subject: {subject}",
        f"Date: {date}",
    ]
    if message_id:
        lines.append(f"Message-ID: {message_id}")
    lines += ["", body, ""]
    return "\r\n".join(lines).encode("utf-8")


class LogRecorder:
    """Callable stand-in for safe_print that keeps every message."""

    def __init__(self):
        self.messages = []

    def __call__(self, message):
        self.messages.append(message)

    def contains(self, fragment):
        return any(fragment in m for m in self.messages)


@pytest.fixture
def log():
    return LogRecorder()


@pytest.fixture
def gmail_server():
    """
    Factory fixture that starts mock Gmail IMAP servers.
    Automatically shuts them down after the test.
    """
    servers = []

    def _create(messages=None, password=None):
        thread, server, port = start_server_thread(0, messages, password)
        servers.append((thread, server))
        return server, port

    yield _create

    for thread, server in servers:
        server.shutdown()
        server.server_close()
        thread.join(timeout=2)


@pytest.fixture
def isolated_tempdir(tmp_path, monkeypatch):
    """Point tempfile at a private directory so leftover temp files can be counted."""
    import tempfile

    temp_dir = tmp_path / "tmp"
    temp_dir.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(temp_dir))
    return temp_dir


@contextmanager
def temp_env(env):
    original = os.environ.copy()
    os.environ.clear()
    os.environ.update(env)
    try:
        yield
    finally:
        os.environ.clear()
        os.environ.update(original)


@contextmanager
def temp_argv(args):
    original = sys.argv[:]
    sys.argv = list(args)
    try:
        yield
    finally:
        sys.argv = original


@pytest.fixture(autouse=True)
def clean_sys_argv():
    """Ensure sys.argv is clean for all tests."""
    original = sys.argv[:]
    sys.argv = ["test_script.py"]
    yield
    sys.argv = original


UTC_2024 = datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)

__all__ = [
    "gmail_server",
    "isolated_tempdir",
    "log",
    "make_eml",
    "LogRecorder",
    "temp_env",
    "temp_argv",
    "UTC_2024",
]
