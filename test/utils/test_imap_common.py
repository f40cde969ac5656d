"""
Tests for utils/imap_common.py

Tests cover:
- IMAP connection handling (SSL, imap:// plaintext, failures)
- Connection health check and reconnect
- Astring quoting
- MIME header decoding
"""

from unittest.mock import MagicMock, patch

import pytest

from utils import imap_common


class TestGetImapConnection:
    """Tests for get_imap_connection function."""

    def test_invalid_credentials_empty(self, log):
        """Test returns None when host or user is empty."""
        assert imap_common.get_imap_connection("", "user", "pass", log_fn=log) is None
        assert imap_common.get_imap_connection("host", "", "pass", log_fn=log) is None
        assert log.contains("Error: Invalid credentials")

    def test_missing_password(self, log):
        assert imap_common.get_imap_connection("imap.gmail.com", "user@gmail.com", "", log_fn=log) is None
        assert log.contains("app password")

    def test_ssl_by_default(self):
        """Test uses IMAP4_SSL on the default port for a bare host name."""
        with patch.object(imap_common.imaplib, "IMAP4_SSL") as mock_ssl:
            conn = imap_common.get_imap_connection("imap.gmail.com", "user@gmail.com", "pw", timeout=30)

        mock_ssl.assert_called_once_with("imap.gmail.com", 993, timeout=30)
        mock_ssl.return_value.login.assert_called_once_with("user@gmail.com", "pw")
        assert conn is mock_ssl.return_value

    def test_explicit_port(self):
        with patch.object(imap_common.imaplib, "IMAP4_SSL") as mock_ssl:
            imap_common.get_imap_connection("imap.example.com", "u", "p", port=1993)

        mock_ssl.assert_called_once_with("imap.example.com", 1993, timeout=None)

    def test_plaintext_url(self):
        """Test imap://host:port selects a plain IMAP4 connection."""
        with patch.object(imap_common.imaplib, "IMAP4") as mock_plain:
            conn = imap_common.get_imap_connection("imap://localhost:10143", "u", "p")

        mock_plain.assert_called_once_with("localhost", 10143, timeout=None)
        assert conn is mock_plain.return_value

    def test_imaps_url(self):
        with patch.object(imap_common.imaplib, "IMAP4_SSL") as mock_ssl:
            imap_common.get_imap_connection("imaps://imap.gmail.com", "u", "p")

        mock_ssl.assert_called_once_with("imap.gmail.com", 993, timeout=None)

    def test_unsupported_scheme(self, log):
        assert imap_common.get_imap_connection("http://imap.gmail.com", "u", "p", log_fn=log) is None
        assert log.contains("Unsupported IMAP scheme: http")

    def test_login_failure_returns_none(self, log):
        with patch.object(imap_common.imaplib, "IMAP4_SSL") as mock_ssl:
            mock_ssl.return_value.login.side_effect = imap_common.imaplib.IMAP4.error("[AUTHENTICATIONFAILED]")
            conn = imap_common.get_imap_connection("imap.gmail.com", "u", "bad", log_fn=log)

        assert conn is None
        assert log.contains("Connection error to imap.gmail.com")

    def test_from_conf(self):
        conf = {"host": "imap.gmail.com", "port": 993, "user": "u", "password": "p", "timeout": 120}
        with patch.object(imap_common, "get_imap_connection") as mock_get:
            imap_common.get_imap_connection_from_conf(conf)

        mock_get.assert_called_once_with("imap.gmail.com", "u", "p", port=993, timeout=120)


class TestEnsureConnectionFromConf:
    """Tests for ensure_connection_from_conf function."""

    CONF = {"host": "imap.gmail.com", "port": None, "user": "u", "password": "p", "timeout": None}

    def test_healthy_connection_reused(self):
        conn = MagicMock()
        with patch.object(imap_common, "get_imap_connection_from_conf") as mock_get:
            assert imap_common.ensure_connection_from_conf(conn, self.CONF) is conn

        conn.noop.assert_called_once()
        mock_get.assert_not_called()

    def test_broken_connection_reconnects(self):
        conn = MagicMock()
        conn.noop.side_effect = OSError("broken pipe")
        new_conn = MagicMock()

        with patch.object(imap_common, "get_imap_connection_from_conf", return_value=new_conn):
            assert imap_common.ensure_connection_from_conf(conn, self.CONF) is new_conn

    def test_no_connection_connects(self):
        with patch.object(imap_common, "get_imap_connection_from_conf", return_value=None) as mock_get:
            assert imap_common.ensure_connection_from_conf(None, self.CONF) is None

        mock_get.assert_called_once_with(self.CONF)


class TestQuoteImapString:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("INBOX", '"INBOX"'),
            ("[Gmail]/All Mail", '"[Gmail]/All Mail"'),
            ('from:"Bob"', '"from:\\"Bob\\""'),
            ("back\\slash", '"back\\\\slash"'),
            ("", '""'),
        ],
    )
    def test_quoting(self, value, expected):
        assert imap_common.quote_imap_string(value) == expected


class TestDecodeMimeHeader:
    """Tests for decode_mime_header function."""

    def test_plain_text(self):
        assert imap_common.decode_mime_header("Hello World") == "Hello World"

    def test_empty(self):
        assert imap_common.decode_mime_header("") == ""
        assert imap_common.decode_mime_header(None) == ""

    def test_utf8_encoded(self):
        assert imap_common.decode_mime_header("=?UTF-8?B?SMOpbGxv?=") == "Héllo"

    def test_quoted_printable(self):
        assert imap_common.decode_mime_header("=?iso-8859-1?q?caf=E9?=") == "café"

    def test_bytes_input(self):
        assert imap_common.decode_mime_header(b"Plain bytes") == "Plain bytes"

    def test_unknown_charset_falls_back_to_utf8(self):
        assert imap_common.decode_mime_header("=?x-unknown?q?abc?=") == "abc"
