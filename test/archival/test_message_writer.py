"""
Tests for archival/message_writer.py

Tests cover:
- Buffered vs. streaming conversion around the size threshold
- Streaming output identical to buffered output
- Metadata taken from headers, with IMAP summary values preferred for raw bytes
"""

import io
from datetime import datetime, timezone
from email import message_from_bytes, policy
from types import SimpleNamespace

from conftest import make_eml

from archival import message_writer


def _summary(uid="5", **kwargs):
    return SimpleNamespace(unique_id=uid, **kwargs)


def _parsed(**kwargs):
    return message_from_bytes(make_eml(**kwargs), policy=policy.default)


class TestMessageToBlob:
    def test_small_message_is_buffered(self, log):
        blob = message_writer.message_to_blob(_summary(), _parsed(subject="Small"), 1024, log_fn=log)

        assert blob.is_streaming is False
        assert blob.unique_id == "5"
        assert blob.subject == "Small"
        assert blob.sender == "Alice <alice@example.com>"
        assert blob.recipient == "bob@example.com"
        assert blob.date == datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
        assert log.messages == []

    def test_large_message_streams(self, log):
        message = _parsed(body="x" * 5000)
        blob = message_writer.message_to_blob(_summary(), message, 1000, log_fn=log)

        assert blob.is_streaming is True
        assert blob.size > 1000
        assert log.contains("will use streaming")

    def test_streaming_bytes_match_buffered_bytes(self, log):
        message = _parsed(body="line\r\n" * 2000)
        buffered = message_writer.message_to_blob(_summary(), message, 10**9, log_fn=log)
        streamed = message_writer.message_to_blob(_summary(), message, 10, log_fn=log)

        sink = io.BytesIO()
        streamed.write_to(sink)
        assert sink.getvalue() == buffered.blob
        assert streamed.size == buffered.size

    def test_threshold_is_inclusive(self, log):
        message = _parsed()
        size = message_writer.message_to_blob(_summary(), message, 10**9, log_fn=log).size

        assert message_writer.message_to_blob(_summary(), message, size, log_fn=log).is_streaming is False
        assert message_writer.message_to_blob(_summary(), message, size - 1, log_fn=log).is_streaming is True

    def test_unparseable_date_falls_back_to_now(self, log):
        before = datetime.now(timezone.utc).replace(microsecond=0)
        blob = message_writer.message_to_blob(_summary(), _parsed(date="not a date"), 1024, log_fn=log)
        assert blob.date >= before

    def test_messages_to_blobs_pairs_in_order(self):
        messages = [_parsed(subject="one"), _parsed(subject="two")]
        blobs = message_writer.messages_to_blobs(messages, [_summary("1"), _summary("2")])

        assert [(b.unique_id, b.subject) for b in blobs] == [("1", "one"), ("2", "two")]


class TestRawMessageToBlob:
    def test_uses_headers_when_summary_is_bare(self):
        raw = make_eml(subject="From headers")
        blob = message_writer.raw_message_to_blob(_summary(), raw)

        assert blob.blob == raw
        assert blob.subject == "From headers"
        assert blob.sender == "Alice <alice@example.com>"

    def test_prefers_summary_metadata(self):
        date = datetime(2023, 6, 1, tzinfo=timezone.utc)
        summary = _summary(subject="Summary subject", sender="s@example.com", recipient="r@example.com", date=date)
        blob = message_writer.raw_message_to_blob(summary, make_eml(subject="Header subject"))

        assert blob.subject == "Summary subject"
        assert blob.sender == "s@example.com"
        assert blob.recipient == "r@example.com"
        assert blob.date == date


def test_messages_to_blobs_pairs_in_order():
    messages = [_parsed(subject="First"), _parsed(subject="Second")]

    blobs = message_writer.messages_to_blobs(messages, [_summary("1"), _summary("2")])

    assert [(b.unique_id, b.subject) for b in blobs] == [("1", "First"), ("2", "Second")]
    assert not any(b.is_streaming for b in blobs)
