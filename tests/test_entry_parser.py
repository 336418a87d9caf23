"""
Log Pulse - Entry Parser Tests
==============================

Unit tests for line classification, entry assembly and fingerprinting.
"""

import hashlib
from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from conftest import header
from logpulse.api.schemas import PartialEntry, StackFrame


def md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


class TestLineClassification:
    """Tests for header detection and header parsing."""

    def test_canonical_header_is_entry_start(self, parser):
        """Test that the bracketed timestamp/env/level form starts an entry."""
        assert parser.is_entry_start("[2024-01-01 10:00:00] production.ERROR: boom")
        assert parser.is_entry_start("[2024-01-01T10:00:00.123456+02:00] local.INFO: ok")

    def test_continuation_lines_are_not_entry_start(self, parser):
        """Test that trace lines and free text do not start entries."""
        assert not parser.is_entry_start("#0 /app/Foo.php(10): bar()")
        assert not parser.is_entry_start("Stack trace:")
        assert not parser.is_entry_start("")
        assert not parser.is_entry_start("2024-01-01 10:00:00 ERROR no brackets")

    def test_parse_header_fields(self, parser):
        """Test extracting timestamp, environment, level and message."""
        partial = parser.parse_header("[2024-01-01 10:00:05] staging.warning: Disk almost full")

        assert partial.timestamp == datetime(2024, 1, 1, 10, 0, 5)
        assert partial.environment == "staging"
        assert partial.level == "WARNING"
        assert partial.message == "Disk almost full"

    def test_impossible_date_falls_back_to_now(self, parser):
        """Test that a header with an invalid calendar date still parses."""
        partial = parser.parse_header("[2024-13-45 10:00:00] local.ERROR: odd clock")

        assert partial.level == "ERROR"
        assert abs(datetime.now() - partial.timestamp) < timedelta(minutes=1)

    def test_non_header_becomes_fallback_entry(self, parser):
        """Test that any line can start an entry without raising."""
        partial = parser.parse_header("PHP Fatal error: out of memory")

        assert partial.environment == "unknown"
        assert partial.level == "INFO"
        assert partial.message == "PHP Fatal error: out of memory"


class TestIncrementalParsing:
    """Tests for the one-line-at-a-time state machine."""

    def test_header_starts_new_entry(self, parser):
        """Test that a header yields is_new with a fresh partial entry."""
        result = parser.parse_incremental(header(0))

        assert result.is_new is True
        assert result.entry.raw_lines == [header(0)]

    def test_continuation_extends_previous(self, parser):
        """Test that a continuation line is appended to the entry in progress."""
        first = parser.parse_incremental(header(0)).entry
        result = parser.parse_incremental("#0 /app/Foo.php(10): bar()", first)

        assert result.is_new is False
        assert result.entry is first
        assert first.raw_lines[-1] == "#0 /app/Foo.php(10): bar()"

    def test_new_header_does_not_touch_previous(self, parser):
        """Test that the previous entry is left intact for the caller to finalize."""
        first = parser.parse_incremental(header(0)).entry
        result = parser.parse_incremental(header(1, level="INFO"), first)

        assert result.is_new is True
        assert result.entry is not first
        assert first.raw_lines == [header(0)]

    def test_blank_line_without_entry_is_ignored(self, parser):
        """Test that whitespace before the first header produces nothing."""
        assert parser.parse_incremental("") is None
        assert parser.parse_incremental("   ") is None


class TestFinalization:
    """Tests for exception, frame, fingerprint and title extraction."""

    def test_documented_scenario(self, parser):
        """Test the two-entry scenario with a frame but no exception class."""
        text = (
            "[2024-01-01 10:00:00] local.ERROR: Test\n"
            "#0 /app/Foo.php(10): bar()\n"
            "[2024-01-01 10:00:01] local.INFO: next\n"
        )

        entries = parser.parse_text(text)

        assert len(entries) == 2
        first = entries[0]
        assert first.level == "ERROR"
        assert first.stack_frames == [StackFrame(file="/app/Foo.php", line=10, call="bar()")]
        assert first.exception_type is None
        assert first.fingerprint == md5("unknown:Test")
        assert first.title == "Test"
        assert entries[1].level == "INFO"
        assert entries[1].message == "next"

    def test_exception_in_header_message(self, parser):
        """Test extracting a namespaced exception class and its message."""
        text = (
            "[2024-01-01 10:00:00] production.ERROR: "
            "Illuminate\\Database\\QueryException: SQLSTATE[42S02] table missing\n"
            "#0 /var/www/html/vendor/laravel/framework/Connection.php(760): runQueryCallback()\n"
            "#1 /var/www/html/app/Http/Kernel.php(128): handle()\n"
        )

        entry = parser.parse_text(text)[0]

        assert entry.exception_type == "Illuminate\\Database\\QueryException"
        assert entry.title == "SQLSTATE[42S02] table missing"
        assert len(entry.stack_frames) == 2
        assert entry.stack_frames[1].file == "/var/www/html/app/Http/Kernel.php"
        assert entry.fingerprint == md5(
            "Illuminate\\Database\\QueryException:"
            "vendor/laravel/framework/Connection.php:runQueryCallback()"
        )

    def test_exception_on_continuation_line(self, parser):
        """Test that an exception declared below the header is found."""
        text = (
            f"{header(0, message='Unhandled failure')}\n"
            "RuntimeException: Cache store not configured\n"
            "#0 /srv/app/Cache/Manager.php(41): resolve()\n"
        )

        entry = parser.parse_text(text)[0]

        assert entry.exception_type == "RuntimeException"
        assert entry.title == "Cache store not configured"

    def test_fingerprint_ignores_machine_path_and_line_number(self, parser):
        """Test that the same failure groups together across hosts and deploys."""
        first = parser.parse_text(
            f"{header(0, message='TypeError: bad argument')}\n"
            "#0 /var/www/html/app/Services/Billing.php(10): App\\Services\\Billing->charge()\n"
        )[0]
        second = parser.parse_text(
            f"{header(5, message='TypeError: other argument')}\n"
            "#0 C:\\inetpub\\site\\app\\Services\\Billing.php(87): App\\Services\\Billing->charge()\n"
        )[0]

        assert first.fingerprint == second.fingerprint

    def test_fingerprint_uses_message_prefix_without_frames(self, parser):
        """Test that only the first 100 message characters matter without a trace."""
        prefix = "x" * 100
        first = parser.parse_text(header(0, message=prefix + " tail one"))[0]
        second = parser.parse_text(header(1, message=prefix + " tail two"))[0]
        third = parser.parse_text(header(2, message="y" * 100))[0]

        assert first.fingerprint == second.fingerprint
        assert first.fingerprint != third.fingerprint

    def test_title_is_truncated(self, parser):
        """Test that titles are capped at 200 characters."""
        entry = parser.parse_text(header(0, message="z" * 500))[0]

        assert len(entry.title) == 200

    def test_trailing_blank_lines_are_trimmed(self, parser):
        """Test that blank lines between entries are not kept in raw text."""
        entries = parser.parse_text(f"{header(0)}\ndetail\n\n\n{header(1)}\n")

        assert entries[0].raw_text == f"{header(0)}\ndetail"

    def test_entry_is_immutable(self, parser):
        """Test that finalized entries cannot be modified."""
        entry = parser.finalize(PartialEntry(
            timestamp=datetime(2024, 1, 1),
            environment="local",
            level="ERROR",
            message="boom",
            raw_lines=["boom"],
        ))

        with pytest.raises(ValidationError):
            entry.level = "INFO"


class TestWholeStreamParsing:
    """Tests for parse_lines / parse_text."""

    def test_leading_garbage_becomes_fallback_entry(self, parser):
        """Test that text before the first header is not dropped."""
        entries = parser.parse_text(f"\nstray output\n{header(0, level='INFO', message='ok')}\n")

        assert len(entries) == 2
        assert entries[0].environment == "unknown"
        assert entries[0].message == "stray output"
        assert entries[1].message == "ok"

    def test_parse_lines_strips_terminators(self, parser):
        """Test that CRLF files parse the same as LF files."""
        lines = [f"{header(0)}\r\n", "#0 /app/A.php(1): a()\r\n", f"{header(1, level='DEBUG')}\r\n"]

        entries = list(parser.parse_lines(lines))

        assert [e.level for e in entries] == ["ERROR", "DEBUG"]
        assert entries[0].stack_frames[0].call == "a()"
        assert "\r" not in entries[0].raw_text

    def test_empty_input(self, parser):
        """Test that no input yields no entries."""
        assert parser.parse_text("") == []
