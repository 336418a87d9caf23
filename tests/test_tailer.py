"""
Log Pulse - Tailer Tests
========================

Tests for offset tracking, carry-over, truncation/rotation recovery,
backfill and stop semantics of live tails.

The poll interval in the test settings is long, so each test drives
process_changes() itself instead of waiting for notifications.
"""

import os
from unittest.mock import patch

import pytest

from conftest import header
from shared.utils.logging import set_source_id, source_id_var
from logpulse.api.schemas import TailEventType
from logpulse.core.errors import StoreFailure
from logpulse.core.tail_manager import TailManager
from logpulse.core.tailer import LogTailer


def append(path, text: str) -> None:
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(text)


@pytest.fixture
def log_file(tmp_path):
    path = tmp_path / "laravel.log"
    path.write_text(f"{header(0, level='INFO', message='booted')}\n", encoding="utf-8")
    return path


@pytest.fixture
def tailer(log_file, parser, error_store, settings):
    return LogTailer("api", str(log_file), parser, error_store, settings, use_watcher=False)


@pytest.fixture
def events(tailer):
    received = []
    tailer.add_listener(received.append)
    return received


def of_type(events, event_type):
    return [event for event in events if event.type == event_type]


class TestIncrementalReading:
    """Tests for reading appended bytes."""

    @pytest.mark.asyncio
    async def test_starts_at_end_without_backfill(self, tailer, events, log_file):
        """Test that existing content is skipped when backfill is off."""
        await tailer.start(backfill=False)
        try:
            assert tailer.status().offset == log_file.stat().st_size
            assert await tailer.process_changes() == 0
            assert events == []
        finally:
            await tailer.stop()

    @pytest.mark.asyncio
    async def test_entry_emitted_when_next_header_arrives(self, tailer, events, log_file, error_store):
        """Test that an entry is finalized only once the following header is read."""
        await tailer.start(backfill=False)
        try:
            append(log_file, f"{header(1, message='RuntimeException: queue down')}\n")
            append(log_file, "#0 /srv/app/Queue.php(12): pop()\n")
            assert await tailer.process_changes() == 0
            assert tailer.status().has_partial_entry

            append(log_file, f"{header(2, level='INFO', message='recovered')}\n")
            assert await tailer.process_changes() == 1

            entries = of_type(events, TailEventType.ENTRY)
            assert len(entries) == 1
            assert entries[0].entry.exception_type == "RuntimeException"
            assert entries[0].entry.stack_frames[0].call == "pop()"

            indexed = of_type(events, TailEventType.ERROR_INDEXED)
            assert len(indexed) == 1
            assert indexed[0].result.is_new is True
            assert error_store.get_group(indexed[0].result.group_id).count == 1
        finally:
            await tailer.stop()

    @pytest.mark.asyncio
    async def test_non_error_entries_are_not_indexed(self, tailer, events, log_file, error_store):
        """Test that INFO and WARNING entries only produce entry events."""
        await tailer.start(backfill=False)
        try:
            append(log_file, f"{header(1, level='WARNING')}\n{header(2, level='INFO')}\n{header(3)}\n")
            await tailer.process_changes()

            assert len(of_type(events, TailEventType.ENTRY)) == 2
            assert of_type(events, TailEventType.ERROR_INDEXED) == []
            assert error_store.list_groups("api") == []
        finally:
            await tailer.stop()

    @pytest.mark.asyncio
    async def test_partial_line_is_carried_over(self, tailer, events, log_file):
        """Test that a line still being written is not parsed early."""
        await tailer.start(backfill=False)
        try:
            append(log_file, "[2024-01-01 10:00:01] production.ERROR: Payment gat")
            await tailer.process_changes()
            assert not tailer.status().has_partial_entry

            append(log_file, f"eway timeout\n{header(2, level='INFO')}\n")
            await tailer.process_changes()

            entries = of_type(events, TailEventType.ENTRY)
            assert [e.entry.message for e in entries] == ["Payment gateway timeout"]
        finally:
            await tailer.stop()

    @pytest.mark.asyncio
    async def test_offset_only_moves_forward_over_consumed_bytes(self, tailer, log_file):
        """Test that the offset tracks exactly the bytes read."""
        await tailer.start(backfill=False)
        try:
            append(log_file, f"{header(1)}\n")
            await tailer.process_changes()

            assert tailer.status().offset == log_file.stat().st_size
        finally:
            await tailer.stop()

    @pytest.mark.asyncio
    async def test_large_delta_is_read_in_chunks(self, tailer, events, log_file):
        """Test that a big append is consumed in bounded reads without losing lines."""
        tailer.read_chunk_bytes = 7
        await tailer.start(backfill=False)
        try:
            append(log_file, "".join(f"{header(i, level='INFO', message=f'step {i}')}\n" for i in range(1, 6)))
            with patch.object(tailer, "_consume", wraps=tailer._consume) as consume:
                assert await tailer.process_changes() == 4

            assert consume.call_count > 1
            assert all(len(call.args[0]) <= 7 for call in consume.call_args_list)
            entries = of_type(events, TailEventType.ENTRY)
            assert [e.entry.message for e in entries] == [f"step {i}" for i in range(1, 5)]
            assert tailer.status().offset == log_file.stat().st_size
        finally:
            await tailer.stop()


class TestTruncationAndRotation:
    """Tests for recovering from files that shrink or are replaced."""

    @pytest.mark.asyncio
    async def test_truncation_discards_stale_state(self, tailer, events, log_file):
        """Test that bytes from before a truncation never join bytes after it."""
        await tailer.start(backfill=False)
        try:
            append(log_file, f"{header(1, message='stale failure ' + 'x' * 200)}\n")
            append(log_file, "#0 /srv/app/Old.php(1): stale_call")
            await tailer.process_changes()

            log_file.write_text(
                f"{header(5, level='INFO', message='fresh')}\n{header(6, level='INFO', message='after')}\n",
                encoding="utf-8"
            )
            await tailer.process_changes()

            entries = of_type(events, TailEventType.ENTRY)
            assert [e.entry.message for e in entries] == ["fresh"]
            assert "stale" not in entries[0].entry.raw_text
            assert tailer.status().offset == log_file.stat().st_size
        finally:
            await tailer.stop()

    @pytest.mark.asyncio
    async def test_rotation_restarts_from_beginning(self, tailer, events, log_file):
        """Test that a file replaced under the same name is read from offset 0."""
        await tailer.start(backfill=False)
        try:
            append(log_file, f"{header(1, message='before rotation')}\n")
            await tailer.process_changes()

            os.rename(log_file, str(log_file) + ".1")
            padding = "y" * 500
            log_file.write_text(
                f"{header(2, level='INFO', message=padding)}\n{header(3, level='INFO', message='next')}\n",
                encoding="utf-8"
            )
            await tailer.process_changes()

            messages = [e.entry.message for e in of_type(events, TailEventType.ENTRY)]
            assert messages == [padding]
        finally:
            await tailer.stop()


class TestBackfill:
    """Tests for seeding a tail with the end of the existing file."""

    @pytest.mark.asyncio
    async def test_backfill_emits_without_indexing(self, tailer, events, log_file, error_store):
        """Test that backfilled errors are shown but not counted again."""
        append(log_file, f"{header(1)}\n{header(2, level='DEBUG')}\n")

        await tailer.start(backfill=True)
        try:
            entries = of_type(events, TailEventType.ENTRY)
            assert [e.entry.level for e in entries] == ["INFO", "ERROR", "DEBUG"]
            assert all(e.details.get("backfill") for e in entries)
            assert error_store.list_groups("api") == []
        finally:
            await tailer.stop()

    @pytest.mark.asyncio
    async def test_backfill_window_skips_cut_line(self, tailer, events, log_file, settings):
        """Test that the first, cut-off line of the window is dropped."""
        for i in range(1, 60):
            append(log_file, f"{header(i, level='INFO', message='m' * 40)}\n")
        assert log_file.stat().st_size > settings.tail_backfill_bytes

        await tailer.start(backfill=True)
        try:
            entries = of_type(events, TailEventType.ENTRY)
            assert entries
            assert all(e.entry.raw_text.startswith("[2024-01-01") for e in entries)
            assert all(e.entry.environment == "production" for e in entries)
        finally:
            await tailer.stop()


class TestFailuresAndStop:
    """Tests for error events and stop semantics."""

    @pytest.mark.asyncio
    async def test_missing_file_reported_then_picked_up(self, tmp_path, parser, error_store, settings):
        """Test that a missing file is an error event, not a crash."""
        path = tmp_path / "later.log"
        tailer = LogTailer("api", str(path), parser, error_store, settings, use_watcher=False)
        events = []
        tailer.add_listener(events.append)

        await tailer.start()
        try:
            assert len(of_type(events, TailEventType.ERROR)) == 1
            assert tailer.watching

            path.write_text(f"{header(0)}\n{header(1, level='INFO')}\n", encoding="utf-8")
            await tailer.process_changes()

            assert len(of_type(events, TailEventType.ENTRY)) == 1
        finally:
            await tailer.stop()

    @pytest.mark.asyncio
    async def test_store_failure_is_an_event(self, tailer, events, log_file, error_store):
        """Test that a failed upsert is reported and the tail keeps going."""
        await tailer.start(backfill=False)
        try:
            with patch.object(error_store, "upsert", side_effect=StoreFailure("error_upsert", "locked")):
                append(log_file, f"{header(1)}\n{header(2)}\n")
                await tailer.process_changes()

            errors = of_type(events, TailEventType.ERROR)
            assert len(errors) == 1
            assert "locked" in errors[0].error
            assert tailer.watching

            append(log_file, f"{header(3)}\n")
            await tailer.process_changes()
            assert len(of_type(events, TailEventType.ERROR_INDEXED)) == 1
        finally:
            await tailer.stop()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_others(self, tailer, log_file):
        """Test that one broken subscriber does not affect the rest."""
        received = []

        def broken(event):
            raise ValueError("subscriber bug")

        tailer.add_listener(broken)
        tailer.add_listener(received.append)
        await tailer.start(backfill=False)
        try:
            append(log_file, f"{header(1, level='INFO')}\n{header(2, level='INFO')}\n")
            await tailer.process_changes()

            assert len(received) == 1
        finally:
            await tailer.stop()

    @pytest.mark.asyncio
    async def test_no_events_after_stop(self, tailer, events, log_file):
        """Test that stop() is effective before the next emission."""
        await tailer.start(backfill=False)
        append(log_file, f"{header(1, level='INFO')}\n")
        await tailer.process_changes()
        await tailer.stop()

        append(log_file, f"{header(2, level='INFO')}\n{header(3, level='INFO')}\n")
        assert await tailer.process_changes() == 0

        assert events == []
        assert not tailer.status().watching
        assert not tailer.status().has_partial_entry

    @pytest.mark.asyncio
    async def test_start_leaves_caller_log_context_alone(self, tailer):
        """Test that only the tail task is tagged with the source id."""
        set_source_id("caller")
        try:
            await tailer.start(backfill=False)
            assert source_id_var.get() == "caller"
        finally:
            await tailer.stop()
            set_source_id(None)


class TestTailManager:
    """Tests for the per-source tail index."""

    @pytest.fixture
    def manager(self, error_store, parser, settings):
        return TailManager(error_store, parser, settings)

    @pytest.mark.asyncio
    async def test_start_list_and_stop(self, manager, log_file):
        """Test the lifecycle of one source's tail."""
        status = await manager.start_tail("api", str(log_file), backfill=False)

        assert status.watching
        assert [t.source_id for t in manager.list_tails()] == ["api"]

        assert await manager.stop_tail("api") is True
        assert manager.list_tails() == []
        assert await manager.stop_tail("api") is False

    @pytest.mark.asyncio
    async def test_one_tail_per_source(self, manager, log_file, tmp_path):
        """Test that starting a second tail replaces the first."""
        other = tmp_path / "other.log"
        other.write_text("", encoding="utf-8")

        await manager.start_tail("api", str(log_file), backfill=False)
        first = manager.get_tailer("api")
        await manager.start_tail("api", str(other), backfill=False)
        try:
            assert not first.watching
            assert len(manager.list_tails()) == 1
            assert manager.list_tails()[0].path == str(other)
        finally:
            await manager.stop_all()

    @pytest.mark.asyncio
    async def test_callbacks_and_recent_events(self, manager, log_file):
        """Test typed callbacks and the bounded event buffer."""
        entries, results = [], []
        await manager.start_tail(
            "api", str(log_file), backfill=True,
            on_entry=entries.append, on_error_indexed=results.append
        )
        try:
            append(log_file, f"{header(1)}\n{header(2, level='INFO')}\n")
            await manager.get_tailer("api").process_changes()

            assert [e.message for e in entries] == ["booted", "Something failed"]
            assert len(results) == 1
            assert results[0].source_id == "api"

            recent = manager.recent_events("api", limit=2)
            assert [e.type for e in recent] == [TailEventType.ENTRY, TailEventType.ERROR_INDEXED]
            assert manager.recent_events("unknown") == []
        finally:
            await manager.stop_all()

    @pytest.mark.asyncio
    async def test_stop_drops_event_buffer(self, manager, log_file):
        """Test that a stopped source keeps no buffered events."""
        await manager.start_tail("api", str(log_file), backfill=True)
        assert len(manager.recent_events("api")) == 1

        await manager.stop_tail("api")

        assert manager.recent_events("api") == []
