"""
Log Pulse - Importer
====================

Streams a complete log file through the entry parser and persists the
result in batches:
- import_file: every entry into a new queryable session
- index_file: only error entries, into a source's error groups

Each batch is one transaction, committed on a worker thread so the event
loop keeps serving tails and HTTP requests while the store is busy.
"""

import asyncio
import os
from typing import Any, Optional

from shared.constants import SessionStatus
from shared.utils.logging import get_logger
from shared.utils.retry import RetryConfig, retry_async
from logpulse.api.schemas import Entry, IndexStats, PartialEntry, Session
from logpulse.config import Settings
from logpulse.core.entry_parser import EntryParser
from logpulse.core.error_store import ErrorStore, is_error_level
from logpulse.core.errors import FileAccessError, ImportFailed, StoreFailure
from logpulse.core.session_store import SessionStore

logger = get_logger(__name__)


class Importer:
    """
    One-shot streaming ingestion of whole files.

    Holds no state between calls; concurrent imports each get their own
    session and their own batches.

    Example:
        importer = Importer(session_store, error_store, EntryParser(), settings)
        session = await importer.import_file("/var/log/laravel.log")
    """

    def __init__(
        self,
        session_store: SessionStore,
        error_store: ErrorStore,
        parser: EntryParser,
        settings: Settings
    ):
        self.session_store = session_store
        self.error_store = error_store
        self.parser = parser
        self.batch_size = settings.import_batch_size
        self.index_batch_size = settings.index_batch_size
        self.retry_config = RetryConfig(
            max_attempts=settings.store_retry_attempts,
            base_delay=settings.store_retry_base_delay_seconds,
            retryable_exceptions=(StoreFailure,),
        )

    @staticmethod
    def _stat(path: str) -> os.stat_result:
        try:
            stat = os.stat(path)
        except OSError as e:
            raise FileAccessError(path, e.strerror or str(e)) from e
        if not os.path.isfile(path):
            raise FileAccessError(path, "not a regular file")
        if not os.access(path, os.R_OK):
            raise FileAccessError(path, "permission denied")
        return stat

    async def _write_rows(self, rows: list[dict[str, Any]]) -> int:
        return await asyncio.to_thread(self.session_store.insert_entries, rows)

    async def _flush(self, rows: list[dict[str, Any]]) -> int:
        if not rows:
            return 0
        return await retry_async(self._write_rows, rows, config=self.retry_config)

    async def import_file(self, path: str) -> Session:
        """
        Parse an entire file into a new session.

        Args:
            path: Log file to import

        Returns:
            The completed session, with total_entries set

        Raises:
            FileAccessError: If the file cannot be opened; no session is created
            ImportFailed: If a batch still fails after retries or the file
                becomes unreadable midway. Batches already committed remain
                queryable under the reported session id.
        """
        stat = self._stat(path)
        session = await asyncio.to_thread(
            self.session_store.create_session,
            filename=os.path.basename(path),
            file_path=os.path.abspath(path),
            file_size_bytes=stat.st_size,
        )

        written = 0
        rows: list[dict[str, Any]] = []
        current: Optional[PartialEntry] = None
        line_number = 0

        try:
            with open(path, "r", encoding="utf-8", errors="replace") as handle:
                for line in handle:
                    line_number += 1
                    result = self.parser.parse_incremental(line.rstrip("\r\n"), current)
                    if result is None:
                        continue

                    if result.is_new and current is not None:
                        # The previous entry ended on the line before this header
                        finalized = self.parser.finalize(current)
                        rows.append(SessionStore.build_row(session.id, finalized, line_number - 1))

                        if len(rows) >= self.batch_size:
                            written += await self._flush(rows)
                            rows = []
                            await asyncio.sleep(0)

                    current = result.entry

            if current is not None:
                finalized = self.parser.finalize(current)
                rows.append(SessionStore.build_row(session.id, finalized, line_number))

            written += await self._flush(rows)

        except (StoreFailure, OSError) as e:
            await self._mark_failed(session.id, written)
            logger.error(
                f"Import of {path} failed after {written} entries: {e}",
                extra={"session_id": session.id, "entries_written": written}
            )
            raise ImportFailed(session.id, written, str(e)) from e

        completed = await asyncio.to_thread(
            self.session_store.finish_session, session.id, written, SessionStatus.COMPLETED
        )
        logger.info(
            f"Imported {written} entries from {completed.filename}",
            extra={"session_id": completed.id, "total_entries": written, "lines": line_number}
        )
        return completed

    async def _mark_failed(self, session_id: int, written: int) -> None:
        try:
            await asyncio.to_thread(
                self.session_store.finish_session, session_id, written, SessionStatus.FAILED
            )
        except StoreFailure as e:
            # The session row still reads "importing"; committed batches are intact
            logger.error(
                f"Could not mark session {session_id} as failed: {e}",
                extra={"session_id": session_id}
            )

    async def _index_batch(self, source_id: str, entries: list[Entry]) -> IndexStats:
        return await asyncio.to_thread(self.error_store.index_entries, source_id, entries)

    async def index_file(self, source_id: str, path: str) -> IndexStats:
        """
        Index every error entry of a file into a source's error groups.

        Unlike a live tail this reads the whole file from the start, so
        running it twice counts every occurrence twice.

        Raises:
            FileAccessError: If the file cannot be opened
            StoreFailure: If a batch still fails after retries; earlier
                batches stay indexed
        """
        self._stat(path)
        totals = IndexStats()
        pending: list[Entry] = []

        async def flush() -> None:
            if not pending:
                return
            stats = await retry_async(
                self._index_batch, source_id, list(pending), config=self.retry_config
            )
            totals.total += stats.total
            totals.new += stats.new
            totals.updated += stats.updated
            pending.clear()
            await asyncio.sleep(0)

        try:
            with open(path, "r", encoding="utf-8", errors="replace") as handle:
                for entry in self.parser.parse_lines(handle):
                    if not is_error_level(entry.level):
                        continue
                    pending.append(entry)
                    if len(pending) >= self.index_batch_size:
                        await flush()
        except OSError as e:
            raise FileAccessError(path, e.strerror or str(e)) from e

        await flush()

        logger.info(
            f"Indexed {totals.total} errors from {path}",
            extra={"source_id": source_id, "new": totals.new, "updated": totals.updated}
        )
        return totals
