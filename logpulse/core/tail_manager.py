"""
Log Pulse - Tail Manager
========================

Owns the index of running tails, keyed by source id. At most one tail runs
per source; starting a tail for a source that already has one replaces it.
"""

from collections import deque
from typing import Callable, Optional

from shared.utils.logging import get_logger
from logpulse.api.schemas import (
    Entry,
    TailEvent,
    TailEventType,
    TailStatus,
    UpsertResult,
)
from logpulse.config import Settings
from logpulse.core.entry_parser import EntryParser
from logpulse.core.error_store import ErrorStore
from logpulse.core.tailer import LogTailer

logger = get_logger(__name__)


class TailManager:
    """
    Starts, stops and lists tails, and buffers their recent events.

    Example:
        manager = TailManager(error_store, parser, settings)
        await manager.start_tail("api", "/var/log/laravel.log", on_entry=print)
        events = manager.recent_events("api", limit=20)
    """

    def __init__(self, error_store: ErrorStore, parser: EntryParser, settings: Settings):
        self.error_store = error_store
        self.parser = parser
        self.settings = settings
        self._tailers: dict[str, LogTailer] = {}
        self._events: dict[str, deque[TailEvent]] = {}

    def _create_tailer(self, source_id: str, path: str) -> LogTailer:
        return LogTailer(source_id, path, self.parser, self.error_store, self.settings)

    async def start_tail(
        self,
        source_id: str,
        path: str,
        backfill: bool = True,
        on_entry: Optional[Callable[[Entry], None]] = None,
        on_error_indexed: Optional[Callable[[UpsertResult], None]] = None,
        on_error: Optional[Callable[[str], None]] = None
    ) -> TailStatus:
        """
        Start tailing ``path`` on behalf of ``source_id``.

        A missing or unreadable file does not fail the call; it is reported as
        an error event and the tail picks the file up once it appears.

        Returns:
            Status of the new tail
        """
        await self.stop_tail(source_id)

        buffer: deque[TailEvent] = deque(maxlen=self.settings.tail_event_buffer_size)
        self._events[source_id] = buffer

        def dispatch(event: TailEvent) -> None:
            buffer.append(event)
            if event.type == TailEventType.ENTRY and on_entry:
                on_entry(event.entry)
            elif event.type == TailEventType.ERROR_INDEXED and on_error_indexed:
                on_error_indexed(event.result)
            elif event.type == TailEventType.ERROR and on_error:
                on_error(event.error)

        tailer = self._create_tailer(source_id, path)
        tailer.add_listener(dispatch)
        self._tailers[source_id] = tailer
        await tailer.start(backfill=backfill)

        logger.info(
            f"Tailing {path} for source {source_id}",
            extra={"source_id": source_id, "path": path, "active_tails": len(self._tailers)}
        )
        return tailer.status()

    async def stop_tail(self, source_id: str) -> bool:
        """
        Stop the tail for a source and drop its buffered events.

        Returns:
            False if the source had no running tail
        """
        tailer = self._tailers.pop(source_id, None)
        self._events.pop(source_id, None)
        if tailer is None:
            return False
        await tailer.stop()
        return True

    async def stop_all(self) -> None:
        for source_id in list(self._tailers):
            await self.stop_tail(source_id)

    def get_tailer(self, source_id: str) -> Optional[LogTailer]:
        return self._tailers.get(source_id)

    def list_tails(self) -> list[TailStatus]:
        return [tailer.status() for tailer in self._tailers.values()]

    def recent_events(self, source_id: str, limit: int = 100) -> list[TailEvent]:
        """Most recent buffered events for a source, oldest first."""
        buffer = self._events.get(source_id)
        if not buffer or limit <= 0:
            return []
        return list(buffer)[-limit:]
