"""
Log Pulse - Tailer
==================

Follows one growing log file for one source:
- reads only bytes past the last consumed offset
- keeps an incomplete trailing line until its newline arrives
- finalizes an entry when the next header shows up
- indexes error entries and notifies subscribers

File change notifications come from a watchdog observer thread; the tail
itself is an asyncio task that also re-checks the file every poll interval,
which covers platforms and filesystems without notifications.
"""

import asyncio
import os
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from shared.utils.logging import get_logger, set_source_id
from logpulse.api.schemas import (
    Entry,
    PartialEntry,
    TailEvent,
    TailEventType,
    TailStatus,
)
from logpulse.config import Settings
from logpulse.core.entry_parser import EntryParser
from logpulse.core.error_store import ErrorStore, is_error_level
from logpulse.core.errors import StoreFailure

logger = get_logger(__name__)

TailListener = Callable[[TailEvent], None]


class _FileChangeHandler(FileSystemEventHandler):
    """Wakes the tail task when its file is touched. Runs on the observer thread."""

    def __init__(self, path: str, loop: asyncio.AbstractEventLoop, wakeup: asyncio.Event):
        super().__init__()
        self._path = path
        self._loop = loop
        self._wakeup = wakeup

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = {os.path.abspath(event.src_path)}
        dest_path = getattr(event, "dest_path", None)
        if dest_path:
            paths.add(os.path.abspath(dest_path))
        if self._path not in paths:
            return
        try:
            self._loop.call_soon_threadsafe(self._wakeup.set)
        except RuntimeError:
            # Event loop already closed during shutdown
            pass


class LogTailer:
    """
    Offset-tracked reader of a single file.

    Stopped -> start() -> Watching -> stop() -> Stopped. Nothing is emitted
    while stopped, and a restarted tail begins again from the end of the file.

    Example:
        tailer = LogTailer("api", "/var/log/laravel.log", parser, store, settings)
        tailer.add_listener(print)
        await tailer.start()
        ...
        await tailer.stop()
    """

    def __init__(
        self,
        source_id: str,
        path: str,
        parser: EntryParser,
        error_store: ErrorStore,
        settings: Settings,
        use_watcher: bool = True
    ):
        self.source_id = source_id
        self.path = os.path.abspath(path)
        self.parser = parser
        self.error_store = error_store
        self.use_watcher = use_watcher

        self.backfill_bytes = settings.tail_backfill_bytes
        self.poll_interval = settings.tail_poll_interval_seconds
        self.read_chunk_bytes = settings.tail_read_chunk_bytes
        self.use_polling_observer = settings.tail_use_polling_observer

        self._listeners: list[TailListener] = []
        self._watching = False
        self._offset = 0
        self._inode: Optional[int] = None
        self._carry = b""
        self._partial: Optional[PartialEntry] = None
        self._unavailable = False

        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._observer = None

    # -------------------------------------------------------------------------
    # Subscribers
    # -------------------------------------------------------------------------

    def add_listener(self, listener: TailListener) -> None:
        """Subscribe to entry, error_indexed and error events."""
        self._listeners.append(listener)

    def remove_listener(self, listener: TailListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event_type: TailEventType, **fields) -> None:
        if not self._watching:
            return
        event = TailEvent(type=event_type, source_id=self.source_id, **fields)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.exception(
                    f"Tail listener failed: {e}",
                    extra={"event_type": event_type.value}
                )

    def _emit_error(self, message: str, **details) -> None:
        logger.warning(message, extra={"path": self.path, **details})
        self._emit(TailEventType.ERROR, error=message, details={"path": self.path, **details})

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def watching(self) -> bool:
        return self._watching

    async def start(self, backfill: bool = True) -> None:
        """
        Begin watching the file.

        Args:
            backfill: Emit entries found in the last ``tail_backfill_bytes`` of
                the existing file. They are not indexed, so errors already seen
                by an earlier tail are not counted twice.
        """
        if self._watching:
            return

        self._watching = True
        self._offset = 0
        self._inode = None
        self._carry = b""
        self._partial = None
        self._unavailable = False
        self._wakeup.clear()

        async with self._lock:
            self._seek_to_end(backfill)

        if self.use_watcher:
            self._start_observer()

        self._task = asyncio.create_task(self._run(), name=f"tail:{self.source_id}")
        logger.info(
            f"Tail started for {self.path}",
            extra={"path": self.path, "offset": self._offset, "backfill": backfill}
        )

    async def stop(self) -> None:
        """
        Stop watching. No event reaches a subscriber once this returns.

        The entry being accumulated is dropped.
        """
        if not self._watching:
            return
        self._watching = False

        if self._observer is not None:
            observer, self._observer = self._observer, None
            observer.stop()
            await asyncio.to_thread(observer.join, 5)

        if self._task is not None:
            task, self._task = self._task, None
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._partial = None
        self._carry = b""
        logger.info(f"Tail stopped for {self.path}", extra={"path": self.path, "offset": self._offset})

    def status(self) -> TailStatus:
        return TailStatus(
            source_id=self.source_id,
            path=self.path,
            watching=self._watching,
            offset=self._offset,
            has_partial_entry=self._partial is not None,
        )

    def _start_observer(self) -> None:
        directory = os.path.dirname(self.path)
        if not os.path.isdir(directory):
            logger.warning(
                f"Directory {directory} does not exist; polling only",
                extra={"path": self.path}
            )
            return

        observer = PollingObserver() if self.use_polling_observer else Observer()
        handler = _FileChangeHandler(self.path, asyncio.get_running_loop(), self._wakeup)
        observer.schedule(handler, directory, recursive=False)
        try:
            observer.start()
        except OSError as e:
            # e.g. inotify watch limit reached
            logger.warning(
                f"File notifications unavailable, polling only: {e}",
                extra={"path": self.path}
            )
            return
        self._observer = observer

    async def _run(self) -> None:
        set_source_id(self.source_id)
        while self._watching:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
            await self.process_changes()

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    def _seek_to_end(self, backfill: bool) -> None:
        try:
            stat = os.stat(self.path)
        except OSError as e:
            self._unavailable = True
            self._emit_error(f"Cannot open {self.path}: {e.strerror or e}")
            return

        self._inode = stat.st_ino
        self._offset = stat.st_size

        if not backfill or self.backfill_bytes <= 0 or stat.st_size == 0:
            return

        start = max(0, stat.st_size - self.backfill_bytes)
        try:
            with open(self.path, "rb") as handle:
                handle.seek(start)
                data = handle.read(stat.st_size - start)
        except OSError as e:
            self._emit_error(f"Backfill read failed: {e.strerror or e}")
            return

        if start > 0:
            # The window almost always starts mid-line
            newline = data.find(b"\n")
            data = data[newline + 1:] if newline >= 0 else b""

        complete, _, self._carry = data.rpartition(b"\n")
        text = complete.decode("utf-8", errors="replace")
        entries = self.parser.parse_text(text)
        for entry in entries:
            self._emit(TailEventType.ENTRY, entry=entry, details={"backfill": True})

        logger.debug(
            f"Backfilled {len(entries)} entries",
            extra={"path": self.path, "entry_count": len(entries)}
        )

    def _reset(self, reason: str) -> None:
        logger.info(
            f"File {reason}, restarting from offset 0",
            extra={"path": self.path, "previous_offset": self._offset}
        )
        self._offset = 0
        self._carry = b""
        self._partial = None

    async def process_changes(self) -> int:
        """
        Consume whatever was appended since the last call.

        Returns:
            Number of entries finalized during this call
        """
        if not self._watching:
            return 0

        async with self._lock:
            try:
                stat = os.stat(self.path)
            except OSError as e:
                # Reported once per outage; rotation leaves a short gap too
                if not self._unavailable:
                    self._unavailable = True
                    self._emit_error(f"Cannot stat {self.path}: {e.strerror or e}")
                return 0
            self._unavailable = False

            if self._inode is not None and stat.st_ino != self._inode:
                self._reset("rotated")
            elif stat.st_size < self._offset:
                self._reset("truncated")
            self._inode = stat.st_ino

            if stat.st_size == self._offset:
                return 0

            finalized = 0
            try:
                with open(self.path, "rb") as handle:
                    handle.seek(self._offset)
                    while self._watching and self._offset < stat.st_size:
                        chunk = handle.read(min(self.read_chunk_bytes, stat.st_size - self._offset))
                        if not chunk:
                            break
                        self._offset += len(chunk)
                        finalized += await self._consume(chunk)
            except OSError as e:
                self._emit_error(f"Cannot read {self.path}: {e.strerror or e}", offset=self._offset)

            return finalized

    async def _consume(self, data: bytes) -> int:
        *lines, self._carry = (self._carry + data).split(b"\n")

        finalized = 0
        for raw in lines:
            if not self._watching:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r")
            result = self.parser.parse_incremental(line, self._partial)
            if result is None:
                continue
            if result.is_new and self._partial is not None:
                await self._deliver(self.parser.finalize(self._partial))
                finalized += 1
            self._partial = result.entry

        return finalized

    async def _deliver(self, entry: Entry) -> None:
        self._emit(TailEventType.ENTRY, entry=entry)

        if not is_error_level(entry.level):
            return

        try:
            result = await asyncio.to_thread(self.error_store.upsert, self.source_id, entry)
        except StoreFailure as e:
            self._emit_error(
                f"Failed to index error entry: {e}",
                fingerprint=entry.fingerprint
            )
            return

        self._emit(TailEventType.ERROR_INDEXED, entry=entry, result=result)
