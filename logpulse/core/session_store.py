"""
Log Pulse - Session Store
=========================

Persistent storage for bulk import sessions and their entries, with the
paginated/filtered query surface used after an import.
"""

from datetime import datetime
from math import ceil
from typing import Any, Optional

from sqlalchemy import func, insert, or_, select

from shared.constants import LEVEL_BUCKETS, LevelBucket, SessionStatus
from shared.utils.logging import get_logger
from logpulse.api.schemas import (
    Entry,
    EntryContext,
    EntryPage,
    Session,
    SessionEntry,
    SessionStats,
)
from logpulse.core.errors import NotFoundError
from logpulse.db import Database, LogSessionRecord, SessionEntryRecord

logger = get_logger(__name__)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SessionStore:
    """
    Sessions and their append-only entries.

    Entries are written in batches, one transaction per batch, and read back
    in insertion order (ascending id), which is original file order.
    """

    def __init__(self, database: Database):
        self.db = database

    @staticmethod
    def _to_session(record: LogSessionRecord) -> Session:
        return Session(
            id=record.id,
            filename=record.filename,
            file_path=record.file_path,
            file_size_bytes=record.file_size_bytes,
            total_entries=record.total_entries,
            status=SessionStatus(record.status),
            created_at=record.created_at,
            completed_at=record.completed_at,
        )

    @staticmethod
    def _to_entry(record: SessionEntryRecord) -> SessionEntry:
        return SessionEntry(
            id=record.id,
            session_id=record.session_id,
            timestamp=record.timestamp,
            environment=record.environment,
            level=record.level,
            message=record.message,
            context=EntryContext(**record.context),
            raw_content=record.raw_content,
            line_number=record.line_number,
        )

    @staticmethod
    def build_row(session_id: int, entry: Entry, line_number: int) -> dict[str, Any]:
        """Convert a finalized entry into a row for ``insert_entries``."""
        context = EntryContext(
            exception_type=entry.exception_type,
            stack_frames=entry.stack_frames,
            fingerprint=entry.fingerprint,
            title=entry.title,
        )
        return {
            "session_id": session_id,
            "timestamp": entry.timestamp,
            "environment": entry.environment,
            "level": entry.level,
            "message": entry.message,
            "context": context.model_dump(),
            "raw_content": entry.raw_text,
            "line_number": line_number,
        }

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def create_session(self, filename: str, file_path: str, file_size_bytes: int) -> Session:
        """Create an empty session in the importing state."""
        with self.db.transaction("session_create") as session:
            record = LogSessionRecord(
                filename=filename,
                file_path=file_path,
                file_size_bytes=file_size_bytes,
                total_entries=0,
                status=SessionStatus.IMPORTING.value,
                created_at=datetime.now(),
            )
            session.add(record)
            session.flush()
            created = self._to_session(record)

        logger.info(
            f"Created session {created.id} for {filename}",
            extra={"session_id": created.id, "file_size_bytes": file_size_bytes}
        )
        return created

    def insert_entries(self, rows: list[dict[str, Any]]) -> int:
        """
        Append a batch of entries in a single transaction.

        Raises:
            StoreFailure: If the batch cannot be committed; no row is kept
        """
        if not rows:
            return 0
        with self.db.transaction("session_insert_batch") as session:
            session.execute(insert(SessionEntryRecord), rows)
        return len(rows)

    def finish_session(self, session_id: int, total_entries: int, status: SessionStatus) -> Session:
        """Record the final entry count and status of an import."""
        with self.db.transaction("session_finish") as session:
            record = session.get(LogSessionRecord, session_id)
            if record is None:
                raise NotFoundError("Session", session_id)
            record.total_entries = total_entries
            record.status = SessionStatus(status).value
            record.completed_at = datetime.now()
            return self._to_session(record)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_session(self, session_id: int) -> Session:
        """
        Get a session by id.

        Raises:
            NotFoundError: If no such session exists
        """
        with self.db.session() as session:
            record = session.get(LogSessionRecord, session_id)
            if record is None:
                raise NotFoundError("Session", session_id)
            return self._to_session(record)

    def list_sessions(self, limit: int = 50, offset: int = 0) -> list[Session]:
        """List sessions, newest first."""
        query = (
            select(LogSessionRecord)
            .order_by(LogSessionRecord.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with self.db.session() as session:
            return [self._to_session(record) for record in session.scalars(query)]

    def get_entries(
        self,
        session_id: int,
        page: int = 1,
        limit: int = 50,
        level: Optional[str] = None,
        search: Optional[str] = None
    ) -> EntryPage:
        """
        Page through a session's entries in file order.

        Args:
            session_id: Session to read
            page: 1-indexed page number
            limit: Entries per page
            level: A bucket name (errors, warnings, info, debug) or an exact
                level such as NOTICE
            search: Case-insensitive substring of the message or raw text

        Raises:
            NotFoundError: If the session does not exist
        """
        page = max(page, 1)
        limit = max(limit, 1)

        conditions = [SessionEntryRecord.session_id == session_id]

        if level:
            try:
                levels = LEVEL_BUCKETS[LevelBucket(level.lower())]
            except ValueError:
                levels = frozenset({level.upper()})
            conditions.append(SessionEntryRecord.level.in_(sorted(levels)))

        if search:
            pattern = f"%{_escape_like(search)}%"
            conditions.append(or_(
                SessionEntryRecord.message.ilike(pattern, escape="\\"),
                SessionEntryRecord.raw_content.ilike(pattern, escape="\\"),
            ))

        with self.db.session() as session:
            if session.get(LogSessionRecord, session_id) is None:
                raise NotFoundError("Session", session_id)

            total = session.scalar(
                select(func.count(SessionEntryRecord.id)).where(*conditions)
            ) or 0

            records = session.scalars(
                select(SessionEntryRecord)
                .where(*conditions)
                .order_by(SessionEntryRecord.id.asc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
            entries = [self._to_entry(record) for record in records]

        return EntryPage(
            entries=entries,
            page=page,
            limit=limit,
            total=total,
            total_pages=ceil(total / limit),
        )

    def get_session_stats(self, session_id: int) -> SessionStats:
        """
        Count a session's entries per level bucket.

        Levels outside every bucket (e.g. NOTICE) count toward the total only.
        """
        query = (
            select(SessionEntryRecord.level, func.count(SessionEntryRecord.id))
            .where(SessionEntryRecord.session_id == session_id)
            .group_by(SessionEntryRecord.level)
        )

        with self.db.session() as session:
            if session.get(LogSessionRecord, session_id) is None:
                raise NotFoundError("Session", session_id)
            rows = session.execute(query).all()

        stats = SessionStats()
        for level, count in rows:
            stats.total += count
            for bucket, levels in LEVEL_BUCKETS.items():
                if level.upper() in levels:
                    # Bucket names double as SessionStats fields
                    setattr(stats, bucket.value, getattr(stats, bucket.value) + count)
                    break

        return stats
